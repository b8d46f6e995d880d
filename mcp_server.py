#!/usr/bin/env python3
"""
MCP Server for Market Analyst.

IMPORTANT: Never print to stdout - it breaks JSON-RPC communication.
All logging must go to stderr.

This server exposes the analysis engine itself as MCP tools, so an
assistant can run analyses the same way the CLI does:
- analyze_query: Run a full session and return its report
- list_sessions: Recent sessions
- get_session: One stored session
- provider_health: Which tool providers answer

To run:
    python mcp_server.py
"""

import sys
import json
import logging

# Configure logging to stderr BEFORE any other imports
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("analyst-mcp")

from mcp.server.fastmcp import FastMCP

from config import apply_env_overrides, load_config
from connections import ConnectionManager
from errors import OrchestrationError
from orchestrator import Orchestrator
from providers import get_provider
from session import JsonSessionStore, Session
from symbols import parse_entity_list

mcp = FastMCP("market-analyst")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _get_config():
    return apply_env_overrides(load_config())


def _store(config) -> JsonSessionStore:
    return JsonSessionStore(config.storage.sessions_path, max_sessions=config.storage.max_sessions)


def _report(session: Session) -> dict:
    """The parts of a session an assistant needs to answer the user."""
    return {
        "session_id": session.session_id,
        "query": session.query,
        "status": session.status,
        "target_entities": session.target_entities,
        "summary": session.summary,
        "results": session.results,
        "step_errors": session.step_errors,
        "used_fallback_plan": session.used_fallback_plan,
    }


# =============================================================================
# MCP TOOLS
# =============================================================================

@mcp.tool()
async def analyze_query(query: str, symbols: str = "") -> str:
    """
    Run a full market analysis session.

    Args:
        query: Free-text question (e.g., "How are BTC and ETH doing?")
        symbols: Optional comma-separated target entities (e.g., "BTC,SOL")

    Returns:
        JSON with the final summary, per-entity judgments and step errors.
    """
    logger.info(f"analyze_query called: {query[:50]}...")

    try:
        config = _get_config()
        try:
            provider = get_provider(config.llm)
        except ValueError as e:
            logger.warning(f"Language model unavailable, using fallbacks: {e}")
            provider = None

        async with ConnectionManager.from_config(config) as connections:
            orchestrator = Orchestrator.from_config(config, connections, provider, store=_store(config))
            entities = parse_entity_list(symbols) if symbols else None
            session = await orchestrator.run(query, entities=entities)

        return json.dumps(_report(session), indent=2)
    except (OrchestrationError, OSError, ValueError) as e:
        logger.error(f"analyze_query failed: {e}")
        return json.dumps({"error": str(e)})


@mcp.tool()
async def list_sessions(limit: int = 10) -> str:
    """
    List recent analysis sessions, most recent first.

    Args:
        limit: Maximum number of sessions to return
    """
    try:
        sessions = _store(_get_config()).get_recent(limit)
        return json.dumps([
            {
                "session_id": s.session_id,
                "query": s.query,
                "status": s.status,
                "created_at": s.created_at,
                "sentiment": (s.summary or {}).get("overall_sentiment"),
            }
            for s in sessions
        ], indent=2)
    except (OSError, ValueError) as e:
        logger.error(f"list_sessions failed: {e}")
        return json.dumps({"error": str(e)})


@mcp.tool()
async def get_session(session_id: str) -> str:
    """
    Get a stored session's report.

    Args:
        session_id: The 8-character session id
    """
    try:
        session = _store(_get_config()).get_by_id(session_id)
        if session is None:
            return json.dumps({"error": f"Session not found: {session_id}"})
        return json.dumps(_report(session), indent=2)
    except (OSError, ValueError) as e:
        logger.error(f"get_session failed: {e}")
        return json.dumps({"error": str(e)})


@mcp.tool()
async def provider_health() -> str:
    """
    Connect to every configured tool provider and probe it.

    Returns:
        JSON mapping provider name to {"connected", "healthy", "error"}.
    """
    try:
        config = _get_config()
        async with ConnectionManager.from_config(config) as connections:
            results = await connections.connect_all()
            health = await connections.health_check_all()

        return json.dumps({
            name: {
                "connected": result.success,
                "healthy": health.get(name, False),
                "error": result.error,
            }
            for name, result in results.items()
        }, indent=2)
    except (OSError, ValueError) as e:
        logger.error(f"provider_health failed: {e}")
        return json.dumps({"error": str(e)})


if __name__ == "__main__":
    mcp.run(transport="stdio")
