#!/usr/bin/env python3
"""
Market Analyst CLI - multi-step market analysis over tool providers.

This is the main entry point for the command-line interface. It wires
config, provider connections, the language model and the session store
into an Orchestrator and renders the session report with a rich UI.

USAGE:
------
  analyst "How are BTC and ETH doing?"     - Run an analysis
  analyst "Outlook?" --symbols BTC,SOL      - Explicit target entities
  analyst --history 10                      - List recent sessions
  analyst --show SESSION_ID                 - Show a stored session
  analyst --prune [DAYS]                    - Delete old sessions (default: retention_days)
  analyst --health                          - Check providers and model

EXIT CODES:
----------
  0   success (including partial results)
  1   unhandled failure (no provider reachable, bad config, ...)
  130 interrupted
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import yaml

import ui
from config import Config, LoggingConfig, apply_env_overrides, load_config, validate_config
from connections import ConnectionManager
from errors import NoProvidersAvailableError
from orchestrator import Orchestrator
from providers import ModelProvider, check_model_available, get_provider
from session import JsonSessionStore
from symbols import parse_entity_list

__version__ = "1.0.0"

logger = logging.getLogger("analyst")

# --prune without a value: use storage.retention_days
PRUNE_RETENTION = -1


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="analyst",
        description="Multi-step market analysis over MCP tool providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  analyst "How are BTC and ETH doing today?"
  analyst "Should I worry about volatility?" --symbols SOL,AVAX
  analyst --history 5
  analyst --show abc12345
  analyst --health
        """
    )

    parser.add_argument(
        "query",
        nargs="?",
        help="Free-text question to analyze"
    )

    parser.add_argument(
        "-s", "--symbols",
        metavar="LIST",
        help="Comma separated target entities (default: extracted from the query)"
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to a YAML config file"
    )

    parser.add_argument(
        "--history",
        type=int,
        metavar="N",
        help="List the N most recent sessions"
    )

    parser.add_argument(
        "--show",
        metavar="SESSION_ID",
        help="Show a stored session"
    )

    parser.add_argument(
        "--prune",
        type=int,
        nargs="?",
        const=PRUNE_RETENTION,
        metavar="DAYS",
        help="Delete sessions older than DAYS days (default: storage.retention_days)"
    )

    parser.add_argument(
        "--health",
        action="store_true",
        help="Check tool providers and the language model"
    )

    parser.add_argument(
        "--no-llm",
        action="store_true",
        help="Skip the language model (fallback plan, rule-based judgments)"
    )

    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Do not persist the session"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed output and debug logs"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Market Analyst {__version__}"
    )

    return parser


# =============================================================================
# SETUP
# =============================================================================

def setup_logging(settings: LoggingConfig, verbose: bool = False) -> None:
    """Configure logging to stderr (and optionally a file)."""
    level = logging.DEBUG if verbose else getattr(logging, settings.level.upper(), logging.WARNING)
    handlers = [logging.StreamHandler(sys.stderr)]
    if settings.file:
        log_path = Path(settings.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_model_provider(config: Config, disabled: bool = False) -> Optional[ModelProvider]:
    if disabled:
        return None
    try:
        return get_provider(config.llm)
    except ValueError as e:
        ui.show_warning(f"Language model unavailable, using fallbacks: {e}")
        return None


def build_store(config: Config) -> JsonSessionStore:
    return JsonSessionStore(config.storage.sessions_path, max_sessions=config.storage.max_sessions)


# =============================================================================
# COMMANDS
# =============================================================================

async def run_analysis(config: Config, query: str, entities: Optional[list[str]], args: argparse.Namespace) -> int:
    """Run one session and display its report."""
    provider = build_model_provider(config, disabled=args.no_llm)
    store = None if args.no_save else build_store(config)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass  # not supported on this platform; Ctrl-C interrupts immediately

    try:
        async with ConnectionManager.from_config(config) as connections:
            orchestrator = Orchestrator.from_config(config, connections, provider, store=store)
            with ui.show_thinking("Analyzing..."):
                session = await orchestrator.run(query, entities=entities, cancel_event=cancel_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    ui.show_session_report(session, verbose=args.verbose)
    if session.status == "cancelled":
        ui.show_warning("Session cancelled; the report covers the steps that ran")
    if store is not None:
        ui.show_info(f"Saved session {session.session_id}")
    return 0


async def run_health(config: Config, args: argparse.Namespace) -> int:
    """Connect to every provider, probe it, and check the model."""
    async with ConnectionManager.from_config(config) as connections:
        results = await connections.connect_all()
        health = await connections.health_check_all()

    providers = {name: health.get(name, False) for name in results}

    provider = build_model_provider(config, disabled=args.no_llm)
    if provider is None:
        model = (False, "disabled")
    else:
        model = await check_model_available(provider)

    ui.show_health(providers, model)
    for name, result in results.items():
        if not result.success:
            ui.show_error(f"{name}: {result.error}")

    return 0 if any(providers.values()) else 1


def show_history(config: Config, limit: int) -> int:
    store = build_store(config)
    ui.show_header("Recent Sessions")
    ui.show_sessions_list(store.get_recent(limit))
    return 0


def show_stored_session(config: Config, session_id: str, verbose: bool) -> int:
    session = build_store(config).get_by_id(session_id)
    if session is None:
        ui.show_error(f"Session not found: {session_id}")
        return 1
    ui.show_session_report(session, verbose=verbose)
    return 0


def prune_sessions(config: Config, days: int = PRUNE_RETENTION) -> int:
    if days == PRUNE_RETENTION:
        days = config.storage.retention_days
    removed = build_store(config).prune(datetime.now() - timedelta(days=days))
    ui.show_success(f"Removed {removed} session(s) older than {days} day(s)")
    return 0


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        config = apply_env_overrides(load_config(args.config))
    except (FileNotFoundError, yaml.YAMLError) as e:
        ui.show_error(f"Could not load config: {e}")
        return 1

    setup_logging(config.logging, verbose=args.verbose)

    problems = validate_config(config)
    if problems:
        for problem in problems:
            ui.show_error(f"Config: {problem}")
        return 1

    if args.history is not None:
        return show_history(config, args.history)
    if args.show:
        return show_stored_session(config, args.show, args.verbose)
    if args.prune is not None:
        return prune_sessions(config, args.prune)
    if args.health:
        return await run_health(config, args)

    if not args.query:
        create_parser().print_usage(sys.stderr)
        ui.show_error('A query is required, e.g. analyst "How is BTC doing?"')
        return 1

    entities = parse_entity_list(args.symbols) if args.symbols else None

    try:
        return await run_analysis(config, args.query, entities, args)
    except NoProvidersAvailableError as e:
        ui.show_error(str(e))
        return 1
    except Exception as e:
        ui.show_error(f"Session failed: {e}")
        if args.verbose:
            logger.exception("Session failed")
        return 1


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
