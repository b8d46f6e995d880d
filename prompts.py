"""
Prompt templates for the planner, analyzer and synthesizer.

Each prompt ends by showing the JSON schema the answer must follow. The
parsers in contracts.py are lenient, but the closer the model gets to the
schema the fewer defaults end up in the report.
"""

import json

from schemas import AnalysisResult, FinalSummary, PlannerDocument, get_json_schema
from symbols import SYMBOL_MAPPING


PLANNER_SYSTEM = """You are a financial analysis planner. You turn a user's question into an
ordered list of tool calls. You only use the operations listed in the prompt,
and you answer with a single JSON object and nothing else."""

ANALYST_SYSTEM = """You are a cautious financial analyst. You judge one piece of market data at a
time and answer with a single JSON object and nothing else. This is not
financial advice; say "hold" when the data does not support a clear view."""

SYNTHESIS_SYSTEM = """You are a senior financial analyst writing the final report of a multi-step
analysis. You combine individual judgments into one overall view and answer
with a single JSON object and nothing else."""


def _schema_block(model) -> str:
    return json.dumps(get_json_schema(model), indent=2)


def render_plan_prompt(
    query: str,
    entities: list[str],
    operations: dict[str, list[dict]],
    market_context: str,
) -> str:
    """
    Args:
        query: The user's question
        entities: Target entity aliases
        operations: provider -> [{"name", "description"}]
        market_context: Text from generate_market_context()
    """
    operation_lines = []
    for provider, items in operations.items():
        for item in items:
            operation_lines.append(f"- {item['name']} (provider: {provider}): {item['description']}")
    mapping_lines = [f"{alias} -> {canonical}" for alias, canonical in SYMBOL_MAPPING.items()]

    return f"""Create an execution plan for this request.

REQUEST: {query}
TARGET ENTITIES: {', '.join(entities) or 'none'}

MARKET CONTEXT:
{market_context}

AVAILABLE OPERATIONS:
{chr(10).join(operation_lines) or '- none'}

SYMBOL MAPPING (use the canonical id in "symbol" parameters):
{chr(10).join(mapping_lines)}

RULES:
- One step per operation call, in the order they should run
- Every step names its provider, operation and target_entity
- For search_news, pass {{"query": "<SYMBOL> cryptocurrency news"}}
- analysis_kind is one of technical, fundamental, sentiment, comprehensive
- priority is 1 (low) to 5 (high)

Respond with JSON matching this schema:
{_schema_block(PlannerDocument)}"""


def render_analysis_prompt(
    target_entity: str,
    operation: str,
    data: dict,
    news_headlines: list[str],
    market_context: str,
) -> str:
    headlines = "\n".join(f"- {title}" for title in news_headlines[:5]) or "- none"

    return f"""Analyze the following {operation} data for {target_entity}.

DATA:
{json.dumps(data, indent=2, default=str)[:4000]}

RELEVANT NEWS:
{headlines}

MARKET CONTEXT:
{market_context}

Give a recommendation (buy, sell or hold), a confidence between 0 and 1 and a
short rationale.

Respond with JSON matching this schema (target_entity, operation, metrics and
is_default are filled in for you):
{_schema_block(AnalysisResult)}"""


def render_synthesis_prompt(query: str, results: list[AnalysisResult], market_context: str) -> str:
    lines = [
        f"- {r.target_entity} ({r.operation}): {r.recommendation} at {r.confidence:.0%} - {r.rationale}"
        for r in results
    ]

    return f"""Write the final report for this request.

REQUEST: {query}

INDIVIDUAL JUDGMENTS:
{chr(10).join(lines)}

MARKET CONTEXT:
{market_context}

Summarize the overall sentiment (bullish, bearish or neutral), key findings,
concrete recommendations, a risk level (low, medium, high) and your confidence.

Respond with JSON matching this schema (leave is_fallback false):
{_schema_block(FinalSummary)}"""
