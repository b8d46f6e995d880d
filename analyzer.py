"""
Analyzer and Synthesizer collaborators.

WHAT THIS FILE DOES:
-------------------
Analyzer: one provider payload in, one AnalysisResult (or None) out.
    - Only price, market-detail and stock quote or daily series data
      produce judgments
    - Payloads that are not JSON, carry an "error" key or have no numbers
      are skipped (None), which is not an error for the session
    - When the model fails, the result is a labelled low-confidence "hold"

Synthesizer: all judgments in, one FinalSummary out. Always.
    - Zero judgments: neutral, no findings, confidence 0.5
    - Model unavailable or unusable: deterministic aggregate of the votes

Neither class raises to its caller.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from contracts import parse_analysis_document, parse_summary_document
from errors import SchemaValidationError
from operations import OperationCategory, get_operation
from prompts import (
    ANALYST_SYSTEM,
    SYNTHESIS_SYSTEM,
    render_analysis_prompt,
    render_synthesis_prompt,
)
from providers import ModelProvider
from schemas import AnalysisResult, FinalSummary
from symbols import normalize_entity

logger = logging.getLogger(__name__)

DEFAULT_JUDGMENT_CONFIDENCE = 0.2
RULE_BASED_CONFIDENCE = 0.4

RECOMMENDATION_WEIGHTS = {"buy": 1.0, "sell": -1.0, "hold": 0.0}

# Payload keys -> metric names, per category
METRIC_KEYS = {
    OperationCategory.PRICE: {
        "price": "price",
        "change24h": "change_24h",
        "change_24h": "change_24h",
    },
    OperationCategory.MARKET: {
        "currentPrice": "price",
        "current_price": "price",
        "priceChange24h": "change_24h",
        "price_change_24h": "change_24h",
        "marketCap": "market_cap",
        "market_cap": "market_cap",
        "volume24h": "volume_24h",
        "volume_24h": "volume_24h",
    },
    # Alpha Vantage GLOBAL_QUOTE fields, sent as strings
    OperationCategory.QUOTE: {
        "05. price": "price",
        "10. change percent": "change_24h",
        "09. change": "price_change",
        "06. volume": "volume_24h",
        "08. previous close": "previous_close",
    },
}

QUOTE_ENVELOPE = "Global Quote"
DAILY_SERIES_ENVELOPE = "Time Series (Daily)"

# Categories the analyzer can judge
JUDGED_CATEGORIES = set(METRIC_KEYS) | {OperationCategory.DAILY_SERIES}


@dataclass
class AnalysisContext:
    """What the analyzer knows beyond the payload in front of it."""
    query: str = ""
    market_context: str = ""
    news: list[dict] = field(default_factory=list)

    def headlines_for(self, entity: str) -> list[str]:
        """Titles of articles that mention the entity or its canonical id."""
        needles = {entity.lower(), normalize_entity(entity).lower()} if entity else set()
        titles = []
        for article in self.news:
            title = str(article.get("title") or "")
            if needles and any(needle in title.lower() for needle in needles):
                titles.append(title)
        return titles


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def decode_payload(raw: Optional[str]) -> Optional[Any]:
    """JSON-decode a provider payload; None if it is not JSON."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def extract_articles(raw: Optional[str]) -> list[dict]:
    """Articles from a news payload ({"articles": [...]}); empty if there are none."""
    data = decode_payload(raw)
    if not isinstance(data, dict):
        return []
    articles = data.get("articles")
    if not isinstance(articles, list):
        return []
    return [article for article in articles if isinstance(article, dict)]


def _as_number(value: Any) -> Optional[float]:
    """A float from a JSON number or a numeric string such as "1.25%"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().rstrip("%"))
        except ValueError:
            return None
    return None


def extract_metrics(category: OperationCategory, data: dict) -> dict[str, Optional[float]]:
    if category is OperationCategory.DAILY_SERIES:
        return extract_daily_metrics(data)
    if category is OperationCategory.QUOTE and isinstance(data.get(QUOTE_ENVELOPE), dict):
        data = data[QUOTE_ENVELOPE]

    metrics = {}
    for key, name in METRIC_KEYS.get(category, {}).items():
        value = _as_number(data.get(key))
        if value is not None and name not in metrics:
            metrics[name] = value
    return metrics


def extract_daily_metrics(data: dict) -> dict[str, Optional[float]]:
    """
    Latest close, volume and day-over-day change from a daily OHLCV series.

    Expects {"Time Series (Daily)": {"YYYY-MM-DD": {"4. close": ..., ...}}}.
    """
    series = data.get(DAILY_SERIES_ENVELOPE)
    if not isinstance(series, dict) or not series:
        return {}

    days = sorted((day for day in series if isinstance(series[day], dict)), reverse=True)
    if not days:
        return {}

    latest = series[days[0]]
    metrics = {}
    close = _as_number(latest.get("4. close"))
    if close is not None:
        metrics["price"] = close
    volume = _as_number(latest.get("5. volume"))
    if volume is not None:
        metrics["volume_24h"] = volume

    if close is not None and len(days) > 1:
        previous = _as_number(series[days[1]].get("4. close"))
        if previous:
            metrics["previous_close"] = previous
            metrics["change_24h"] = round((close - previous) / previous * 100, 4)
    return metrics


def generate_market_context(entities: list[str], news: list[dict]) -> str:
    """
    Short text summary of the news landscape, shared by every prompt.

    Attention is high above 10 articles, medium above 5, low otherwise.
    """
    if not entities:
        return "Limited market context: no target entities."

    counts = {"positive": 0, "negative": 0, "neutral": 0}
    for article in news:
        sentiment = str(article.get("sentiment") or "neutral").lower()
        counts[sentiment if sentiment in counts else "neutral"] += 1

    total = len(news)
    attention = "high" if total > 10 else "medium" if total > 5 else "low"

    return "\n".join([
        f"Target entities: {', '.join(entities)}",
        f"Related news: {total} articles",
        f"News sentiment - positive: {counts['positive']}, negative: {counts['negative']}, "
        f"neutral: {counts['neutral']}",
        f"Market attention: {attention}",
    ])


# =============================================================================
# ANALYZER
# =============================================================================

class Analyzer:
    """
    Turns one step's payload into a judgment.

    Args:
        provider: Model provider, or None for rule-based judgments only
        temperature: Sampling temperature for analysis calls
    """

    def __init__(self, provider: Optional[ModelProvider], temperature: float = 0.2):
        self.provider = provider
        self.temperature = temperature

    async def analyze(
        self,
        raw_result: Optional[str],
        operation: str,
        target_entity: str,
        context: AnalysisContext,
    ) -> Optional[AnalysisResult]:
        """
        Returns:
            AnalysisResult, or None when there is nothing to judge
        """
        spec = get_operation(operation)
        if spec is None or spec.category not in JUDGED_CATEGORIES:
            return None

        data = decode_payload(raw_result)
        if not isinstance(data, dict) or "error" in data:
            return None

        metrics = extract_metrics(spec.category, data)
        if not metrics:
            logger.debug("No metrics in %s payload for %s", operation, target_entity)
            return None

        if self.provider is None:
            return self.rule_based_judgment(target_entity, operation, metrics)

        try:
            return await self._ask_model(data, operation, target_entity, metrics, context)
        except Exception as e:
            logger.warning("Analysis of %s/%s failed: %s", target_entity, operation, e)
            return self.default_judgment(target_entity, operation, metrics, str(e))

    async def _ask_model(
        self,
        data: dict,
        operation: str,
        target_entity: str,
        metrics: dict,
        context: AnalysisContext,
    ) -> AnalysisResult:
        prompt = render_analysis_prompt(
            target_entity,
            operation,
            data,
            context.headlines_for(target_entity),
            context.market_context,
        )
        response = await self.provider.complete(
            messages=[{"role": "user", "content": prompt}],
            system=ANALYST_SYSTEM,
            temperature=self.temperature,
            json_mode=True,
        )

        outcome = parse_analysis_document(response.get("content"), target_entity, operation, metrics)
        if not outcome.ok:
            raise SchemaValidationError(outcome.error)
        return outcome.value

    @staticmethod
    def default_judgment(
        target_entity: str,
        operation: str,
        metrics: dict,
        reason: Optional[str] = None,
    ) -> AnalysisResult:
        """Low-confidence hold used when the model could not produce a judgment."""
        rationale = "Automatic analysis failed; defaulting to hold."
        if reason:
            rationale = f"{rationale} ({reason})"
        return AnalysisResult(
            target_entity=target_entity,
            operation=operation,
            recommendation="hold",
            confidence=DEFAULT_JUDGMENT_CONFIDENCE,
            rationale=rationale,
            metrics=metrics,
            is_default=True,
        )

    @staticmethod
    def rule_based_judgment(target_entity: str, operation: str, metrics: dict) -> AnalysisResult:
        """Judgment from the 24h change alone: above +5% buy, below -5% sell."""
        change = metrics.get("change_24h")
        if change is None:
            recommendation = "hold"
        elif change > 5:
            recommendation = "buy"
        elif change < -5:
            recommendation = "sell"
        else:
            recommendation = "hold"

        return AnalysisResult(
            target_entity=target_entity,
            operation=operation,
            recommendation=recommendation,
            confidence=RULE_BASED_CONFIDENCE,
            rationale=f"Rule-based: 24h change {change:+.2f}%" if change is not None else "Rule-based: no 24h change",
            metrics=metrics,
            is_default=True,
        )


# =============================================================================
# SYNTHESIZER
# =============================================================================

def empty_summary() -> FinalSummary:
    return FinalSummary(
        overall_sentiment="neutral",
        key_findings=[],
        recommendations=[],
        summary="No analysis results were available for this request.",
        confidence=0.5,
        is_fallback=True,
    )


def aggregate_summary(results: list[AnalysisResult], note: Optional[str] = None) -> FinalSummary:
    """
    Deterministic summary from the judgments alone.

    Score: buy=+1, sell=-1, hold=0, each weighted by confidence and
    averaged. Above 0.3 is bullish, below -0.3 bearish.
    """
    if not results:
        return empty_summary()

    score = sum(RECOMMENDATION_WEIGHTS[r.recommendation] * r.confidence for r in results) / len(results)
    sentiment = "bullish" if score > 0.3 else "bearish" if score < -0.3 else "neutral"
    average_confidence = sum(r.confidence for r in results) / len(results)

    recommendations = []
    for r in results:
        if r.recommendation != "hold":
            line = f"{r.recommendation.upper()} {r.target_entity}"
            if line not in recommendations:
                recommendations.append(line)
    if not recommendations:
        recommendations.append("No strong signals; hold current positions")

    entities = list(dict.fromkeys(r.target_entity for r in results))
    summary = (
        f"Analyzed {len(results)} data point(s) across {len(entities)} entit"
        f"{'y' if len(entities) == 1 else 'ies'}; overall sentiment is {sentiment}."
    )
    if note:
        summary = f"{summary} {note}"

    return FinalSummary(
        overall_sentiment=sentiment,
        key_findings=[
            f"{r.target_entity}: {r.recommendation.upper()} ({r.confidence:.0%})"
            for r in results
        ],
        recommendations=recommendations,
        summary=summary,
        confidence=average_confidence,
        risk_level="medium" if average_confidence > 0.7 else "high",
        is_fallback=True,
    )


class Synthesizer:
    """
    Combines all judgments into the final report.

    Args:
        provider: Model provider, or None for the deterministic aggregate
        temperature: Sampling temperature for the synthesis call
    """

    def __init__(self, provider: Optional[ModelProvider], temperature: float = 0.3):
        self.provider = provider
        self.temperature = temperature

    async def synthesize(
        self,
        results: list[AnalysisResult],
        query: str,
        context: AnalysisContext,
    ) -> FinalSummary:
        if not results:
            return empty_summary()
        if self.provider is None:
            return aggregate_summary(results)

        try:
            prompt = render_synthesis_prompt(query, results, context.market_context)
            response = await self.provider.complete(
                messages=[{"role": "user", "content": prompt}],
                system=SYNTHESIS_SYSTEM,
                temperature=self.temperature,
                json_mode=True,
            )
        except Exception as e:
            logger.warning("Synthesis call failed, aggregating judgments: %s", e)
            return aggregate_summary(results, note="Model synthesis was unavailable.")

        outcome = parse_summary_document(response.get("content"))
        if not outcome.ok:
            logger.warning("Synthesis output unusable, aggregating judgments: %s", outcome.error)
            return aggregate_summary(results, note="Model synthesis was unusable.")
        return outcome.value
