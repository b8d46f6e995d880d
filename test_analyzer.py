"""
Analyzer and Synthesizer Tests

Test list:
1. test_analysis_with_model - Model judgment is validated and pinned to the step
2. test_analysis_nothing_to_judge - News, errors and empty payloads give None
3. test_analysis_default_judgment - Unusable model output gives a labelled hold
4. test_rule_based_judgment - No model: 24h change decides
5. test_confidence_clamped - Out of range confidence is clamped, NaN rejected
6. test_synthesis_empty - Zero judgments: neutral, 0.5, no findings
7. test_synthesis_fallback - Model failure: deterministic aggregate
8. test_aggregate_scores - Bullish, bearish and neutral aggregates
9. test_market_context - Attention levels and sentiment counts
10. test_stock_payloads_judged - Quote and daily series payloads give metrics
"""

import json
import math

import pytest

from analyzer import (
    AnalysisContext,
    Analyzer,
    Synthesizer,
    aggregate_summary,
    extract_articles,
    extract_metrics,
    generate_market_context,
)
from conftest import daily_series_payload, market_payload, price_payload, scripted_model, stock_quote_payload
from operations import OperationCategory
from schemas import AnalysisResult, FinalSummary


PRICE = price_payload({"symbol": "bitcoin"})


def judgment(entity: str, recommendation: str, confidence: float) -> AnalysisResult:
    return AnalysisResult(target_entity=entity, recommendation=recommendation, confidence=confidence)


# =============================================================================
# TEST 1: Model Judgment
# =============================================================================

@pytest.mark.asyncio
async def test_analysis_with_model():
    """
    Test 1: The model's judgment is used, with engine-owned fields pinned.

    Verifies:
    - recommendation, confidence and rationale come from the model
    - target_entity, operation and metrics come from the step
    - A synonym key ("reasoning") is accepted
    """
    model = scripted_model(analysis={
        "recommendation": "sell",
        "confidence": 0.65,
        "reasoning": "Momentum fading",
        "target_entity": "SOMETHING ELSE",
    })

    result = await Analyzer(model).analyze(PRICE, "get_crypto_price", "BTC", AnalysisContext())

    assert result.recommendation == "sell"
    assert result.confidence == 0.65
    assert result.rationale == "Momentum fading"
    assert result.target_entity == "BTC"
    assert result.operation == "get_crypto_price"
    assert result.metrics == {"price": 50000.0, "change_24h": 2.5}
    assert result.is_default is False

    print("✓ Test 1 passed: Model judgments are validated")


# =============================================================================
# TEST 2: Nothing To Judge
# =============================================================================

@pytest.mark.asyncio
async def test_analysis_nothing_to_judge():
    """
    Test 2: Payloads without data produce no judgment.

    Verifies None for:
    - News operations
    - Unregistered operations
    - Non-JSON and non-object payloads
    - Payloads carrying an "error" key
    - Payloads without any known metric
    """
    analyzer = Analyzer(scripted_model(analysis={"recommendation": "buy"}))
    context = AnalysisContext()

    assert await analyzer.analyze('{"articles": []}', "search_news", "BTC", context) is None
    assert await analyzer.analyze(PRICE, "get_weather", "BTC", context) is None
    assert await analyzer.analyze("Service unavailable", "get_crypto_price", "BTC", context) is None
    assert await analyzer.analyze("[1, 2]", "get_crypto_price", "BTC", context) is None
    assert await analyzer.analyze('{"error": "rate limited"}', "get_crypto_price", "BTC", context) is None
    assert await analyzer.analyze('{"name": "Bitcoin"}', "get_market_data", "BTC", context) is None

    analyzer.provider.complete.assert_not_awaited()

    print("✓ Test 2 passed: Nothing to judge gives None")


# =============================================================================
# TEST 3: Default Judgment
# =============================================================================

@pytest.mark.asyncio
async def test_analysis_default_judgment():
    """
    Test 3: When the model cannot produce a judgment, a labelled hold is used.

    Verifies:
    - Prose output -> hold at confidence 0.2, is_default
    - Model exception -> same
    - The rationale says the analysis failed
    """
    for answer in ("Bitcoin looks great!", RuntimeError("model offline")):
        result = await Analyzer(scripted_model(analysis=answer)).analyze(
            PRICE, "get_crypto_price", "BTC", AnalysisContext()
        )
        assert result.recommendation == "hold"
        assert result.confidence == 0.2
        assert result.is_default is True
        assert "failed" in result.rationale
        assert result.metrics["price"] == 50000.0

    print("✓ Test 3 passed: Failed analysis gives a labelled default")


@pytest.mark.asyncio
async def test_analysis_partial_document():
    """An invalid recommendation falls back to hold, the rest is kept."""
    model = scripted_model(analysis={"recommendation": "strong buy", "confidence": 0.9})

    result = await Analyzer(model).analyze(market_payload({"symbol": "bitcoin"}), "get_market_data", "BTC",
                                           AnalysisContext())

    assert result.recommendation == "hold"
    assert result.confidence == 0.9
    assert result.is_default is False
    assert result.metrics["market_cap"] == 1.0e12


# =============================================================================
# TEST 4: Rule-based Judgment
# =============================================================================

@pytest.mark.asyncio
async def test_rule_based_judgment():
    """
    Test 4: Without a model, the 24h change decides.
    """
    analyzer = Analyzer(None)

    async def judge(change):
        raw = json.dumps({"price": 100.0, "change24h": change})
        return await analyzer.analyze(raw, "get_crypto_price", "ETH", AnalysisContext())

    assert (await judge(7.5)).recommendation == "buy"
    assert (await judge(-6.0)).recommendation == "sell"
    assert (await judge(1.0)).recommendation == "hold"

    result = await judge(7.5)
    assert result.confidence == 0.4
    assert result.is_default is True

    print("✓ Test 4 passed: Rule-based judgments work")


# =============================================================================
# TEST 5: Confidence Clamping
# =============================================================================

def test_confidence_clamped():
    """
    Test 5: Confidence always ends up in [0, 1].
    """
    assert judgment("BTC", "buy", 1.7).confidence == 1.0
    assert judgment("BTC", "buy", -0.3).confidence == 0.0
    assert AnalysisResult(target_entity="BTC", confidence="0.25").confidence == 0.25
    assert FinalSummary(confidence=3).confidence == 1.0

    with pytest.raises(ValueError):
        AnalysisResult(target_entity="BTC", confidence=math.nan)
    with pytest.raises(ValueError):
        AnalysisResult(target_entity="BTC", confidence="high")

    print("✓ Test 5 passed: Confidence is clamped")


# =============================================================================
# TEST 6: Empty Synthesis
# =============================================================================

@pytest.mark.asyncio
async def test_synthesis_empty():
    """
    Test 6: No judgments still gives a summary, without asking the model.
    """
    model = scripted_model(summary={"overall_sentiment": "bullish"})

    summary = await Synthesizer(model).synthesize([], "anything", AnalysisContext())

    assert summary.overall_sentiment == "neutral"
    assert summary.confidence == 0.5
    assert summary.key_findings == []
    model.complete.assert_not_awaited()

    print("✓ Test 6 passed: Empty synthesis is neutral")


# =============================================================================
# TEST 7: Synthesis Fallback
# =============================================================================

@pytest.mark.asyncio
async def test_synthesis_fallback():
    """
    Test 7: A failing or unusable model gives the deterministic aggregate.

    Verifies:
    - Exception -> aggregate with a note
    - Prose -> aggregate
    - A usable document is taken from the model (string findings coerced)
    """
    results = [judgment("BTC", "buy", 0.9), judgment("ETH", "buy", 0.8)]

    for answer in (RuntimeError("timeout"), "Looks bullish overall."):
        summary = await Synthesizer(scripted_model(summary=answer)).synthesize(results, "q", AnalysisContext())
        assert summary.is_fallback is True
        assert summary.overall_sentiment == "bullish"

    summary = await Synthesizer(scripted_model(summary={
        "sentiment": "bearish",
        "keyFindings": "Both coins overextended",
        "riskLevel": "high",
        "confidence": 0.6,
    })).synthesize(results, "q", AnalysisContext())

    assert summary.is_fallback is False
    assert summary.overall_sentiment == "bearish"
    assert summary.key_findings == ["Both coins overextended"]
    assert summary.risk_level == "high"

    print("✓ Test 7 passed: Synthesis falls back to the aggregate")


# =============================================================================
# TEST 8: Aggregate Scores
# =============================================================================

def test_aggregate_scores():
    """
    Test 8: The deterministic aggregate.

    Verifies:
    - Confidence-weighted votes decide the sentiment
    - Findings list every judgment
    - Risk is medium only for high average confidence
    """
    bullish = aggregate_summary([judgment("BTC", "buy", 0.9), judgment("ETH", "buy", 0.8)])
    assert bullish.overall_sentiment == "bullish"
    assert bullish.key_findings == ["BTC: BUY (90%)", "ETH: BUY (80%)"]
    assert bullish.recommendations == ["BUY BTC", "BUY ETH"]
    assert bullish.risk_level == "medium"
    assert bullish.confidence == pytest.approx(0.85)

    bearish = aggregate_summary([judgment("BTC", "sell", 0.8), judgment("BTC", "sell", 0.6)])
    assert bearish.overall_sentiment == "bearish"
    assert bearish.recommendations == ["SELL BTC"]
    assert bearish.risk_level == "high"

    mixed = aggregate_summary([judgment("BTC", "buy", 0.5), judgment("ETH", "sell", 0.5)])
    assert mixed.overall_sentiment == "neutral"

    holds = aggregate_summary([judgment("BTC", "hold", 0.9)])
    assert holds.overall_sentiment == "neutral"
    assert holds.recommendations == ["No strong signals; hold current positions"]

    print("✓ Test 8 passed: Aggregate scores are correct")


# =============================================================================
# TEST 9: Market Context
# =============================================================================

def test_market_context():
    """
    Test 9: Market context text.
    """
    assert generate_market_context([], []) == "Limited market context: no target entities."

    news = [{"title": f"Story {i}", "sentiment": "positive" if i % 2 else "negative"} for i in range(12)]
    text = generate_market_context(["BTC"], news)
    assert "Target entities: BTC" in text
    assert "Related news: 12 articles" in text
    assert "positive: 6, negative: 6, neutral: 0" in text
    assert "Market attention: high" in text

    assert "Market attention: medium" in generate_market_context(["BTC"], news[:6])
    assert "Market attention: low" in generate_market_context(["BTC"], news[:5])

    assert extract_articles('{"articles": [{"title": "a"}, "junk"]}') == [{"title": "a"}]
    assert extract_articles("not json") == []

    context = AnalysisContext(news=[{"title": "Ethereum upgrade ships"}, {"title": "Bitcoin dips"}])
    assert context.headlines_for("ETH") == ["Ethereum upgrade ships"]

    print("✓ Test 9 passed: Market context is generated")


# =============================================================================
# TEST 10: Stock Payloads
# =============================================================================

@pytest.mark.asyncio
async def test_stock_payloads_judged():
    """
    Test 10: Alpha Vantage quote and daily series payloads produce judgments.

    Verifies:
    - "Global Quote" string fields become numeric metrics
    - The daily series uses the two most recent closes
    - Rule-based judgments follow the derived daily change
    - An empty quote (unknown ticker) has nothing to judge
    """
    analyzer = Analyzer(None)

    quote = await analyzer.analyze(
        stock_quote_payload({"symbol": "AAPL"}), "get_stock_quote", "AAPL", AnalysisContext()
    )
    assert quote.metrics["price"] == 189.98
    assert quote.metrics["change_24h"] == pytest.approx(5.5444)
    assert quote.metrics["volume_24h"] == 51234567.0
    assert quote.recommendation == "buy"

    series = await analyzer.analyze(
        daily_series_payload({"symbol": "AAPL"}), "get_technical_indicators", "AAPL", AnalysisContext()
    )
    assert series.metrics["price"] == 160.0
    assert series.metrics["previous_close"] == 170.0
    assert series.metrics["change_24h"] == pytest.approx(-5.8824, abs=1e-4)
    assert series.recommendation == "sell"

    assert await analyzer.analyze('{"Global Quote": {}}', "get_stock_quote", "ZZZZ", AnalysisContext()) is None
    assert extract_metrics(OperationCategory.DAILY_SERIES, {"Time Series (Daily)": {}}) == {}

    print("✓ Test 10 passed: Stock payloads are judged")
