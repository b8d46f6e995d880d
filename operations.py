"""
Closed registry of provider operations the engine knows how to drive.

WHAT THIS FILE DOES:
-------------------
Tool providers advertise whatever operations they like. The engine only
dispatches to operations listed here: each entry names the provider that
serves it, its category (price, market detail, news, stock quote, daily
series) and a typed argument
builder that turns a step's parameters and target entity into the exact
arguments the provider expects.

Connections check advertised operations against this registry when they
are discovered, so a step naming an unknown operation fails fast with a
ProviderError instead of a confusing remote error.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from schemas import OperationDescriptor
from symbols import normalize_entity


class OperationCategory(str, Enum):
    """What kind of data an operation returns."""
    PRICE = "price"
    MARKET = "market"
    NEWS = "news"
    CONTEXT = "context"
    QUOTE = "quote"
    DAILY_SERIES = "daily_series"


# Stock tickers are passed upper-cased, never through the crypto alias table
TICKER_CATEGORIES = (OperationCategory.QUOTE, OperationCategory.DAILY_SERIES)


# (step parameters, entity alias, canonical id) -> provider arguments
ArgumentBuilder = Callable[[dict[str, Any], str, str], dict[str, Any]]


def _symbol_arguments(parameters: dict[str, Any], alias: str, canonical: str) -> dict[str, Any]:
    arguments = dict(parameters)
    if alias:
        arguments["symbol"] = canonical
    elif "symbol" in arguments:
        arguments["symbol"] = normalize_entity(str(arguments["symbol"]))
    return arguments


def _ticker_arguments(parameters: dict[str, Any], alias: str, canonical: str) -> dict[str, Any]:
    arguments = dict(parameters)
    if alias:
        arguments["symbol"] = alias.strip().upper()
    elif "symbol" in arguments:
        arguments["symbol"] = str(arguments["symbol"]).strip().upper()
    return arguments


def _news_search_arguments(parameters: dict[str, Any], alias: str, canonical: str) -> dict[str, Any]:
    arguments = dict(parameters)
    arguments.setdefault("query", f"{alias.upper()} cryptocurrency news")
    arguments.pop("symbol", None)
    return arguments


def _financial_news_arguments(parameters: dict[str, Any], alias: str, canonical: str) -> dict[str, Any]:
    arguments = dict(parameters)
    arguments.setdefault("symbols", [alias.upper()])
    arguments.setdefault("pageSize", 10)
    return arguments


@dataclass(frozen=True)
class OperationSpec:
    """A registry entry."""
    name: str
    provider: str
    category: OperationCategory
    description: str
    build_arguments: ArgumentBuilder

    def default_parameters(self, alias: str) -> dict[str, Any]:
        """Parameters a generated step carries before normalization."""
        if self.category is OperationCategory.NEWS:
            return {"query": f"{alias.upper()} cryptocurrency news"}
        if self.category is OperationCategory.CONTEXT:
            return {"symbols": [alias.upper()], "pageSize": 10}
        if self.category in TICKER_CATEGORIES:
            return {"symbol": alias.upper()}
        return {"symbol": normalize_entity(alias)}


OPERATION_REGISTRY: dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (
        OperationSpec(
            name="get_crypto_price",
            provider="crypto",
            category=OperationCategory.PRICE,
            description="Current price and 24h change for a cryptocurrency",
            build_arguments=_symbol_arguments,
        ),
        OperationSpec(
            name="get_market_data",
            provider="crypto",
            category=OperationCategory.MARKET,
            description="Market cap, volume and price history for a cryptocurrency",
            build_arguments=_symbol_arguments,
        ),
        OperationSpec(
            name="search_news",
            provider="news",
            category=OperationCategory.NEWS,
            description="Search recent news articles by free-text query",
            build_arguments=_news_search_arguments,
        ),
        OperationSpec(
            name="get_financial_news",
            provider="news",
            category=OperationCategory.CONTEXT,
            description="Latest financial headlines for a list of symbols",
            build_arguments=_financial_news_arguments,
        ),
        OperationSpec(
            name="get_stock_quote",
            provider="stock",
            category=OperationCategory.QUOTE,
            description="Latest price, volume and daily change for a stock ticker",
            build_arguments=_ticker_arguments,
        ),
        OperationSpec(
            name="get_technical_indicators",
            provider="stock",
            category=OperationCategory.DAILY_SERIES,
            description="Daily open, high, low, close and volume series for a stock ticker",
            build_arguments=_ticker_arguments,
        ),
    )
}

# Categories every fallback plan covers, in step order
FALLBACK_CATEGORIES = (
    OperationCategory.PRICE,
    OperationCategory.MARKET,
    OperationCategory.NEWS,
)


def get_operation(name: str) -> Optional[OperationSpec]:
    """Look up a registry entry by operation name."""
    return OPERATION_REGISTRY.get(name)


def operation_for_category(category: OperationCategory) -> OperationSpec:
    """The registry entry used for a category in generated plans."""
    for spec in OPERATION_REGISTRY.values():
        if spec.category is category:
            return spec
    raise KeyError(f"No operation registered for category '{category.value}'")


def resolve_supported(
    provider: str,
    advertised: list[OperationDescriptor],
) -> tuple[dict[str, OperationSpec], list[str]]:
    """
    Split a provider's advertised operations into dispatchable and ignored.

    An operation is dispatchable when it is registered AND registered for
    this provider.

    Returns:
        Tuple of (name -> spec for dispatchable operations, ignored names)
    """
    supported = {}
    ignored = []
    for descriptor in advertised:
        spec = OPERATION_REGISTRY.get(descriptor.name)
        if spec is not None and spec.provider == provider:
            supported[descriptor.name] = spec
        else:
            ignored.append(descriptor.name)
    return supported, ignored
