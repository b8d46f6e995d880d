"""
Entity alias handling.

Users talk about "BTC" or "Ethereum"; providers want "bitcoin" and
"ethereum". This module owns the alias table, pulls target entities out of
a free-text query and maps aliases to provider-facing identifiers.
"""

import logging
import re

logger = logging.getLogger(__name__)


SYMBOL_MAPPING: dict[str, str] = {
    "BTC": "bitcoin",
    "BITCOIN": "bitcoin",
    "ETH": "ethereum",
    "ETHEREUM": "ethereum",
    "ADA": "cardano",
    "CARDANO": "cardano",
    "SOL": "solana",
    "SOLANA": "solana",
    "BNB": "binancecoin",
    "BINANCE": "binancecoin",
    "XRP": "ripple",
    "RIPPLE": "ripple",
    "DOGE": "dogecoin",
    "DOGECOIN": "dogecoin",
    "DOT": "polkadot",
    "POLKADOT": "polkadot",
    "AVAX": "avalanche-2",
    "AVALANCHE": "avalanche-2",
    "LINK": "chainlink",
    "CHAINLINK": "chainlink",
    "MATIC": "polygon",
    "POLYGON": "polygon",
    "UNI": "uniswap",
    "UNISWAP": "uniswap",
    "LTC": "litecoin",
    "LITECOIN": "litecoin",
}

_WORD = re.compile(r"[A-Za-z0-9][A-Za-z0-9\-]*")


def normalize_entity(alias: str) -> str:
    """
    Map an entity alias to its canonical provider identifier.

    Lookup ignores case and surrounding whitespace. Unknown aliases are not
    an error: they come back trimmed and lower-cased so the provider gets a
    chance to resolve them itself.
    """
    key = alias.strip().upper()
    canonical = SYMBOL_MAPPING.get(key)
    if canonical is None:
        logger.warning("Unknown entity alias '%s', using '%s'", alias, alias.strip().lower())
        return alias.strip().lower()
    return canonical


def is_known_alias(alias: str) -> bool:
    return alias.strip().upper() in SYMBOL_MAPPING


def extract_entities(query: str) -> list[str]:
    """
    Find known aliases mentioned in a query.

    Matches whole words only, so "ETH" is found in "buy ETH?" but not in
    "method". Aliases resolving to the same canonical id are reported once,
    using the first spelling that appears.

    Returns:
        Upper-cased aliases in query order
    """
    entities = []
    seen = set()
    for match in _WORD.finditer(query or ""):
        word = match.group(0).upper()
        canonical = SYMBOL_MAPPING.get(word)
        if canonical and canonical not in seen:
            seen.add(canonical)
            entities.append(word)
    return entities


def parse_entity_list(raw: str) -> list[str]:
    """Split a comma or space separated entity list (as given on the CLI)."""
    entities = []
    for part in re.split(r"[,\s]+", raw or ""):
        part = part.strip().upper()
        if part and part not in entities:
            entities.append(part)
    return entities
