"""
Entity Alias Tests

Test list:
1. test_normalize_entity - Known aliases map, unknown ones are lower-cased
2. test_extract_entities - Whole words, query order, one per canonical id
3. test_parse_entity_list - CLI lists split on commas and spaces
"""

from operations import OperationCategory, operation_for_category, resolve_supported
from schemas import OperationDescriptor
from symbols import extract_entities, is_known_alias, normalize_entity, parse_entity_list


def test_normalize_entity():
    """
    Test 1: Alias normalization.
    """
    assert normalize_entity("BTC") == "bitcoin"
    assert normalize_entity("btc") == "bitcoin"
    assert normalize_entity(" Avalanche ") == "avalanche-2"
    assert normalize_entity("FooCoin") == "foocoin"
    assert normalize_entity("  PEPE ") == "pepe"

    assert is_known_alias("eth")
    assert not is_known_alias("PEPE")

    print("✓ Test 1 passed: Aliases normalize")


def test_extract_entities():
    """
    Test 2: Entity extraction from free text.

    Verifies:
    - Matching is case-insensitive and on whole words only
    - "ETH" and "Ethereum" count once, first spelling wins
    - Order follows the query
    """
    assert extract_entities("Should I buy eth or btc?") == ["ETH", "BTC"]
    assert extract_entities("Ethereum vs ETH vs Solana") == ["ETHEREUM", "SOLANA"]
    assert extract_entities("What method do you use?") == []
    assert extract_entities("") == []

    print("✓ Test 2 passed: Entities are extracted")


def test_parse_entity_list():
    """
    Test 3: Entity lists from the command line.
    """
    assert parse_entity_list("btc, eth sol") == ["BTC", "ETH", "SOL"]
    assert parse_entity_list("BTC,btc,,") == ["BTC"]
    assert parse_entity_list("") == []

    print("✓ Test 3 passed: Entity lists are parsed")


def test_operation_registry():
    """Registry lookups used by the fallback plan and discovery."""
    assert operation_for_category(OperationCategory.PRICE).name == "get_crypto_price"
    assert operation_for_category(OperationCategory.NEWS).provider == "news"

    supported, ignored = resolve_supported("news", [
        OperationDescriptor(name="search_news"),
        OperationDescriptor(name="get_crypto_price"),
        OperationDescriptor(name="get_headlines"),
    ])
    assert list(supported) == ["search_news"]
    assert ignored == ["get_crypto_price", "get_headlines"]

    supported, ignored = resolve_supported("stock", [
        OperationDescriptor(name="get_stock_quote"),
        OperationDescriptor(name="get_technical_indicators"),
    ])
    assert sorted(supported) == ["get_stock_quote", "get_technical_indicators"]
    assert ignored == []
    assert operation_for_category(OperationCategory.QUOTE).default_parameters("aapl") == {"symbol": "AAPL"}
