#!/usr/bin/env python3
"""
Minimal crypto tool provider used by the stdio transport tests.

Serves fixed prices over MCP on stdin/stdout. Never print to stdout.
"""

import json

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("fake-crypto")

PRICES = {"bitcoin": 50000.0, "ethereum": 3000.0}


@mcp.tool()
async def get_crypto_price(symbol: str) -> str:
    """Current price and 24h change for a cryptocurrency."""
    if symbol not in PRICES:
        raise ValueError(f"Unknown symbol: {symbol}")
    return json.dumps({"symbol": symbol, "price": PRICES[symbol], "change24h": 1.5})


@mcp.tool()
async def get_trending() -> str:
    """Not part of the engine's operation registry."""
    return json.dumps({"coins": list(PRICES)})


if __name__ == "__main__":
    mcp.run(transport="stdio")
