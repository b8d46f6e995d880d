"""
Stdio Transport Tests: a real MCP provider subprocess

These tests spawn fixtures/fake_crypto_server.py with the current
interpreter and talk to it through McpStdioTransport.

Test list:
1. test_stdio_round_trip - Connect, discover, call, health check, shut down
2. test_stdio_remote_error - A tool that raises becomes a ProviderError
3. test_stdio_spawn_failure - A command that does not exist is a TransportError
"""

import json
import sys
from pathlib import Path

import pytest

from config import ProviderServerConfig
from connections import ConnectionManager
from errors import ProviderError, TransportError

SERVER_SCRIPT = Path(__file__).parent / "fixtures" / "fake_crypto_server.py"


@pytest.fixture
def stdio_servers():
    return {"crypto": ProviderServerConfig(command=sys.executable, args=[str(SERVER_SCRIPT)])}


# =============================================================================
# TEST 1: Round Trip
# =============================================================================

@pytest.mark.asyncio
async def test_stdio_round_trip(stdio_servers):
    """
    Test 1: The full lifecycle against a real subprocess.

    Verifies:
    - Handshake and discovery succeed
    - Only registered operations are dispatchable
    - A call returns the provider's text payload
    - Health check passes
    - disconnect_all reports no errors and stops the process
    """
    manager = ConnectionManager(stdio_servers, connect_timeout=30)

    connection = await manager.connect("crypto")
    assert connection.is_connected
    assert "get_trending" in connection.operations
    assert manager.supports("crypto", "get_crypto_price")
    assert not manager.supports("crypto", "get_trending")

    payload = await manager.execute_operation("crypto", "get_crypto_price", {"symbol": "bitcoin"})
    assert json.loads(payload)["price"] == 50000.0

    assert await manager.health_check("crypto") is True

    errors = await manager.disconnect_all()
    assert errors == {}
    assert not connection.transport.is_alive

    print("✓ Test 1 passed: Stdio round trip works")


# =============================================================================
# TEST 2: Remote Error
# =============================================================================

@pytest.mark.asyncio
async def test_stdio_remote_error(stdio_servers):
    """
    Test 2: A tool that raises on the provider side is a business error.

    Verifies:
    - ProviderError carries the remote message
    - The connection stays usable afterwards
    """
    async with ConnectionManager(stdio_servers, connect_timeout=30) as manager:
        await manager.connect("crypto")

        with pytest.raises(ProviderError) as exc_info:
            await manager.execute_operation("crypto", "get_crypto_price", {"symbol": "notacoin"})
        assert "Unknown symbol" in str(exc_info.value)

        assert manager.is_connected("crypto")
        payload = await manager.execute_operation("crypto", "get_crypto_price", {"symbol": "ethereum"})
        assert json.loads(payload)["symbol"] == "ethereum"

    print("✓ Test 2 passed: Remote errors are provider errors")


# =============================================================================
# TEST 3: Spawn Failure
# =============================================================================

@pytest.mark.asyncio
async def test_stdio_spawn_failure():
    """
    Test 3: A provider that cannot be started is not registered.
    """
    servers = {"crypto": ProviderServerConfig(command="analyst-no-such-provider-binary")}
    manager = ConnectionManager(servers, connect_timeout=10)

    with pytest.raises(TransportError):
        await manager.connect("crypto")

    assert manager.get("crypto") is None

    results = await manager.connect_all()
    assert results["crypto"].success is False

    print("✓ Test 3 passed: Spawn failures are transport errors")
