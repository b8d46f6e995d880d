"""
Tool provider connections and their lifecycle manager.

WHAT THIS FILE DOES:
-------------------
ToolProviderConnection wraps one transport (one provider subprocess) and
adds what the engine needs on top of the raw channel:
- a health state (DISCONNECTED -> CONNECTING -> CONNECTED)
- the operations discovered at connect time, checked against the closed
  operation registry
- one in-flight call at a time
- interpretation of raw responses into payload / ProviderError / ProtocolError

ConnectionManager is the registry of connections keyed by provider name.
It is an explicit object owned by whoever runs sessions:

    async with ConnectionManager.from_config(config) as manager:
        orchestrator = Orchestrator(manager, ...)
        await orchestrator.run("How is BTC doing?")
    # every provider process has been shut down here

INVARIANTS:
----------
- At most one registered connection per provider name.
- connect() for one name is serialized by a per-name lock, so concurrent
  callers share a single transport instead of spawning duplicates.
- A failed connect is never registered. A failed health check or a broken
  channel evicts the connection; the next connect() builds a fresh one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from config import Config, ProviderServerConfig
from errors import OrchestrationError, ProtocolError, ProviderError, TransportError
from operations import OperationSpec, resolve_supported
from schemas import OperationDescriptor
from transport import McpStdioTransport, ProviderTransport

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    """Lifecycle of a provider connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


TransportFactory = Callable[[str, ProviderServerConfig], ProviderTransport]


# =============================================================================
# SINGLE CONNECTION
# =============================================================================

class ToolProviderConnection:
    """
    One subprocess-backed RPC channel to a tool provider.

    Owned by ConnectionManager; other code reaches it through the manager.
    """

    def __init__(self, name: str, transport: ProviderTransport):
        self.name = name
        self.transport = transport
        self.state = HealthState.DISCONNECTED
        self.operations: dict[str, OperationDescriptor] = {}
        self.dispatch: dict[str, OperationSpec] = {}
        self.connected_at: Optional[datetime] = None
        self.call_count = 0
        self._call_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.state is HealthState.CONNECTED

    async def open(self) -> None:
        """
        Handshake and discover operations.

        Raises:
            TransportError: If the channel cannot be established. The
                transport is closed before raising.
        """
        self.state = HealthState.CONNECTING
        try:
            await self.transport.open()
            advertised = await self.transport.list_operations()
        except OrchestrationError as e:
            self.state = HealthState.DISCONNECTED
            await self._close_after_failure()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"handshake failed: {e}", provider=self.name) from e

        self._register_operations(advertised)
        self.state = HealthState.CONNECTED
        self.connected_at = datetime.now()
        logger.info(
            "Connected to %s (%d operations, %d dispatchable)",
            self.name, len(self.operations), len(self.dispatch),
        )

    def _register_operations(self, advertised: list[OperationDescriptor]) -> None:
        self.operations = {descriptor.name: descriptor for descriptor in advertised}
        self.dispatch, ignored = resolve_supported(self.name, advertised)
        if ignored:
            logger.debug("Provider %s advertises unregistered operations: %s", self.name, ", ".join(ignored))

    async def ping(self, timeout: Optional[float] = None) -> None:
        """
        Lightweight discovery call. Refreshes the operation list.

        Discovery queues behind any call in flight; the timeout only bounds
        the discovery call itself.

        Raises:
            asyncio.TimeoutError: Discovery did not answer within timeout
        """
        async with self._call_lock:
            advertised = await asyncio.wait_for(self.transport.list_operations(), timeout=timeout)
        self._register_operations(advertised)

    def supports(self, operation: str) -> bool:
        return operation in self.dispatch

    def validate_arguments(self, operation: str, arguments: dict[str, Any]) -> tuple[bool, Optional[str]]:
        """
        Check arguments against the operation's advertised parameter schema.

        Returns:
            Tuple of (is_valid, error_message)
        """
        descriptor = self.operations.get(operation)
        if descriptor is None:
            return False, f"Unknown operation: {operation}"

        schema = descriptor.input_schema or {}
        for name in schema.get("required", []):
            if name not in arguments:
                return False, f"Missing required parameter: {name}"

        return True, None

    async def execute(self, operation: str, arguments: dict[str, Any]) -> str:
        """
        Invoke an operation and return its text payload.

        Raises:
            TransportError: Channel broke (connection is marked DISCONNECTED)
            ProviderError: Remote reported an error, or the operation is not
                dispatchable on this provider
            ProtocolError: Response carried no usable payload
        """
        if not self.is_connected:
            raise TransportError("not connected", provider=self.name)
        if not self.supports(operation):
            raise ProviderError(f"Unknown operation: {operation}", provider=self.name)

        is_valid, error = self.validate_arguments(operation, arguments)
        if not is_valid:
            raise ProviderError(error, provider=self.name)

        async with self._call_lock:
            self.call_count += 1
            try:
                response = await self.transport.call(operation, arguments)
            except TransportError:
                self.state = HealthState.DISCONNECTED
                raise

        if response.is_error:
            raise ProviderError(response.text() or f"{operation} failed", provider=self.name)

        payload = response.text()
        if payload is None:
            raise ProtocolError(f"{operation} returned no text content", provider=self.name)
        return payload

    async def close(self) -> None:
        self.state = HealthState.DISCONNECTED
        await self.transport.close()

    async def _close_after_failure(self) -> None:
        try:
            await self.transport.close()
        except OrchestrationError as e:
            logger.debug("Closing failed transport for %s: %s", self.name, e)


# =============================================================================
# CONNECTION MANAGER
# =============================================================================

@dataclass
class ConnectResult:
    """Outcome of one connect attempt in connect_all()."""
    name: str
    success: bool
    error: Optional[str] = None
    operations: list[str] = field(default_factory=list)


class ConnectionManager:
    """
    Registry of provider connections keyed by provider name.

    Args:
        servers: Provider name -> launch configuration
        transport_factory: Builds a transport for a provider. Defaults to
            an MCP stdio transport.
        connect_timeout: Seconds allowed for one handshake
        health_timeout: Seconds allowed for one health probe
    """

    def __init__(
        self,
        servers: dict[str, ProviderServerConfig],
        transport_factory: Optional[TransportFactory] = None,
        connect_timeout: float = 30.0,
        health_timeout: float = 10.0,
    ):
        self.servers = {name: server for name, server in servers.items() if server.enabled}
        self.connect_timeout = connect_timeout
        self.health_timeout = health_timeout
        self._transport_factory = transport_factory or self._default_transport
        self._connections: dict[str, ToolProviderConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: Config, transport_factory: Optional[TransportFactory] = None) -> "ConnectionManager":
        return cls(
            config.providers,
            transport_factory=transport_factory,
            connect_timeout=config.orchestrator.connect_timeout,
            health_timeout=config.orchestrator.health_timeout,
        )

    def _default_transport(self, name: str, server: ProviderServerConfig) -> ProviderTransport:
        return McpStdioTransport(name, server, handshake_timeout=self.connect_timeout)

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        errors = await self.disconnect_all()
        for name, error in errors.items():
            logger.warning("Error disconnecting %s: %s", name, error)

    def _lock_for(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    # -------------------------------------------------------------------------
    # Registry queries
    # -------------------------------------------------------------------------

    @property
    def known_providers(self) -> list[str]:
        return list(self.servers.keys())

    def get(self, name: str) -> Optional[ToolProviderConnection]:
        return self._connections.get(name)

    def is_connected(self, name: str) -> bool:
        connection = self._connections.get(name)
        return connection is not None and connection.is_connected

    def connected_providers(self) -> list[str]:
        return [name for name, conn in self._connections.items() if conn.is_connected]

    def supports(self, name: str, operation: str) -> bool:
        connection = self._connections.get(name)
        return connection is not None and connection.is_connected and connection.supports(operation)

    def available_operations(self) -> dict[str, list[OperationDescriptor]]:
        """Dispatchable operations per connected provider, for planning."""
        return {
            name: [conn.operations[op] for op in conn.dispatch]
            for name, conn in self._connections.items()
            if conn.is_connected
        }

    def status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every known provider, for display."""
        snapshot = {}
        for name in self.known_providers:
            connection = self._connections.get(name)
            snapshot[name] = {
                "state": connection.state.value if connection else HealthState.DISCONNECTED.value,
                "operations": sorted(connection.dispatch) if connection else [],
                "calls": connection.call_count if connection else 0,
            }
        return snapshot

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, name: str) -> ToolProviderConnection:
        """
        Get the healthy connection for a provider, creating it if needed.

        Raises:
            TransportError: Unknown provider or failed handshake. Nothing is
                registered in that case.
        """
        async with self._lock_for(name):
            existing = self._connections.get(name)
            if existing is not None and existing.is_connected:
                return existing
            if existing is not None:
                await self._evict(name, existing)

            server = self.servers.get(name)
            if server is None:
                raise TransportError(f"No provider configured named '{name}'", provider=name)

            connection = ToolProviderConnection(name, self._transport_factory(name, server))
            await connection.open()
            self._connections[name] = connection
            return connection

    async def connect_all(self) -> dict[str, ConnectResult]:
        """Connect every known provider concurrently."""

        async def attempt(name: str) -> ConnectResult:
            try:
                connection = await self.connect(name)
            except OrchestrationError as e:
                logger.warning("Failed to connect to %s: %s", name, e)
                return ConnectResult(name=name, success=False, error=str(e))
            return ConnectResult(name=name, success=True, operations=sorted(connection.dispatch))

        results = await asyncio.gather(*(attempt(name) for name in self.known_providers))
        connected = sum(1 for result in results if result.success)
        logger.info("Connected to %d/%d providers", connected, len(results))
        return {result.name: result for result in results}

    async def health_check(self, name: str) -> bool:
        """
        Probe a provider with a discovery call.

        On failure the connection is marked DISCONNECTED and evicted.

        Returns:
            True if the provider answered
        """
        async with self._lock_for(name):
            connection = self._connections.get(name)
            if connection is None or not connection.is_connected:
                return False
            try:
                await connection.ping(timeout=self.health_timeout)
            except (OrchestrationError, asyncio.TimeoutError) as e:
                logger.warning("Health check failed for %s: %s", name, str(e) or "timed out")
                await self._evict(name, connection)
                return False
            return True

    async def health_check_all(self) -> dict[str, bool]:
        names = list(self._connections.keys())
        results = await asyncio.gather(*(self.health_check(name) for name in names))
        return dict(zip(names, results))

    async def execute_operation(self, name: str, operation: str, arguments: dict[str, Any]) -> str:
        """
        Run an operation on a connected provider.

        Raises:
            TransportError: No connected entry, or the channel broke (the
                connection is evicted)
            ProviderError: Remote business error
            ProtocolError: Malformed response
        """
        connection = self._connections.get(name)
        if connection is None or not connection.is_connected:
            raise TransportError("not connected", provider=name)

        try:
            return await connection.execute(operation, arguments)
        except TransportError:
            if self._connections.get(name) is connection:
                await self._evict(name, connection)
            raise

    async def disconnect(self, name: str) -> None:
        """Close one provider. It is removed from the registry even if closing fails."""
        connection = self._connections.pop(name, None)
        if connection is not None:
            await connection.close()

    async def disconnect_all(self) -> dict[str, str]:
        """
        Close every connection, best effort.

        Returns:
            Provider name -> error message, for connections that failed to close
        """
        connections = list(self._connections.items())
        self._connections.clear()

        results = await asyncio.gather(
            *(connection.close() for _, connection in connections),
            return_exceptions=True,
        )

        errors = {}
        for (name, _), result in zip(connections, results):
            if isinstance(result, Exception):
                errors[name] = str(result)
        return errors

    async def _evict(self, name: str, connection: ToolProviderConnection) -> None:
        if self._connections.get(name) is connection:
            del self._connections[name]
        connection.state = HealthState.DISCONNECTED
        try:
            await connection.close()
        except OrchestrationError as e:
            logger.debug("Closing evicted connection %s: %s", name, e)
