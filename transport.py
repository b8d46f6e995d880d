"""
Subprocess RPC transports for tool providers.

WHAT THIS FILE DOES:
-------------------
A transport is the raw channel to one tool provider: open it (spawn the
process and handshake), list the operations it advertises, call one
operation, close it. Transports translate every low-level failure into the
engine's error taxonomy (errors.py) so that callers never see anyio, mcp or
pydantic exceptions.

The production transport speaks the Model Context Protocol over the stdio of
a child process, using the official `mcp` client.

WHY A DEDICATED TASK PER TRANSPORT:
----------------------------------
`stdio_client` and `ClientSession` are async context managers built on anyio
task groups. They must be entered and exited from the same asyncio task.
Connections are opened from whichever task asked first (often inside
asyncio.gather) and closed much later from another one, so each transport
runs its context managers inside its own long-lived task:

    open()  -> start task -> task enters contexts, initializes, signals ready
    call()  -> uses the live ClientSession from any task
    close() -> signal stop -> task exits contexts -> await task
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp import types as mcp_types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from config import ProviderServerConfig
from errors import ProtocolError, ProviderError, TransportError
from schemas import ContentBlock, OperationDescriptor, OperationResponse

logger = logging.getLogger(__name__)

# Errors that mean the channel itself is gone
_CHANNEL_ERRORS = (
    OSError,
    EOFError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


# =============================================================================
# TRANSPORT INTERFACE
# =============================================================================

class ProviderTransport(ABC):
    """Abstract channel to one tool provider."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def open(self) -> None:
        """Spawn/attach and complete the handshake. Raises TransportError."""
        pass

    @abstractmethod
    async def list_operations(self) -> list[OperationDescriptor]:
        """Capability discovery. Also used as the health probe."""
        pass

    @abstractmethod
    async def call(self, operation: str, arguments: dict[str, Any]) -> OperationResponse:
        """Invoke one operation and return its raw response."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        pass


# =============================================================================
# MCP OVER STDIO
# =============================================================================

class McpStdioTransport(ProviderTransport):
    """
    MCP client talking to a provider subprocess over stdin/stdout.

    Args:
        name: Provider name (used in errors and logs)
        server: Launch command for the provider process
        handshake_timeout: Seconds allowed for spawn + initialize
        read_timeout: Seconds a single request may wait for its response
    """

    def __init__(
        self,
        name: str,
        server: ProviderServerConfig,
        handshake_timeout: float = 30.0,
        read_timeout: Optional[float] = 60.0,
    ):
        super().__init__(name)
        self.server = server
        self.handshake_timeout = handshake_timeout
        self.read_timeout = read_timeout
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def is_alive(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    def _server_parameters(self) -> StdioServerParameters:
        env = None
        if self.server.env:
            env = {**os.environ, **self.server.env}
        return StdioServerParameters(
            command=self.server.command,
            args=list(self.server.args),
            env=env,
        )

    async def _run(self) -> None:
        """Own the stdio/session contexts for the lifetime of the transport."""
        read_timeout = timedelta(seconds=self.read_timeout) if self.read_timeout else None
        try:
            async with stdio_client(self._server_parameters()) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=read_timeout,
                ) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    await self._stop.wait()
        finally:
            self._session = None

    async def open(self) -> None:
        if self._task is not None:
            raise TransportError("transport already opened", provider=self.name)

        logger.info("Starting provider %s: %s %s", self.name, self.server.command, " ".join(self.server.args))
        self._task = asyncio.create_task(self._run(), name=f"provider-{self.name}")
        ready = asyncio.create_task(self._ready.wait())

        done, _ = await asyncio.wait(
            {self._task, ready},
            timeout=self.handshake_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )

        if ready in done:
            return

        ready.cancel()
        if self._task in done:
            error = self._task.exception()
            raise TransportError(f"handshake failed: {_describe(error)}", provider=self.name) from error

        await self.close()
        raise TransportError(
            f"handshake timed out after {self.handshake_timeout:.0f}s",
            provider=self.name,
        )

    def _require_session(self) -> ClientSession:
        if self._task is not None and self._task.done() and not self._task.cancelled():
            error = self._task.exception()
            if error is not None:
                raise TransportError(f"channel closed: {_describe(error)}", provider=self.name) from error
        if self._session is None:
            raise TransportError("not connected", provider=self.name)
        return self._session

    async def list_operations(self) -> list[OperationDescriptor]:
        session = self._require_session()
        try:
            result = await session.list_tools()
        except McpError as e:
            raise _map_mcp_error(e, self.name) from e
        except ValidationError as e:
            raise ProtocolError(f"malformed tool list: {e}", provider=self.name) from e
        except _CHANNEL_ERRORS as e:
            raise TransportError(f"discovery failed: {_describe(e)}", provider=self.name) from e

        return [
            OperationDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {},
            )
            for tool in result.tools
        ]

    async def call(self, operation: str, arguments: dict[str, Any]) -> OperationResponse:
        session = self._require_session()
        try:
            result = await session.call_tool(operation, arguments)
        except McpError as e:
            raise _map_mcp_error(e, self.name) from e
        except ValidationError as e:
            raise ProtocolError(f"malformed response to {operation}: {e}", provider=self.name) from e
        except _CHANNEL_ERRORS as e:
            raise TransportError(f"call to {operation} failed: {_describe(e)}", provider=self.name) from e

        blocks = []
        for item in result.content:
            if isinstance(item, mcp_types.TextContent):
                blocks.append(ContentBlock(type="text", text=item.text))
            else:
                blocks.append(ContentBlock(type=getattr(item, "type", "unknown")))

        # Providers that only return structured content still get a text payload
        if not blocks and getattr(result, "structuredContent", None) is not None:
            blocks.append(ContentBlock(type="text", text=json.dumps(result.structuredContent)))

        return OperationResponse(is_error=bool(result.isError), content=blocks)

    async def close(self) -> None:
        if self._task is None:
            return

        self._stop.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            task.cancel()
            raise TransportError("provider did not shut down in time", provider=self.name)
        except asyncio.CancelledError:
            if not task.done():
                raise
        except Exception as e:
            # The channel was already broken; closing it is still a success
            logger.debug("Provider %s exited with %s", self.name, _describe(e))
        finally:
            self._session = None

        logger.info("Provider %s stopped", self.name)


def _map_mcp_error(error: McpError, provider: str) -> Exception:
    code = getattr(getattr(error, "error", None), "code", None)
    if code == getattr(mcp_types, "CONNECTION_CLOSED", -32000):
        return TransportError(f"connection closed: {error}", provider=provider)
    return ProviderError(str(error), provider=provider)


def _describe(error: Optional[BaseException]) -> str:
    """Readable one-liner for an exception, unwrapping exception groups."""
    if error is None:
        return "unknown error"
    inner = getattr(error, "exceptions", None)
    if inner:
        return "; ".join(_describe(e) for e in inner)
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
