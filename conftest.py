"""
Shared fixtures: in-process fake tool providers and a scripted model.

FakeTransport stands in for a provider subprocess. Each provider name gets a
behaviour (advertised operations, responses, open failures) and every call
to the factory builds a NEW transport, so tests can count how many channels
were created and kill individual ones.
"""

import asyncio
import inspect
import json
from typing import Any, Callable, Optional, Union
from unittest.mock import AsyncMock

import pytest

from config import ProviderServerConfig
from connections import ConnectionManager
from errors import TransportError
from prompts import ANALYST_SYSTEM, PLANNER_SYSTEM, SYNTHESIS_SYSTEM
from schemas import ContentBlock, OperationDescriptor, OperationResponse
from session import JsonSessionStore
from transport import ProviderTransport

Response = Union[str, OperationResponse, Exception, Callable[[dict], Any]]


# =============================================================================
# FAKE PROVIDERS
# =============================================================================

def price_payload(arguments: dict) -> str:
    return json.dumps({"symbol": arguments.get("symbol"), "price": 50000.0, "change24h": 2.5})


def market_payload(arguments: dict) -> str:
    return json.dumps({
        "id": arguments.get("symbol"),
        "currentPrice": 50000.0,
        "priceChange24h": 2.5,
        "marketCap": 1.0e12,
        "volume24h": 3.0e10,
    })


def news_payload(arguments: dict) -> str:
    return json.dumps({"articles": [
        {"title": "Bitcoin rallies as ETF inflows grow", "sentiment": "positive"},
        {"title": "Regulators weigh new crypto rules", "sentiment": "negative"},
    ]})


def stock_quote_payload(arguments: dict) -> str:
    return json.dumps({"Global Quote": {
        "01. symbol": arguments.get("symbol"),
        "05. price": "189.9800",
        "06. volume": "51234567",
        "08. previous close": "180.0000",
        "09. change": "9.9800",
        "10. change percent": "5.5444%",
    }})


def daily_series_payload(arguments: dict) -> str:
    return json.dumps({
        "Meta Data": {"2. Symbol": arguments.get("symbol")},
        "Time Series (Daily)": {
            "2024-05-02": {"1. open": "171.0", "4. close": "170.0", "5. volume": "900000"},
            "2024-05-03": {"1. open": "168.5", "4. close": "160.0", "5. volume": "1200000"},
            "2024-05-01": {"1. open": "170.0", "4. close": "171.0", "5. volume": "800000"},
        },
    })


def default_behaviours() -> dict[str, dict]:
    return {
        "crypto": {
            "operations": [
                OperationDescriptor(
                    name="get_crypto_price",
                    input_schema={"type": "object", "required": ["symbol"]},
                ),
                OperationDescriptor(
                    name="get_market_data",
                    input_schema={"type": "object", "required": ["symbol"]},
                ),
                OperationDescriptor(name="get_trending"),
            ],
            "responses": {
                "get_crypto_price": price_payload,
                "get_market_data": market_payload,
            },
        },
        "news": {
            "operations": [
                OperationDescriptor(
                    name="search_news",
                    input_schema={"type": "object", "required": ["query"]},
                ),
                OperationDescriptor(name="get_financial_news"),
            ],
            "responses": {
                "search_news": news_payload,
                "get_financial_news": news_payload,
            },
        },
        "stock": {
            "operations": [
                OperationDescriptor(
                    name="get_stock_quote",
                    input_schema={"type": "object", "required": ["symbol"]},
                ),
                OperationDescriptor(
                    name="get_technical_indicators",
                    input_schema={"type": "object", "required": ["symbol"]},
                ),
            ],
            "responses": {
                "get_stock_quote": stock_quote_payload,
                "get_technical_indicators": daily_series_payload,
            },
        },
    }


class FakeTransport(ProviderTransport):
    """In-memory provider channel with scripted responses."""

    def __init__(
        self,
        name: str,
        operations: list[OperationDescriptor],
        responses: dict[str, Response],
        open_error: Optional[Exception] = None,
        open_delay: float = 0.0,
    ):
        super().__init__(name)
        self.operations = operations
        self.responses = responses
        self.open_error = open_error
        self.open_delay = open_delay
        self.opened = False
        self.closed = False
        self.killed = False
        self.calls: list[tuple[str, dict]] = []

    @property
    def is_alive(self) -> bool:
        return self.opened and not self.closed and not self.killed

    async def open(self) -> None:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def list_operations(self) -> list[OperationDescriptor]:
        if not self.is_alive:
            raise TransportError("channel closed", provider=self.name)
        return list(self.operations)

    async def call(self, operation: str, arguments: dict[str, Any]) -> OperationResponse:
        if not self.is_alive:
            raise TransportError("channel closed", provider=self.name)
        self.calls.append((operation, dict(arguments)))

        response = self.responses.get(operation)
        if callable(response) and not isinstance(response, Exception):
            response = response(arguments)
            if inspect.isawaitable(response):
                response = await response

        if isinstance(response, Exception):
            raise response
        if isinstance(response, OperationResponse):
            return response
        if response is None:
            return OperationResponse(
                is_error=True,
                content=[ContentBlock(type="text", text=f"Unknown tool: {operation}")],
            )
        return OperationResponse(content=[ContentBlock(type="text", text=str(response))])

    async def close(self) -> None:
        self.closed = True

    def kill(self) -> None:
        """Simulate the provider process dying."""
        self.killed = True


class FakeProviders:
    """Transport factory that remembers every transport it built."""

    def __init__(self, behaviours: Optional[dict[str, dict]] = None):
        self.behaviours = behaviours if behaviours is not None else default_behaviours()
        self.created: dict[str, list[FakeTransport]] = {}

    def __call__(self, name: str, server: ProviderServerConfig) -> FakeTransport:
        behaviour = self.behaviours.get(name, {})
        transport = FakeTransport(
            name,
            operations=behaviour.get("operations", []),
            responses=behaviour.get("responses", {}),
            open_error=behaviour.get("open_error"),
            open_delay=behaviour.get("open_delay", 0.0),
        )
        self.created.setdefault(name, []).append(transport)
        return transport

    def latest(self, name: str) -> FakeTransport:
        return self.created[name][-1]

    def count(self, name: str) -> int:
        return len(self.created.get(name, []))

    def calls(self, name: str, operation: Optional[str] = None) -> list[tuple[str, dict]]:
        return [
            call
            for transport in self.created.get(name, [])
            for call in transport.calls
            if operation is None or call[0] == operation
        ]


# =============================================================================
# SCRIPTED MODEL
# =============================================================================

def scripted_model(
    plan: Union[str, dict, Exception, None] = None,
    analysis: Union[str, dict, Exception, None] = None,
    summary: Union[str, dict, Exception, None] = None,
) -> AsyncMock:
    """
    A model provider that answers by role.

    The role is recognized from the system prompt. Dicts are sent as JSON,
    exceptions are raised from complete().
    """
    answers = {PLANNER_SYSTEM: plan, ANALYST_SYSTEM: analysis, SYNTHESIS_SYSTEM: summary}

    async def complete(messages, system=None, **kwargs):
        answer = answers.get(system)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, dict):
            answer = json.dumps(answer)
        return {"content": answer or "", "input_tokens": 0, "output_tokens": 0, "model": "fake"}

    provider = AsyncMock()
    provider.model = "fake"
    provider.complete = AsyncMock(side_effect=complete)
    return provider


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def servers():
    """Launch configs for the two fake providers."""
    return {
        "crypto": ProviderServerConfig(command="fake-crypto"),
        "news": ProviderServerConfig(command="fake-news"),
    }


@pytest.fixture
def fake_providers():
    return FakeProviders()


@pytest.fixture
def manager(servers, fake_providers):
    return ConnectionManager(servers, transport_factory=fake_providers, health_timeout=1.0)


@pytest.fixture
def store(tmp_path):
    return JsonSessionStore(tmp_path / "sessions")
