"""
CLI Tests: exit codes and commands

These tests drive async_main() with parsed arguments, a config file in a
temporary directory and in-process fake providers.

Test list:
1. test_analysis_exit_code_success - A session (even partial) exits 0 and is saved
2. test_failures_exit_code_one - No provider, a crashing session, bad input exit 1
3. test_prune_defaults_to_retention - --prune without DAYS uses storage.retention_days
"""

from datetime import datetime, timedelta

import pytest
import yaml

from cli import PRUNE_RETENTION, async_main, create_parser
from conftest import FakeProviders, default_behaviours
from connections import ConnectionManager
from errors import TransportError
from orchestrator import Orchestrator
from session import JsonSessionStore, Session


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "providers": {
            "crypto": {"command": "fake-crypto"},
            "news": {"command": "fake-news"},
        },
        "storage": {
            "sessions_dir": str(tmp_path / "sessions"),
            "retention_days": 10,
        },
    }))
    return path


@pytest.fixture
def use_fakes(monkeypatch):
    """Route every ConnectionManager built by the CLI to fake providers."""

    def install(providers: FakeProviders) -> FakeProviders:
        monkeypatch.setattr(
            ConnectionManager,
            "_default_transport",
            lambda self, name, server: providers(name, server),
        )
        return providers

    return install


def parse(*argv) -> object:
    return create_parser().parse_args([str(arg) for arg in argv])


# =============================================================================
# TEST 1: Success
# =============================================================================

@pytest.mark.asyncio
async def test_analysis_exit_code_success(config_file, tmp_path, use_fakes):
    """
    Test 1: A finished session exits 0.

    Verifies:
    - A clean run exits 0 and the session is persisted
    - A run with a failed step (partial) still exits 0
    """
    providers = use_fakes(FakeProviders())

    code = await async_main(parse("How is BTC doing?", "--config", config_file, "--no-llm"))

    assert code == 0
    assert len(providers.calls("crypto", "get_crypto_price")) == 1
    stored = JsonSessionStore(tmp_path / "sessions").get_recent()
    assert len(stored) == 1
    assert stored[0].status == "completed"

    behaviours = default_behaviours()
    behaviours["crypto"]["responses"]["get_crypto_price"] = TransportError("pipe closed")
    use_fakes(FakeProviders(behaviours))

    code = await async_main(parse("BTC?", "--config", config_file, "--no-llm"))

    assert code == 0
    assert JsonSessionStore(tmp_path / "sessions").get_recent()[0].status == "partial"

    print("✓ Test 1 passed: Successful sessions exit 0")


# =============================================================================
# TEST 2: Failures
# =============================================================================

@pytest.mark.asyncio
async def test_failures_exit_code_one(config_file, tmp_path, use_fakes, monkeypatch):
    """
    Test 2: Unhandled failures exit 1.

    Verifies:
    - No provider reachable -> 1, nothing persisted
    - An unexpected exception inside the session -> 1
    - A missing config file -> 1
    - No query and no command -> 1
    """
    behaviours = default_behaviours()
    for name in ("crypto", "news"):
        behaviours[name]["open_error"] = TransportError("spawn failed", provider=name)
    use_fakes(FakeProviders(behaviours))

    assert await async_main(parse("BTC?", "--config", config_file, "--no-llm")) == 1
    assert JsonSessionStore(tmp_path / "sessions").get_recent() == []

    use_fakes(FakeProviders())

    async def crash(self, query, entities=None, cancel_event=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(Orchestrator, "run", crash)
    assert await async_main(parse("BTC?", "--config", config_file, "--no-llm")) == 1

    assert await async_main(parse("BTC?", "--config", tmp_path / "missing.yaml")) == 1
    assert await async_main(parse("--config", config_file)) == 1

    print("✓ Test 2 passed: Failures exit 1")


# =============================================================================
# TEST 3: Prune
# =============================================================================

@pytest.mark.asyncio
async def test_prune_defaults_to_retention(config_file, tmp_path):
    """
    Test 3: --prune uses storage.retention_days unless DAYS is given.
    """
    store = JsonSessionStore(tmp_path / "sessions")
    now = datetime.now()
    sessions = {}
    for days_ago in (20, 5):
        session = Session.new(f"{days_ago} days ago")
        session.created_at = (now - timedelta(days=days_ago)).isoformat()
        store.put(session)
        sessions[days_ago] = session

    args = parse("--prune", "--config", config_file)
    assert args.prune == PRUNE_RETENTION

    assert await async_main(parse("--prune", 30, "--config", config_file)) == 0
    assert len(store.get_recent()) == 2

    assert await async_main(args) == 0
    assert store.get_by_id(sessions[20].session_id) is None
    assert store.get_by_id(sessions[5].session_id) is not None

    print("✓ Test 3 passed: --prune defaults to the retention period")
