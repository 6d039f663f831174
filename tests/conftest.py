# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from solders.keypair import Keypair

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ["STORE_BACKEND"] = "memory"

from wish_fountain.api.v1.endpoints import fountain as fountain_endpoints
from wish_fountain.api.v1.endpoints import stats as stats_endpoints
from wish_fountain.core.fairness import RandomnessEngine
from wish_fountain.main import app as fastapi_app
from wish_fountain.services.fountain import FountainConfig, SessionLifecycleManager
from wish_fountain.services.payout import PayoutIssuer, PayoutReceipt
from wish_fountain.services.presence import PresenceHub
from wish_fountain.services.session_store import MemorySessionStore
from wish_fountain.services.stats import StatsAggregator
from wish_fountain.services.verifier import TransactionVerifier, VerificationResult

EXACT_STAKE = 1000
STALE_AFTER_MS = 300_000
TOKEN_MINT = str(Keypair().pubkey())


class FakeClock:
    """Millisecond clock that only moves when a test advances it."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def new_wallet() -> str:
    return str(Keypair().pubkey())


def new_signature(payload: bytes = b"burn") -> str:
    return str(Keypair().sign_message(payload))


@pytest.fixture()
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine() -> RandomnessEngine:
    return RandomnessEngine()


@pytest.fixture()
def verifier() -> AsyncMock:
    mock = AsyncMock(spec=TransactionVerifier)
    mock.verify.return_value = VerificationResult(True)
    return mock


@pytest.fixture()
def payouts() -> AsyncMock:
    mock = AsyncMock(spec=PayoutIssuer)
    mock.payout.side_effect = lambda wallet, amount: PayoutReceipt(
        signature=new_signature(f"{wallet}:{amount}".encode()),
        raw_amount=amount * 10**6,
        confirmed=True,
    )
    return mock


@pytest.fixture()
def presence() -> MagicMock:
    return MagicMock(spec=PresenceHub)


@pytest.fixture()
def stats(store: MemorySessionStore) -> StatsAggregator:
    return StatsAggregator(store)


@pytest.fixture()
def fountain_config() -> FountainConfig:
    return FountainConfig(
        exact_stake=EXACT_STAKE,
        burn_address="11111111111111111111111111111111",
        token_mint=TOKEN_MINT,
        stale_after_ms=STALE_AFTER_MS,
        claim_ttl_seconds=120,
        background_payouts=False,
    )


@pytest.fixture()
def manager(
    store: MemorySessionStore,
    engine: RandomnessEngine,
    verifier: AsyncMock,
    payouts: AsyncMock,
    stats: StatsAggregator,
    presence: MagicMock,
    fountain_config: FountainConfig,
    clock: FakeClock,
) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        store,
        engine,
        verifier,
        payouts,
        stats,
        presence,
        config=fountain_config,
        clock=clock,
    )


@pytest.fixture()
def wallet() -> str:
    return new_wallet()


@pytest.fixture()
def burn_signature() -> str:
    return new_signature()


@pytest.fixture()
def fixed_roll(engine: RandomnessEngine, mocker):
    """Force the engine's next rolls to a chosen value."""

    def _set(value: float) -> None:
        mocker.patch.object(engine, "compute_roll", return_value=value)

    return _set


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_service_dependencies(
    app: FastAPI, manager: SessionLifecycleManager, stats: StatsAggregator
) -> Iterator[None]:
    overrides = {
        fountain_endpoints.get_session_manager_dep: lambda: manager,
        stats_endpoints.get_stats_aggregator_dep: lambda: stats,
    }
    app.dependency_overrides.update(overrides)
    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client

