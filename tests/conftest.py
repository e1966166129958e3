"""
Pytest configuration and fixtures for memetrader tests.

Components are wired with a shared FakeClock, no-op sleeps and scripted
oracles so every test is deterministic and offline.
"""
import shutil
from pathlib import Path

import pytest

from core.endpoint_pool import Endpoint, EndpointKind, EndpointPool
from core.market_data import MarketData
from core.position_manager import PositionRiskEngine
from core.resilient_client import ResilientClient, RetryPolicy
from core.response_cache import ResponseCache
from core.strategy_profile import StrategyProfileSelector
from infra.metrics import MetricsRecorder
from infra.position_store import PositionStore
from tests.helpers import FakeBalanceOracle, FakeClock, FakeExecutor, FakePriceOracle

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

PRICE_URLS = ["https://price-a.test/v4/price", "https://price-b.test/v4/price"]
RPC_URLS = ["https://rpc-a.test", "https://rpc-b.test"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Backoff delays requested by ResilientClient"""
    return []


@pytest.fixture
def pool(clock):
    endpoints = [Endpoint(url, EndpointKind.PRICE, i + 1) for i, url in enumerate(PRICE_URLS)]
    endpoints += [Endpoint(url, EndpointKind.RPC, i + 1) for i, url in enumerate(RPC_URLS)]
    return EndpointPool(endpoints, clock=clock)


@pytest.fixture
def cache(clock):
    return ResponseCache(clock=clock)


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=True)


@pytest.fixture
def client(pool, cache, metrics, sleeps):
    policy = RetryPolicy(max_attempts=3, attempt_timeout_seconds=None)
    return ResilientClient(pool, cache, policy, metrics=metrics, sleep=sleeps.append)


@pytest.fixture
def price_oracle():
    return FakePriceOracle()


@pytest.fixture
def balance_oracle():
    return FakeBalanceOracle(balance=2.0)


@pytest.fixture
def market(client, price_oracle, balance_oracle):
    return MarketData(client, price_oracle, balance_oracle)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def store(tmp_path):
    return PositionStore(str(tmp_path / "positions.json"))


@pytest.fixture
def selector():
    return StrategyProfileSelector()


@pytest.fixture
def engine(store, market, executor, selector, metrics, clock):
    return PositionRiskEngine(store, market, executor, selector, metrics=metrics, clock=clock.now)


@pytest.fixture
def config_dir(tmp_path):
    """Copy of the shipped config directory"""
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG_DIR, target)
    return target


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    """Keep developer environment out of config-driven tests"""
    for name in ("HELIUS_API_KEY", "POSITIONS_FILE", "MEMETRADER_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)
