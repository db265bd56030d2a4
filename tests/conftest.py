from __future__ import annotations

import sys
from pathlib import Path

# Add src directory to path immediately on import - MUST be before any other imports
_src_dir = Path(__file__).resolve().parents[1] / "src"
_src_str = str(_src_dir)
if _src_str not in sys.path:
    sys.path.insert(0, _src_str)

from datetime import datetime
from typing import Callable

import httpx
import pytest

from fakes import BASE_URL, FIXED_NOW, FakeClock, FakeRulesApi
from models.shared import RuleCategoryType
from store.local_replica import LocalReplicaStore
from store.rule_store import RuleRepository, RuleStore


def pytest_configure(config: pytest.Config) -> None:
    """Ensure src directory is on sys.path so tests can import modules."""
    src_dir = Path(__file__).resolve().parents[1] / "src"
    src_str = str(src_dir)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


@pytest.fixture
def rules_api() -> FakeRulesApi:
    return FakeRulesApi()


@pytest.fixture
def http_client(rules_api: FakeRulesApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(rules_api.handler))


@pytest.fixture
def replica(tmp_path: Path) -> LocalReplicaStore:
    return LocalReplicaStore(directory=tmp_path / "replica", max_recent=10)


@pytest.fixture
def delta_store(http_client: httpx.AsyncClient, replica: LocalReplicaStore) -> RuleStore:
    return RuleStore.create(RuleCategoryType.DELTA, http_client, replica)


@pytest.fixture
def repository(http_client: httpx.AsyncClient, replica: LocalReplicaStore) -> RuleRepository:
    return RuleRepository(http_client, replica)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fixed_now() -> Callable[[], datetime]:
    return lambda: FIXED_NOW
