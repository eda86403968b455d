"""
Pytest configuration and fixtures for the dashsync test suite
"""

import asyncio
import json
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

import pytest

from dashsync.config.settings import (
    Settings,
    StorageConfig,
    SyncConfig,
    CacheConfig,
    RealtimeConfig,
    ReconcilerConfig,
)
from dashsync.errors import ConnectionLostError, NetworkError
from dashsync.models.operation import OperationKind
from dashsync.models.records import CommittedRecord
from dashsync.repositories.base import DatabaseConnection
from dashsync.repositories.cache_repository import CacheEntryRepository
from dashsync.repositories.operation_repository import OperationRepository
from dashsync.services.durable_queue import DurableQueue
from dashsync.utils.clock import ManualClock


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "dashsync_test.db")


@pytest.fixture
def test_settings(db_path):
    """Settings with deterministic backoff and a temporary database"""
    return Settings(
        storage=StorageConfig(path=db_path, connection_timeout=5.0),
        sync=SyncConfig(backoff_jitter=0.0, backoff_base_seconds=1.0, drain_interval_seconds=30.0),
        cache=CacheConfig(default_ttl_seconds=300.0, max_stale_seconds=3600.0),
        realtime=RealtimeConfig(backoff_jitter=0.0, backoff_base_seconds=1.0, malformed_threshold=3),
        reconciler=ReconcilerConfig(refresh_debounce_seconds=0.1, tracked_keys=["dashboard-summary"]),
    )


@pytest.fixture
def db(db_path):
    """Temporary database with the dashsync schema"""
    connection = DatabaseConnection(db_path=db_path, timeout=5.0)
    connection.init_schema()
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def operation_repository(db):
    return OperationRepository(db)


@pytest.fixture
def cache_repository(db):
    return CacheEntryRepository(db)


@pytest.fixture
def queue(operation_repository, clock):
    return DurableQueue(operation_repository, clock)


class FakeRemote:
    """In-process stand-in for the dashboard service.

    Commits are idempotent per token, like the real commit endpoint. Failures can be
    scripted per kind and reads return whatever `values` holds for a key.
    """

    def __init__(self):
        self.online = True
        self.submissions: List[Dict[str, Any]] = []
        self.committed: Dict[str, CommittedRecord] = {}
        self.failures: Dict[OperationKind, List[Exception]] = defaultdict(list)
        self.values: Dict[str, Any] = {
            "dashboard-summary": {
                "totalBusinessProfit": 1000,
                "totalVehicleProfit": 600,
                "scrapProfit": 400,
                "billsGenerated": 3,
            }
        }
        self.fetch_counts: Counter = Counter()
        self.gate: Optional[asyncio.Event] = None
        # Read the value when the request arrives rather than when the gate opens
        self.snapshot_reads = False
        # Commits that succeed remotely but whose response never arrives
        self.lost_acks = 0
        self._next_id = 1

    def fail(self, kind: OperationKind, *errors: Exception) -> None:
        self.failures[kind].extend(errors)

    @property
    def committed_effects(self) -> int:
        return len(self.committed)

    async def submit(self, kind: OperationKind, payload: Dict[str, Any], idempotency_token: str) -> CommittedRecord:
        self.submissions.append({"kind": kind, "payload": payload, "token": idempotency_token})
        await asyncio.sleep(0)
        if not self.online:
            raise NetworkError("Remote unreachable")
        if self.failures[kind]:
            raise self.failures[kind].pop(0)
        if idempotency_token not in self.committed:
            self.committed[idempotency_token] = CommittedRecord(
                id=f"srv-{self._next_id}", kind=kind.value, data=dict(payload)
            )
            self._next_id += 1
        if self.lost_acks > 0:
            self.lost_acks -= 1
            raise NetworkError("Connection reset before response")
        return self.committed[idempotency_token]

    async def fetch(self, key: str) -> Any:
        self.fetch_counts[key] += 1
        value = self.values.get(key, [])
        if self.gate is not None:
            await self.gate.wait()
        if not self.online:
            raise NetworkError("Remote unreachable")
        if not self.snapshot_reads:
            value = self.values.get(key, [])
        if isinstance(value, Exception):
            raise value
        return value

    def loader(self, key: str):
        async def load():
            return await self.fetch(key)
        return load

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass


_DROP = object()


class FakeTransport:
    """Scriptable realtime transport.

    Messages pushed while disconnected are lost, as on a real socket.
    """

    def __init__(self, fail_connects: int = 0):
        self.fail_connects = fail_connects
        self.connected = False
        self.connect_attempts = 0
        self.sent: List[Dict[str, Any]] = []
        self.dropped = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionLostError("Connection refused")
        self._incoming = asyncio.Queue()
        self.connected = True

    async def send(self, message: str) -> None:
        if not self.connected:
            raise ConnectionLostError("Not connected")
        self.sent.append(json.loads(message))

    async def receive(self) -> str:
        item = await self._incoming.get()
        if item is _DROP:
            self.connected = False
            raise ConnectionLostError("Connection dropped")
        return item

    async def close(self) -> None:
        self.connected = False

    def push(self, message: Any) -> bool:
        """Deliver a frame from the server; dicts are JSON encoded."""
        if not self.connected:
            self.dropped += 1
            return False
        raw = message if isinstance(message, str) else json.dumps(message)
        self._incoming.put_nowait(raw)
        return True

    def drop_connection(self) -> None:
        self._incoming.put_nowait(_DROP)

    @property
    def joins(self) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("event") == "join"]


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def fake_transport():
    return FakeTransport()


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll `predicate` until it is truthy or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture
def wait_for():
    """Provide the polling helper"""
    return eventually


def vehicle_income(amount: float, **fields) -> Dict[str, Any]:
    return {"action": "create", "transactionType": "INCOME", "amount": amount, **fields}


def scrap_sale(total: float, **fields) -> Dict[str, Any]:
    return {"action": "create", "transactionType": "SALE", "totalAmount": total, **fields}


@pytest.fixture
def payloads():
    """Payload builders for the transaction kinds"""
    class Payloads:
        vehicle_income = staticmethod(vehicle_income)
        scrap_sale = staticmethod(scrap_sale)
    return Payloads


# Test configuration
def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
