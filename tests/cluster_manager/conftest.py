"""
Shared fixtures for cluster manager tests.

FakeEngine stands in for a ClickHouse server: it tracks created objects,
inserted rows and issued statements, and can be told to fail.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from cryptography.fernet import Fernet

from cluster_manager.clickhouse.connection import ConnectionConfig, ConnectionRegistry
from cluster_manager.crypto import CredentialEncryption
from cluster_manager.errors import ClickHouseError, ConnectivityError
from cluster_manager.lifecycle.backends import SimulatedProvisioningBackend
from cluster_manager.lifecycle.manager import LifecycleManager
from cluster_manager.schema.registry import SchemaRegistry
from cluster_manager.store.file_store import FileControlPlaneStore
from cluster_manager.telemetry.schemas import SensorReading, SensorType

ENDPOINT = "clickhouse://localhost:8123/telemetry"

_CREATE_RE = re.compile(r"CREATE (?:TABLE|MATERIALIZED VIEW) IF NOT EXISTS (\w+)")
_COUNT_RE = re.compile(r"SELECT count\(\) AS c FROM (\w+)")


class FakeEngine:
    """In-memory ClickHouse server state shared by its clients."""

    def __init__(self):
        self.objects: set = set()
        self.rows: Dict[str, List[Dict[str, Any]]] = {}
        self.inserts: List[tuple] = []
        self.commands: List[tuple] = []
        self.queries: List[tuple] = []
        self.clients: List["FakeClickHouse"] = []
        self.select_rows: List[Dict[str, Any]] = []
        self.unreachable = False
        self.unreachable_hosts: set = set()
        self.create_error: Optional[Exception] = None
        self.fail_insert_calls: set = set()
        self.broken_replicas = 0
        self.bytes_on_disk = 4096
        self._insert_calls = 0

    def client(self, config: ConnectionConfig) -> "FakeClickHouse":
        client = FakeClickHouse(self, config)
        self.clients.append(client)
        return client


class FakeClickHouse:
    """Client double with the ClickHouseClient coroutine surface."""

    def __init__(self, engine: FakeEngine, config: ConnectionConfig):
        self.engine = engine
        self.host = config.host
        self.port = config.port
        self.username = config.username
        self.password = config.password
        self.closed = False

    def _check_reachable(self) -> None:
        if self.engine.unreachable or self.host in self.engine.unreachable_hosts:
            raise ConnectivityError("Connection refused", self.host, self.port)

    async def ping(self) -> bool:
        self._check_reachable()
        return True

    async def command(self, sql: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        self._check_reachable()
        self.engine.commands.append((sql, parameters))
        match = _CREATE_RE.search(sql)
        if match:
            if self.engine.create_error is not None:
                raise self.engine.create_error
            name = match.group(1)
            if name in self.engine.objects:
                raise ClickHouseError(
                    f"Code: 57. DB::Exception: Table telemetry.{name} already exists.",
                    code=57,
                    status_code=500,
                )
            self.engine.objects.add(name)
        return ""

    async def insert(self, table: str, rows) -> int:
        self._check_reachable()
        rows = list(rows)
        call = self.engine._insert_calls
        self.engine._insert_calls += 1
        if call in self.engine.fail_insert_calls:
            raise ClickHouseError("Code: 241. DB::Exception: Memory limit exceeded", code=241)
        self.engine.inserts.append((table, rows))
        self.engine.rows.setdefault(table, []).extend(rows)
        return len(rows)

    async def iter_rows(self, sql: str, parameters: Optional[Dict[str, Any]] = None):
        self._check_reachable()
        self.engine.queries.append((sql, parameters))
        for row in self._answer(sql, parameters or {}):
            yield row

    def _answer(self, sql: str, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
        if "system.replicas" in sql:
            return [{"broken": self.engine.broken_replicas}]
        if "system.parts" in sql:
            return [{"bytes": self.engine.bytes_on_disk}]
        if "system.tables" in sql:
            return [{"name": n} for n in parameters.get("names", []) if n in self.engine.objects]
        match = _COUNT_RE.search(sql)
        if match:
            return [{"c": len(self.engine.rows.get(match.group(1), []))}]
        return list(self.engine.select_rows)

    async def query(self, sql: str, parameters: Optional[Dict[str, Any]] = None):
        return [row async for row in self.iter_rows(sql, parameters)]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_client(fake_engine):
    return fake_engine.client(ConnectionConfig(host="localhost", port=8123))


@pytest.fixture
def registry(fake_engine):
    return ConnectionRegistry(connect_timeout=1.0, client_factory=fake_engine.client)


@pytest.fixture
def store(tmp_path):
    return FileControlPlaneStore(tmp_path / "state.json")


@pytest.fixture
def encryption():
    return CredentialEncryption(Fernet.generate_key().decode())


@pytest.fixture
def backend():
    return SimulatedProvisioningBackend(ENDPOINT, time_scale=0)


@pytest.fixture
def lifecycle(store, registry, backend, encryption):
    return LifecycleManager(
        store,
        registry,
        SchemaRegistry(),
        backend,
        encryption=encryption,
        max_stage_retries=2,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def make_readings():
    """Factory for simple readings, one per second per sensor."""

    def _make(count: int, sensor_id: str = "temperature_000", start: Optional[datetime] = None):
        start = start or datetime(2024, 3, 1, tzinfo=timezone.utc)
        return [
            SensorReading(
                facility_id=7,
                production_line="Line-A",
                sensor_id=sensor_id,
                sensor_type=SensorType.TEMPERATURE,
                timestamp=start + timedelta(seconds=i),
                value=20.0 + (i % 10),
                unit="°C",
            )
            for i in range(count)
        ]

    return _make
