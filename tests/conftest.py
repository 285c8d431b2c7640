"""
Pytest configuration and fixtures
"""

import asyncio
from datetime import timedelta
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from core.alerts import Alert, Alerter, AlertSink
from core.database import create_engine, create_session_factory, create_tables
from core.exceptions import BackendError, BackendUnavailable
from ingestion.backend import ExecutionBackend
from ingestion.ledger import IngestionLedger
from ingestion.listener import FileNotificationListener
from ingestion.worker import IngestionWorkerPool
from refresh.graph import DependencyGraph
from refresh.scheduler import RefreshScheduler
from schemas.pipeline import SourceLocation


class RecordingSink(AlertSink):
    """Collects alerts instead of delivering them"""

    def __init__(self):
        self.alerts: List[Alert] = []

    async def send(self, alert: Alert) -> None:
        self.alerts.append(alert)


class FakeBackend(ExecutionBackend):
    """
    In-memory execution backend.

    load_failures: file path -> list of exceptions raised by successive
    load attempts before the load succeeds.
    execute_failures: statement -> exception raised on every execution.
    gate: when set, execute waits for it before returning.
    gates: statement -> event that one statement waits for.
    """

    def __init__(self, rows: int = 10):
        self.rows = rows
        self.loads: List[str] = []
        self.statements: List[str] = []
        self.load_failures: Dict[str, List[Exception]] = {}
        self.execute_failures: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.gates: Dict[str, asyncio.Event] = {}
        self.active_loads = 0
        self.max_active_loads = 0
        self.load_delay = 0.0

    async def load(self, location: SourceLocation, file_path: str) -> int:
        self.active_loads += 1
        self.max_active_loads = max(self.max_active_loads, self.active_loads)
        try:
            self.loads.append(file_path)
            if self.load_delay:
                await asyncio.sleep(self.load_delay)
            failures = self.load_failures.get(file_path)
            if failures:
                raise failures.pop(0)
            return self.rows
        finally:
            self.active_loads -= 1

    async def execute(self, statement: str) -> None:
        self.statements.append(statement)
        if self.gate is not None:
            await self.gate.wait()
        if statement in self.gates:
            await self.gates[statement].wait()
        if statement in self.execute_failures:
            raise self.execute_failures[statement]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite ledger store, one per test"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def ledger(session_factory):
    return IngestionLedger(session_factory)


@pytest.fixture
def alert_sink():
    return RecordingSink()


@pytest.fixture
def alerter(alert_sink):
    return Alerter(sinks={"log": alert_sink})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def graph():
    return DependencyGraph()


@pytest.fixture
def orders_location():
    return SourceLocation(
        source_id="orders",
        uri_prefix="orders/",
        target_table="raw.orders",
        file_format={"type": "csv", "skip_header": 1}
    )


@pytest.fixture
def pool(ledger, backend, graph, alerter):
    """Worker pool with no backoff delay (workers not started)"""
    return IngestionWorkerPool(
        ledger,
        backend,
        graph,
        alerter,
        workers=2,
        queue_size=10,
        max_retries=3,
        retry_delay=0
    )


@pytest.fixture
def listener(ledger, pool, orders_location):
    listener = FileNotificationListener(ledger, pool)
    listener.register_source(orders_location)
    return listener


@pytest.fixture
def refresh_scheduler(graph, backend, alerter):
    return RefreshScheduler(graph, backend, alerter)


@pytest.fixture
def transient_error():
    return BackendUnavailable("warehouse unreachable")


@pytest.fixture
def permanent_error():
    return BackendError("table raw.orders does not exist")


@pytest.fixture
def hour():
    return timedelta(hours=1)
