"""Shared test fixtures."""

from __future__ import annotations

import inspect
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from matteflow.core.errors import WorkerRejected, WorkerUnreachable
from matteflow.db.session import Database
from matteflow.models.task import Task
from matteflow.models.worker import SegmentResponse
from matteflow.services.callbacks import CallbackReceiver
from matteflow.services.dispatcher import TaskDispatcher
from matteflow.services.heartbeat import HeartbeatMonitor
from matteflow.services.ledger import Ledger
from matteflow.services.orchestrator import TaskOrchestrator
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_registry import WorkerRegistry

HEARTBEAT_TIMEOUT_SEC = 900
LEASE_SEC = 3600


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeWorkerClient:
    """Scripted stand-in for WorkerClient: answers by worker address."""

    def __init__(self) -> None:
        self.outcomes: dict[str, str] = {}
        self.calls: list[tuple[str, int]] = []
        self.on_submit = None

    async def submit(self, address: str, task: Task) -> SegmentResponse:
        self.calls.append((address, task.id))
        if self.on_submit:
            outcome = self.on_submit(address, task)
            if inspect.isawaitable(outcome):
                await outcome
        outcome = self.outcomes.get(address, "accepted")
        if outcome == "unreachable":
            raise WorkerUnreachable(address, "ConnectError detail=connection refused")
        if outcome == "rejected":
            raise WorkerRejected(address, "model not loaded")
        if outcome == "boom":
            raise RuntimeError("unexpected worker client failure")
        return SegmentResponse(
            status="accepted",
            message=f"processing {task.id}",
            mask_video_path=f"/out/{task.id}/mask.mp4",
            composite_video_path=f"/out/{task.id}/composite.mp4",
        )

    async def close(self) -> None:
        return None


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db(tmp_path) -> Database:
    database = Database(f"sqlite:///{tmp_path / 'matteflow.db'}")
    database.init()
    yield database
    database.dispose()


@pytest.fixture()
def task_store(db, clock) -> TaskStore:
    return TaskStore(db, clock=clock)


@pytest.fixture()
def registry(db, clock) -> WorkerRegistry:
    return WorkerRegistry(db, heartbeat_timeout_sec=HEARTBEAT_TIMEOUT_SEC, lease_sec=LEASE_SEC, clock=clock)


@pytest.fixture()
def monitor(db, registry, clock) -> HeartbeatMonitor:
    return HeartbeatMonitor(db, registry, timeout_sec=HEARTBEAT_TIMEOUT_SEC, clock=clock)


@pytest.fixture()
def ledger(db, clock) -> Ledger:
    return Ledger(db, clock=clock)


@pytest.fixture()
def pricing() -> TaskPricing:
    return TaskPricing(Decimal("1.00"), {"pro": Decimal("2.50")})


@pytest.fixture()
def worker_client() -> FakeWorkerClient:
    return FakeWorkerClient()


@pytest.fixture()
def rival_worker_client() -> FakeWorkerClient:
    return FakeWorkerClient()


@pytest.fixture()
def dispatcher(db, task_store, registry, monitor, worker_client) -> TaskDispatcher:
    return TaskDispatcher(db, task_store, registry, monitor, worker_client, interval_sec=0.01, batch_size=5)


@pytest.fixture()
def callbacks(db, task_store, registry, ledger, pricing) -> CallbackReceiver:
    return CallbackReceiver(db, task_store, registry, ledger, pricing)


@pytest.fixture()
def orchestrator(task_store, ledger, pricing) -> TaskOrchestrator:
    return TaskOrchestrator(task_store, ledger, pricing)
