from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update

from matteflow.core.logging import get_logger
from matteflow.db.models import WorkerRecord, utc_now
from matteflow.db.session import Database
from matteflow.models.worker import Worker, WorkerStatus
from matteflow.services.worker_registry import WorkerRegistry


class HeartbeatMonitor:
    def __init__(
        self,
        db: Database,
        registry: WorkerRegistry,
        *,
        timeout_sec: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._registry = registry
        self._clock = clock
        self.timeout_sec = timeout_sec
        self.logger = get_logger("matteflow.heartbeat")

    def sweep(self) -> list[str]:
        """Mark offline every live worker whose heartbeat is stale or missing."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self.timeout_sec)
        stale = (
            WorkerRecord.status != WorkerStatus.offline.value,
            or_(WorkerRecord.last_heartbeat_at.is_(None), WorkerRecord.last_heartbeat_at < cutoff),
        )
        with self._db.session() as s:
            addresses = list(s.scalars(select(WorkerRecord.address).where(*stale).order_by(WorkerRecord.address)).all())
            if not addresses:
                return []
            s.execute(
                update(WorkerRecord)
                .where(WorkerRecord.address.in_(addresses), *stale)
                .values(
                    status=WorkerStatus.offline.value,
                    current_task_id=None,
                    status_message="heartbeat timeout",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        for address in addresses:
            self.logger.warning("worker_heartbeat_timeout", extra={"event": "worker.heartbeat_timeout", "worker": address})
        return addresses

    def beat(self, address: str) -> Worker:
        worker, _ = self._registry.record_heartbeat(address)
        return worker
