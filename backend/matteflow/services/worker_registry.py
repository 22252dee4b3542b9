from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from matteflow.core.errors import InvalidTransition, WorkerNotFound
from matteflow.core.logging import get_logger
from matteflow.db.models import DispatchAttemptRecord, WorkerRecord, as_utc, utc_now
from matteflow.db.session import Database
from matteflow.models.worker import (
    ACCEPTED_STATES,
    RESPONDED_STATES,
    AttemptState,
    DispatchAttempt,
    Worker,
    WorkerStatus,
)

_RESOLVABLE = frozenset({AttemptState.accepted, AttemptState.rejected, AttemptState.unreachable})


def normalize_address(address: str) -> str:
    return (address or "").strip().rstrip("/")


class WorkerRegistry:
    """
    Worker rows plus the per-dispatch attempt log.

    All mutations are single conditional or expression UPDATEs so concurrent
    heartbeats, callbacks and dispatch ticks (possibly in separate processes)
    never overwrite each other's changes.
    """

    MAX_CLAIM_ATTEMPTS = 8

    def __init__(
        self,
        db: Database,
        *,
        heartbeat_timeout_sec: int = 900,
        lease_sec: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._clock = clock
        self.heartbeat_timeout_sec = heartbeat_timeout_sec
        self.lease_sec = lease_sec
        self.logger = get_logger("matteflow.workers")

    def register(self, address: str, *, session: Session | None = None) -> Worker:
        address = normalize_address(address)
        if not address:
            raise ValueError("worker address is required")
        try:
            with self._db.scope(session) as s:
                row = s.scalar(select(WorkerRecord).where(WorkerRecord.address == address))
                if row:
                    return self._map_worker(row)
                now = self._clock()
                row = WorkerRecord(
                    address=address,
                    status=WorkerStatus.offline.value,
                    requested=0,
                    responded=0,
                    succeeded=0,
                    completed=0,
                    failed=0,
                    created_at=now,
                    updated_at=now,
                )
                s.add(row)
                s.flush()
                worker = self._map_worker(row)
        except IntegrityError:
            if session is not None:
                raise
            return self.get(address)
        self.logger.info("worker_registered", extra={"event": "worker.registered", "worker": address})
        return worker

    def get(self, address: str, *, session: Session | None = None) -> Worker:
        address = normalize_address(address)
        with self._db.scope(session) as s:
            row = s.scalar(
                select(WorkerRecord).where(WorkerRecord.address == address).execution_options(populate_existing=True)
            )
            if not row:
                raise WorkerNotFound(f"Worker '{address}' not found")
            return self._map_worker(row)

    def list_workers(self, status: WorkerStatus | None = None) -> list[Worker]:
        with self._db.session() as s:
            stmt = select(WorkerRecord)
            if status:
                stmt = stmt.where(WorkerRecord.status == status.value)
            rows = s.scalars(stmt.order_by(WorkerRecord.address)).all()
            return [self._map_worker(row) for row in rows]

    def increment_requested(self, address: str, *, session: Session | None = None) -> bool:
        return self._update(address, {"requested": WorkerRecord.requested + 1}, session=session)

    def increment_responded(self, address: str, success: bool, *, session: Session | None = None) -> bool:
        values: dict[str, object] = {"responded": WorkerRecord.responded + 1}
        if success:
            values["succeeded"] = WorkerRecord.succeeded + 1
        return self._update(address, values, session=session)

    def claim_idle(self, address: str, task_id: int, *, session: Session | None = None) -> bool:
        return self._update(
            address,
            {"status": WorkerStatus.busy.value, "current_task_id": task_id},
            WorkerRecord.status == WorkerStatus.idle.value,
            session=session,
        )

    def release(
        self,
        address: str,
        task_id: int | None = None,
        *,
        message: str | None = None,
        session: Session | None = None,
    ) -> bool:
        """Return a busy worker to idle; with ``task_id`` only if it still holds that task."""
        conditions = [WorkerRecord.status == WorkerStatus.busy.value]
        if task_id is not None:
            conditions.append(WorkerRecord.current_task_id == task_id)
        return self._update(
            address,
            {"status": WorkerStatus.idle.value, "current_task_id": None, "status_message": message},
            *conditions,
            session=session,
        )

    def annotate(self, address: str, message: str | None, *, session: Session | None = None) -> bool:
        return self._update(address, {"status_message": message}, session=session)

    def mark_offline(self, address: str, *, message: str | None = None, session: Session | None = None) -> bool:
        changed = self._update(
            address,
            {"status": WorkerStatus.offline.value, "current_task_id": None, "status_message": message},
            WorkerRecord.status != WorkerStatus.offline.value,
            session=session,
        )
        if changed:
            self.logger.warning(
                "worker_offline", extra={"event": "worker.offline", "worker": normalize_address(address), "reason": message}
            )
        return changed

    def record_heartbeat(self, address: str, *, session: Session | None = None) -> tuple[Worker, bool]:
        """Stamp a heartbeat, creating the worker if unknown. Returns the worker and whether it came back online."""
        address = normalize_address(address)
        self.register(address, session=session)
        now = self._clock()
        with self._db.scope(session) as s:
            revived = s.execute(
                update(WorkerRecord)
                .where(WorkerRecord.address == address, WorkerRecord.status == WorkerStatus.offline.value)
                .values(
                    status=WorkerStatus.idle.value,
                    current_task_id=None,
                    status_message=None,
                    last_heartbeat_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not revived:
                s.execute(
                    update(WorkerRecord)
                    .where(WorkerRecord.address == address)
                    .values(last_heartbeat_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            worker = self.get(address, session=s)
        if revived:
            self.logger.info("worker_online", extra={"event": "worker.online", "worker": address})
        return worker, revived

    def find_best_idle(self, *, exclude: set[str] | None = None) -> str | None:
        cutoff = self._clock() - timedelta(seconds=self.heartbeat_timeout_sec)
        with self._db.session() as s:
            stmt = select(WorkerRecord.address).where(
                WorkerRecord.status == WorkerStatus.idle.value,
                WorkerRecord.last_heartbeat_at.is_not(None),
                WorkerRecord.last_heartbeat_at >= cutoff,
            )
            if exclude:
                stmt = stmt.where(WorkerRecord.address.not_in(exclude))
            stmt = stmt.order_by(WorkerRecord.succeeded.desc(), WorkerRecord.address.asc()).limit(1)
            return s.scalar(stmt)

    def claim_best_idle(self, task_id: int, *, exclude: set[str] | None = None) -> Worker | None:
        """Select-and-claim: pick the best idle worker, re-selecting when another actor wins the claim.

        Addresses in ``exclude`` are never picked.
        """
        lost: set[str] = set(exclude or ())
        for _ in range(self.MAX_CLAIM_ATTEMPTS):
            address = self.find_best_idle(exclude=lost)
            if address is None:
                return None
            if self.claim_idle(address, task_id):
                return self.get(address)
            lost.add(address)
            self.logger.info(
                "worker_claim_lost", extra={"event": "worker.claim_lost", "worker": address, "task_id": task_id}
            )
        return None

    def set_status(self, address: str, status: WorkerStatus) -> Worker:
        """Administrative override. Busy requires a task, so it cannot be forced here."""
        if status == WorkerStatus.busy:
            raise InvalidTransition("workers become busy only by claiming a task")
        address = normalize_address(address)
        with self._db.session() as s:
            found = s.execute(
                update(WorkerRecord)
                .where(WorkerRecord.address == address)
                .values(status=status.value, current_task_id=None, status_message="set by admin", updated_at=self._clock())
                .execution_options(synchronize_session=False)
            ).rowcount
            if not found:
                raise WorkerNotFound(f"Worker '{address}' not found")
            return self.get(address, session=s)

    def open_attempt(self, task_id: int, address: str) -> DispatchAttempt:
        address = normalize_address(address)
        with self._db.session() as s:
            row = DispatchAttemptRecord(
                task_id=task_id,
                worker_address=address,
                state=AttemptState.requested.value,
                created_at=self._clock(),
            )
            s.add(row)
            self.increment_requested(address, session=s)
            s.flush()
            return self._map_attempt(row)

    def resolve_attempt(
        self,
        attempt_id: int,
        state: AttemptState,
        *,
        message: str | None = None,
        session: Session | None = None,
    ) -> bool:
        """Record the worker's answer to the assignment call and bump the response counters."""
        if state not in _RESOLVABLE:
            raise InvalidTransition(f"attempt cannot resolve to {state}")
        now = self._clock()
        values: dict[str, object] = {"state": state.value, "message": message}
        if state in RESPONDED_STATES:
            values["responded_at"] = now
        if state == AttemptState.accepted:
            values["lease_expires_at"] = now + timedelta(seconds=self.lease_sec)
        with self._db.scope(session) as s:
            row = s.get(DispatchAttemptRecord, attempt_id)
            if row is None:
                return False
            changed = s.execute(
                update(DispatchAttemptRecord)
                .where(DispatchAttemptRecord.id == attempt_id, DispatchAttemptRecord.state == AttemptState.requested.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if changed and state in RESPONDED_STATES:
                self.increment_responded(row.worker_address, state == AttemptState.accepted, session=s)
            return changed

    def finish_attempt(
        self,
        task_id: int,
        success: bool,
        *,
        attempt_id: int | None = None,
        worker_address: str | None = None,
        message: str | None = None,
        session: Session | None = None,
    ) -> str | None:
        """Close an accepted attempt of the task. Returns the worker address, or None when nothing was open.

        ``attempt_id`` pins the exact attempt. ``worker_address`` restricts the match to the
        attempt held by that worker, so a concurrent dispatcher's attempt is never closed.
        """
        now = self._clock()
        with self._db.scope(session) as s:
            stmt = select(DispatchAttemptRecord).where(
                DispatchAttemptRecord.task_id == task_id,
                DispatchAttemptRecord.state == AttemptState.accepted.value,
            )
            if attempt_id is not None:
                stmt = stmt.where(DispatchAttemptRecord.id == attempt_id)
            if worker_address is not None:
                stmt = stmt.where(DispatchAttemptRecord.worker_address == normalize_address(worker_address))
            row = s.scalar(stmt.order_by(DispatchAttemptRecord.id.desc()).limit(1))
            if row is None:
                return None
            changed = s.execute(
                update(DispatchAttemptRecord)
                .where(DispatchAttemptRecord.id == row.id, DispatchAttemptRecord.state == AttemptState.accepted.value)
                .values(
                    state=(AttemptState.completed if success else AttemptState.failed).value,
                    message=message,
                    finished_at=now,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not changed:
                return None
            counter = "completed" if success else "failed"
            self._update(row.worker_address, {counter: getattr(WorkerRecord, counter) + 1}, session=s)
            return row.worker_address

    def renew_lease(
        self, task_id: int, *, worker_address: str | None = None, session: Session | None = None
    ) -> bool:
        conditions = [
            DispatchAttemptRecord.task_id == task_id,
            DispatchAttemptRecord.state == AttemptState.accepted.value,
        ]
        if worker_address is not None:
            conditions.append(DispatchAttemptRecord.worker_address == normalize_address(worker_address))
        with self._db.scope(session) as s:
            result = s.execute(
                update(DispatchAttemptRecord)
                .where(*conditions)
                .values(lease_expires_at=self._clock() + timedelta(seconds=self.lease_sec))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def expired_attempts(self, now: datetime | None = None) -> list[DispatchAttempt]:
        moment = now or self._clock()
        with self._db.session() as s:
            rows = s.scalars(
                select(DispatchAttemptRecord)
                .where(
                    DispatchAttemptRecord.state == AttemptState.accepted.value,
                    DispatchAttemptRecord.lease_expires_at.is_not(None),
                    DispatchAttemptRecord.lease_expires_at < moment,
                )
                .order_by(DispatchAttemptRecord.lease_expires_at, DispatchAttemptRecord.id)
            ).all()
            return [self._map_attempt(row) for row in rows]

    def expire_attempt(self, attempt_id: int, *, session: Session | None = None) -> bool:
        with self._db.scope(session) as s:
            result = s.execute(
                update(DispatchAttemptRecord)
                .where(DispatchAttemptRecord.id == attempt_id, DispatchAttemptRecord.state == AttemptState.accepted.value)
                .values(
                    state=AttemptState.expired.value,
                    message="lease expired without callback",
                    finished_at=self._clock(),
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def list_attempts(self, *, task_id: int | None = None, address: str | None = None) -> list[DispatchAttempt]:
        with self._db.session() as s:
            stmt = select(DispatchAttemptRecord)
            if task_id is not None:
                stmt = stmt.where(DispatchAttemptRecord.task_id == task_id)
            if address:
                stmt = stmt.where(DispatchAttemptRecord.worker_address == normalize_address(address))
            rows = s.scalars(stmt.order_by(DispatchAttemptRecord.id)).all()
            return [self._map_attempt(row) for row in rows]

    def recount(self, address: str) -> Worker:
        """Rebuild a worker's counters from its attempt rows."""
        address = normalize_address(address)
        with self._db.session() as s:
            counts = dict(
                s.execute(
                    select(DispatchAttemptRecord.state, func.count())
                    .where(DispatchAttemptRecord.worker_address == address)
                    .group_by(DispatchAttemptRecord.state)
                ).all()
            )

            def total(states) -> int:
                return sum(counts.get(state.value, 0) for state in states)

            found = s.execute(
                update(WorkerRecord)
                .where(WorkerRecord.address == address)
                .values(
                    requested=sum(counts.values()),
                    responded=total(RESPONDED_STATES),
                    succeeded=total(ACCEPTED_STATES),
                    completed=counts.get(AttemptState.completed.value, 0),
                    failed=counts.get(AttemptState.failed.value, 0),
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not found:
                raise WorkerNotFound(f"Worker '{address}' not found")
            return self.get(address, session=s)

    def _update(self, address: str, values: dict[str, object], *conditions, session: Session | None = None) -> bool:
        values = {**values, "updated_at": self._clock()}
        with self._db.scope(session) as s:
            result = s.execute(
                update(WorkerRecord)
                .where(WorkerRecord.address == normalize_address(address), *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    @staticmethod
    def _map_worker(row: WorkerRecord) -> Worker:
        return Worker(
            id=row.id,
            address=row.address,
            status=WorkerStatus(row.status),
            current_task_id=row.current_task_id,
            status_message=row.status_message,
            last_heartbeat_at=as_utc(row.last_heartbeat_at),
            requested=row.requested,
            responded=row.responded,
            succeeded=row.succeeded,
            completed=row.completed,
            failed=row.failed,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _map_attempt(row: DispatchAttemptRecord) -> DispatchAttempt:
        return DispatchAttempt(
            id=row.id,
            task_id=row.task_id,
            worker_address=row.worker_address,
            state=AttemptState(row.state),
            message=row.message,
            created_at=as_utc(row.created_at),
            responded_at=as_utc(row.responded_at),
            finished_at=as_utc(row.finished_at),
            lease_expires_at=as_utc(row.lease_expires_at),
        )
