from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import ColumnElement, case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from matteflow.core.errors import TaskNotFound
from matteflow.db.models import ModelUsageRecord, TaskRecord, as_utc, utc_now
from matteflow.db.session import Database
from matteflow.models.task import ModelUsage, Task, TaskStatus

_PROCESSING = (TaskStatus.processing.value,)


class TaskStore:
    """Durable task records.

    Every status change is a conditional UPDATE on the expected current status,
    so callers learn from the boolean result whether they won the transition.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def create_task(
        self,
        owner_id: str,
        video_path: str,
        model_name: str,
        *,
        foreground_path: str | None = None,
        background_path: str | None = None,
        model_alias: str | None = None,
        session: Session | None = None,
    ) -> Task:
        now = self._clock()
        with self._db.scope(session) as s:
            row = TaskRecord(
                owner_id=owner_id,
                video_path=video_path,
                foreground_path=foreground_path,
                background_path=background_path,
                model_name=model_name,
                model_alias=model_alias,
                status=TaskStatus.waiting.value,
                progress=0,
                output_paths=[],
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            return self._map_task(row)

    def get_task(self, task_id: int, *, session: Session | None = None) -> Task:
        with self._db.scope(session) as s:
            row = s.get(TaskRecord, task_id, populate_existing=True)
            if not row:
                raise TaskNotFound(f"Task '{task_id}' not found")
            return self._map_task(row)

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 100,
    ) -> list[Task]:
        size = max(1, min(500, limit))
        with self._db.session() as s:
            stmt = select(TaskRecord)
            if owner_id:
                stmt = stmt.where(TaskRecord.owner_id == owner_id)
            if status:
                stmt = stmt.where(TaskRecord.status == status.value)
            stmt = stmt.order_by(TaskRecord.created_at.desc(), TaskRecord.id.desc()).limit(size)
            return [self._map_task(row) for row in s.scalars(stmt).all()]

    def list_waiting(self, limit: int) -> list[Task]:
        """Oldest waiting tasks first, ties by id."""
        with self._db.session() as s:
            rows = s.scalars(
                select(TaskRecord)
                .where(TaskRecord.status == TaskStatus.waiting.value)
                .order_by(TaskRecord.created_at.asc(), TaskRecord.id.asc())
                .limit(max(1, limit))
            ).all()
            return [self._map_task(row) for row in rows]

    def mark_processing(
        self,
        task_id: int,
        worker_address: str,
        *,
        mask_video_path: str | None = None,
        composite_video_path: str | None = None,
        message: str | None = None,
        session: Session | None = None,
    ) -> bool:
        now = self._clock()
        values: dict[str, object] = {
            "status": TaskStatus.processing.value,
            "worker_address": worker_address,
            "started_at": now,
            "updated_at": now,
        }
        if mask_video_path:
            values["mask_video_path"] = mask_video_path
        if composite_video_path:
            values["composite_video_path"] = composite_video_path
        if message:
            values["message"] = message
        return self._transition(task_id, (TaskStatus.waiting.value,), values, session)

    def update_progress(
        self,
        task_id: int,
        progress: int,
        *,
        worker_address: str | None = None,
        message: str | None = None,
        session: Session | None = None,
    ) -> bool:
        value = max(0, min(100, int(progress)))
        values: dict[str, object] = {
            # Progress never goes backwards, late or reordered callbacks are absorbed.
            "progress": case((TaskRecord.progress < value, value), else_=TaskRecord.progress),
            "updated_at": self._clock(),
        }
        if message:
            values["message"] = message
        return self._transition(task_id, _PROCESSING, values, session, *self._held_by(worker_address))

    def finish(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        worker_address: str | None = None,
        message: str | None = None,
        output_paths: list[str] | None = None,
        session: Session | None = None,
    ) -> bool:
        """Move a processing task to a terminal status. Waiting tasks are never finished here, see ``cancel``."""
        if not status.is_terminal:
            raise ValueError(f"finish requires a terminal status, got {status}")
        now = self._clock()
        values: dict[str, object] = {"status": status.value, "finished_at": now, "updated_at": now}
        if status == TaskStatus.completed:
            values["progress"] = 100
        if message is not None:
            values["message"] = message
        if output_paths is not None:
            values["output_paths"] = list(output_paths)
        return self._transition(task_id, _PROCESSING, values, session, *self._held_by(worker_address))

    def cancel(self, task_id: int, *, message: str = "cancelled", session: Session | None = None) -> bool:
        now = self._clock()
        values = {"status": TaskStatus.failed.value, "message": message, "finished_at": now, "updated_at": now}
        return self._transition(task_id, (TaskStatus.waiting.value,), values, session)

    def requeue(self, task_id: int, worker_address: str, *, message: str, session: Session | None = None) -> bool:
        """Return a processing task held by ``worker_address`` to the waiting queue."""
        with self._db.scope(session) as s:
            result = s.execute(
                update(TaskRecord)
                .where(
                    TaskRecord.id == task_id,
                    TaskRecord.status == TaskStatus.processing.value,
                    TaskRecord.worker_address == worker_address,
                )
                .values(
                    status=TaskStatus.waiting.value,
                    worker_address=None,
                    started_at=None,
                    message=message,
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def set_message(self, task_id: int, message: str, *, session: Session | None = None) -> None:
        with self._db.scope(session) as s:
            s.execute(
                update(TaskRecord)
                .where(TaskRecord.id == task_id)
                .values(message=message, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )

    def record_model_usage(self, model_name: str, *, session: Session | None = None) -> None:
        with self._db.scope(session) as s:
            if self._bump_usage(s, model_name):
                return
            try:
                with s.begin_nested():
                    s.add(ModelUsageRecord(model_name=model_name, usage_count=1, updated_at=self._clock()))
            except IntegrityError:
                self._bump_usage(s, model_name)

    def list_model_usage(self) -> list[ModelUsage]:
        with self._db.session() as s:
            rows = s.scalars(
                select(ModelUsageRecord).order_by(ModelUsageRecord.usage_count.desc(), ModelUsageRecord.model_name)
            ).all()
            return [
                ModelUsage(model_name=row.model_name, usage_count=row.usage_count, updated_at=as_utc(row.updated_at))
                for row in rows
            ]

    def _bump_usage(self, session: Session, model_name: str) -> bool:
        result = session.execute(
            update(ModelUsageRecord)
            .where(ModelUsageRecord.model_name == model_name)
            .values(usage_count=ModelUsageRecord.usage_count + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _held_by(worker_address: str | None) -> tuple[ColumnElement[bool], ...]:
        if worker_address is None:
            return ()
        return (TaskRecord.worker_address == worker_address,)

    def _transition(
        self,
        task_id: int,
        from_statuses: tuple[str, ...],
        values: dict[str, object],
        session: Session | None,
        *conditions: ColumnElement[bool],
    ) -> bool:
        with self._db.scope(session) as s:
            result = s.execute(
                update(TaskRecord)
                .where(TaskRecord.id == task_id, TaskRecord.status.in_(from_statuses), *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    @staticmethod
    def _map_task(row: TaskRecord) -> Task:
        return Task(
            id=row.id,
            owner_id=row.owner_id,
            video_path=row.video_path,
            foreground_path=row.foreground_path,
            background_path=row.background_path,
            model_name=row.model_name,
            model_alias=row.model_alias,
            status=TaskStatus(row.status),
            progress=row.progress,
            cost=row.cost,
            worker_address=row.worker_address,
            mask_video_path=row.mask_video_path,
            composite_video_path=row.composite_video_path,
            output_paths=list(row.output_paths or []),
            message=row.message,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            started_at=as_utc(row.started_at),
            finished_at=as_utc(row.finished_at),
        )
