from __future__ import annotations

import asyncio

from matteflow.core.errors import WorkerRejected, WorkerUnreachable
from matteflow.core.logging import get_logger
from matteflow.db.session import Database
from matteflow.models.task import Task
from matteflow.models.worker import AttemptState, DispatchTickReport
from matteflow.services.heartbeat import HeartbeatMonitor
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_client import WorkerClient
from matteflow.services.worker_registry import WorkerRegistry


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


class TaskDispatcher:
    """
    Periodic matcher of waiting tasks to idle workers.

    Ticks run strictly one after another: the next sleep starts only once every
    outbound call of the current tick has settled. Within a tick each task is
    handled on its own so one failure never stalls the batch.
    """

    def __init__(
        self,
        db: Database,
        tasks: TaskStore,
        registry: WorkerRegistry,
        heartbeat: HeartbeatMonitor,
        client: WorkerClient,
        *,
        interval_sec: float = 30.0,
        batch_size: int = 5,
    ) -> None:
        self._db = db
        self._tasks = tasks
        self._registry = registry
        self._heartbeat = heartbeat
        self._client = client
        self.interval_sec = interval_sec
        self.batch_size = batch_size
        self._stop_event = asyncio.Event()
        self._runner: asyncio.Task | None = None
        self._tick_lock = asyncio.Lock()
        self.logger = get_logger("matteflow.dispatcher")

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._runner = asyncio.create_task(self._run(), name="matteflow-dispatcher")
        self.logger.info("dispatcher_started", extra={"event": "dispatcher.started"})

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stop_event.set()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None
        self.logger.info("dispatcher_stopped", extra={"event": "dispatcher.stopped"})

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                self.logger.exception("dispatch_tick_failed", extra={"event": "dispatcher.tick_failed"})
            await _sleep_or_stop(self._stop_event, self.interval_sec)

    async def tick(self) -> DispatchTickReport:
        # Manual ticks from the admin route queue behind the loop's own tick.
        async with self._tick_lock:
            report = DispatchTickReport()
            report.offline_workers = self._heartbeat.sweep()
            report.expired_tasks = self.expire_leases()

            # Workers that failed a call in this tick are not offered another task until the next one.
            failed: set[str] = set()
            for task in self._tasks.list_waiting(self.batch_size):
                try:
                    address = await self._dispatch(task, failed)
                except Exception as exc:  # noqa: BLE001
                    report.errors[task.id] = str(exc)
                    self.logger.exception(
                        "dispatch_task_failed", extra={"event": "dispatch.error", "task_id": task.id}
                    )
                    continue
                if address:
                    report.assigned[task.id] = address
                else:
                    report.unassigned.append(task.id)
            return report

    def expire_leases(self) -> list[int]:
        """Re-queue tasks whose worker let the lease lapse and take that worker out of rotation."""
        requeued: list[int] = []
        for attempt in self._registry.expired_attempts():
            with self._db.session() as s:
                if not self._registry.expire_attempt(attempt.id, session=s):
                    continue
                if self._tasks.requeue(
                    attempt.task_id, attempt.worker_address, message="worker lease expired", session=s
                ):
                    requeued.append(attempt.task_id)
                self._registry.mark_offline(attempt.worker_address, message="lease expired", session=s)
            self.logger.warning(
                "dispatch_lease_expired",
                extra={"event": "dispatch.lease_expired", "task_id": attempt.task_id, "worker": attempt.worker_address},
            )
        return requeued

    async def _dispatch(self, task: Task, failed: set[str]) -> str | None:
        worker = self._registry.claim_best_idle(task.id, exclude=failed)
        if worker is None:
            self.logger.info("no_idle_worker", extra={"event": "dispatch.no_worker", "task_id": task.id})
            return None

        address = worker.address
        attempt = self._registry.open_attempt(task.id, address)
        try:
            result = await self._client.submit(address, task)
        except WorkerUnreachable as exc:
            failed.add(address)
            self._registry.resolve_attempt(attempt.id, AttemptState.unreachable, message=exc.message)
            self._registry.mark_offline(address, message=exc.message)
            self.logger.warning(
                "worker_unreachable",
                extra={"event": "dispatch.unreachable", "task_id": task.id, "worker": address, "error": exc.message},
            )
            return None
        except WorkerRejected as exc:
            failed.add(address)
            self._reject(attempt.id, address, task.id, exc.message)
            self.logger.info(
                "worker_rejected_task",
                extra={"event": "dispatch.rejected", "task_id": task.id, "worker": address, "error": exc.message},
            )
            return None
        except Exception as exc:
            failed.add(address)
            self._reject(attempt.id, address, task.id, str(exc))
            raise

        with self._db.session() as s:
            self._registry.resolve_attempt(attempt.id, AttemptState.accepted, message=result.message, session=s)
            moved = self._tasks.mark_processing(
                task.id,
                address,
                mask_video_path=result.mask_video_path,
                composite_video_path=result.composite_video_path,
                message=result.message,
                session=s,
            )
            if moved:
                self._registry.annotate(address, result.message or f"processing task {task.id}", session=s)
                self._tasks.record_model_usage(task.model_name, session=s)
            else:
                # Cancelled or taken by another dispatcher while the call was in flight.
                self._registry.finish_attempt(
                    task.id, False, attempt_id=attempt.id, message="task no longer waiting", session=s
                )
                self._registry.release(address, task.id, session=s)

        if not moved:
            self.logger.info(
                "dispatch_abandoned", extra={"event": "dispatch.abandoned", "task_id": task.id, "worker": address}
            )
            return None
        return address

    def _reject(self, attempt_id: int, address: str, task_id: int, message: str) -> None:
        with self._db.session() as s:
            self._registry.resolve_attempt(attempt_id, AttemptState.rejected, message=message, session=s)
            self._registry.release(address, task_id, message=message, session=s)
