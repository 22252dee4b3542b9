from __future__ import annotations

from matteflow.core.errors import AccountNotFound, InsufficientBalance
from matteflow.core.logging import get_logger
from matteflow.db.session import Database
from matteflow.models.task import Task, TaskCallbackRequest, TaskStatus
from matteflow.services.ledger import Ledger
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_registry import WorkerRegistry, normalize_address


class CallbackReceiver:
    """Applies worker progress and completion reports."""

    def __init__(
        self,
        db: Database,
        tasks: TaskStore,
        registry: WorkerRegistry,
        ledger: Ledger,
        pricing: TaskPricing,
    ) -> None:
        self._db = db
        self._tasks = tasks
        self._registry = registry
        self._ledger = ledger
        self._pricing = pricing
        self.logger = get_logger("matteflow.callbacks")

    def handle(self, payload: TaskCallbackRequest) -> Task:
        task = self._tasks.get_task(payload.task_id)
        if task.status.is_terminal:
            self.logger.info(
                "callback_ignored_terminal",
                extra={"event": "callback.duplicate", "task_id": task.id, "status": payload.status.value},
            )
            return task
        if task.status != TaskStatus.processing or not self._from_holder(task, payload):
            # Only the worker holding a processing task may report on it.
            self.logger.warning(
                "callback_ignored_not_held",
                extra={
                    "event": "callback.ignored",
                    "task_id": task.id,
                    "status": payload.status.value,
                    "task_status": task.status.value,
                    "worker": payload.worker_address,
                },
            )
            return task
        if payload.status.is_terminal:
            return self._complete(task, payload)
        return self._progress(task, payload)

    @staticmethod
    def _from_holder(task: Task, payload: TaskCallbackRequest) -> bool:
        if payload.worker_address is None:
            return True
        return normalize_address(payload.worker_address) == task.worker_address

    def _progress(self, task: Task, payload: TaskCallbackRequest) -> Task:
        with self._db.session() as s:
            if payload.progress is not None:
                self._tasks.update_progress(
                    task.id,
                    payload.progress,
                    worker_address=task.worker_address,
                    message=payload.message,
                    session=s,
                )
            self._registry.renew_lease(task.id, worker_address=task.worker_address, session=s)
            return self._tasks.get_task(task.id, session=s)

    def _complete(self, task: Task, payload: TaskCallbackRequest) -> Task:
        success = payload.status == TaskStatus.completed
        address = task.worker_address
        charged = None
        with self._db.session() as s:
            if not self._tasks.finish(
                task.id,
                payload.status,
                worker_address=address,
                message=payload.message,
                output_paths=payload.output_paths,
                session=s,
            ):
                # Lost the race against a duplicate callback or a lease expiry.
                return self._tasks.get_task(task.id, session=s)

            if success:
                price = self._pricing.price_for(task.model_name)
                try:
                    # Debit is the first write of consume, so a refusal leaves the transaction clean.
                    charged = self._ledger.consume(
                        task.owner_id,
                        price,
                        task_id=task.id,
                        description=f"video processing fee - {task.model_alias or task.model_name}",
                        session=s,
                    )
                except InsufficientBalance:
                    self._tasks.set_message(task.id, "insufficient_balance", session=s)
                except AccountNotFound:
                    self._tasks.set_message(task.id, "account_not_found", session=s)

            self._registry.finish_attempt(
                task.id, success, worker_address=address, message=payload.message, session=s
            )
            if address:
                self._registry.release(address, task.id, session=s)
            result = self._tasks.get_task(task.id, session=s)

        self.logger.info(
            "task_finished",
            extra={
                "event": f"task.{payload.status.value}",
                "task_id": task.id,
                "worker": address,
                "cost": str(result.cost) if result.cost is not None else None,
                "charged": charged is not None,
            },
        )
        return result
