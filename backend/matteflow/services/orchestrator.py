from __future__ import annotations

from matteflow.core.errors import InsufficientBalance, InvalidTransition, TaskNotFound
from matteflow.core.logging import get_logger
from matteflow.models.task import Task, TaskCreateRequest, TaskStatus
from matteflow.services.ledger import Ledger
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore


class TaskOrchestrator:
    """
    User-facing task queue.

    Submission only checks that the owner could pay for the task; money moves
    when a worker reports the task completed (see CallbackReceiver).
    """

    def __init__(self, tasks: TaskStore, ledger: Ledger, pricing: TaskPricing) -> None:
        self.tasks = tasks
        self.ledger = ledger
        self.pricing = pricing
        self.logger = get_logger("matteflow.orchestrator")

    def submit_task(self, payload: TaskCreateRequest) -> Task:
        account = self.ledger.get_account(payload.owner_id)
        price = self.pricing.price_for(payload.model_name)
        if account.balance < price:
            raise InsufficientBalance(account.account_id, account.balance, price)

        task = self.tasks.create_task(
            payload.owner_id,
            payload.video_path,
            payload.model_name,
            foreground_path=payload.foreground_path,
            background_path=payload.background_path,
            model_alias=payload.model_alias,
        )
        self.logger.info(
            "task_queued",
            extra={
                "task_id": task.id,
                "owner_id": task.owner_id,
                "model": task.model_name,
                "quoted_price": str(price),
                "event": "task.queued",
            },
        )
        return task

    def cancel_task(self, task_id: int, owner_id: str | None = None) -> Task:
        task = self.tasks.get_task(task_id)
        if owner_id is not None and task.owner_id != owner_id:
            raise TaskNotFound(f"Task '{task_id}' not found")
        if task.status != TaskStatus.waiting or not self.tasks.cancel(task_id):
            current = self.tasks.get_task(task_id)
            raise InvalidTransition(f"Task '{task_id}' is {current.status.value} and can no longer be cancelled")
        self.logger.info("task_cancelled", extra={"task_id": task_id, "event": "task.cancelled"})
        return self.tasks.get_task(task_id)

    def get_task(self, task_id: int) -> Task:
        return self.tasks.get_task(task_id)

    def list_tasks(self, owner_id: str | None = None, status: TaskStatus | None = None, limit: int = 100) -> list[Task]:
        return self.tasks.list_tasks(owner_id=owner_id, status=status, limit=limit)
