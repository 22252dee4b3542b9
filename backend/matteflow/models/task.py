from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(StrEnum):
    waiting = "waiting"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.completed, TaskStatus.failed}


class Task(BaseModel):
    id: int
    owner_id: str
    video_path: str
    foreground_path: str | None = None
    background_path: str | None = None
    model_name: str
    model_alias: str | None = None
    status: TaskStatus = TaskStatus.waiting
    progress: int = Field(default=0, ge=0, le=100)
    cost: Decimal | None = Field(default=None, ge=0)
    worker_address: str | None = None
    mask_video_path: str | None = None
    composite_video_path: str | None = None
    output_paths: list[str] = Field(default_factory=list)
    message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class TaskCreateRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=120)
    video_path: str = Field(min_length=1, max_length=2048)
    foreground_path: str | None = Field(default=None, max_length=2048)
    background_path: str | None = Field(default=None, max_length=2048)
    model_name: str = Field(default="normal", min_length=1, max_length=128)
    model_alias: str | None = Field(default=None, max_length=128)


class TaskCancelRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=120)


class TaskCallbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: int = Field(alias="taskId")
    status: TaskStatus
    progress: int | None = Field(default=None, ge=0, le=100)
    message: str | None = Field(default=None, max_length=5000)
    output_paths: list[str] | None = Field(default=None, alias="outputPaths")
    worker_address: str | None = Field(default=None, alias="workerAddress")


class TaskListResponse(BaseModel):
    items: list[Task]


class ModelUsage(BaseModel):
    model_name: str
    usage_count: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)


class ModelUsageListResponse(BaseModel):
    items: list[ModelUsage]
    default_price: Decimal | None = None
    prices: dict[str, Decimal] = Field(default_factory=dict)
