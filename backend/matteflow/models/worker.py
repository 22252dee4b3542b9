from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(StrEnum):
    idle = "idle"
    busy = "busy"
    offline = "offline"


class AttemptState(StrEnum):
    requested = "requested"
    accepted = "accepted"
    rejected = "rejected"
    unreachable = "unreachable"
    completed = "completed"
    failed = "failed"
    expired = "expired"


# Attempts in these states got an answer from the worker.
RESPONDED_STATES = frozenset(
    {AttemptState.accepted, AttemptState.rejected, AttemptState.completed, AttemptState.failed, AttemptState.expired}
)
# Attempts in these states were accepted at dispatch time.
ACCEPTED_STATES = frozenset({AttemptState.accepted, AttemptState.completed, AttemptState.failed, AttemptState.expired})


class Worker(BaseModel):
    id: int
    address: str
    status: WorkerStatus = WorkerStatus.offline
    current_task_id: int | None = None
    status_message: str | None = None
    last_heartbeat_at: datetime | None = None
    requested: int = Field(default=0, ge=0)
    responded: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class DispatchAttempt(BaseModel):
    id: int
    task_id: int
    worker_address: str
    state: AttemptState = AttemptState.requested
    message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    responded_at: datetime | None = None
    finished_at: datetime | None = None
    lease_expires_at: datetime | None = None


class WorkerRegisterRequest(BaseModel):
    address: str = Field(min_length=4, max_length=255)


class WorkerHeartbeatRequest(BaseModel):
    address: str = Field(min_length=4, max_length=255)


class WorkerStatusUpdateRequest(BaseModel):
    status: WorkerStatus


class WorkerListResponse(BaseModel):
    items: list[Worker]


class DispatchTickReport(BaseModel):
    offline_workers: list[str] = Field(default_factory=list)
    expired_tasks: list[int] = Field(default_factory=list)
    assigned: dict[int, str] = Field(default_factory=dict)
    unassigned: list[int] = Field(default_factory=list)
    errors: dict[int, str] = Field(default_factory=dict)


class SegmentRequest(BaseModel):
    """Body of the outbound assignment call, in the worker's camelCase wire format."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    video_path: str = Field(alias="videoPath")
    foreground_path: str | None = Field(default=None, alias="foregroundPath")
    background_path: str | None = Field(default=None, alias="backgroundPath")
    model_name: str = Field(alias="modelName")
    model_alias: str | None = Field(default=None, alias="modelAlias")
    callback_url: str = Field(alias="callbackUrl")
    worker_url: str = Field(alias="workerUrl")


class SegmentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str = ""
    message: str | None = None
    mask_video_path: str | None = Field(default=None, alias="maskVideoPath")
    composite_video_path: str | None = Field(default=None, alias="compositeVideoPath")

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"
