from fastapi import APIRouter, Depends, HTTPException, status

from matteflow.api.deps import get_heartbeat_monitor, get_worker_registry
from matteflow.core.security import require_worker_token
from matteflow.models.worker import Worker, WorkerHeartbeatRequest, WorkerRegisterRequest
from matteflow.services.heartbeat import HeartbeatMonitor
from matteflow.services.worker_registry import WorkerRegistry

router = APIRouter(prefix="/workers", tags=["workers"], dependencies=[Depends(require_worker_token)])


@router.post("/register", response_model=Worker, status_code=status.HTTP_201_CREATED)
async def register_worker(
    payload: WorkerRegisterRequest,
    registry: WorkerRegistry = Depends(get_worker_registry),
    monitor: HeartbeatMonitor = Depends(get_heartbeat_monitor),
) -> Worker:
    try:
        registry.register(payload.address)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    # Registration counts as the first sign of life.
    return monitor.beat(payload.address)


@router.post("/heartbeat", response_model=Worker)
async def worker_heartbeat(
    payload: WorkerHeartbeatRequest,
    monitor: HeartbeatMonitor = Depends(get_heartbeat_monitor),
) -> Worker:
    try:
        return monitor.beat(payload.address)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
