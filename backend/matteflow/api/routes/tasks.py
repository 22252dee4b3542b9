from fastapi import APIRouter, Depends, HTTPException, Query, status

from matteflow.api.deps import get_callback_receiver, get_orchestrator
from matteflow.core.errors import InsufficientBalance
from matteflow.core.security import require_worker_token
from matteflow.models.task import Task, TaskCallbackRequest, TaskCancelRequest, TaskCreateRequest, TaskListResponse, TaskStatus
from matteflow.services.callbacks import CallbackReceiver
from matteflow.services.orchestrator import TaskOrchestrator

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", response_model=Task, status_code=status.HTTP_201_CREATED)
async def submit_task(
    payload: TaskCreateRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Task:
    try:
        return orchestrator.submit_task(payload)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InsufficientBalance as exc:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)) from exc


@router.post("/callback", response_model=Task, dependencies=[Depends(require_worker_token)])
async def task_callback(
    payload: TaskCallbackRequest,
    receiver: CallbackReceiver = Depends(get_callback_receiver),
) -> Task:
    try:
        return receiver.handle(payload)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    owner_id: str | None = Query(default=None),
    task_status: TaskStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskListResponse:
    return TaskListResponse(items=orchestrator.list_tasks(owner_id=owner_id, status=task_status, limit=limit))


@router.get("/{task_id}", response_model=Task)
async def get_task(task_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)) -> Task:
    try:
        return orchestrator.get_task(task_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{task_id}/cancel", response_model=Task)
async def cancel_task(
    task_id: int,
    payload: TaskCancelRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Task:
    try:
        return orchestrator.cancel_task(task_id, owner_id=payload.owner_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
