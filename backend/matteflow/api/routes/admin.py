from fastapi import APIRouter, Depends, HTTPException, status

from matteflow.api.deps import get_dispatcher, get_pricing, get_task_store, get_worker_registry
from matteflow.core.security import require_admin_api_key
from matteflow.models.task import ModelUsageListResponse
from matteflow.models.worker import (
    DispatchTickReport,
    Worker,
    WorkerListResponse,
    WorkerStatus,
    WorkerStatusUpdateRequest,
)
from matteflow.services.dispatcher import TaskDispatcher
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_registry import WorkerRegistry

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_api_key)])


@router.get("/workers", response_model=WorkerListResponse)
async def admin_workers(
    worker_status: WorkerStatus | None = None,
    registry: WorkerRegistry = Depends(get_worker_registry),
) -> WorkerListResponse:
    return WorkerListResponse(items=registry.list_workers(worker_status))


@router.put("/workers/{address:path}/status", response_model=Worker)
async def set_worker_status(
    address: str,
    payload: WorkerStatusUpdateRequest,
    registry: WorkerRegistry = Depends(get_worker_registry),
) -> Worker:
    try:
        return registry.set_status(address, payload.status)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/workers/{address:path}/recount", response_model=Worker)
async def recount_worker(address: str, registry: WorkerRegistry = Depends(get_worker_registry)) -> Worker:
    try:
        return registry.recount(address)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/models", response_model=ModelUsageListResponse)
async def model_usage(
    tasks: TaskStore = Depends(get_task_store),
    pricing: TaskPricing = Depends(get_pricing),
) -> ModelUsageListResponse:
    return ModelUsageListResponse(
        items=tasks.list_model_usage(),
        default_price=pricing.default_price,
        prices=pricing.price_list(),
    )


@router.post("/dispatch/tick", response_model=DispatchTickReport)
async def dispatch_tick(dispatcher: TaskDispatcher = Depends(get_dispatcher)) -> DispatchTickReport:
    return await dispatcher.tick()
