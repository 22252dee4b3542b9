from matteflow.api.routes.accounts import router as accounts_router
from matteflow.api.routes.admin import router as admin_router
from matteflow.api.routes.tasks import router as tasks_router
from matteflow.api.routes.workers import router as workers_router

__all__ = ["accounts_router", "admin_router", "tasks_router", "workers_router"]
