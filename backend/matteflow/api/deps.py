from starlette.requests import HTTPConnection

from matteflow.core.config import Settings
from matteflow.services.callbacks import CallbackReceiver
from matteflow.services.dispatcher import TaskDispatcher
from matteflow.services.heartbeat import HeartbeatMonitor
from matteflow.services.ledger import Ledger
from matteflow.services.orchestrator import TaskOrchestrator
from matteflow.services.pricing import TaskPricing
from matteflow.services.task_store import TaskStore
from matteflow.services.worker_registry import WorkerRegistry


def get_settings(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings


def get_task_store(connection: HTTPConnection) -> TaskStore:
    return connection.app.state.task_store


def get_worker_registry(connection: HTTPConnection) -> WorkerRegistry:
    return connection.app.state.worker_registry


def get_heartbeat_monitor(connection: HTTPConnection) -> HeartbeatMonitor:
    return connection.app.state.heartbeat


def get_ledger(connection: HTTPConnection) -> Ledger:
    return connection.app.state.ledger


def get_pricing(connection: HTTPConnection) -> TaskPricing:
    return connection.app.state.pricing


def get_orchestrator(connection: HTTPConnection) -> TaskOrchestrator:
    return connection.app.state.orchestrator


def get_callback_receiver(connection: HTTPConnection) -> CallbackReceiver:
    return connection.app.state.callbacks


def get_dispatcher(connection: HTTPConnection) -> TaskDispatcher:
    return connection.app.state.dispatcher
