from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from matteflow.core.errors import WorkerRejected, WorkerUnreachable
from matteflow.core.logging import get_logger
from matteflow.models.task import Task
from matteflow.models.worker import SegmentRequest, SegmentResponse


def worker_base_url(address: str) -> str:
    address = address.strip().rstrip("/")
    if address.startswith(("http://", "https://")):
        return address
    return f"http://{address}"


class WorkerClient:
    """
    Outbound assignment call to a worker's segment endpoint.

    The call only hands the task over; completion arrives later through the
    callback endpoint, so the timeout stays short and bounded.
    """

    def __init__(
        self,
        callback_url: str,
        *,
        segment_path: str = "/api/video/segment",
        timeout: float = 30.0,
        worker_token: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._callback_url = callback_url
        self._segment_path = "/" + segment_path.lstrip("/")
        self._logger = logger or get_logger("matteflow.worker_client")
        headers = {"X-Worker-Token": worker_token} if worker_token else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def build_payload(self, task: Task, address: str) -> SegmentRequest:
        return SegmentRequest(
            task_id=str(task.id),
            video_path=task.video_path,
            foreground_path=task.foreground_path,
            background_path=task.background_path,
            model_name=task.model_name,
            model_alias=task.model_alias,
            callback_url=self._callback_url,
            worker_url=worker_base_url(address),
        )

    async def submit(self, address: str, task: Task) -> SegmentResponse:
        """Send ``task`` to the worker. Raises WorkerUnreachable or WorkerRejected unless it is accepted."""
        url = f"{worker_base_url(address)}{self._segment_path}"
        payload = self.build_payload(task, address).model_dump(by_alias=True, exclude_none=True)
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise WorkerRejected(address, self._format_error(exc)) from exc
        except httpx.RequestError as exc:
            # Connect errors, timeouts and DNS failures all mean the worker is gone.
            raise WorkerUnreachable(address, self._format_error(exc)) from exc

        try:
            result = SegmentResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise WorkerRejected(address, f"invalid_response: {exc}") from exc
        if not result.accepted:
            raise WorkerRejected(address, result.message or f"status={result.status or 'missing'}")
        self._logger.info(
            "worker_accepted_task",
            extra={"event": "dispatch.accepted", "task_id": task.id, "worker": address},
        )
        return result

    def _format_error(self, exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            request = exc.request
            detail = (response.text or "").strip().replace("\n", " ")
            if len(detail) > 220:
                detail = f"{detail[:220]}..."
            return f"status={response.status_code} method={request.method} url={request.url} detail={detail}"
        if isinstance(exc, httpx.RequestError):
            try:
                request = exc.request
            except RuntimeError:
                return f"{exc.__class__.__name__} detail={exc}"
            return f"{exc.__class__.__name__} method={request.method} url={request.url} detail={exc}"
        return str(exc)
