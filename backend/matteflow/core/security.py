import hmac

from fastapi import Header, HTTPException, Request, status

from matteflow.core.config import Settings


def _matches(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_api_key(
    request: Request, x_api_key: str | None = Header(default=None, alias="X-API-Key")
) -> None:
    settings: Settings = request.app.state.settings
    if not _matches(x_api_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )


async def require_worker_token(
    request: Request,
    x_worker_token: str | None = Header(default=None, alias="X-Worker-Token"),
) -> None:
    settings: Settings = request.app.state.settings
    if not settings.worker_auth_enabled:
        return
    if not _matches(x_worker_token, settings.worker_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing worker token",
        )
