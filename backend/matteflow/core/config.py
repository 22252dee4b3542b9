from decimal import Decimal
from functools import lru_cache
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Matteflow Dispatch"
    api_prefix: str = "/api"
    log_level: str = "INFO"

    host: str = "0.0.0.0"
    port: int = 6001
    database_url: str = "sqlite:///./.tmp/matteflow.db"
    api_base_url: str = "http://127.0.0.1:6001"
    admin_api_key: str = "dev-admin-key"
    worker_token: str = "dev-worker-token"
    worker_auth_enabled: bool = True
    cors_origins: str = "http://localhost:3000"

    scheduler_enabled: bool = True
    scheduler_interval_sec: float = 30.0
    scheduler_batch_size: int = 5
    heartbeat_timeout_sec: int = 900
    worker_request_timeout_sec: float = 30.0
    worker_segment_path: str = "/api/video/segment"
    dispatch_lease_sec: int = 3600

    default_task_price: Decimal = Decimal("1.00")
    model_prices: dict[str, Decimal] = {}
    bootstrap_account_balance: Decimal = Decimal("0.00")

    @field_validator("model_prices", mode="before")
    @classmethod
    def parse_model_prices(cls, value: str | dict | None) -> dict:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            parsed = json.loads(value)
            if not isinstance(parsed, dict):
                raise ValueError("model_prices must be a JSON object")
            return parsed
        return value

    @field_validator("scheduler_batch_size")
    @classmethod
    def clamp_batch_size(cls, value: int) -> int:
        return max(1, min(100, value))

    @property
    def callback_url(self) -> str:
        return f"{self.api_base_url.rstrip('/')}{self.api_prefix}/tasks/callback"

    @property
    def cors_origins_list(self) -> list[str]:
        value = (self.cors_origins or "").strip()
        if not value:
            return ["http://localhost:3000"]
        if value.startswith("["):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
