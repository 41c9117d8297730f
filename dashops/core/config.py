from functools import lru_cache
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DASHOPS_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Dashboard Operations Gateway"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8100

    backend_url: str = "http://127.0.0.1:3000/api"
    api_token: str = ""
    request_timeout_sec: float = 15.0
    request_retries: int = 2
    tls_verify: bool = True
    tls_ca_cert_path: str = ""

    poll_interval_ms: int = 1000
    # 0 keeps polling through transport errors indefinitely.
    max_poll_failures: int = 5
    auto_retries: int = 0
    retry_delay_sec: float = 5.0

    cors_origins: str = "http://localhost:3000"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: str | list[str] | None) -> str:
        if value is None:
            return "http://localhost:3000"
        if isinstance(value, list):
            return ",".join(str(item).strip() for item in value if str(item).strip())
        return str(value).strip()

    @field_validator("poll_interval_ms")
    @classmethod
    def validate_poll_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("poll_interval_ms must be positive")
        return value

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

    @property
    def poll_failure_limit(self) -> int | None:
        return self.max_poll_failures if self.max_poll_failures > 0 else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
