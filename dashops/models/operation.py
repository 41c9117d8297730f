from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dashops.errors import ErrorKind, NetworkError, OperationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(StrEnum):
    run = "run"
    stop = "stop"
    install = "install"
    uninstall = "uninstall"
    update = "update"
    launch = "launch"
    connect = "connect"
    disconnect = "disconnect"
    diagnose = "diagnose"
    firmware_update = "firmware_update"
    reconnect = "reconnect"
    toggle_2fa = "toggle_2fa"
    verify_2fa = "verify_2fa"


class OperationPhase(StrEnum):
    idle = "idle"
    requesting = "requesting"
    polling = "polling"
    completed = "completed"
    failed = "failed"


ACTIVE_PHASES = frozenset({OperationPhase.requesting, OperationPhase.polling})
TERMINAL_PHASES = frozenset({OperationPhase.completed, OperationPhase.failed})

SUCCESS_STATUSES = frozenset({"completed", "complete", "success"})
FAILURE_STATUSES = frozenset({"failed", "error"})


class OperationId(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str = Field(min_length=1)
    kind: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.entity_id}/{self.kind}"


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    status_code: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        if isinstance(exc, OperationError):
            status_code = exc.status_code if isinstance(exc, NetworkError) else None
            return cls(kind=exc.kind, message=exc.message, status_code=status_code)
        return cls(kind=ErrorKind.network, message=str(exc) or exc.__class__.__name__)


class OperationState(BaseModel):
    operation_id: OperationId
    phase: OperationPhase = OperationPhase.idle
    generation: int = 0
    progress: float = Field(default=0, ge=0, le=100)
    poll_count: int = 0
    job_id: str | None = None
    result: Any = None
    error: ErrorInfo | None = None
    retryable: bool = False
    attempt: int = 1
    started_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @classmethod
    def idle(cls, operation_id: OperationId) -> OperationState:
        return cls(operation_id=operation_id)


class ExecutorOutcome(BaseModel):
    """What an executor resolves with: a server-side job to poll, or a direct result."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str | None = Field(default=None, alias="jobId")
    result: Any = None

    @field_validator("job_id", mode="before")
    @classmethod
    def coerce_job_id(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        if isinstance(value, (str, int)):
            return str(value)
        raise ValueError("job_id must be a string")


class StatusReport(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str = "pending"
    progress: float = 0
    error: str | None = None
    message: str | None = None
    result: Any = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> str:
        if value is None:
            return "pending"
        if not isinstance(value, str):
            raise ValueError("status must be a string")
        return value.strip().lower() or "pending"

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, value: Any) -> float:
        if value is None:
            return 0.0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("progress must be numeric")
        return min(100.0, max(0.0, float(value)))

    @property
    def is_terminal(self) -> bool:
        return bool(self.error) or self.status in SUCCESS_STATUSES or self.status in FAILURE_STATUSES

    @property
    def succeeded(self) -> bool:
        return not self.error and self.status in SUCCESS_STATUSES

    @property
    def failure_message(self) -> str:
        return self.error or self.message or f"operation reported status '{self.status}'"


class ViewFlags(BaseModel):
    is_loading: bool = False
    error: str | None = None
    progress: float | None = None
    can_cancel: bool = False
    action_label: str | None = None


class ViewState(BaseModel):
    is_busy: bool = False
    error: str | None = None
    progress: float | None = None
    props: dict[str, Any] = Field(default_factory=dict)


Executor = Callable[[str, str, dict[str, Any]], Awaitable["ExecutorOutcome | Mapping[str, Any] | None"]]
StatusFetcher = Callable[[str], Awaitable["StatusReport | Mapping[str, Any]"]]
Listener = Callable[[OperationState], None]


@dataclass
class StartOptions:
    params: dict[str, Any] | None = None
    fetch_status: StatusFetcher | None = None
    expects_job: bool = False
    poll_interval_ms: int | None = None
    max_poll_failures: int | None = None

    optimistic: bool = False
    on_action: Callable[[OperationId], None] | None = None
    on_cancel: Callable[[OperationId], Any] | None = None

    update_catalog: Callable[[Any], None] | None = None
    current_entity: Callable[[], Any] | None = None

    auto_retries: int | None = None
    retry_delay_sec: float | None = None
