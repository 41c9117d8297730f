from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dashops.models.operation import OperationId


class ErrorKind(StrEnum):
    network = "network"
    protocol = "protocol"
    remote = "remote"
    guard = "guard"
    cancelled = "cancelled"


class OperationError(Exception):
    """Base for every failure the lifecycle engine knows how to classify."""

    kind: ErrorKind = ErrorKind.network
    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class NetworkError(OperationError):
    """The request never reached the server or came back non-2xx."""

    kind = ErrorKind.network
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool | None = None) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class ProtocolError(OperationError):
    """The response body is missing fields the operation depends on."""

    kind = ErrorKind.protocol
    retryable = False


class RemoteFailure(OperationError):
    """The backend reported the operation itself as failed."""

    kind = ErrorKind.remote
    retryable = True


class AlreadyActive(OperationError):
    kind = ErrorKind.guard
    retryable = False

    def __init__(self, requested: OperationId, blocking: OperationId) -> None:
        super().__init__(f"operation_already_active: {blocking} blocks {requested}")
        self.requested = requested
        self.blocking = blocking


# GuardRejection is the taxonomy name; AlreadyActive is its only member.
GuardRejection = AlreadyActive


class OperationCancelled(OperationError):
    kind = ErrorKind.cancelled
    retryable = False
