from __future__ import annotations


class DispatchError(Exception):
    """Base for every failure raised by the dispatch engine.

    ``operation`` names the console operation that failed (``assign``,
    ``unassign``, ``status-update``...) so callers can show a message that
    says what went wrong instead of a generic error.
    """

    default_message = "dispatch operation failed"

    def __init__(self, message: str | None = None, *, operation: str | None = None) -> None:
        self.operation = operation
        self.detail = message or self.default_message
        super().__init__(self.user_message)

    @property
    def user_message(self) -> str:
        if self.operation is None:
            return self.detail
        return f"{self.operation} failed: {self.detail}"


class NotFoundError(DispatchError):
    default_message = "record not found"


class ConflictError(DispatchError):
    default_message = "conflicting state"


class ValidationError(DispatchError):
    default_message = "invalid request"


class PermissionDeniedError(DispatchError):
    default_message = "permission denied"


class NotAuthenticatedError(DispatchError):
    default_message = "acting identity is not authenticated"


class AlreadyTerminalError(ConflictError):
    default_message = "order is already completed"


class CapacityExceededError(ConflictError):
    default_message = "worker has reached maximum concurrent orders"


class RemoteWriteFailedError(DispatchError):
    default_message = "remote service write failed"


class RemoteReadFailedError(DispatchError):
    default_message = "remote service read failed"
