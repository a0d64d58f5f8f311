"""Error taxonomy shared by the admission, persistence, and cache layers."""

from __future__ import annotations

from datetime import datetime


class AdmissionDenied(Exception):
    """Raised when a user has used up their daily request quota."""

    def __init__(
        self,
        reason: str,
        requests_today: int,
        limit: int,
        reset_at: datetime | None = None,
    ) -> None:
        self.reason = reason
        self.requests_today = requests_today
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(reason)


class OwnershipViolation(Exception):
    """Raised when a chat id already belongs to a different user."""

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(f"Chat {chat_id} does not belong to the current user")


class StorageUnavailable(Exception):
    """The durable store could not complete the operation. Retryable."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage unavailable during {operation}: {cause}")


class CacheUnavailable(Exception):
    """The cache store failed. Callers degrade to direct invocation."""

    def __init__(self, action: str, cause: BaseException | None = None) -> None:
        self.action = action
        self.cause = cause
        super().__init__(f"Cache {action} failed: {cause}")


class UpstreamOperationFailed(Exception):
    """An external operation (search API, page fetch) failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")
