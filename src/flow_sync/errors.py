from __future__ import annotations

from enum import Enum


class SyncErrorCode(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    REQUEST_FAILED = "REQUEST_FAILED"


_RETRYABLE_CODES = frozenset(
    {SyncErrorCode.RATE_LIMITED, SyncErrorCode.SERVER_ERROR, SyncErrorCode.NETWORK_ERROR}
)


class SyncError(RuntimeError):
    """Transport-level failure surfaced after the retry budget is spent.

    `retryable` tells callers whether a later cycle may succeed without
    user intervention; queue and cursor state are never touched on failure.
    """

    def __init__(self, code: SyncErrorCode, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.code in _RETRYABLE_CODES

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class ConflictNotFoundError(LookupError):
    pass
