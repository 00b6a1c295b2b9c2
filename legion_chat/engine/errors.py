"""Error taxonomy for chat turns and mapping of model-provider failures."""

from __future__ import annotations

import enum
from typing import Optional

from .. import config


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.RATE_LIMITED: 429,
}


class ChatError(Exception):
    def __init__(self, kind: ErrorKind, message: str, *, retry_after: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    @property
    def error_code(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return f"ChatError({self.kind.value}, {self.message!r}, retry_after={self.retry_after})"


class ModelProviderError(Exception):
    """Raised by the model client; status_code is None for transport failures."""

    def __init__(self, status_code: Optional[int], message: str, *, retry_after: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except ValueError:
        return None


def map_provider_error(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc

    if isinstance(exc, ModelProviderError):
        if exc.status_code == 401:
            return ChatError(ErrorKind.UNAUTHORIZED, "Invalid model API key")
        if exc.status_code == 429:
            return ChatError(
                ErrorKind.RATE_LIMITED,
                "Rate limited",
                retry_after=exc.retry_after if exc.retry_after is not None else config.RATE_LIMITED_RETRY_AFTER,
            )
        return ChatError(
            ErrorKind.SERVICE_UNAVAILABLE,
            exc.message,
            retry_after=config.SERVICE_UNAVAILABLE_RETRY_AFTER,
        )

    # Anything else is internal; its text is logged by the caller, not returned.
    return ChatError(
        ErrorKind.SERVICE_UNAVAILABLE,
        "Chat service temporarily unavailable",
        retry_after=config.SERVICE_UNAVAILABLE_RETRY_AFTER,
    )
