from __future__ import annotations

from typing import Optional


class LexioError(RuntimeError):
    pass


class ConfigurationError(LexioError):
    """A provider credential is missing or rejected."""

    def __init__(self, message: str, *, provider: Optional[str] = None, status: int = 500) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = int(status)


class ValidationError(LexioError, ValueError):
    pass


class ProviderError(LexioError):
    def __init__(self, message: str, *, status: int = 500, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = int(status)
        self.details = details


class RateLimitError(ProviderError):
    retry_hint = "Please try again in a moment."

    def __init__(self, message: str, *, status: int = 429, details: Optional[str] = None) -> None:
        super().__init__(message, status=status, details=details)


class QuotaError(ProviderError):
    retry_hint = "Check the provider plan or billing settings before retrying."

    def __init__(self, message: str, *, status: int = 429, details: Optional[str] = None) -> None:
        super().__init__(message, status=status, details=details)


class PlaybackError(LexioError):
    pass


def user_message(err: BaseException) -> str:
    msg = str(err).strip() or type(err).__name__
    hint = getattr(err, "retry_hint", None)
    if hint:
        return f"{msg} {hint}"
    return msg
