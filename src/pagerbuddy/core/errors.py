"""Error taxonomy shared by the core and the adapters.

Transport adapters translate wire-level failures into DeliveryError
subclasses; the delivery queue decides what to do with each of them.
"""

from __future__ import annotations

from typing import Optional


class PagerBuddyError(Exception):
    """Base class for all pagerbuddy errors."""


class ConfigError(PagerBuddyError, ValueError):
    """Configuration is missing or inconsistent."""


class StorageError(PagerBuddyError):
    """A required persistence read or write failed."""


class DeliveryError(PagerBuddyError):
    """A transport could not deliver a job."""

    retryable = False


class MalformedRequestError(DeliveryError):
    """The transport rejected the payload. Never retried."""


class ForbiddenError(DeliveryError):
    """The recipient blocked us or removed us from the chat. Never retried."""


class FloodError(DeliveryError):
    """Channel-wide rate limit hit; the whole queue must pause."""

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(DeliveryError):
    """Transient upstream failure (5xx, network trouble)."""

    retryable = True


class TargetMigratedError(DeliveryError):
    """The target moved to a new identifier (e.g. group upgraded to supergroup)."""

    def __init__(self, message: str, new_target: str) -> None:
        super().__init__(message)
        self.new_target = new_target
