"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class DedupConfig:
    """Double-alert detection settings."""

    double_alert_timeout: timedelta = timedelta(minutes=5)
    # Candidates older than this are replayed/delayed feed messages.
    stale_after: timedelta = timedelta(minutes=2)


@dataclass(frozen=True)
class DeliveryConfig:
    """Per-channel outbound rate control settings."""

    rate_limit: int = 10
    rate_window: float = 1.0
    default_pause: float = 10.0
    alert_max_latency: timedelta = timedelta(minutes=2)
    standard_max_latency: timedelta = timedelta(minutes=10)


@dataclass(frozen=True)
class ResponseOverviewConfig:
    """Response overview behaviour for chat sinks."""

    cooldown: timedelta = timedelta(minutes=15)
    react_timeout: timedelta = timedelta(seconds=3)
    pin_messages: bool = False


@dataclass(frozen=True)
class HealthConfig:
    """Health monitor thresholds."""

    check_interval: float = 10.0
    status_timeout: timedelta = timedelta(seconds=30)
    alert_timeout: timedelta = timedelta(hours=3)
