"""Ports (interfaces) used by the core.

Ports define the minimal contracts for storage, notification sinks and alert
sources so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol

from pagerbuddy.core.models import (
    Alert,
    AlertCandidate,
    AlertResponse,
    DeliveryTarget,
    Group,
    HistoryEntry,
    UserResponse,
)


class StoragePort(Protocol):
    """Persistence operations required by the core.

    Implementations raise ``StorageError`` when a required read or write fails.
    """

    async def purge_history(self, before: datetime) -> int:
        ...

    async def get_history(self, unit_code: int, since: datetime) -> List[HistoryEntry]:
        ...

    async def add_history(self, entry: HistoryEntry) -> None:
        ...

    async def find_alert(self, unit_code: int, since: datetime) -> Optional[Alert]:
        ...

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        ...

    async def save_alert(self, alert: Alert) -> Alert:
        """Insert a new alert (assigning ``alert_id``) or update an existing one."""
        ...

    async def save_alert_with_history(self, alert: Alert, entry: HistoryEntry) -> Alert:
        """Save ``alert`` and record ``entry`` for it in one transaction.

        The stored history entry carries the alert's id. On failure neither
        write is committed and ``alert.alert_id`` is left unchanged.
        """
        ...

    async def get_or_create_alert_response(self, alert: Alert, group: Group) -> AlertResponse:
        ...

    async def get_alert_response(self, alert_response_id: int) -> Optional[AlertResponse]:
        ...

    async def save_user_response(self, alert_response: AlertResponse, response: UserResponse) -> UserResponse:
        """Store ``response`` replacing any previous one of the same user."""
        ...

    async def save_chat_migration(self, old_chat_id: str, new_chat_id: str) -> None:
        ...


class NotificationSinkPort(Protocol):
    """Delivery operations a sink adapter exposes to the processor."""

    async def send_alert(self, target: DeliveryTarget) -> None:
        ...

    async def send_text(self, target: str, message: str) -> object:
        ...


CandidateCallback = Callable[[AlertCandidate], Awaitable[object]]


class AlertSourcePort(Protocol):
    """A producer of alert candidates with its own connection lifecycle."""

    async def start(self, emit: CandidateCallback) -> None:
        ...

    async def stop(self) -> None:
        ...
