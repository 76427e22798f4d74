from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from pagerbuddy.core.errors import StorageError
from pagerbuddy.core.models import Alert, AlertResponse, Group, HistoryEntry, UserResponse

NOW = datetime(2024, 5, 4, 10, 0, tzinfo=timezone.utc)


class FakeStorage:
    """In-memory StoragePort."""

    def __init__(self) -> None:
        self.history: List[HistoryEntry] = []
        self.alerts: List[Alert] = []
        self.alert_responses: List[AlertResponse] = []
        self.user_responses: dict[tuple[int, str], UserResponse] = {}
        self.migrations: list[tuple[str, str]] = []
        self.fail_save_alert = False
        self.fail_add_history = False
        self.save_calls = 0

    async def purge_history(self, before: datetime) -> int:
        kept = [entry for entry in self.history if entry.timestamp >= before]
        removed = len(self.history) - len(kept)
        self.history = kept
        return removed

    async def get_history(self, unit_code: int, since: datetime) -> List[HistoryEntry]:
        # Yield so concurrent resolves can interleave like they would against a database.
        await asyncio.sleep(0)
        return [e for e in self.history if e.unit_code == unit_code and e.timestamp >= since]

    async def add_history(self, entry: HistoryEntry) -> None:
        if self.fail_add_history:
            raise StorageError("history table locked")
        self.history.append(entry)

    async def find_alert(self, unit_code: int, since: datetime) -> Optional[Alert]:
        matches = [a for a in self.alerts if a.unit.code == unit_code and a.timestamp >= since]
        return matches[-1] if matches else None

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        return next((a for a in self.alerts if a.alert_id == alert_id), None)

    async def save_alert(self, alert: Alert) -> Alert:
        self.save_calls += 1
        if self.fail_save_alert:
            raise StorageError("disk full")
        if alert.alert_id is None:
            alert.alert_id = len(self.alerts) + 1
            self.alerts.append(alert)
        return alert

    async def save_alert_with_history(self, alert: Alert, entry: HistoryEntry) -> Alert:
        # All or nothing, like a database transaction.
        self.save_calls += 1
        if self.fail_save_alert or self.fail_add_history:
            raise StorageError("disk full")
        if alert.alert_id is None:
            alert.alert_id = len(self.alerts) + 1
            self.alerts.append(alert)
        else:
            self.alerts = [alert if a.alert_id == alert.alert_id else a for a in self.alerts]
        self.history.append(replace(entry, alert_id=alert.alert_id))
        return alert

    async def get_or_create_alert_response(self, alert: Alert, group: Group) -> AlertResponse:
        for item in self.alert_responses:
            if item.alert.alert_id == alert.alert_id and item.group.group_id == group.group_id:
                return item
        item = AlertResponse(alert=alert, group=group, alert_response_id=len(self.alert_responses) + 1)
        self.alert_responses.append(item)
        return item

    async def get_alert_response(self, alert_response_id: int) -> Optional[AlertResponse]:
        return next((a for a in self.alert_responses if a.alert_response_id == alert_response_id), None)

    async def save_user_response(self, alert_response: AlertResponse, response: UserResponse) -> UserResponse:
        self.user_responses[(alert_response.alert_response_id, response.user.user_id)] = response
        return response

    async def save_chat_migration(self, old_chat_id: str, new_chat_id: str) -> None:
        self.migrations.append((old_chat_id, new_chat_id))


class VirtualClock:
    """Monotonic clock and sleep pair that only advance when sleeping."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0)
        await asyncio.sleep(0)
