"""Alert deduplication (core domain).

Every candidate is resolved against the recent alert history of its unit:

1) Candidates older than the staleness threshold are dropped
2) No history inside the double-alert window -> CREATE a new alert
3) History exists and the candidate carries strictly more information -> MERGE
   into the existing alert (no new fan-out, delivered surfaces are updated)
4) Otherwise -> SUPPRESS; only the history entry is recorded

Resolution is serialized per unit so two near-simultaneous candidates for
the same unit can never both become CREATE.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from pagerbuddy.core.config import DedupConfig
from pagerbuddy.core.directory import Directory
from pagerbuddy.core.errors import StorageError
from pagerbuddy.core.events import AlertUpdated, EventBus
from pagerbuddy.core.models import Alert, AlertCandidate, HistoryEntry
from pagerbuddy.core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


class ResolutionAction(str, Enum):
    CREATE = "create"
    MERGE = "merge"
    SUPPRESS = "suppress"


@dataclass(frozen=True)
class Resolution:
    action: ResolutionAction
    alert: Optional[Alert] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UnitLocks:
    """One asyncio lock per unit code."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def lock(self, unit_code: int) -> asyncio.Lock:
        lock = self._locks.get(unit_code)
        if lock is None:
            lock = self._locks[unit_code] = asyncio.Lock()
        return lock


class AlertDeduplicator:
    """Decides new vs. merge vs. suppress and maintains canonical alerts."""

    def __init__(
        self,
        storage: StoragePort,
        directory: Directory,
        config: DedupConfig,
        events: EventBus,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._directory = directory
        self._config = config
        self._events = events
        self._clock = clock
        self._locks = UnitLocks()
        # Identity map of alerts whose repeat chain is still open, by alert id.
        self._live: dict[int, Alert] = {}
        self._last_seen: dict[int, datetime] = {}

    async def resolve(self, candidate: AlertCandidate) -> Resolution:
        """Resolve one candidate into a CREATE, MERGE or SUPPRESS decision."""

        now = self._clock()
        if candidate.timestamp < now - self._config.stale_after:
            LOGGER.info(
                "Obsolete alert for unit %s from %s ignored (timestamp %s)",
                candidate.unit_code,
                candidate.source.source_id,
                candidate.timestamp.isoformat(),
            )
            return Resolution(ResolutionAction.SUPPRESS)

        async with self._locks.lock(candidate.unit_code):
            try:
                return await self._resolve_locked(candidate, now)
            except StorageError:
                LOGGER.error("Persistence failed while resolving alert for unit %s", candidate.unit_code)
                raise

    async def _resolve_locked(self, candidate: AlertCandidate, now: datetime) -> Resolution:
        window = self._config.double_alert_timeout
        await self._storage.purge_history(now - window)
        self._evict(now - window)

        history = await self._storage.get_history(candidate.unit_code, candidate.timestamp - window)
        # Any history inside the window makes this a repeat, with or without a live alert row.
        existing = await self._chain_alert(candidate.unit_code, history, window) if history else None
        peak = max((item.information_content for item in history), default=None)

        if existing is None and (peak is None or candidate.information_content > peak):
            if peak is not None:
                LOGGER.warning("Alert chain for unit %s has no stored alert; creating a new one", candidate.unit_code)
            return await self._create(candidate, now)

        if peak is not None and candidate.information_content <= peak:
            await self._storage.add_history(self._entry(candidate, existing))
            if existing is not None:
                self._touch(existing, now)
            LOGGER.debug(
                "Repeat alert for unit %s suppressed (information %s <= %s)",
                candidate.unit_code,
                candidate.information_content.name,
                peak.name,
            )
            return Resolution(ResolutionAction.SUPPRESS, existing)

        # Merge into a copy; the shared instance changes only after the write is committed.
        merged = existing.merged(candidate)
        await self._storage.save_alert_with_history(merged, self._entry(candidate, existing))
        existing.merge(candidate)
        self._touch(existing, now)
        candidate.source.report_alert(candidate.timestamp)
        LOGGER.info(
            "Alert %s for unit %s updated with %s information from %s",
            existing.alert_id,
            candidate.unit_code,
            candidate.information_content.name,
            candidate.source.source_id,
        )
        await self._events.publish(AlertUpdated(existing))
        return Resolution(ResolutionAction.MERGE, existing)

    @staticmethod
    def _entry(candidate: AlertCandidate, alert: Optional[Alert]) -> HistoryEntry:
        return HistoryEntry(
            candidate.unit_code,
            candidate.information_content,
            candidate.timestamp,
            alert.alert_id if alert is not None else None,
        )

    async def _create(self, candidate: AlertCandidate, now: datetime) -> Resolution:
        unit = self._directory.unit_for_code(candidate.unit_code)
        alert = await self._storage.save_alert_with_history(
            Alert.from_candidate(candidate, unit), self._entry(candidate, None)
        )
        self._touch(alert, now)
        candidate.source.report_alert(candidate.timestamp)
        LOGGER.info("New alert %s for unit %s", alert.alert_id, candidate.unit_code)
        return Resolution(ResolutionAction.CREATE, alert)

    async def _chain_alert(self, unit_code: int, history: List[HistoryEntry], window: timedelta) -> Optional[Alert]:
        """The alert the repeat chain in ``history`` belongs to."""

        alert_id = next((item.alert_id for item in reversed(history) if item.alert_id is not None), None)
        if alert_id is None:
            # Entries without an alert id: fall back to the newest alert around the chain.
            stored = await self._storage.find_alert(unit_code, history[0].timestamp - window)
        else:
            live = self._live.get(alert_id)
            if live is not None:
                return live
            stored = await self._storage.get_alert(alert_id)
        if stored is None or stored.alert_id is None:
            return stored
        return self._live.setdefault(stored.alert_id, stored)

    def _touch(self, alert: Alert, now: datetime) -> None:
        if alert.alert_id is not None:
            self._live[alert.alert_id] = alert
            self._last_seen[alert.alert_id] = now

    def _evict(self, before: datetime) -> None:
        for alert_id in [key for key, seen in self._last_seen.items() if seen < before]:
            del self._last_seen[alert_id]
            self._live.pop(alert_id, None)
