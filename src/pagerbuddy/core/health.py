"""Health monitoring of alert sources and delivery channels.

Sources are unhealthy when their heartbeat or their last alert is too old;
delivery channels are unhealthy while their queue reports an error. Only
changes are announced.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from pagerbuddy.core.config import HealthConfig
from pagerbuddy.core.directory import Directory
from pagerbuddy.core.models import AlertSource, SourceKind
from pagerbuddy.core.queue import DeliveryQueue

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthMonitor:
    def __init__(
        self,
        directory: Directory,
        queues: Mapping[str, DeliveryQueue],
        config: HealthConfig,
        notify: Optional[Callable[[str], Awaitable[object]]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._directory = directory
        self._queues = queues
        self._config = config
        self._notify = notify
        self._clock = clock
        # Everything starts healthy so the first check only reports problems.
        self._states: Dict[str, bool] = {}
        self._task: Optional[asyncio.Task] = None

    def _monitored_sources(self) -> List[AlertSource]:
        return [source for source in self._directory.sources if source.kind is not SourceKind.MANUAL]

    def _source_checks(self, source: AlertSource, now: datetime) -> Dict[str, bool]:
        status_ok = source.last_status_at is not None and now - source.last_status_at <= self._config.status_timeout
        alert_ok = source.last_alert_at is not None and now - source.last_alert_at <= self._config.alert_timeout
        return {
            f"source {source.source_id} status": status_ok,
            f"source {source.source_id} alerts": alert_ok,
        }

    def current_states(self) -> Dict[str, bool]:
        now = self._clock()
        states: Dict[str, bool] = {}
        for source in self._monitored_sources():
            states.update(self._source_checks(source, now))
        for name, queue in self._queues.items():
            states[f"channel {name}"] = queue.error_since is None
        return states

    def check(self) -> List[str]:
        """Return one line per check whose state changed since the last call."""

        changes = []
        for check, healthy in self.current_states().items():
            if self._states.get(check, True) != healthy:
                changes.append(f"{check}: {'OK' if healthy else 'FAILING'}")
            self._states[check] = healthy
        return changes

    def report(self) -> dict:
        """Snapshot for diagnostics."""

        sources = {
            source.source_id: {
                "kind": source.kind.value,
                "last_alert_at": source.last_alert_at.isoformat() if source.last_alert_at else None,
                "last_status_at": source.last_status_at.isoformat() if source.last_status_at else None,
            }
            for source in self._directory.sources
        }
        channels = {
            name: {
                "error_since": queue.error_since.isoformat() if queue.error_since else None,
                "pending": queue.pending,
                "paused": queue.paused,
            }
            for name, queue in self._queues.items()
        }
        return {"healthy": all(self.current_states().values()), "sources": sources, "channels": channels}

    async def check_and_notify(self) -> List[str]:
        changes = self.check()
        for line in changes:
            LOGGER.warning("Health changed: %s", line)
        if changes and self._notify is not None:
            await self._notify("Health status changed:\n" + "\n".join(changes))
        return changes

    async def _run(self) -> None:
        while True:
            try:
                await self.check_and_notify()
            except Exception:
                LOGGER.exception("Health check failed")
            await asyncio.sleep(self._config.check_interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="health-monitor")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
