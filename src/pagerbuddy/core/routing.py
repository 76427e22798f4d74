"""Alert fan-out (core domain).

Maps a freshly created alert to the concrete sinks that must receive it:
every relevant group's own sinks plus the personal sinks of its members.
A sink only receives the alert when its own subscriptions agree.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pagerbuddy.core.directory import Directory
from pagerbuddy.core.models import Alert, AlertResponse, DeliveryTarget
from pagerbuddy.core.ports import StoragePort
from pagerbuddy.core.responses import ResponseTracker

LOGGER = logging.getLogger(__name__)


class AlertRouter:
    """Expands an alert into delivery targets, one AlertResponse per group."""

    def __init__(self, storage: StoragePort, directory: Directory, tracker: Optional[ResponseTracker] = None) -> None:
        self._storage = storage
        self._directory = directory
        # Optional so routing can be exercised alone.
        self._tracker = tracker

    async def route(self, alert: Alert) -> List[DeliveryTarget]:
        targets: List[DeliveryTarget] = []
        # A user who is in two relevant groups is alerted once, through the first group.
        delivered_sinks: set[str] = set()

        for group in self._directory.groups:
            if not group.is_relevant_alert(alert):
                continue

            alert_response: AlertResponse = await self._storage.get_or_create_alert_response(alert, group)
            if self._tracker is not None:
                self._tracker.track(alert_response)

            for sink in group.sinks:
                if sink.is_relevant_alert(alert) and sink.sink_id not in delivered_sinks:
                    delivered_sinks.add(sink.sink_id)
                    targets.append(DeliveryTarget(sink, alert_response))

            for user in (*group.leaders, *group.members):
                for sink in user.sinks:
                    if sink.is_relevant_alert(alert) and sink.sink_id not in delivered_sinks:
                        delivered_sinks.add(sink.sink_id)
                        targets.append(DeliveryTarget(sink, alert_response))

        LOGGER.info(
            "Alert %s for unit %s routed to %d sink(s)",
            alert.alert_id,
            alert.unit.code,
            len(targets),
        )
        return targets
