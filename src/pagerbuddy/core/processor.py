"""Core alert processing pipeline.

This module is integration-agnostic. It only relies on ports for storage and
notifications, enabling other sources or sink adapters without changes here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Mapping, Tuple

from pagerbuddy.core.dedup import AlertDeduplicator, Resolution, ResolutionAction
from pagerbuddy.core.models import AlertCandidate, DeliveryTarget, SinkKind
from pagerbuddy.core.ports import NotificationSinkPort
from pagerbuddy.core.routing import AlertRouter

LOGGER = logging.getLogger(__name__)


class AlertProcessor:
    """Orchestrates deduplication, routing and sink delivery."""

    def __init__(
        self,
        deduplicator: AlertDeduplicator,
        router: AlertRouter,
        sinks: Mapping[SinkKind, NotificationSinkPort],
    ) -> None:
        self._deduplicator = deduplicator
        self._router = router
        self._sinks = dict(sinks)

    async def handle(self, candidate: AlertCandidate) -> Resolution:
        """Process one candidate. Persistence failures propagate to the source."""

        resolution = await self._deduplicator.resolve(candidate)
        # Merges never fan out again; open surfaces follow via AlertUpdated.
        if resolution.action is not ResolutionAction.CREATE or resolution.alert is None:
            return resolution

        targets = await self._router.route(resolution.alert)
        await self._dispatch(targets)
        return resolution

    async def _dispatch(self, targets: List[DeliveryTarget]) -> None:
        pending: List[Tuple[DeliveryTarget, object]] = []
        for target in targets:
            adapter = self._sinks.get(target.sink.kind)
            if adapter is None:
                LOGGER.warning("No adapter for %s sink %s", target.sink.kind.value, target.sink.sink_id)
                continue
            pending.append((target, adapter.send_alert(target)))

        results = await asyncio.gather(*(call for _, call in pending), return_exceptions=True)
        for (target, _), result in zip(pending, results):
            if isinstance(result, Exception):
                LOGGER.error(
                    "Delivery to sink %s failed: %s",
                    target.sink.sink_id,
                    result,
                    exc_info=result,
                )
