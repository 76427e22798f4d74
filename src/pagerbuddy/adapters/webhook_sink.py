"""Webhook and logging sinks."""

from __future__ import annotations

import logging
from typing import Optional

from pagerbuddy.adapters.http_transport import HttpTransport
from pagerbuddy.core.models import DeliveryTarget
from pagerbuddy.core.queue import DeliveryJob, DeliveryQueue, DeliveryResult, DeliveryStatus, Priority

LOGGER = logging.getLogger(__name__)


class WebhookSink:
    """Calls the sink's URL with a plain GET for every new alert."""

    def __init__(self, queue: DeliveryQueue, transport: Optional[HttpTransport] = None) -> None:
        self._queue = queue
        self._transport = transport or HttpTransport()

    async def send_alert(self, target: DeliveryTarget) -> None:
        result = await self._queue.enqueue(
            DeliveryJob(target.sink.target, self._transport.get, f"webhook {target.sink.sink_id}"),
            Priority.ALERT,
        )
        if not result.sent:
            LOGGER.warning("Webhook %s ended as %s", target.sink.sink_id, result.status.value)

    async def send_text(self, target: str, message: str) -> DeliveryResult:
        return await self._queue.enqueue(DeliveryJob(target, self._transport.get, "webhook text"))


class LoggingSink:
    """Fallback sink: writes the alert to the log."""

    def __init__(self, confidential: bool = False) -> None:
        self._confidential = confidential

    async def send_alert(self, target: DeliveryTarget) -> None:
        payload = target.alert_response.alert.to_payload(self._confidential)
        LOGGER.info("Alert for sink %s: %s", target.sink.sink_id, payload)

    async def send_text(self, target: str, message: str) -> DeliveryResult:
        LOGGER.info("Message for %s: %s", target, message)
        return DeliveryResult(DeliveryStatus.SENT, target)
