"""Push notification sink.

Hands new alerts to a push gateway together with the device settings of the
sink (sound, volume). Merges never reach this sink, so a device rings once
per alert.
"""

from __future__ import annotations

import logging
from typing import Optional

from pagerbuddy.adapters.http_transport import HttpTransport
from pagerbuddy.core.models import DeliveryTarget
from pagerbuddy.core.queue import DeliveryJob, DeliveryQueue, DeliveryResult, Priority

LOGGER = logging.getLogger(__name__)


class PushSink:
    def __init__(
        self,
        endpoint: str,
        queue: DeliveryQueue,
        api_key: Optional[str] = None,
        confidential: bool = False,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self._endpoint = endpoint
        self._queue = queue
        self._api_key = api_key
        self._confidential = confidential
        self._transport = transport or HttpTransport()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    def build_payload(self, target: DeliveryTarget) -> dict:
        sink = target.sink
        alert = target.alert_response.alert
        return {
            "token": sink.target,
            "alert": alert.to_payload(self._confidential),
            "alertResponseId": target.alert_response.alert_response_id,
            "configuration": {
                "sound": sink.options.get("sound", "default"),
                "volume": sink.options.get("volume", 100),
                "silentVolume": sink.options.get("silent_volume", 0),
                "channel": sink.options.get("channel", "alert"),
            },
        }

    async def send_alert(self, target: DeliveryTarget) -> None:
        payload = self.build_payload(target)
        result = await self._queue.enqueue(
            DeliveryJob(
                target.sink.target,
                lambda token: self._transport.post_json(self._endpoint, {**payload, "token": token}, self._headers()),
                f"push alert {target.alert_response.alert.alert_id}",
            ),
            Priority.ALERT,
        )
        if not result.sent:
            LOGGER.warning("Push to sink %s ended as %s", target.sink.sink_id, result.status.value)

    async def send_text(self, target: str, message: str) -> DeliveryResult:
        return await self._queue.enqueue(
            DeliveryJob(
                target,
                lambda token: self._transport.post_json(self._endpoint, {"token": token, "text": message}, self._headers()),
                "push text",
            )
        )
