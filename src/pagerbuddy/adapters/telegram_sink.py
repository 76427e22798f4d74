"""Telegram chat sink.

Each delivered alert becomes a "surface" in a chat: the alert message and,
for group chats that collect responses, a response overview with reply
buttons. Surfaces are edited in place when the alert is merged or a
response arrives.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, Optional, Set, Tuple

from pagerbuddy.adapters.notification_formatting import (
    build_reply_keyboard,
    format_alert,
    format_response_overview,
)
from pagerbuddy.adapters.telegram_bot_api import TelegramBotApi
from pagerbuddy.core.config import ResponseOverviewConfig
from pagerbuddy.core.directory import Directory
from pagerbuddy.core.events import AlertResponseUpdated, EventBus
from pagerbuddy.core.models import AlertResponse, AlertSink, DeliveryTarget
from pagerbuddy.core.ports import StoragePort
from pagerbuddy.core.queue import Debouncer, DeliveryHandle, DeliveryJob, DeliveryQueue, DeliveryResult, Priority

LOGGER = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class _Surface:
    sink: AlertSink
    alert_response: AlertResponse
    debouncer: Debouncer
    chat_id: str = ""
    alert_message_id: Optional[int] = None
    alert_text: str = ""
    overview_message_id: Optional[int] = None
    overview_text: str = ""
    pending_alert_edit: Optional[DeliveryHandle] = None
    tasks: Set[asyncio.Task] = field(default_factory=set)


class TelegramSink:
    """NotificationSinkPort for Telegram chats, backed by one bot queue."""

    def __init__(
        self,
        api: TelegramBotApi,
        queue: DeliveryQueue,
        directory: Directory,
        storage: StoragePort,
        events: EventBus,
        overview: ResponseOverviewConfig,
        zone: tzinfo = timezone.utc,
        confidential: bool = False,
        deactivate_blocked_sinks: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._api = api
        self._queue = queue
        self._directory = directory
        self._storage = storage
        self._overview = overview
        self._zone = zone
        self._confidential = confidential
        self._deactivate_blocked = deactivate_blocked_sinks
        self._clock = clock
        self._surfaces: Dict[Tuple[str, int], _Surface] = {}
        self._retention = max(overview.cooldown, timedelta(hours=1))
        queue.on_target_migrated = self._on_target_migrated
        queue.on_target_forbidden = self._on_target_forbidden
        events.subscribe(AlertResponseUpdated, self._on_alert_response_updated)

    # Outgoing ------------------------------------------------------------

    async def send_text(self, target: str, message: str, priority: Priority = Priority.STANDARD) -> DeliveryResult:
        job = DeliveryJob(target, lambda chat: self._api.send_message(chat, message), "text")
        return await self._queue.enqueue(job, priority)

    async def send_alert(self, target: DeliveryTarget) -> None:
        alert_response = target.alert_response
        alert = alert_response.alert
        sink = target.sink
        self._evict()

        text = self._render_alert(alert_response)
        silent = alert.is_silent_alert
        result = await self._queue.enqueue(
            DeliveryJob(
                sink.target,
                lambda chat: self._api.send_message(chat, text, disable_notification=silent),
                f"alert {alert.alert_id}",
            ),
            Priority.ALERT,
        )
        if not result.sent:
            LOGGER.warning("Alert %s not delivered to %s: %s", alert.alert_id, sink.sink_id, result.status.value)
            return

        surface = _Surface(
            sink=sink,
            alert_response=alert_response,
            debouncer=Debouncer(self._overview.react_timeout.total_seconds()),
            chat_id=result.target,
            alert_message_id=result.message_id,
            alert_text=text,
        )
        self._surfaces[(sink.sink_id, alert_response.alert_response_id)] = surface

        if self._shows_overview(surface):
            await self._send_overview(surface, silent)

        # The alert may have been merged while the first send was queued.
        self._schedule_update(surface)

    def _shows_overview(self, surface: _Surface) -> bool:
        group = surface.alert_response.group
        if not group.response_configuration.allow_responses:
            return False
        return any(sink.sink_id == surface.sink.sink_id for sink in group.sinks)

    async def _send_overview(self, surface: _Surface, silent: bool) -> None:
        text = self._render_overview(surface.alert_response)
        keyboard = build_reply_keyboard(surface.alert_response)
        result = await self._queue.enqueue(
            DeliveryJob(
                surface.chat_id,
                lambda chat: self._api.send_message(chat, text, disable_notification=True, reply_markup=keyboard),
                f"overview {surface.alert_response.alert_response_id}",
            ),
            Priority.ALERT,
        )
        if not result.sent:
            return
        surface.chat_id = result.target
        surface.overview_message_id = result.message_id
        surface.overview_text = text

        if self._overview.pin_messages and not silent and result.message_id is not None:
            message_id = result.message_id
            self._queue.enqueue(
                DeliveryJob(surface.chat_id, lambda chat: self._api.pin_chat_message(chat, message_id), "pin")
            )
            self._spawn(surface, self._unpin_later(surface, message_id))

    async def _unpin_later(self, surface: _Surface, message_id: int) -> None:
        await asyncio.sleep(self._cooldown_left(surface).total_seconds())
        await self._queue.enqueue(
            DeliveryJob(surface.chat_id, lambda chat: self._api.unpin_chat_message(chat, message_id), "unpin")
        )

    # Updates -------------------------------------------------------------

    async def _on_alert_response_updated(self, event: AlertResponseUpdated) -> None:
        alert_response = event.alert_response
        for surface in list(self._surfaces.values()):
            if surface.alert_response.alert_response_id == alert_response.alert_response_id:
                surface.alert_response = alert_response
                self._schedule_update(surface)

    def _schedule_update(self, surface: _Surface) -> None:
        text = self._render_alert(surface.alert_response)
        if surface.alert_message_id is not None and text != surface.alert_text:
            if surface.pending_alert_edit is not None:
                surface.pending_alert_edit.cancel()
            message_id = surface.alert_message_id
            surface.pending_alert_edit = self._queue.enqueue(
                DeliveryJob(
                    surface.chat_id,
                    lambda chat: self._api.edit_message_text(chat, message_id, text),
                    f"alert edit {surface.alert_response.alert.alert_id}",
                ),
                Priority.ALERT,
            )
            surface.alert_text = text

        if surface.overview_message_id is not None:
            surface.debouncer.call(lambda: self._edit_overview(surface))

    async def _edit_overview(self, surface: _Surface) -> Optional[DeliveryResult]:
        if self._cooldown_left(surface) <= timedelta(0):
            LOGGER.debug("Overview %s past cooldown, not edited", surface.overview_message_id)
            return None
        text = self._render_overview(surface.alert_response)
        if text == surface.overview_text:
            return None
        keyboard = build_reply_keyboard(surface.alert_response)
        message_id = surface.overview_message_id
        result = await self._queue.enqueue(
            DeliveryJob(
                surface.chat_id,
                lambda chat: self._api.edit_message_text(chat, message_id, text, reply_markup=keyboard),
                f"overview edit {surface.alert_response.alert_response_id}",
            ),
            Priority.ALERT,
        )
        if result.sent:
            surface.overview_text = text
        return result

    # Helpers -------------------------------------------------------------

    def _render_alert(self, alert_response: AlertResponse) -> str:
        return format_alert(alert_response.alert, self._zone, self._confidential)

    def _render_overview(self, alert_response: AlertResponse) -> str:
        return format_response_overview(alert_response, self._zone, self._confidential)

    def _cooldown_left(self, surface: _Surface) -> timedelta:
        return surface.alert_response.alert.timestamp + self._overview.cooldown - self._clock()

    def _spawn(self, surface: _Surface, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        surface.tasks.add(task)
        task.add_done_callback(surface.tasks.discard)

    def _evict(self) -> None:
        cutoff = self._clock() - self._retention
        for key, surface in list(self._surfaces.items()):
            if surface.alert_response.alert.timestamp < cutoff and not surface.tasks:
                del self._surfaces[key]

    def close(self) -> None:
        for surface in self._surfaces.values():
            surface.debouncer.cancel()
            for task in list(surface.tasks):
                task.cancel()
        self._surfaces.clear()

    # Queue hooks ---------------------------------------------------------

    async def _on_target_migrated(self, old_chat_id: str, new_chat_id: str) -> None:
        migrated = self._directory.migrate_chat_id(old_chat_id, new_chat_id)
        for surface in self._surfaces.values():
            if surface.chat_id == old_chat_id:
                surface.chat_id = new_chat_id
        await self._storage.save_chat_migration(old_chat_id, new_chat_id)
        LOGGER.info("Chat %s migrated to %s (%d sink(s) updated)", old_chat_id, new_chat_id, len(migrated))

    async def _on_target_forbidden(self, chat_id: str) -> None:
        if not self._deactivate_blocked:
            return
        for sink in self._directory.telegram_sinks_for_chat(chat_id):
            sink.active = False
            LOGGER.warning("Sink %s deactivated: chat %s blocked the bot", sink.sink_id, chat_id)
