"""Telegram-to-core update mapping adapter.

This keeps Telethon-specific details out of the core: reply button presses
arrive as CallbackQuery events and are turned into ResponseTracker calls.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from telethon import events

from pagerbuddy.core.responses import ResponseTracker

LOGGER = logging.getLogger(__name__)

REPLY_PATTERN = re.compile(r"^reply#(\d+)#%(\d+)%$")


def parse_reply_callback(data: Union[bytes, str, None]) -> Optional[Tuple[int, int]]:
    """Return (alert_response_id, option_id) for reply button data, else None."""

    if data is None:
        return None
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    match = REPLY_PATTERN.match(data)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


async def sender_username(event) -> str:
    sender = await event.get_sender()
    username = getattr(sender, "username", None)
    return username if isinstance(username, str) else ""


class ReplyButtonHandler:
    """Routes reply button presses to the response tracker."""

    def __init__(self, tracker: ResponseTracker) -> None:
        self._tracker = tracker

    async def handle(self, event) -> None:
        parsed = parse_reply_callback(getattr(event, "data", None))
        if parsed is None:
            await event.answer()
            return

        alert_response_id, option_id = parsed
        username = await sender_username(event)
        event_date = getattr(getattr(event, "query", None), "date", None)
        timestamp = event_date if isinstance(event_date, datetime) else datetime.now(timezone.utc)

        accepted = await self._tracker.handle_reply(
            alert_response_id,
            option_id,
            username,
            str(event.chat_id),
            timestamp,
        )
        await event.answer("Response recorded" if accepted else "Response not accepted")

    def register(self, client) -> None:
        client.add_event_handler(self.handle, events.CallbackQuery(pattern=rb"^reply#"))
        LOGGER.info("Reply button handler registered")
