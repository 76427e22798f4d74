"""Forward log records to Telegram log chats."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Set

# Records from these loggers describe the forwarding path itself.
EXCLUDED_LOGGERS = (
    "pagerbuddy.core.queue",
    "pagerbuddy.adapters.telegram_bot_api",
    "pagerbuddy.adapters.telegram_sink",
    "pagerbuddy.adapters.log_forwarding",
)


class TelegramLogHandler(logging.Handler):
    """Queues one STANDARD text message per log chat for every record."""

    def __init__(
        self,
        send: Callable[[str, str], Awaitable[object]],
        chat_ids: Iterable[str],
        level: int = logging.WARNING,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        super().__init__(level)
        self._send = send
        self._chat_ids = [str(chat_id) for chat_id in chat_ids]
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(EXCLUDED_LOGGERS):
            return
        loop = self._loop
        if loop is None or loop.is_closed() or not self._chat_ids:
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        loop.call_soon_threadsafe(self._schedule, message)

    def _schedule(self, message: str) -> None:
        for chat_id in self._chat_ids:
            task = asyncio.ensure_future(self._send(chat_id, message), loop=self._loop)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
