"""Telegram Bot API transport.

Thin client for the handful of Bot API methods the sinks need. Wire errors
are translated into the delivery error taxonomy so the queue can decide
what to do with them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Callable, List, Optional

from pagerbuddy.core.errors import (
    DeliveryError,
    FloodError,
    ForbiddenError,
    MalformedRequestError,
    ServerError,
    TargetMigratedError,
)

LOGGER = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


def translate_error(status: int, body: dict) -> Optional[DeliveryError]:
    """Map a Bot API error response to a DeliveryError. None means success."""

    description = str(body.get("description", f"HTTP {status}"))
    parameters = body.get("parameters") or {}

    if "migrate_to_chat_id" in parameters:
        return TargetMigratedError(description, str(parameters["migrate_to_chat_id"]))
    if status in (420, 429):
        retry_after = parameters.get("retry_after")
        return FloodError(description, float(retry_after) if retry_after is not None else None)
    if status == 403:
        return ForbiddenError(description)
    if status >= 500:
        return ServerError(description)
    if status == 400 and "message is not modified" in description:
        return None
    return MalformedRequestError(description)


class TelegramBotApi:
    """Bot API client; blocking HTTP runs in a worker thread."""

    def __init__(
        self,
        bot_token: str,
        timeout: float = 10,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self._bot_token = bot_token
        self._timeout = timeout
        self._opener = opener

    def _endpoint(self, method: str) -> str:
        return f"{API_BASE}/bot{self._bot_token}/{method}"

    def _post(self, method: str, payload: dict) -> Any:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(method), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with self._opener(request, timeout=self._timeout) as response:
                body = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            try:
                body = json.loads(raw)
            except ValueError:
                body = {"description": raw or exc.reason}
            error = translate_error(exc.code, body)
            if error is None:
                return True
            raise error from exc
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            raise ServerError(f"Bot API unreachable: {exc}") from exc
        return body.get("result")

    async def call(self, method: str, payload: dict) -> Any:
        return await asyncio.to_thread(self._post, method, payload)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        disable_notification: bool = False,
        reply_markup: Optional[List[List[dict]]] = None,
    ) -> Optional[int]:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            "disable_notification": disable_notification,
        }
        if reply_markup:
            payload["reply_markup"] = {"inline_keyboard": reply_markup}
        result = await self.call("sendMessage", payload)
        return result.get("message_id") if isinstance(result, dict) else None

    async def edit_message_text(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: Optional[List[List[dict]]] = None,
    ) -> int:
        payload = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if reply_markup:
            payload["reply_markup"] = {"inline_keyboard": reply_markup}
        await self.call("editMessageText", payload)
        return message_id

    async def pin_chat_message(self, chat_id: str, message_id: int) -> int:
        await self.call(
            "pinChatMessage", {"chat_id": chat_id, "message_id": message_id, "disable_notification": True}
        )
        return message_id

    async def unpin_chat_message(self, chat_id: str, message_id: int) -> int:
        await self.call("unpinChatMessage", {"chat_id": chat_id, "message_id": message_id})
        return message_id
