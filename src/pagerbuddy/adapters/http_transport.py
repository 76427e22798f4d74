"""Plain HTTP helpers for the push gateway and webhook sinks.

Status codes are translated into the delivery error taxonomy the same way
the Bot API transport does it.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from typing import Any, Callable, Optional

from pagerbuddy.core.errors import DeliveryError, FloodError, ForbiddenError, MalformedRequestError, ServerError


def error_for_status(status: int, description: str, retry_after: Optional[str] = None) -> DeliveryError:
    if status == 429:
        try:
            delay = float(retry_after) if retry_after is not None else None
        except ValueError:
            delay = None
        return FloodError(description, delay)
    if status in (401, 403, 404, 410):
        return ForbiddenError(description)
    if status >= 500:
        return ServerError(description)
    return MalformedRequestError(description)


class HttpTransport:
    def __init__(self, timeout: float = 10, opener: Callable[..., Any] = urllib.request.urlopen) -> None:
        self._timeout = timeout
        self._opener = opener

    def _open(self, request: urllib.request.Request) -> int:
        try:
            with self._opener(request, timeout=self._timeout) as response:
                return int(getattr(response, "status", 200))
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            retry_after = exc.headers.get("Retry-After") if exc.headers else None
            raise error_for_status(exc.code, f"HTTP {exc.code}: {body}", retry_after) from exc
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            raise ServerError(f"{request.full_url} unreachable: {exc}") from exc

    async def post_json(self, url: str, payload: dict, headers: Optional[dict] = None) -> int:
        request = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), method="POST")
        request.add_header("Content-Type", "application/json")
        for name, value in (headers or {}).items():
            request.add_header(name, value)
        return await asyncio.to_thread(self._open, request)

    async def get(self, url: str) -> int:
        return await asyncio.to_thread(self._open, urllib.request.Request(url, method="GET"))
