"""In-process event passing between core components.

An alert merge publishes ``AlertUpdated``; the response tracker consumes it
and republishes ``AlertResponseUpdated`` for every delivery surface showing
that alert. Nothing holds closures over other entities.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, DefaultDict, List, Type

from pagerbuddy.core.models import Alert, AlertResponse

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertUpdated:
    alert: Alert


@dataclass(frozen=True)
class AlertResponseUpdated:
    alert_response: AlertResponse


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    """Minimal async publish/subscribe keyed by event type."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event: object) -> None:
        for handler in list(self._handlers[type(event)]):
            try:
                await handler(event)
            except Exception:
                LOGGER.exception("Handler %r failed for %s", handler, type(event).__name__)
