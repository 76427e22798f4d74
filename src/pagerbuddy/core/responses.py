"""Response aggregation (core domain).

Tracks the AlertResponses of routed alerts, records user replies with
replace semantics and renders the per-group response overview.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional

from pagerbuddy.core.directory import Directory
from pagerbuddy.core.events import AlertResponseUpdated, AlertUpdated, EventBus
from pagerbuddy.core.models import AlertResponse, ResponseOption, ResponseType, User, UserResponse
from pagerbuddy.core.ports import StoragePort

LOGGER = logging.getLogger(__name__)

_SECTION_TITLES = {
    ResponseType.CONFIRM: "Confirmed",
    ResponseType.DELAY: "Delayed",
    ResponseType.DENY: "Denied",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _confirm_sort_key(response: UserResponse) -> tuple:
    arrival = response.estimated_arrival
    # Responses without an ETA go last, in arrival order.
    if arrival is None:
        return (1, response.timestamp)
    return (0, arrival)


def bucket_responses(alert_response: AlertResponse) -> Dict[ResponseType, List[UserResponse]]:
    """Split responses by type. CONFIRM is ordered by estimated arrival."""

    buckets: Dict[ResponseType, List[UserResponse]] = {kind: [] for kind in ResponseType}
    for response in alert_response.responses:
        buckets[response.option.type].append(response)
    buckets[ResponseType.CONFIRM].sort(key=_confirm_sort_key)
    return buckets


def render_summary(alert_response: AlertResponse, zone: tzinfo = timezone.utc) -> str:
    """Plain-text response overview with counts and one line per user."""

    buckets = bucket_responses(alert_response)
    lines = [f"Responses ({len(alert_response.responses)})"]
    for kind in ResponseType:
        responses = buckets[kind]
        lines.append(f"{_SECTION_TITLES[kind]} ({len(responses)}):")
        for response in responses:
            line = f"- {response.user.name} ({response.option.label})"
            arrival = response.estimated_arrival
            if kind is ResponseType.CONFIRM and arrival is not None:
                line += f" ETA {arrival.astimezone(zone):%H:%M}"
            lines.append(line)
    return "\n".join(lines)


class ResponseTracker:
    """Keeps live AlertResponses and turns replies and merges into update events."""

    def __init__(
        self,
        storage: StoragePort,
        directory: Directory,
        events: EventBus,
        retention: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._storage = storage
        self._directory = directory
        self._events = events
        self._retention = retention
        self._clock = clock
        self._live: Dict[int, AlertResponse] = {}
        events.subscribe(AlertUpdated, self._on_alert_updated)

    def track(self, alert_response: AlertResponse) -> None:
        if alert_response.alert_response_id is None:
            return
        self._live[alert_response.alert_response_id] = alert_response
        cutoff = self._clock() - self._retention
        for key in [key for key, item in self._live.items() if item.alert.timestamp < cutoff]:
            del self._live[key]

    def tracked_for_alert(self, alert_id: Optional[int]) -> List[AlertResponse]:
        return [item for item in self._live.values() if item.alert.alert_id == alert_id]

    async def get(self, alert_response_id: int) -> Optional[AlertResponse]:
        alert_response = self._live.get(alert_response_id)
        if alert_response is None:
            alert_response = await self._storage.get_alert_response(alert_response_id)
            if alert_response is not None:
                self.track(alert_response)
        return alert_response

    async def _on_alert_updated(self, event: AlertUpdated) -> None:
        for alert_response in self.tracked_for_alert(event.alert.alert_id):
            alert_response.alert = event.alert
            await self._events.publish(AlertResponseUpdated(alert_response))

    async def record_response(
        self,
        alert_response: AlertResponse,
        user: User,
        option: ResponseOption,
        sink_id: str,
        timestamp: datetime,
    ) -> bool:
        """Store the user's reply, replacing an earlier one. False if unchanged."""

        previous = next((r for r in alert_response.responses if r.user.user_id == user.user_id), None)
        if previous is not None and previous.option.option_id == option.option_id:
            LOGGER.debug("Unchanged response of %s on %s ignored", user.user_id, alert_response.alert_response_id)
            return False

        response = await self._storage.save_user_response(
            alert_response, UserResponse(user=user, option=option, sink_id=sink_id, timestamp=timestamp)
        )
        alert_response.user_responded(response)
        LOGGER.info(
            "User %s responded %r to alert response %s",
            user.user_id,
            option.label,
            alert_response.alert_response_id,
        )
        await self._events.publish(AlertResponseUpdated(alert_response))
        return True

    async def handle_reply(
        self,
        alert_response_id: int,
        option_id: int,
        telegram_name: str,
        chat_id: str,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Validate and record a reply button press coming from a chat."""

        alert_response = await self.get(alert_response_id)
        if alert_response is None:
            LOGGER.warning("Reply for unknown alert response %s", alert_response_id)
            return False

        group = alert_response.group
        configuration = group.response_configuration
        if not configuration.allow_responses or not configuration.has_option(option_id):
            LOGGER.warning("Option %s is not allowed for group %s", option_id, group.group_id)
            return False
        option = self._directory.option(option_id)
        if option is None:
            LOGGER.warning("Unknown response option %s", option_id)
            return False

        group_sink_ids = {sink.sink_id for sink in group.sinks}
        sink = next(
            (s for s in self._directory.telegram_sinks_for_chat(chat_id) if s.sink_id in group_sink_ids),
            None,
        )
        if sink is None:
            LOGGER.warning("Chat %s is not a sink of group %s", chat_id, group.group_id)
            return False

        user = self._directory.user_by_telegram_name(telegram_name) if telegram_name else None
        if user is None or not group.has_member(user):
            LOGGER.warning("Reply from %r rejected: not a member of group %s", telegram_name, group.group_id)
            return False

        await self.record_response(alert_response, user, option, sink.sink_id, timestamp or self._clock())
        return True
