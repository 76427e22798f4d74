"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, List, Optional, Tuple

from pagerbuddy.core.silent import SilentConfiguration, SilentNever

# Subscribing to this unit code matches every alert (oversight/debug groups).
ALL_ALERTS_UNIT_CODE = 10

# Unit code and text shown instead of the real ones in confidential mode.
CONFIDENTIAL_UNIT_CODE = 10000
CONFIDENTIAL_TEXT = "Alert anonymised"


class InformationContent(IntEnum):
    """How much detail a source could decode, ordered."""

    NONE = 0
    ID = 1
    KEYWORD = 2
    COMPLETE = 3


class SourceKind(str, Enum):
    HARDWARE = "hardware"
    KATSYS = "katsys"
    MANUAL = "manual"


class SinkKind(str, Enum):
    TELEGRAM = "telegram"
    APP = "app"
    WEBHOOK = "webhook"
    DEFAULT = "default"


class ResponseType(IntEnum):
    CONFIRM = 0
    DELAY = 1
    DENY = 2


@dataclass(frozen=True)
class Unit:
    """An alertable competence (e.g. a response team) identified by its code."""

    code: int
    name: str = ""
    short_name: str = ""
    silent: SilentConfiguration = field(default_factory=SilentNever)

    def is_silent_time(self, timestamp: datetime) -> bool:
        return self.silent.is_in_silent_period(timestamp)

    def matches_code(self, unit_code: int) -> bool:
        return self.code == unit_code or self.code == ALL_ALERTS_UNIT_CODE


@dataclass(frozen=True)
class UnitSubscription:
    unit: Unit
    active: bool = True

    def matches(self, alert: "Alert") -> bool:
        return self.active and self.unit.matches_code(alert.unit.code)


@dataclass(eq=False)
class AlertSource:
    """A producer of alert candidates (hardware site, KatSys feed, manual trigger)."""

    source_id: str
    kind: SourceKind
    description: str = ""
    last_alert_at: Optional[datetime] = None
    last_status_at: Optional[datetime] = None

    def report_alert(self, timestamp: datetime) -> None:
        if self.last_alert_at is None or timestamp > self.last_alert_at:
            self.last_alert_at = timestamp
        self.report_status(timestamp)

    def report_status(self, timestamp: datetime) -> None:
        if self.last_status_at is None or timestamp > self.last_status_at:
            self.last_status_at = timestamp


def timestamp_from_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class AlertCandidate:
    """An ephemeral, not persisted signal produced by a source."""

    unit_code: int
    timestamp: datetime
    information_content: InformationContent
    source: AlertSource
    keyword: str = ""
    location: str = ""
    message: str = ""

    @classmethod
    def from_payload(cls, payload: dict, source: AlertSource) -> "AlertCandidate":
        """Build a candidate from the producer wire shape (epoch-ms timestamp)."""

        return cls(
            unit_code=int(payload["unitCode"]),
            timestamp=timestamp_from_millis(payload["timestamp"]),
            information_content=InformationContent(int(payload.get("informationContent", 0))),
            source=source,
            keyword=payload.get("keyword") or "",
            location=payload.get("location") or "",
            message=payload.get("message") or "",
        )


@dataclass(eq=False)
class Alert:
    """Canonical, persisted and possibly merged record of a real-world event."""

    unit: Unit
    timestamp: datetime
    information_content: InformationContent
    keyword: str = ""
    message: str = ""
    location: str = ""
    sources: List[AlertSource] = field(default_factory=list)
    alert_id: Optional[int] = None

    @classmethod
    def from_candidate(cls, candidate: AlertCandidate, unit: Unit) -> "Alert":
        return cls(
            unit=unit,
            timestamp=candidate.timestamp,
            information_content=candidate.information_content,
            keyword=candidate.keyword,
            message=candidate.message,
            location=candidate.location,
            sources=[candidate.source],
        )

    @property
    def is_silent_alert(self) -> bool:
        return self.unit.is_silent_time(self.timestamp)

    @property
    def is_manual_alert(self) -> bool:
        return len(self.sources) == 1 and self.sources[0].kind is SourceKind.MANUAL

    def add_source(self, source: AlertSource) -> bool:
        if any(existing.source_id == source.source_id for existing in self.sources):
            return False
        self.sources.append(source)
        return True

    def merge(self, candidate: AlertCandidate) -> None:
        """Take over the candidate's text and information level in place."""

        self.add_source(candidate.source)
        self.keyword = candidate.keyword
        self.message = candidate.message
        self.location = candidate.location
        self.information_content = max(self.information_content, candidate.information_content)

    def merged(self, candidate: AlertCandidate) -> "Alert":
        """Return a merged copy; ``self`` stays untouched."""

        copy = replace(self, sources=list(self.sources))
        copy.merge(candidate)
        return copy

    def to_payload(self, confidential: bool = False) -> dict[str, Any]:
        """Concise JSON-able description, used by push and webhook sinks."""

        keyword, message, location = self.keyword, self.message, self.location
        unit = {"name": self.unit.name, "shortName": self.unit.short_name, "code": self.unit.code}
        if confidential:
            keyword, message, location = CONFIDENTIAL_TEXT, "", ""
            unit = {"name": "", "shortName": "", "code": CONFIDENTIAL_UNIT_CODE}
        return {
            "id": self.alert_id,
            "timestamp": int(self.timestamp.timestamp() * 1000),
            "keyword": keyword,
            "message": message,
            "location": location,
            "informationContent": int(self.information_content),
            "silentAlert": self.is_silent_alert,
            "manualAlert": self.is_manual_alert,
            "unit": unit,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """A candidate for ``unit_code`` with ``information_content`` arrived at ``timestamp``.

    ``alert_id`` ties the entry to the alert of its repeat chain.
    """

    unit_code: int
    information_content: InformationContent
    timestamp: datetime
    alert_id: Optional[int] = None


@dataclass(eq=False)
class AlertSink:
    """A delivery endpoint (chat, push device, webhook) with its own subscriptions."""

    sink_id: str
    kind: SinkKind
    target: str = ""
    active: bool = True
    subscriptions: Tuple[UnitSubscription, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)

    def is_relevant_alert(self, alert: Alert) -> bool:
        return self.active and any(sub.matches(alert) for sub in self.subscriptions)


@dataclass(frozen=True)
class User:
    user_id: str
    name: str
    telegram_name: str = ""
    sinks: Tuple[AlertSink, ...] = ()


@dataclass(frozen=True)
class ResponseOption:
    option_id: int
    label: str
    type: ResponseType
    eta: Optional[timedelta] = None


@dataclass(frozen=True)
class ResponseConfiguration:
    description: str = ""
    allow_responses: bool = False
    options: Tuple[ResponseOption, ...] = ()

    def has_option(self, option_id: int) -> bool:
        return any(option.option_id == option_id for option in self.options)

    def sorted_options(self) -> List[ResponseOption]:
        """Order by response type, then by ETA offset (no ETA last)."""

        def key(option: ResponseOption) -> tuple:
            eta = option.eta.total_seconds() if option.eta is not None else float("inf")
            return (option.type, eta)

        return sorted(self.options, key=key)


@dataclass(eq=False)
class Group:
    """Named collection of units of interest, members, leaders and chat sinks."""

    group_id: str
    name: str
    units: Tuple[Unit, ...] = ()
    members: Tuple[User, ...] = ()
    leaders: Tuple[User, ...] = ()
    response_configuration: ResponseConfiguration = field(default_factory=ResponseConfiguration)
    sinks: Tuple[AlertSink, ...] = ()

    def is_relevant_alert(self, alert: Alert) -> bool:
        return any(unit.matches_code(alert.unit.code) for unit in self.units)

    def has_member(self, user: User) -> bool:
        return any(member.user_id == user.user_id for member in (*self.members, *self.leaders))


@dataclass(frozen=True)
class UserResponse:
    user: User
    option: ResponseOption
    sink_id: str
    timestamp: datetime
    response_id: Optional[int] = None

    @property
    def estimated_arrival(self) -> Optional[datetime]:
        if self.option.eta is None:
            return None
        return self.timestamp + self.option.eta


@dataclass(eq=False)
class AlertResponse:
    """A group's acknowledgement thread for one alert."""

    alert: Alert
    group: Group
    responses: List[UserResponse] = field(default_factory=list)
    alert_response_id: Optional[int] = None

    def user_responded(self, response: UserResponse) -> bool:
        """Replace the user's previous response. Returns False if nothing changed."""

        previous = next((r for r in self.responses if r.user.user_id == response.user.user_id), None)
        if previous is not None and previous.option.option_id == response.option.option_id:
            return False
        if previous is not None:
            self.responses.remove(previous)
        self.responses.append(response)
        return True


@dataclass(frozen=True)
class DeliveryTarget:
    """One concrete delivery produced by routing."""

    sink: AlertSink
    alert_response: AlertResponse
