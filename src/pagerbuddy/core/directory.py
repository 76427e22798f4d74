"""Configured units, sources, users, groups and sinks (core domain).

The directory is built once from config and then only mutated for sink
state changes (chat migration, deactivation of blocked sinks).
"""

from __future__ import annotations

from datetime import timedelta, timezone, tzinfo
from typing import Iterable, Iterator, List, Optional

from pagerbuddy.core.errors import ConfigError
from pagerbuddy.core.models import (
    AlertSink,
    AlertSource,
    Group,
    ResponseConfiguration,
    ResponseOption,
    ResponseType,
    SinkKind,
    SourceKind,
    Unit,
    UnitSubscription,
    User,
)
from pagerbuddy.core.silent import build_silent_configuration

MANUAL_SOURCE_ID = "manual"


class Directory:
    """Lookup tables for everything routing and response handling need."""

    def __init__(
        self,
        units: Iterable[Unit] = (),
        sources: Iterable[AlertSource] = (),
        options: Iterable[ResponseOption] = (),
        users: Iterable[User] = (),
        groups: Iterable[Group] = (),
    ) -> None:
        self._units: dict[int, Unit] = {}
        for unit in units:
            if unit.code in self._units:
                raise ConfigError(f"Duplicate unit code: {unit.code}")
            self._units[unit.code] = unit
        self._sources = {source.source_id: source for source in sources}
        if MANUAL_SOURCE_ID not in self._sources:
            self._sources[MANUAL_SOURCE_ID] = AlertSource(
                MANUAL_SOURCE_ID, SourceKind.MANUAL, "Manual trigger"
            )
        self._options = {option.option_id: option for option in options}
        self._users = {user.user_id: user for user in users}
        self._groups = list(groups)

    @property
    def units(self) -> List[Unit]:
        return list(self._units.values())

    @property
    def sources(self) -> List[AlertSource]:
        return list(self._sources.values())

    @property
    def groups(self) -> List[Group]:
        return list(self._groups)

    @property
    def users(self) -> List[User]:
        return list(self._users.values())

    def unit_for_code(self, unit_code: int) -> Unit:
        """Return the configured unit, or a stub that is never silent."""

        unit = self._units.get(unit_code)
        if unit is None:
            unit = Unit(code=unit_code)
        return unit

    def source(self, source_id: str) -> Optional[AlertSource]:
        return self._sources.get(source_id)

    def group(self, group_id: str) -> Optional[Group]:
        return next((group for group in self._groups if group.group_id == group_id), None)

    def user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def user_by_telegram_name(self, telegram_name: str) -> Optional[User]:
        wanted = telegram_name.lstrip("@").lower()
        for user in self._users.values():
            if user.telegram_name and user.telegram_name.lstrip("@").lower() == wanted:
                return user
        return None

    def option(self, option_id: int) -> Optional[ResponseOption]:
        return self._options.get(option_id)

    def iter_sinks(self) -> Iterator[AlertSink]:
        seen: set[int] = set()
        for group in self._groups:
            for sink in group.sinks:
                if id(sink) not in seen:
                    seen.add(id(sink))
                    yield sink
        for user in self._users.values():
            for sink in user.sinks:
                if id(sink) not in seen:
                    seen.add(id(sink))
                    yield sink

    def sink(self, sink_id: str) -> Optional[AlertSink]:
        return next((sink for sink in self.iter_sinks() if sink.sink_id == sink_id), None)

    def sinks_for_target(self, kind: SinkKind, target: str) -> List[AlertSink]:
        return [sink for sink in self.iter_sinks() if sink.kind is kind and sink.target == target]

    def telegram_sinks_for_chat(self, chat_id: str) -> List[AlertSink]:
        return self.sinks_for_target(SinkKind.TELEGRAM, str(chat_id))

    def migrate_chat_id(self, old_chat_id: str, new_chat_id: str) -> List[AlertSink]:
        """Point every Telegram sink of ``old_chat_id`` at ``new_chat_id``."""

        migrated = self.telegram_sinks_for_chat(old_chat_id)
        for sink in migrated:
            sink.target = str(new_chat_id)
        return migrated


def _build_subscriptions(raw: Iterable, directory_units: dict[int, Unit]) -> tuple[UnitSubscription, ...]:
    subscriptions = []
    for entry in raw:
        if isinstance(entry, dict):
            code, active = entry.get("unit"), entry.get("active", True)
        else:
            code, active = entry, True
        if not isinstance(code, int):
            raise ConfigError(f"Subscription unit code must be an integer, got {code!r}")
        unit = directory_units.get(code) or Unit(code=code)
        subscriptions.append(UnitSubscription(unit=unit, active=bool(active)))
    return tuple(subscriptions)


_SINK_KEYS = {"id", "kind", "target", "active", "subscriptions"}


def _build_sink(raw: dict, units: dict[int, Unit]) -> AlertSink:
    sink_id = raw.get("id")
    if not sink_id:
        raise ConfigError(f"Sink without id: {raw!r}")
    try:
        kind = SinkKind(raw.get("kind", "default"))
    except ValueError as exc:
        raise ConfigError(f"Unsupported sink kind for {sink_id}: {raw.get('kind')!r}") from exc
    return AlertSink(
        sink_id=str(sink_id),
        kind=kind,
        target=str(raw.get("target", "")),
        active=bool(raw.get("active", True)),
        subscriptions=_build_subscriptions(raw.get("subscriptions", []), units),
        options={key: value for key, value in raw.items() if key not in _SINK_KEYS},
    )


def _build_option(raw: dict) -> ResponseOption:
    try:
        response_type = ResponseType[str(raw.get("type", "confirm")).upper()]
    except KeyError as exc:
        raise ConfigError(f"Unsupported response type: {raw.get('type')!r}") from exc
    eta_minutes = raw.get("eta_minutes")
    return ResponseOption(
        option_id=int(raw["id"]),
        label=raw.get("label", ""),
        type=response_type,
        eta=timedelta(minutes=eta_minutes) if eta_minutes is not None else None,
    )


def build_directory(config: dict, zone: tzinfo = timezone.utc) -> Directory:
    """Normalize the units/sources/users/groups sections of the config."""

    units: dict[int, Unit] = {}
    for raw in config.get("units", []):
        code = raw.get("code")
        if not isinstance(code, int):
            raise ConfigError(f"Unit code must be an integer, got {code!r}")
        if code in units:
            raise ConfigError(f"Duplicate unit code: {code}")
        units[code] = Unit(
            code=code,
            name=raw.get("name", ""),
            short_name=raw.get("short_name", ""),
            silent=build_silent_configuration(raw.get("silent"), zone),
        )

    sources = []
    for raw in config.get("sources", []):
        try:
            kind = SourceKind(raw.get("kind", "manual"))
        except ValueError as exc:
            raise ConfigError(f"Unsupported source kind: {raw.get('kind')!r}") from exc
        sources.append(AlertSource(str(raw["id"]), kind, raw.get("description", "")))

    options = {option.option_id: option for option in map(_build_option, config.get("response_options", []))}

    users: dict[str, User] = {}
    for raw in config.get("users", []):
        user_id = str(raw["id"])
        users[user_id] = User(
            user_id=user_id,
            name=raw.get("name", user_id),
            telegram_name=raw.get("telegram_name", ""),
            sinks=tuple(_build_sink(sink, units) for sink in raw.get("sinks", [])),
        )

    def _users(ids: Iterable[str], group_id: str) -> tuple[User, ...]:
        resolved = []
        for user_id in ids:
            if str(user_id) not in users:
                raise ConfigError(f"Group {group_id} references unknown user {user_id!r}")
            resolved.append(users[str(user_id)])
        return tuple(resolved)

    groups = []
    for raw in config.get("groups", []):
        group_id = str(raw["id"])
        response_raw = raw.get("response_configuration", {})
        option_ids = response_raw.get("options", [])
        missing = [option_id for option_id in option_ids if option_id not in options]
        if missing:
            raise ConfigError(f"Group {group_id} references unknown response options {missing}")
        groups.append(
            Group(
                group_id=group_id,
                name=raw.get("name", group_id),
                units=tuple(units.get(code) or Unit(code=code) for code in raw.get("units", [])),
                members=_users(raw.get("members", []), group_id),
                leaders=_users(raw.get("leaders", []), group_id),
                response_configuration=ResponseConfiguration(
                    description=response_raw.get("description", ""),
                    allow_responses=bool(response_raw.get("allow_responses", False)),
                    options=tuple(options[option_id] for option_id in option_ids),
                ),
                sinks=tuple(_build_sink(sink, units) for sink in raw.get("sinks", [])),
            )
        )

    return Directory(
        units=units.values(),
        sources=sources,
        options=options.values(),
        users=users.values(),
        groups=groups,
    )
