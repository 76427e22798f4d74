from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fakes import NOW, FakeStorage
from pagerbuddy.core.config import DedupConfig
from pagerbuddy.core.dedup import AlertDeduplicator, ResolutionAction
from pagerbuddy.core.directory import Directory
from pagerbuddy.core.errors import StorageError
from pagerbuddy.core.events import AlertUpdated, EventBus
from pagerbuddy.core.models import AlertCandidate, AlertSource, HistoryEntry, InformationContent, SourceKind, Unit

NORTH = AlertSource("north", SourceKind.HARDWARE)
KATSYS = AlertSource("katsys", SourceKind.KATSYS)


class Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self):
        return self.now


def _candidate(unit_code=25123, offset=0, level=InformationContent.ID, source=NORTH, keyword="", **kwargs):
    return AlertCandidate(
        unit_code=unit_code,
        timestamp=NOW + timedelta(seconds=offset),
        information_content=level,
        source=source,
        keyword=keyword,
        **kwargs,
    )


def _make(storage=None, clock=None, bus=None):
    storage = storage or FakeStorage()
    clock = clock or Clock()
    bus = bus or EventBus()
    directory = Directory(units=[Unit(25123, "Engine 1", "E1")])
    return AlertDeduplicator(storage, directory, DedupConfig(), bus, clock=clock), storage, clock, bus


def test_new_candidate_then_richer_candidate_merges() -> None:
    dedup, storage, clock, _ = _make()

    first = asyncio.run(dedup.resolve(_candidate(level=InformationContent.ID)))
    assert first.action is ResolutionAction.CREATE
    assert first.alert.unit.code == 25123
    assert first.alert.information_content is InformationContent.ID

    clock.now = NOW + timedelta(seconds=30)
    second = asyncio.run(
        dedup.resolve(_candidate(offset=30, level=InformationContent.COMPLETE, source=KATSYS, keyword="#R9012#KTP"))
    )

    assert second.action is ResolutionAction.MERGE
    assert second.alert is first.alert
    assert second.alert.keyword == "#R9012#KTP"
    assert second.alert.information_content is InformationContent.COMPLETE
    assert [s.source_id for s in second.alert.sources] == ["north", "katsys"]
    assert len([a for a in storage.alerts if a.unit.code == 25123]) == 1


def test_equal_or_lower_information_is_suppressed() -> None:
    dedup, storage, clock, _ = _make()

    asyncio.run(dedup.resolve(_candidate(level=InformationContent.KEYWORD, keyword="FIRE")))
    clock.now = NOW + timedelta(seconds=10)
    equal = asyncio.run(dedup.resolve(_candidate(offset=10, level=InformationContent.KEYWORD, keyword="OTHER")))
    lower = asyncio.run(dedup.resolve(_candidate(offset=10, level=InformationContent.ID)))

    assert equal.action is ResolutionAction.SUPPRESS
    assert lower.action is ResolutionAction.SUPPRESS
    assert len(storage.alerts) == 1
    assert storage.alerts[0].keyword == "FIRE"
    assert len(storage.history) == 3


def test_stale_candidate_never_touches_alerts() -> None:
    dedup, storage, clock, _ = _make()
    clock.now = NOW + timedelta(minutes=3)

    result = asyncio.run(dedup.resolve(_candidate(level=InformationContent.COMPLETE)))

    assert result.action is ResolutionAction.SUPPRESS
    assert result.alert is None
    assert storage.alerts == []
    assert storage.history == []


def test_candidate_after_window_creates_new_alert() -> None:
    dedup, storage, clock, _ = _make()

    asyncio.run(dedup.resolve(_candidate()))
    clock.now = NOW + timedelta(minutes=6)
    result = asyncio.run(dedup.resolve(_candidate(offset=360)))

    assert result.action is ResolutionAction.CREATE
    assert len(storage.alerts) == 2
    # The first history entry fell out of the window and was purged.
    assert len(storage.history) == 1


def test_merging_same_candidate_twice_keeps_sources_unique() -> None:
    dedup, storage, clock, _ = _make()
    created = asyncio.run(dedup.resolve(_candidate()))
    candidate = _candidate(offset=5, level=InformationContent.COMPLETE, source=KATSYS, keyword="A")

    created.alert.merge(candidate)
    created.alert.merge(candidate)

    assert [s.source_id for s in created.alert.sources] == ["north", "katsys"]


def test_concurrent_candidates_for_one_unit_create_once() -> None:
    dedup, storage, _, _ = _make()

    async def scenario():
        return await asyncio.gather(
            dedup.resolve(_candidate(level=InformationContent.ID)),
            dedup.resolve(_candidate(level=InformationContent.ID, source=KATSYS)),
        )

    results = asyncio.run(scenario())

    actions = sorted(result.action.value for result in results)
    assert actions == ["create", "suppress"]
    assert len(storage.alerts) == 1


def test_merge_publishes_alert_updated() -> None:
    bus = EventBus()
    received = []

    async def on_update(event):
        received.append(event.alert)

    bus.subscribe(AlertUpdated, on_update)
    dedup, _, clock, _ = _make(bus=bus)

    created = asyncio.run(dedup.resolve(_candidate()))
    clock.now = NOW + timedelta(seconds=20)
    asyncio.run(dedup.resolve(_candidate(offset=20, level=InformationContent.KEYWORD, keyword="FIRE")))

    assert received == [created.alert]


def test_unknown_unit_gets_stub() -> None:
    dedup, _, _, _ = _make()

    result = asyncio.run(dedup.resolve(_candidate(unit_code=99999)))

    assert result.action is ResolutionAction.CREATE
    assert result.alert.unit.code == 99999
    assert result.alert.is_silent_alert is False


def test_persistence_failure_propagates_without_history() -> None:
    storage = FakeStorage()
    storage.fail_save_alert = True
    dedup, _, _, _ = _make(storage=storage)

    with pytest.raises(StorageError):
        asyncio.run(dedup.resolve(_candidate()))

    assert storage.history == []


def test_accepted_candidate_reports_source_health() -> None:
    source = AlertSource("south", SourceKind.HARDWARE)
    dedup, _, _, _ = _make()

    asyncio.run(dedup.resolve(_candidate(source=source)))

    assert source.last_alert_at == NOW
    assert source.last_status_at == NOW


def test_repeat_chain_inside_window_stays_one_alert() -> None:
    dedup, storage, clock, _ = _make()
    actions = []

    for offset in (0, 240, 360):
        clock.now = NOW + timedelta(seconds=offset)
        actions.append(asyncio.run(dedup.resolve(_candidate(offset=offset))).action)

    assert actions == [ResolutionAction.CREATE, ResolutionAction.SUPPRESS, ResolutionAction.SUPPRESS]
    assert len(storage.alerts) == 1
    assert all(entry.alert_id == 1 for entry in storage.history)

    # Once the whole chain has left the window the next candidate is a new event.
    clock.now = NOW + timedelta(seconds=700)
    assert asyncio.run(dedup.resolve(_candidate(offset=700))).action is ResolutionAction.CREATE
    assert len(storage.alerts) == 2


def test_richer_candidate_late_in_chain_merges_into_first_alert() -> None:
    dedup, storage, clock, _ = _make()

    created = asyncio.run(dedup.resolve(_candidate()))
    clock.now = NOW + timedelta(seconds=240)
    asyncio.run(dedup.resolve(_candidate(offset=240)))
    clock.now = NOW + timedelta(seconds=360)
    merged = asyncio.run(
        dedup.resolve(_candidate(offset=360, level=InformationContent.COMPLETE, source=KATSYS, keyword="#R9012#KTP"))
    )

    assert merged.action is ResolutionAction.MERGE
    assert merged.alert is created.alert
    assert merged.alert.keyword == "#R9012#KTP"
    assert len(storage.alerts) == 1


def test_suppression_compares_against_history_peak() -> None:
    dedup, storage, clock, _ = _make()

    asyncio.run(dedup.resolve(_candidate(level=InformationContent.ID)))
    clock.now = NOW + timedelta(seconds=20)
    merged = asyncio.run(dedup.resolve(_candidate(offset=20, level=InformationContent.COMPLETE, keyword="FIRE")))
    clock.now = NOW + timedelta(seconds=40)
    later = asyncio.run(dedup.resolve(_candidate(offset=40, level=InformationContent.KEYWORD, keyword="OTHER")))

    assert merged.action is ResolutionAction.MERGE
    assert later.action is ResolutionAction.SUPPRESS
    assert later.alert.keyword == "FIRE"


def test_history_without_alert_still_counts_as_repeat() -> None:
    storage = FakeStorage()
    storage.history.append(HistoryEntry(25123, InformationContent.KEYWORD, NOW - timedelta(seconds=30)))
    dedup, _, _, _ = _make(storage=storage)

    result = asyncio.run(dedup.resolve(_candidate(level=InformationContent.ID)))

    assert result.action is ResolutionAction.SUPPRESS
    assert result.alert is None
    assert storage.alerts == []


def test_chain_alert_is_loaded_from_storage_after_restart() -> None:
    storage = FakeStorage()
    first, _, _, _ = _make(storage=storage)
    created = asyncio.run(first.resolve(_candidate()))

    restarted, _, clock, _ = _make(storage=storage)
    clock.now = NOW + timedelta(seconds=240)
    result = asyncio.run(restarted.resolve(_candidate(offset=240, level=InformationContent.KEYWORD, keyword="FIRE")))

    assert result.action is ResolutionAction.MERGE
    assert result.alert.alert_id == created.alert.alert_id
    assert len(storage.alerts) == 1


def test_failed_create_commits_nothing() -> None:
    storage = FakeStorage()
    storage.fail_add_history = True
    dedup, _, clock, _ = _make(storage=storage)

    with pytest.raises(StorageError):
        asyncio.run(dedup.resolve(_candidate()))

    storage.fail_add_history = False
    clock.now = NOW + timedelta(seconds=5)
    retry = asyncio.run(dedup.resolve(_candidate(offset=5)))

    assert retry.action is ResolutionAction.CREATE
    assert len(storage.alerts) == 1
    assert len(storage.history) == 1


def test_failed_merge_leaves_live_alert_untouched() -> None:
    bus = EventBus()
    updates = []

    async def on_update(event):
        updates.append(event.alert)

    bus.subscribe(AlertUpdated, on_update)
    dedup, storage, clock, _ = _make(bus=bus)
    created = asyncio.run(dedup.resolve(_candidate()))

    storage.fail_save_alert = True
    clock.now = NOW + timedelta(seconds=20)
    richer = _candidate(offset=20, level=InformationContent.COMPLETE, source=KATSYS, keyword="#R9012#KTP")
    with pytest.raises(StorageError):
        asyncio.run(dedup.resolve(richer))

    assert created.alert.keyword == ""
    assert created.alert.information_content is InformationContent.ID
    assert [s.source_id for s in created.alert.sources] == ["north"]
    assert updates == []

    storage.fail_save_alert = False
    assert asyncio.run(dedup.resolve(richer)).action is ResolutionAction.MERGE
    assert created.alert.keyword == "#R9012#KTP"
