from __future__ import annotations

import asyncio
from datetime import time, timedelta

from fakes import NOW, FakeStorage
from pagerbuddy.adapters.telegram_sink import TelegramSink
from pagerbuddy.core.config import DeliveryConfig, ResponseOverviewConfig
from pagerbuddy.core.directory import Directory
from pagerbuddy.core.errors import ForbiddenError, TargetMigratedError
from pagerbuddy.core.events import AlertResponseUpdated, EventBus
from pagerbuddy.core.models import (
    Alert,
    AlertResponse,
    AlertSink,
    DeliveryTarget,
    Group,
    InformationContent,
    ResponseConfiguration,
    ResponseOption,
    ResponseType,
    SinkKind,
    Unit,
    UnitSubscription,
    User,
    UserResponse,
)
from pagerbuddy.core.queue import DeliveryQueue
from pagerbuddy.core.silent import SilentTime

ENGINE = Unit(25123, "Engine 1")
FIVE = ResponseOption(1, "5 min", ResponseType.CONFIRM, timedelta(minutes=5))
ALICE = User("alice", "Alice", "alice_ff")


class FakeApi:
    def __init__(self, failures=None) -> None:
        self.failures = {key: list(value) for key, value in (failures or {}).items()}
        self.sent = []
        self.edits = []
        self.pins = []

    def _maybe_fail(self, chat_id):
        pending = self.failures.get(chat_id)
        if pending:
            raise pending.pop(0)

    async def send_message(self, chat_id, text, disable_notification=False, reply_markup=None):
        self._maybe_fail(chat_id)
        self.sent.append(
            {"chat_id": chat_id, "text": text, "silent": disable_notification, "keyboard": reply_markup}
        )
        return len(self.sent)

    async def edit_message_text(self, chat_id, message_id, text, reply_markup=None):
        self.edits.append((chat_id, message_id, text))
        return message_id

    async def pin_chat_message(self, chat_id, message_id):
        self.pins.append(("pin", chat_id, message_id))
        return message_id

    async def unpin_chat_message(self, chat_id, message_id):
        self.pins.append(("unpin", chat_id, message_id))
        return message_id


def _setup(api, unit=ENGINE, allow_responses=True, deactivate=False, pin=False):
    chat = AlertSink("engine-chat", SinkKind.TELEGRAM, "-100", subscriptions=(UnitSubscription(unit),))
    group = Group(
        "engine",
        "Engine",
        units=(unit,),
        members=(ALICE,),
        response_configuration=ResponseConfiguration("Who comes?", allow_responses, (FIVE,)),
        sinks=(chat,),
    )
    storage = FakeStorage()
    bus = EventBus()
    queue = DeliveryQueue("telegram", DeliveryConfig())
    overview = ResponseOverviewConfig(react_timeout=timedelta(0), pin_messages=pin)
    sink = TelegramSink(
        api,
        queue,
        Directory(units=[unit], users=[ALICE], groups=[group]),
        storage,
        bus,
        overview,
        deactivate_blocked_sinks=deactivate,
        clock=lambda: NOW + timedelta(minutes=1),
    )
    alert = Alert(unit=unit, timestamp=NOW, information_content=InformationContent.ID, alert_id=1)
    target = DeliveryTarget(chat, AlertResponse(alert, group, alert_response_id=7))
    return sink, queue, bus, storage, target


async def _settle(queue: DeliveryQueue) -> None:
    await asyncio.sleep(0.05)
    await queue.drain()


def test_alert_and_overview_are_sent_to_group_chat() -> None:
    api = FakeApi()

    async def scenario():
        sink, queue, _, _, target = _setup(api)
        queue.start()
        await sink.send_alert(target)
        sink.close()
        await queue.stop()

    asyncio.run(scenario())

    alert_message, overview_message = api.sent
    assert "<b>ALERT</b> Engine 1 (25123)" in alert_message["text"]
    assert alert_message["silent"] is False
    assert "Who comes?" in overview_message["text"]
    assert overview_message["keyboard"] == [[{"text": "5 min", "callback_data": "reply#7#%1%"}]]


def test_silent_alert_is_sent_without_notification() -> None:
    api = FakeApi()
    quiet = Unit(25123, "Engine 1", silent=SilentTime(time(9, 0), time(11, 0)))

    async def scenario():
        sink, queue, _, _, target = _setup(api, unit=quiet, allow_responses=False)
        queue.start()
        await sink.send_alert(target)
        sink.close()
        await queue.stop()

    asyncio.run(scenario())

    assert len(api.sent) == 1
    assert api.sent[0]["silent"] is True
    assert api.sent[0]["text"].splitlines()[1].startswith("<b>Test alert</b>")


def test_merge_and_response_edit_existing_messages() -> None:
    api = FakeApi()

    async def scenario():
        sink, queue, bus, _, target = _setup(api)
        queue.start()
        await sink.send_alert(target)

        alert_response = target.alert_response
        alert_response.alert.keyword = "#R9012#KTP"
        alert_response.alert.information_content = InformationContent.COMPLETE
        await bus.publish(AlertResponseUpdated(alert_response))
        await _settle(queue)
        after_merge = list(api.edits)

        alert_response.user_responded(UserResponse(ALICE, FIVE, "engine-chat", NOW))
        await bus.publish(AlertResponseUpdated(alert_response))
        await _settle(queue)

        sink.close()
        await queue.stop()
        return after_merge

    after_merge = asyncio.run(scenario())

    assert len(after_merge) == 1
    assert after_merge[0][1] == 1
    assert "#R9012#KTP" in after_merge[0][2]
    overview_edit = api.edits[-1]
    assert overview_edit[1] == 2
    assert "- Alice (5 min) ETA 10:05" in overview_edit[2]


def test_pinned_overview() -> None:
    api = FakeApi()

    async def scenario():
        sink, queue, _, _, target = _setup(api, pin=True)
        queue.start()
        await sink.send_alert(target)
        await queue.drain()
        sink.close()
        await queue.stop()

    asyncio.run(scenario())

    assert api.pins[0] == ("pin", "-100", 2)


def test_migrated_chat_is_remembered() -> None:
    api = FakeApi({"-100": [TargetMigratedError("group upgraded", "-100200")]})

    async def scenario():
        sink, queue, _, storage, target = _setup(api)
        queue.start()
        await sink.send_alert(target)
        sink.close()
        await queue.stop()
        return storage, target

    storage, target = asyncio.run(scenario())

    assert storage.migrations == [("-100", "-100200")]
    assert target.sink.target == "-100200"
    assert [message["chat_id"] for message in api.sent] == ["-100200", "-100200"]


def test_blocked_chat_deactivates_sink_when_configured() -> None:
    api = FakeApi({"-100": [ForbiddenError("bot was kicked")]})

    async def scenario():
        sink, queue, _, _, target = _setup(api, deactivate=True)
        queue.start()
        await sink.send_alert(target)
        sink.close()
        await queue.stop()
        return target

    target = asyncio.run(scenario())

    assert target.sink.active is False
    assert api.sent == []
