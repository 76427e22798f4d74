"""Application entry point for the pagerbuddy alert server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

from art import tprint
from dotenv import load_dotenv

from pagerbuddy import settings as settings_module
from pagerbuddy.adapters.log_forwarding import TelegramLogHandler
from pagerbuddy.adapters.manual_source import ManualAlertSource
from pagerbuddy.adapters.push_sink import PushSink
from pagerbuddy.adapters.sqlite_storage import SQLiteStorage
from pagerbuddy.adapters.telegram_bot_api import TelegramBotApi
from pagerbuddy.adapters.telegram_sink import TelegramSink
from pagerbuddy.adapters.telegram_updates import ReplyButtonHandler
from pagerbuddy.adapters.webhook_sink import LoggingSink, WebhookSink
from pagerbuddy.client import bot_token_from_env, build_client
from pagerbuddy.core.config import DeliveryConfig
from pagerbuddy.core.dedup import AlertDeduplicator
from pagerbuddy.core.directory import MANUAL_SOURCE_ID
from pagerbuddy.core.events import EventBus
from pagerbuddy.core.health import HealthMonitor
from pagerbuddy.core.models import SinkKind
from pagerbuddy.core.processor import AlertProcessor
from pagerbuddy.core.queue import DeliveryQueue
from pagerbuddy.core.responses import ResponseTracker
from pagerbuddy.core.routing import AlertRouter
from pagerbuddy.settings import AppSettings

NAME = "PAGERBUDDY"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", ["BOT_TOKEN", "API_HASH", "PUSH_API_KEY"]):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: dict) -> Optional[logging.Formatter]:
    if not config.get("enabled", True):
        return None

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/pagerbuddy.log")
        if not os.path.isabs(path):
            path = os.path.join(settings_module.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if handlers:
        logging.basicConfig(level=level, handlers=handlers)
    return formatter


def _queue_config(base: DeliveryConfig, per_second: int) -> DeliveryConfig:
    return DeliveryConfig(
        rate_limit=per_second,
        rate_window=base.rate_window,
        default_pause=base.default_pause,
        alert_max_latency=base.alert_max_latency,
        standard_max_latency=base.standard_max_latency,
    )


@dataclass
class Services:
    """Everything one process wires together; built by ``build_services``."""

    settings: AppSettings
    events: EventBus
    storage: SQLiteStorage
    tracker: ResponseTracker
    processor: AlertProcessor
    manual: ManualAlertSource
    queues: Dict[str, DeliveryQueue] = field(default_factory=dict)
    telegram: Optional[TelegramSink] = None
    health: Optional[HealthMonitor] = None

    def start(self) -> None:
        for queue in self.queues.values():
            queue.start()

    async def notify_log_chats(self, text: str) -> None:
        if self.telegram is None:
            return
        for chat_id in self.settings.telegram.log_target_chat_ids:
            await self.telegram.send_text(chat_id, text)

    async def stop(self) -> None:
        if self.health is not None:
            await self.health.stop()
        if self.telegram is not None:
            self.telegram.close()
        await self.manual.stop()
        for queue in self.queues.values():
            await queue.stop()


def build_services(app_settings: AppSettings, bot_token: Optional[str] = None) -> Services:
    """Wire storage, core services and sink adapters. Must run inside the event loop."""

    directory = app_settings.directory
    events = EventBus()

    storage = SQLiteStorage(app_settings.db_path, directory)
    storage.init_db()
    for old_chat_id, new_chat_id in storage.load_chat_migrations():
        directory.migrate_chat_id(old_chat_id, new_chat_id)

    tracker = ResponseTracker(storage, directory, events)
    deduplicator = AlertDeduplicator(storage, directory, app_settings.dedup, events)
    router = AlertRouter(storage, directory, tracker)

    queues: Dict[str, DeliveryQueue] = {}
    sinks = {SinkKind.DEFAULT: LoggingSink(app_settings.confidential_mode)}
    telegram_sink: Optional[TelegramSink] = None

    if app_settings.telegram.enabled and bot_token:
        queue = queues["telegram"] = DeliveryQueue(
            "telegram", _queue_config(app_settings.delivery, app_settings.telegram.send_rate_per_second)
        )
        telegram_sink = TelegramSink(
            TelegramBotApi(bot_token),
            queue,
            directory,
            storage,
            events,
            app_settings.telegram.overview,
            zone=app_settings.time_zone,
            confidential=app_settings.confidential_mode,
            deactivate_blocked_sinks=app_settings.telegram.deactivate_blocked_sinks,
        )
        sinks[SinkKind.TELEGRAM] = telegram_sink
    elif app_settings.telegram.enabled:
        LOGGER.warning("Telegram is enabled but BOT_TOKEN is missing; Telegram sinks are skipped")

    if app_settings.push.enabled:
        queue = queues["push"] = DeliveryQueue(
            "push", _queue_config(app_settings.delivery, app_settings.push.send_rate_per_second)
        )
        sinks[SinkKind.APP] = PushSink(
            app_settings.push.endpoint,
            queue,
            api_key=os.getenv("PUSH_API_KEY"),
            confidential=app_settings.confidential_mode,
        )

    if app_settings.webhook.enabled:
        queue = queues["webhook"] = DeliveryQueue(
            "webhook", _queue_config(app_settings.delivery, app_settings.webhook.send_rate_per_second)
        )
        sinks[SinkKind.WEBHOOK] = WebhookSink(queue)

    processor = AlertProcessor(deduplicator, router, sinks)
    manual_source = directory.source(MANUAL_SOURCE_ID)
    services = Services(
        settings=app_settings,
        events=events,
        storage=storage,
        tracker=tracker,
        processor=processor,
        manual=ManualAlertSource(manual_source),
        queues=queues,
        telegram=telegram_sink,
    )
    services.health = HealthMonitor(directory, queues, app_settings.health, notify=services.notify_log_chats)
    return services


def _install_log_forwarding(services: Services, formatter: Optional[logging.Formatter]) -> None:
    telegram = services.settings.telegram
    if services.telegram is None or not telegram.log_target_chat_ids:
        return
    handler = TelegramLogHandler(
        services.telegram.send_text,
        telegram.log_target_chat_ids,
        level=getattr(logging, telegram.log_level, logging.WARNING),
        loop=asyncio.get_running_loop(),
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    logging.getLogger().addHandler(handler)


async def _serve(app_settings: AppSettings, formatter: Optional[logging.Formatter]) -> None:
    bot_token = bot_token_from_env() if app_settings.telegram.enabled else None
    services = build_services(app_settings, bot_token)
    services.start()
    await services.manual.start(services.processor.handle)
    _install_log_forwarding(services, formatter)
    if services.health is not None:
        services.health.start()

    try:
        if services.telegram is not None:
            client = build_client()
            await client.start(bot_token=bot_token)
            ReplyButtonHandler(services.tracker).register(client)
            LOGGER.info("Bot connected. Listening for reply buttons...")
            await client.run_until_disconnected()
        else:
            LOGGER.info("Running without Telegram. Press Ctrl+C to stop.")
            await asyncio.Event().wait()
    finally:
        await services.stop()


def _run(config_path: Optional[str]) -> None:
    _print_banner()
    app_settings = settings_module.load_settings(config_path)
    formatter = _configure_logging(app_settings.logging)
    LOGGER.info("Starting pagerbuddy with %d unit(s), %d group(s)",
                len(app_settings.directory.units), len(app_settings.directory.groups))
    try:
        asyncio.run(_serve(app_settings, formatter))
    except KeyboardInterrupt:
        LOGGER.info("Stopped")


async def _trigger_once(app_settings: AppSettings, args: argparse.Namespace) -> None:
    bot_token = bot_token_from_env() if app_settings.telegram.enabled else None
    services = build_services(app_settings, bot_token)
    services.start()
    await services.manual.start(services.processor.handle)
    try:
        resolution = await services.manual.trigger(args.unit_code, args.keyword, args.message, args.location)
        print(f"{resolution.action.value}: alert {resolution.alert.alert_id if resolution.alert else '-'}")
        for queue in services.queues.values():
            await queue.drain()
    finally:
        await services.stop()


def _trigger(config_path: Optional[str], args: argparse.Namespace) -> None:
    app_settings = settings_module.load_settings(config_path)
    _configure_logging(app_settings.logging)
    asyncio.run(_trigger_once(app_settings, args))


def _check_config(config_path: Optional[str]) -> None:
    app_settings = settings_module.load_settings(config_path)
    directory = app_settings.directory
    sinks = list(directory.iter_sinks())
    print(f"Config: {app_settings.config_path}")
    print(f"Time zone: {app_settings.time_zone.key}")
    print(f"Double alert window: {app_settings.dedup.double_alert_timeout}")
    print(f"Units: {len(directory.units)}  Sources: {len(directory.sources)}  "
          f"Users: {len(directory.users)}  Groups: {len(directory.groups)}  Sinks: {len(sinks)}")
    for kind in SinkKind:
        count = sum(1 for sink in sinks if sink.kind is kind)
        if count:
            print(f"  {kind.value}: {count}")
    print("OK")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="pagerbuddy")
    parser.add_argument("--config", help="Path to config.json (default: PAGERBUDDY_CONFIG or ./config.json)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the alert server")
    trigger = subparsers.add_parser("trigger", help="Send one manual alert through the pipeline")
    trigger.add_argument("unit_code", type=int)
    trigger.add_argument("--keyword", default="")
    trigger.add_argument("--message", default="")
    trigger.add_argument("--location", default="")
    subparsers.add_parser("check-config", help="Validate config.json and print a summary")

    args = parser.parse_args(argv)
    if args.command == "trigger":
        _trigger(args.config, args)
        return
    if args.command == "check-config":
        _check_config(args.config)
        return
    _run(args.config)


if __name__ == "__main__":
    main()
