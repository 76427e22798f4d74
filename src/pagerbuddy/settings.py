"""Static configuration for pagerbuddy.

All user-editable settings (units, groups, sinks, dedup, delivery) live in a
single JSON file for quick edits without touching Python. Secrets stay in
the environment.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pagerbuddy.core.config import DedupConfig, DeliveryConfig, HealthConfig, ResponseOverviewConfig
from pagerbuddy.core.directory import Directory, build_directory
from pagerbuddy.core.errors import ConfigError

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

# config.json sits next to the project; PAGERBUDDY_CONFIG points elsewhere.
CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")


@dataclass(frozen=True)
class TelegramSettings:
    enabled: bool = False
    send_rate_per_second: int = 10
    log_target_chat_ids: List[str] = field(default_factory=list)
    log_level: str = "WARNING"
    deactivate_blocked_sinks: bool = False
    overview: ResponseOverviewConfig = field(default_factory=ResponseOverviewConfig)


@dataclass(frozen=True)
class PushSettings:
    enabled: bool = False
    endpoint: str = ""
    send_rate_per_second: int = 50


@dataclass(frozen=True)
class WebhookSettings:
    enabled: bool = True
    send_rate_per_second: int = 5


@dataclass
class AppSettings:
    config_path: str
    db_path: str
    time_zone: ZoneInfo
    confidential_mode: bool
    dedup: DedupConfig
    delivery: DeliveryConfig
    health: HealthConfig
    telegram: TelegramSettings
    push: PushSettings
    webhook: WebhookSettings
    directory: Directory
    logging: dict
    raw: dict


def _load_json_config(path: str) -> dict:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            return json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path} is not valid JSON: {exc}") from exc


def _number(section: dict, key: str, default, prefix: str, minimum: float = 0):
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigError(f"{prefix}.{key} must be a number >= {minimum}, got {value!r}")
    return value


def _millis(section: dict, key: str, default_ms: int, prefix: str) -> timedelta:
    return timedelta(milliseconds=_number(section, key, default_ms, prefix))


def _resolve_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


def _time_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"alert_time_zone is not a known time zone: {name!r}") from exc


def load_settings(path: Optional[str] = None) -> AppSettings:
    """Load and validate config.json into an AppSettings instance."""

    config_path = path or os.getenv("PAGERBUDDY_CONFIG") or CONFIG_PATH
    raw = _load_json_config(config_path)

    zone = _time_zone(str(raw.get("alert_time_zone", "UTC")))

    dedup_raw = raw.get("dedup", {})
    dedup = DedupConfig(
        double_alert_timeout=_millis(dedup_raw, "double_alert_timeout_ms", 300_000, "dedup"),
        stale_after=_millis(dedup_raw, "stale_after_ms", 120_000, "dedup"),
    )

    delivery_raw = raw.get("delivery", {})
    delivery = DeliveryConfig(
        rate_limit=int(_number(delivery_raw, "rate_limit", 10, "delivery", minimum=1)),
        rate_window=float(_number(delivery_raw, "rate_window_seconds", 1.0, "delivery")),
        default_pause=float(_number(delivery_raw, "default_pause_seconds", 10.0, "delivery")),
        alert_max_latency=_millis(delivery_raw, "alert_max_latency_ms", 120_000, "delivery"),
        standard_max_latency=_millis(delivery_raw, "standard_max_latency_ms", 600_000, "delivery"),
    )

    health_raw = raw.get("health", {})
    health = HealthConfig(
        check_interval=float(_number(health_raw, "check_interval_seconds", 10.0, "health", minimum=1)),
        status_timeout=_millis(health_raw, "status_timeout_ms", 30_000, "health"),
        alert_timeout=_millis(health_raw, "alert_timeout_ms", 3 * 60 * 60 * 1000, "health"),
    )

    telegram_raw = raw.get("telegram", {})
    overview_raw = telegram_raw.get("response_overview", {})
    telegram = TelegramSettings(
        enabled=bool(telegram_raw.get("enabled", False)),
        send_rate_per_second=int(_number(telegram_raw, "send_rate_per_second", 10, "telegram", minimum=1)),
        log_target_chat_ids=[str(chat_id) for chat_id in telegram_raw.get("log_target_chat_ids", [])],
        log_level=str(telegram_raw.get("log_level", "WARNING")).upper(),
        deactivate_blocked_sinks=bool(telegram_raw.get("deactivate_blocked_sinks", False)),
        overview=ResponseOverviewConfig(
            cooldown=_millis(overview_raw, "cooldown_ms", 15 * 60 * 1000, "telegram.response_overview"),
            react_timeout=_millis(overview_raw, "react_timeout_ms", 3_000, "telegram.response_overview"),
            pin_messages=bool(overview_raw.get("pin_messages", False)),
        ),
    )

    push_raw = raw.get("push", {})
    push = PushSettings(
        enabled=bool(push_raw.get("enabled", False)),
        endpoint=str(push_raw.get("endpoint", "")),
        send_rate_per_second=int(_number(push_raw, "send_rate_per_second", 50, "push", minimum=1)),
    )
    if push.enabled and not push.endpoint:
        raise ConfigError("push.endpoint is required when push.enabled is true")

    webhook_raw = raw.get("webhook", {})
    webhook = WebhookSettings(
        enabled=bool(webhook_raw.get("enabled", True)),
        send_rate_per_second=int(_number(webhook_raw, "send_rate_per_second", 5, "webhook", minimum=1)),
    )

    return AppSettings(
        config_path=config_path,
        db_path=_resolve_path(str(raw.get("database", "pagerbuddy.db"))),
        time_zone=zone,
        confidential_mode=bool(raw.get("confidential_mode", False)),
        dedup=dedup,
        delivery=delivery,
        health=health,
        telegram=telegram,
        push=push,
        webhook=webhook,
        directory=build_directory(raw, zone),
        logging=raw.get("logging", {}),
        raw=raw,
    )
