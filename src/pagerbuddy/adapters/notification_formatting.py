"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
from datetime import timezone, tzinfo
from typing import List

from pagerbuddy.core.models import (
    CONFIDENTIAL_TEXT,
    CONFIDENTIAL_UNIT_CODE,
    Alert,
    AlertResponse,
    InformationContent,
)
from pagerbuddy.core.responses import render_summary

DIVIDER = "──────────────"
KEYBOARD_COLUMNS = 3


def unit_label(alert: Alert, confidential: bool = False) -> str:
    """Return the unit as shown to humans: name with code, or just the code."""

    if confidential:
        return str(CONFIDENTIAL_UNIT_CODE)
    unit = alert.unit
    if unit.name:
        return f"{unit.name} ({unit.code})"
    return str(unit.code)


def _alert_lines(alert: Alert, zone: tzinfo, confidential: bool, as_html: bool) -> List[str]:
    escape = html.escape if as_html else str
    timestamp = alert.timestamp.astimezone(zone).strftime("%H:%M:%S %d-%m-%Y")
    keyword, message, location = alert.keyword, alert.message, alert.location
    if confidential:
        keyword, message, location = CONFIDENTIAL_TEXT, "", ""

    title = "Test alert" if alert.is_silent_alert else "ALERT"
    if alert.is_manual_alert:
        title += " (manual)"

    heading = f"<b>{title}</b>" if as_html else title
    lines = [
        f"[{escape(timestamp)}]",
        f"{heading} {escape(unit_label(alert, confidential))}",
        DIVIDER,
    ]
    if keyword:
        lines.append(escape(keyword))
    elif alert.information_content <= InformationContent.ID:
        lines.append("No details yet")
    if message:
        lines.extend(["", escape(message)])
    if location:
        lines.extend(["", escape(location)])
    lines.append(DIVIDER)
    return lines


def format_alert(alert: Alert, zone: tzinfo = timezone.utc, confidential: bool = False, mode: str = "html") -> str:
    """Return the alert message formatted for the requested mode."""

    if mode == "html":
        return "\n".join(_alert_lines(alert, zone, confidential, True))
    if mode == "plain":
        return "\n".join(_alert_lines(alert, zone, confidential, False))
    raise ValueError(f"Unsupported notification format: {mode}")


def format_response_overview(
    alert_response: AlertResponse,
    zone: tzinfo = timezone.utc,
    confidential: bool = False,
) -> str:
    """HTML response overview for a group chat."""

    alert = alert_response.alert
    header = f"<b>{html.escape(alert_response.group.name)}</b> - {html.escape(unit_label(alert, confidential))}"
    description = alert_response.group.response_configuration.description
    parts = [header]
    if description:
        parts.append(html.escape(description))
    parts.extend([DIVIDER, html.escape(render_summary(alert_response, zone))])
    return "\n".join(parts)


def reply_callback_data(alert_response_id: int, option_id: int) -> str:
    return f"reply#{alert_response_id}#%{option_id}%"


def build_reply_keyboard(alert_response: AlertResponse) -> List[List[dict]]:
    """Inline keyboard rows for the group's response options."""

    configuration = alert_response.group.response_configuration
    if not configuration.allow_responses or alert_response.alert_response_id is None:
        return []
    buttons = [
        {"text": option.label, "callback_data": reply_callback_data(alert_response.alert_response_id, option.option_id)}
        for option in configuration.sorted_options()
    ]
    return [buttons[index : index + KEYBOARD_COLUMNS] for index in range(0, len(buttons), KEYBOARD_COLUMNS)]
