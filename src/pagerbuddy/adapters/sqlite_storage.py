"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database. Queries are
blocking, so every port method runs them in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from pagerbuddy.core.directory import Directory
from pagerbuddy.core.errors import StorageError
from pagerbuddy.core.models import (
    Alert,
    AlertResponse,
    Group,
    HistoryEntry,
    InformationContent,
    UserResponse,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _ts(value: datetime) -> str:
    # One fixed UTC format keeps string comparison equal to time comparison.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str, directory: Directory) -> None:
        self._db_path = db_path
        self._directory = directory

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _run(self, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StorageError(f"{func.__name__} failed: {exc}") from exc

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - alerts / alert_sources: canonical alerts and their corroborating sources
        - alert_history: dedup lookback facts, purged lazily
        - alert_responses: one row per (alert, group)
        - user_responses: at most one row per (alert response, user)
        - chat_migrations: old chat id -> new chat id, applied at startup
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    unit_code INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    information_content INTEGER NOT NULL,
                    keyword TEXT NOT NULL DEFAULT '',
                    message TEXT NOT NULL DEFAULT '',
                    location TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_unit_ts ON alerts (unit_code, timestamp)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_sources (
                    alert_id INTEGER NOT NULL REFERENCES alerts (id) ON DELETE CASCADE,
                    source_id TEXT NOT NULL,
                    PRIMARY KEY (alert_id, source_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    unit_code INTEGER NOT NULL,
                    information_content INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    alert_id INTEGER
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(alert_history)")}
            if "alert_id" not in columns:
                conn.execute("ALTER TABLE alert_history ADD COLUMN alert_id INTEGER")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_unit_ts ON alert_history (unit_code, timestamp)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id INTEGER NOT NULL REFERENCES alerts (id) ON DELETE CASCADE,
                    group_id TEXT NOT NULL,
                    UNIQUE (alert_id, group_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_response_id INTEGER NOT NULL REFERENCES alert_responses (id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    option_id INTEGER NOT NULL,
                    sink_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    UNIQUE (alert_response_id, user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_migrations (
                    old_chat_id TEXT PRIMARY KEY,
                    new_chat_id TEXT NOT NULL
                )
                """
            )

    # History -----------------------------------------------------------

    def _purge_history(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_history WHERE timestamp < ?", (_ts(before),))
            return cur.rowcount

    async def purge_history(self, before: datetime) -> int:
        return await self._run(self._purge_history, before)

    def _get_history(self, unit_code: int, since: datetime) -> List[HistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT unit_code, information_content, timestamp, alert_id FROM alert_history
                WHERE unit_code = ? AND timestamp >= ?
                ORDER BY timestamp
                """,
                (unit_code, _ts(since)),
            ).fetchall()
        return [
            HistoryEntry(
                row["unit_code"],
                InformationContent(row["information_content"]),
                _parse_ts(row["timestamp"]),
                row["alert_id"],
            )
            for row in rows
        ]

    async def get_history(self, unit_code: int, since: datetime) -> List[HistoryEntry]:
        return await self._run(self._get_history, unit_code, since)

    @staticmethod
    def _insert_history(conn: sqlite3.Connection, entry: HistoryEntry, alert_id: Optional[int]) -> None:
        conn.execute(
            "INSERT INTO alert_history (unit_code, information_content, timestamp, alert_id) VALUES (?, ?, ?, ?)",
            (entry.unit_code, int(entry.information_content), _ts(entry.timestamp), alert_id),
        )

    def _add_history(self, entry: HistoryEntry) -> None:
        with self._connect() as conn:
            self._insert_history(conn, entry, entry.alert_id)

    async def add_history(self, entry: HistoryEntry) -> None:
        await self._run(self._add_history, entry)

    # Alerts ------------------------------------------------------------

    def _alert_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Alert:
        source_ids = [
            item["source_id"]
            for item in conn.execute(
                "SELECT source_id FROM alert_sources WHERE alert_id = ? ORDER BY rowid", (row["id"],)
            )
        ]
        sources = [source for source in map(self._directory.source, source_ids) if source is not None]
        return Alert(
            unit=self._directory.unit_for_code(row["unit_code"]),
            timestamp=_parse_ts(row["timestamp"]),
            information_content=InformationContent(row["information_content"]),
            keyword=row["keyword"],
            message=row["message"],
            location=row["location"],
            sources=sources,
            alert_id=row["id"],
        )

    def _find_alert(self, unit_code: int, since: datetime) -> Optional[Alert]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM alerts WHERE unit_code = ? AND timestamp >= ?
                ORDER BY timestamp DESC, id DESC LIMIT 1
                """,
                (unit_code, _ts(since)),
            ).fetchone()
            return self._alert_from_row(conn, row) if row else None

    async def find_alert(self, unit_code: int, since: datetime) -> Optional[Alert]:
        return await self._run(self._find_alert, unit_code, since)

    def _get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            return self._alert_from_row(conn, row) if row else None

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        return await self._run(self._get_alert, alert_id)

    @staticmethod
    def _write_alert(conn: sqlite3.Connection, alert: Alert) -> int:
        values = (
            alert.unit.code,
            _ts(alert.timestamp),
            int(alert.information_content),
            alert.keyword,
            alert.message,
            alert.location,
        )
        if alert.alert_id is None:
            cur = conn.execute(
                """
                INSERT INTO alerts (unit_code, timestamp, information_content, keyword, message, location)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            alert_id = cur.lastrowid
        else:
            alert_id = alert.alert_id
            conn.execute(
                """
                UPDATE alerts SET unit_code = ?, timestamp = ?, information_content = ?,
                    keyword = ?, message = ?, location = ?
                WHERE id = ?
                """,
                (*values, alert_id),
            )
        conn.executemany(
            "INSERT OR IGNORE INTO alert_sources (alert_id, source_id) VALUES (?, ?)",
            [(alert_id, source.source_id) for source in alert.sources],
        )
        return alert_id

    def _save_alert(self, alert: Alert) -> Alert:
        with self._connect() as conn:
            alert_id = self._write_alert(conn, alert)
        # Only set after commit so a failed insert leaves the alert unsaved.
        alert.alert_id = alert_id
        return alert

    async def save_alert(self, alert: Alert) -> Alert:
        return await self._run(self._save_alert, alert)

    def _save_alert_with_history(self, alert: Alert, entry: HistoryEntry) -> Alert:
        # One transaction: the connection context rolls both writes back on error.
        with self._connect() as conn:
            alert_id = self._write_alert(conn, alert)
            self._insert_history(conn, entry, alert_id)
        alert.alert_id = alert_id
        return alert

    async def save_alert_with_history(self, alert: Alert, entry: HistoryEntry) -> Alert:
        return await self._run(self._save_alert_with_history, alert, entry)

    def _count_alerts(self, unit_code: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM alerts WHERE unit_code = ?", (unit_code,)).fetchone()
        return int(row["n"])

    async def count_alerts(self, unit_code: int) -> int:
        return await self._run(self._count_alerts, unit_code)

    # Responses ---------------------------------------------------------

    def _load_user_responses(self, conn: sqlite3.Connection, alert_response_id: int) -> List[UserResponse]:
        responses = []
        rows = conn.execute(
            "SELECT * FROM user_responses WHERE alert_response_id = ? ORDER BY timestamp, id",
            (alert_response_id,),
        )
        for row in rows:
            user = self._directory.user(row["user_id"])
            option = self._directory.option(row["option_id"])
            if user is None or option is None:
                LOGGER.debug("Skipping response %s with unknown user or option", row["id"])
                continue
            responses.append(
                UserResponse(
                    user=user,
                    option=option,
                    sink_id=row["sink_id"],
                    timestamp=_parse_ts(row["timestamp"]),
                    response_id=row["id"],
                )
            )
        return responses

    def _get_or_create_alert_response(self, alert: Alert, group: Group) -> AlertResponse:
        if alert.alert_id is None:
            raise sqlite3.IntegrityError("alert must be saved before it can be responded to")
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO alert_responses (alert_id, group_id) VALUES (?, ?)",
                (alert.alert_id, group.group_id),
            )
            row = conn.execute(
                "SELECT id FROM alert_responses WHERE alert_id = ? AND group_id = ?",
                (alert.alert_id, group.group_id),
            ).fetchone()
            responses = self._load_user_responses(conn, row["id"])
        return AlertResponse(alert=alert, group=group, responses=responses, alert_response_id=row["id"])

    async def get_or_create_alert_response(self, alert: Alert, group: Group) -> AlertResponse:
        return await self._run(self._get_or_create_alert_response, alert, group)

    def _get_alert_response(self, alert_response_id: int) -> Optional[AlertResponse]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM alert_responses WHERE id = ?", (alert_response_id,)).fetchone()
            if row is None:
                return None
            group = self._directory.group(row["group_id"])
            alert_row = conn.execute("SELECT * FROM alerts WHERE id = ?", (row["alert_id"],)).fetchone()
            if group is None or alert_row is None:
                return None
            return AlertResponse(
                alert=self._alert_from_row(conn, alert_row),
                group=group,
                responses=self._load_user_responses(conn, alert_response_id),
                alert_response_id=alert_response_id,
            )

    async def get_alert_response(self, alert_response_id: int) -> Optional[AlertResponse]:
        return await self._run(self._get_alert_response, alert_response_id)

    def _save_user_response(self, alert_response: AlertResponse, response: UserResponse) -> UserResponse:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_responses (alert_response_id, user_id, option_id, sink_id, timestamp)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(alert_response_id, user_id) DO UPDATE SET
                    option_id = excluded.option_id,
                    sink_id = excluded.sink_id,
                    timestamp = excluded.timestamp
                """,
                (
                    alert_response.alert_response_id,
                    response.user.user_id,
                    response.option.option_id,
                    response.sink_id,
                    _ts(response.timestamp),
                ),
            )
            row = conn.execute(
                "SELECT id FROM user_responses WHERE alert_response_id = ? AND user_id = ?",
                (alert_response.alert_response_id, response.user.user_id),
            ).fetchone()
        return UserResponse(
            user=response.user,
            option=response.option,
            sink_id=response.sink_id,
            timestamp=response.timestamp,
            response_id=row["id"],
        )

    async def save_user_response(self, alert_response: AlertResponse, response: UserResponse) -> UserResponse:
        return await self._run(self._save_user_response, alert_response, response)

    # Chat migrations ---------------------------------------------------

    def _save_chat_migration(self, old_chat_id: str, new_chat_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_migrations (old_chat_id, new_chat_id) VALUES (?, ?)
                ON CONFLICT(old_chat_id) DO UPDATE SET new_chat_id = excluded.new_chat_id
                """,
                (str(old_chat_id), str(new_chat_id)),
            )

    async def save_chat_migration(self, old_chat_id: str, new_chat_id: str) -> None:
        await self._run(self._save_chat_migration, old_chat_id, new_chat_id)

    def load_chat_migrations(self) -> List[tuple[str, str]]:
        """Return stored (old, new) chat id pairs, oldest first."""

        with self._connect() as conn:
            rows = conn.execute("SELECT old_chat_id, new_chat_id FROM chat_migrations ORDER BY rowid").fetchall()
        return [(row["old_chat_id"], row["new_chat_id"]) for row in rows]
