"""SQLite-backed repository.

Events and alerts are stored as JSON documents alongside the indexed
columns used for filtering. Alert updates are a conditional
``UPDATE ... WHERE version = ?`` so a lost race is detected by the row count
rather than by reading first.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from secwatch.errors import ConflictError, NotFoundError
from secwatch.models import (
    Alert,
    AlertRule,
    AlertStatus,
    AutoResolveRule,
    NotificationChannel,
    SecurityEvent,
)
from secwatch.store.db import Database
from secwatch.store.migrations import run_migrations
from secwatch.store.repository import (
    DEFAULT_PAGE_SIZE,
    AlertFilter,
    EventFilter,
    Page,
    clamp_paging,
)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp so lexical order equals time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SqliteRepository:
    """Persistent storage backend on a single SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self._db = Database(db_path)
        run_migrations(self._db)

    @property
    def db(self) -> Database:
        return self._db

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event(self, event: SecurityEvent) -> None:
        try:
            self._db.write(
                """INSERT INTO events
                   (id, type, source, severity, timestamp, related_user_address,
                    related_ip, related_session_id, data_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.id,
                    event.type,
                    event.source,
                    event.severity.value,
                    _ts(event.timestamp),
                    event.related_user_address,
                    event.related_ip,
                    event.related_session_id,
                    event.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(event.id, 0, 0) from exc

    def get_event(self, event_id: str) -> SecurityEvent | None:
        row = self._db.fetchone("SELECT data_json FROM events WHERE id = ?", (event_id,))
        return SecurityEvent.model_validate_json(row["data_json"]) if row else None

    def list_events(
        self, flt: EventFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        flt = flt or EventFilter()
        clauses: list[str] = []
        params: list[Any] = []
        for column in (
            "severity", "source", "type",
            "related_user_address", "related_ip", "related_session_id",
        ):
            value = getattr(flt, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(str(value))
        self._time_range(clauses, params, "timestamp", flt.start, flt.end)
        return self._page(
            "events", clauses, params, "timestamp", page, limit, SecurityEvent,
        )

    def events_between(self, start: datetime, end: datetime) -> list[SecurityEvent]:
        rows = self._db.fetchall(
            "SELECT data_json FROM events WHERE timestamp >= ? AND timestamp <= ? "
            "ORDER BY timestamp, id",
            (_ts(start), _ts(end)),
        )
        return [SecurityEvent.model_validate_json(r["data_json"]) for r in rows]

    def delete_events_before(self, cutoff: datetime) -> int:
        return self._db.write("DELETE FROM events WHERE timestamp < ?", (_ts(cutoff),))

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def add_alert(self, alert: Alert) -> Alert:
        stored = alert.model_copy(deep=True, update={"version": 1})
        try:
            self._db.write(
                """INSERT INTO alerts
                   (id, rule_id, alert_type, group_key, source, severity, status,
                    created_at, last_triggered_at, version, data_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    stored.id,
                    stored.rule_id,
                    stored.alert_type,
                    stored.group_key,
                    stored.source,
                    stored.severity.value,
                    stored.status.value,
                    _ts(stored.created_at),
                    _ts(stored.last_triggered_at),
                    stored.version,
                    stored.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            existing = self.find_active_alert(alert.rule_id, alert.group_key)
            raise ConflictError(
                existing.id if existing else alert.id, 0,
                existing.version if existing else None,
            ) from exc
        return stored

    def get_alert(self, alert_id: str) -> Alert | None:
        row = self._db.fetchone("SELECT data_json FROM alerts WHERE id = ?", (alert_id,))
        return Alert.model_validate_json(row["data_json"]) if row else None

    def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        stored = alert.model_copy(deep=True, update={"version": expected_version + 1})
        try:
            with self._db.transaction() as conn:
                cursor = conn.execute(
                    """UPDATE alerts SET severity = ?, status = ?,
                       last_triggered_at = ?, version = ?, data_json = ?
                       WHERE id = ? AND version = ?""",
                    (
                        stored.severity.value,
                        stored.status.value,
                        _ts(stored.last_triggered_at),
                        stored.version,
                        stored.model_dump_json(),
                        stored.id,
                        expected_version,
                    ),
                )
                updated = cursor.rowcount
        except sqlite3.IntegrityError as exc:
            raise ConflictError(alert.id, expected_version, None) from exc

        if updated == 0:
            row = self._db.fetchone("SELECT version FROM alerts WHERE id = ?", (alert.id,))
            if row is None:
                raise NotFoundError(f"Alert '{alert.id}' not found")
            raise ConflictError(alert.id, expected_version, int(row["version"]))
        return stored

    def list_alerts(
        self, flt: AlertFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        flt = flt or AlertFilter()
        clauses: list[str] = []
        params: list[Any] = []
        for column in ("severity", "status", "rule_id", "alert_type", "group_key", "source"):
            value = getattr(flt, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(str(value))
        self._time_range(clauses, params, "created_at", flt.start, flt.end)
        return self._page("alerts", clauses, params, "created_at", page, limit, Alert)

    def active_alerts(self) -> list[Alert]:
        rows = self._db.fetchall(
            "SELECT data_json FROM alerts WHERE status != ? ORDER BY created_at",
            (AlertStatus.RESOLVED.value,),
        )
        return [Alert.model_validate_json(r["data_json"]) for r in rows]

    def find_active_alert(self, rule_id: str, group_key: str) -> Alert | None:
        row = self._db.fetchone(
            "SELECT data_json FROM alerts WHERE rule_id = ? AND group_key = ? AND status != ?",
            (rule_id, group_key, AlertStatus.RESOLVED.value),
        )
        return Alert.model_validate_json(row["data_json"]) if row else None

    def latest_alert(self, rule_id: str, group_key: str) -> Alert | None:
        row = self._db.fetchone(
            "SELECT data_json FROM alerts WHERE rule_id = ? AND group_key = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (rule_id, group_key),
        )
        return Alert.model_validate_json(row["data_json"]) if row else None

    def alerts_between(self, start: datetime, end: datetime) -> list[Alert]:
        rows = self._db.fetchall(
            "SELECT data_json FROM alerts WHERE created_at >= ? AND created_at <= ? "
            "ORDER BY created_at, id",
            (_ts(start), _ts(end)),
        )
        return [Alert.model_validate_json(r["data_json"]) for r in rows]

    def delete_resolved_alerts_before(self, cutoff: datetime) -> int:
        return self._db.write(
            "DELETE FROM alerts WHERE status = ? AND created_at < ?",
            (AlertStatus.RESOLVED.value, _ts(cutoff)),
        )

    # ------------------------------------------------------------------
    # Configuration entities
    # ------------------------------------------------------------------

    def put_rule(self, rule: AlertRule) -> None:
        self._put("alert_rules", rule.id, rule)

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._get("alert_rules", rule_id, AlertRule)

    def list_rules(self) -> list[AlertRule]:
        return self._list("alert_rules", AlertRule)

    def delete_rule(self, rule_id: str) -> bool:
        return self._delete("alert_rules", rule_id)

    def put_channel(self, channel: NotificationChannel) -> None:
        self._put("notification_channels", channel.id, channel)

    def get_channel(self, channel_id: str) -> NotificationChannel | None:
        return self._get("notification_channels", channel_id, NotificationChannel)

    def list_channels(self) -> list[NotificationChannel]:
        return self._list("notification_channels", NotificationChannel)

    def delete_channel(self, channel_id: str) -> bool:
        return self._delete("notification_channels", channel_id)

    def put_auto_resolve_rule(self, rule: AutoResolveRule) -> None:
        self._put("auto_resolve_rules", rule.id, rule)

    def get_auto_resolve_rule(self, rule_id: str) -> AutoResolveRule | None:
        return self._get("auto_resolve_rules", rule_id, AutoResolveRule)

    def list_auto_resolve_rules(self) -> list[AutoResolveRule]:
        return self._list("auto_resolve_rules", AutoResolveRule)

    def delete_auto_resolve_rule(self, rule_id: str) -> bool:
        return self._delete("auto_resolve_rules", rule_id)

    def close(self) -> None:
        self._db.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _time_range(
        clauses: list[str],
        params: list[Any],
        column: str,
        start: datetime | None,
        end: datetime | None,
    ) -> None:
        if start is not None:
            clauses.append(f"{column} >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append(f"{column} <= ?")
            params.append(_ts(end))

    def _page(
        self,
        table: str,
        clauses: list[str],
        params: list[Any],
        order_column: str,
        page: int,
        limit: int,
        model: type[BaseModel],
    ) -> Page:
        page, limit = clamp_paging(page, limit)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        count_row = self._db.fetchone(
            f"SELECT COUNT(*) AS cnt FROM {table} {where}",  # noqa: S608
            tuple(params),
        )
        total = int(count_row["cnt"]) if count_row else 0

        offset = (page - 1) * limit
        rows = self._db.fetchall(
            f"SELECT data_json FROM {table} {where} "  # noqa: S608
            f"ORDER BY {order_column} DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return Page(
            items=[model.model_validate_json(r["data_json"]) for r in rows],
            total=total,
            page=page,
            limit=limit,
            pages=max(1, -(-total // limit)),
        )

    def _put(self, table: str, entity_id: str, entity: BaseModel) -> None:
        self._db.write(
            f"INSERT INTO {table} (id, data_json) VALUES (?, ?) "  # noqa: S608
            "ON CONFLICT(id) DO UPDATE SET data_json = excluded.data_json",
            (entity_id, entity.model_dump_json()),
        )

    def _get(self, table: str, entity_id: str, model: type[Any]) -> Any:
        row = self._db.fetchone(
            f"SELECT data_json FROM {table} WHERE id = ?", (entity_id,),  # noqa: S608
        )
        return model.model_validate_json(row["data_json"]) if row else None

    def _list(self, table: str, model: type[Any]) -> list[Any]:
        rows = self._db.fetchall(f"SELECT data_json FROM {table} ORDER BY id")  # noqa: S608
        return [model.model_validate_json(r["data_json"]) for r in rows]

    def _delete(self, table: str, entity_id: str) -> bool:
        return self._db.write(f"DELETE FROM {table} WHERE id = ?", (entity_id,)) > 0  # noqa: S608
