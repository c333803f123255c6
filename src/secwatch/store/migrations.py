"""Version-tracked SQLite schema migrations."""

from __future__ import annotations

from secwatch.errors import RepositoryError
from secwatch.store.db import Database

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS events (
            id                   TEXT PRIMARY KEY,
            type                 TEXT NOT NULL,
            source               TEXT NOT NULL,
            severity             TEXT NOT NULL,
            timestamp            TEXT NOT NULL,
            related_user_address TEXT,
            related_ip           TEXT,
            related_session_id   TEXT,
            data_json            TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_severity ON events(severity, timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_source ON events(source, timestamp);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id                TEXT PRIMARY KEY,
            rule_id           TEXT NOT NULL,
            alert_type        TEXT NOT NULL,
            group_key         TEXT NOT NULL,
            source            TEXT NOT NULL,
            severity          TEXT NOT NULL,
            status            TEXT NOT NULL,
            created_at        TEXT NOT NULL,
            last_triggered_at TEXT NOT NULL,
            version           INTEGER NOT NULL,
            data_json         TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at);
        CREATE INDEX IF NOT EXISTS idx_alerts_group ON alerts(rule_id, group_key, created_at);
        CREATE INDEX IF NOT EXISTS idx_alerts_status ON alerts(status);
        CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_active
            ON alerts(rule_id, group_key) WHERE status != 'resolved';
        """,
    ),
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS alert_rules (
            id        TEXT PRIMARY KEY,
            data_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notification_channels (
            id        TEXT PRIMARY KEY,
            data_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS auto_resolve_rules (
            id        TEXT PRIMARY KEY,
            data_json TEXT NOT NULL
        );
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if uninitialized."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
        return int(row["version"]) if row else 0
    except RepositoryError:
        return 0


def run_migrations(db: Database) -> int:
    """Apply pending migrations. Returns the final schema version."""
    current = get_schema_version(db)

    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.write_script(sql)
        db.write("UPDATE schema_version SET version = ?", (version,))

    return get_schema_version(db)
