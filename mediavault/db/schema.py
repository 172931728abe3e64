"""SQLite schema management for the media vault store."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable


LOGGER = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def connect(db_path: Path | str, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Return a SQLite connection with conservative defaults."""

    connection = sqlite3.connect(str(db_path), check_same_thread=False, timeout=busy_timeout_ms / 1000)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL;")
    connection.execute("PRAGMA foreign_keys=ON;")
    connection.execute("PRAGMA synchronous=NORMAL;")
    connection.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    return connection


def migrate(connection: sqlite3.Connection) -> None:
    """Apply all known migrations in a re-entrant, idempotent fashion."""

    _ensure_ledger(connection)

    for migration_id, migration_fn in _MIGRATIONS:
        if _already_applied(connection, migration_id):
            continue
        LOGGER.info("Applying migration %s", migration_id)
        try:
            with connection:
                migration_fn(connection)
                _mark_applied(connection, migration_id)
        except Exception:  # noqa: BLE001 - surface precise failure context to logs
            LOGGER.exception(
                "Migration %s failed. Inspect the schema_migrations ledger for partial state.",
                migration_id,
            )
            raise
        LOGGER.info("Applied migration %s", migration_id)


def applied_migrations(connection: sqlite3.Connection) -> list[str]:
    rows = connection.execute("SELECT id FROM schema_migrations ORDER BY id").fetchall()
    return [row[0] for row in rows]


def _ensure_ledger(connection: sqlite3.Connection) -> None:
    with connection:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                id TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )


def _already_applied(connection: sqlite3.Connection, migration_id: str) -> bool:
    row = connection.execute(
        "SELECT 1 FROM schema_migrations WHERE id=?",
        (migration_id,),
    ).fetchone()
    return row is not None


def _mark_applied(connection: sqlite3.Connection, migration_id: str) -> None:
    connection.execute(
        "INSERT OR REPLACE INTO schema_migrations(id, applied_at) VALUES(?, ?)",
        (migration_id, datetime.now(tz=timezone.utc).isoformat(timespec="seconds")),
    )


def _column_exists(connection: sqlite3.Connection, table: str, column: str) -> bool:
    return any(
        row[1] == column for row in connection.execute(f"PRAGMA table_info({table})")
    )


def _run_statements(connection: sqlite3.Connection, statements: list[str]) -> None:
    for statement in statements:
        connection.execute(statement)


def _migration_001_scheduler(connection: sqlite3.Connection) -> None:
    _run_statements(
        connection,
        [
            """
            CREATE TABLE IF NOT EXISTS scheduled_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL DEFAULT '',
                kind TEXT NOT NULL,
                schedule_kind TEXT NOT NULL,
                schedule_config TEXT NOT NULL DEFAULT '{}',
                target_kind TEXT,
                target_id INTEGER,
                enabled INTEGER NOT NULL DEFAULT 1,
                last_run_at TEXT,
                next_run_at TEXT,
                last_status TEXT,
                last_error TEXT,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                run_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                claim_token TEXT,
                claim_expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(enabled, next_run_at)",
            """
            CREATE TABLE IF NOT EXISTS job_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL REFERENCES scheduled_jobs(id) ON DELETE CASCADE,
                claim_token TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                status TEXT NOT NULL DEFAULT 'running',
                error TEXT,
                stats TEXT,
                duration_ms INTEGER
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_job_exec_job ON job_executions(job_id, started_at)",
            """
            CREATE TABLE IF NOT EXISTS activities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_type TEXT NOT NULL,
                label TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'running',
                is_paused INTEGER NOT NULL DEFAULT 0,
                progress_current INTEGER NOT NULL DEFAULT 0,
                progress_total INTEGER,
                details TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                finished_at TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_activities_status ON activities(status, started_at)",
        ],
    )


def _migration_002_forum_archive(connection: sqlite3.Connection) -> None:
    _run_statements(
        connection,
        [
            """
            CREATE TABLE IF NOT EXISTS threads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL UNIQUE,
                external_id TEXT,
                title TEXT NOT NULL DEFAULT '',
                author TEXT,
                forum_category TEXT,
                first_seen_at TEXT NOT NULL,
                last_scraped_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS posts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                thread_id INTEGER NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                external_post_id TEXT NOT NULL,
                author TEXT,
                posted_at TEXT,
                body TEXT NOT NULL DEFAULT '',
                order_index INTEGER NOT NULL DEFAULT 0,
                scraped_at TEXT NOT NULL,
                removed_at TEXT,
                UNIQUE(thread_id, external_post_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS download_links (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                thread_id INTEGER NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                post_id INTEGER REFERENCES posts(id) ON DELETE SET NULL,
                url TEXT NOT NULL,
                provider TEXT NOT NULL,
                filename TEXT,
                discovered_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'unknown',
                status_version INTEGER NOT NULL DEFAULT 0,
                file_size INTEGER,
                file_type TEXT,
                last_checked_at TEXT,
                check_count INTEGER NOT NULL DEFAULT 0,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                rate_limited_until TEXT,
                requires_auth INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                download_status TEXT NOT NULL DEFAULT 'pending',
                downloaded_at TEXT,
                download_path TEXT,
                download_notes TEXT,
                UNIQUE(thread_id, url)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_links_checked ON download_links(last_checked_at)",
            "CREATE INDEX IF NOT EXISTS idx_links_provider ON download_links(provider, status)",
            """
            CREATE TABLE IF NOT EXISTS performers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS thread_performers (
                thread_id INTEGER NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                performer_id INTEGER NOT NULL REFERENCES performers(id) ON DELETE CASCADE,
                confidence REAL NOT NULL DEFAULT 0,
                linked_at TEXT NOT NULL,
                PRIMARY KEY (thread_id, performer_id)
            )
            """,
        ],
    )


def _migration_003_media_library(connection: sqlite3.Connection) -> None:
    _run_statements(
        connection,
        [
            """
            CREATE TABLE IF NOT EXISTS libraries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                path TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS videos (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL REFERENCES libraries(id) ON DELETE CASCADE,
                title TEXT NOT NULL DEFAULT '',
                file_path TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(library_id, file_path)
            )
            """,
        ],
    )


def _migration_004_settings_audit(connection: sqlite3.Connection) -> None:
    _run_statements(
        connection,
        [
            """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS ai_audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                subject_kind TEXT,
                subject_id INTEGER,
                model TEXT,
                prompt TEXT,
                response TEXT,
                status TEXT NOT NULL,
                duration_ms INTEGER,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_ai_audit_created ON ai_audit_logs(created_at)",
        ],
    )


def _migration_005_thread_tags(connection: sqlite3.Connection) -> None:
    if not _column_exists(connection, "threads", "tags"):
        connection.execute("ALTER TABLE threads ADD COLUMN tags TEXT NOT NULL DEFAULT '[]'")


_MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("001_scheduler", _migration_001_scheduler),
    ("002_forum_archive", _migration_002_forum_archive),
    ("003_media_library", _migration_003_media_library),
    ("004_settings_audit", _migration_004_settings_audit),
    ("005_thread_tags", _migration_005_thread_tags),
]

MIGRATION_IDS = tuple(migration_id for migration_id, _ in _MIGRATIONS)


__all__ = ["MIGRATION_IDS", "applied_migrations", "connect", "migrate"]
