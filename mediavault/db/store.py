"""High level helpers for the media vault database."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .pool import ConnectionPool


LOGGER = logging.getLogger(__name__)

JOB_KINDS = ("scrape_thread", "verify_links", "cleanup_activities", "cleanup_audit")
SCHEDULE_KINDS = ("interval", "cron", "once")
LINK_STATUSES = ("unknown", "active", "dead", "rate_limited")
DOWNLOAD_STATUSES = ("pending", "downloaded", "failed")

THREAD_SORTS = {
    "date_desc": "COALESCE(t.last_scraped_at, t.first_seen_at) DESC, t.id DESC",
    "date_asc": "COALESCE(t.last_scraped_at, t.first_seen_at) ASC, t.id ASC",
    "title_asc": "t.title COLLATE NOCASE ASC, t.id ASC",
    "title_desc": "t.title COLLATE NOCASE DESC, t.id DESC",
    "links_desc": "link_count DESC, t.id DESC",
    "scraped_desc": "t.last_scraped_at IS NULL, t.last_scraped_at DESC, t.id DESC",
}
THREAD_FILTERS = {
    "has_downloads": "EXISTS (SELECT 1 FROM download_links l WHERE l.thread_id = t.id)",
    "no_downloads": "NOT EXISTS (SELECT 1 FROM download_links l WHERE l.thread_id = t.id)",
    "has_dead": "EXISTS (SELECT 1 FROM download_links l WHERE l.thread_id = t.id AND l.status = 'dead')",
    "unchecked": "EXISTS (SELECT 1 FROM download_links l WHERE l.thread_id = t.id AND l.status = 'unknown')",
}

# Columns owned by the verifier. The scraper never writes them and the
# verifier never writes identity columns, so the two can update concurrently.
_VERIFIER_COLUMNS = frozenset(
    {
        "status",
        "file_size",
        "file_type",
        "last_checked_at",
        "check_count",
        "consecutive_failures",
        "rate_limited_until",
        "requires_auth",
        "notes",
    }
)
_JOB_UPDATE_COLUMNS = frozenset(
    {
        "name",
        "kind",
        "schedule_kind",
        "schedule_config",
        "target_kind",
        "target_id",
        "enabled",
        "next_run_at",
    }
)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Render ``value`` in the one timestamp format stored in the database.

    Timestamps are compared as strings in SQL, so every writer must use the
    same fixed-width UTC form.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True)


def _deserialize(payload: str | bytes | None, default: Any) -> Any:
    if not payload:
        return default
    try:
        return json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        return default


def _row_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    return dict(row) if row is not None else None


@dataclass(slots=True)
class ScheduledJob:
    id: int
    name: str
    kind: str
    schedule_kind: str
    schedule_config: dict[str, Any]
    target_kind: str | None
    target_id: int | None
    enabled: bool
    last_run_at: str | None
    next_run_at: str | None
    last_status: str | None
    last_error: str | None
    consecutive_failures: int
    run_count: int
    success_count: int
    failure_count: int
    claim_token: str | None
    claim_expires_at: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScheduledJob":
        return cls(
            id=int(row["id"]),
            name=row["name"] or "",
            kind=row["kind"],
            schedule_kind=row["schedule_kind"],
            schedule_config=_deserialize(row["schedule_config"], {}),
            target_kind=row["target_kind"],
            target_id=row["target_id"],
            enabled=bool(row["enabled"]),
            last_run_at=row["last_run_at"],
            next_run_at=row["next_run_at"],
            last_status=row["last_status"],
            last_error=row["last_error"],
            consecutive_failures=int(row["consecutive_failures"] or 0),
            run_count=int(row["run_count"] or 0),
            success_count=int(row["success_count"] or 0),
            failure_count=int(row["failure_count"] or 0),
            claim_token=row["claim_token"],
            claim_expires_at=row["claim_expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "job_type": self.kind,
            "schedule_type": self.schedule_kind,
            "schedule_config": self.schedule_config,
            "target_type": self.target_kind,
            "target_id": self.target_id,
            "enabled": self.enabled,
            "last_run_at": self.last_run_at,
            "next_run_at": self.next_run_at,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "run_count": self.run_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "running": self.claim_token is not None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class LinkSnapshot:
    url: str
    provider: str
    filename: str | None = None


@dataclass(slots=True)
class PostSnapshot:
    external_post_id: str
    author: str | None
    posted_at: str | None
    body: str
    order_index: int
    links: list[LinkSnapshot] = field(default_factory=list)


@dataclass(slots=True)
class ThreadSnapshot:
    """Everything one scrape learned about a thread, persisted atomically."""

    url: str
    title: str
    external_id: str | None = None
    author: str | None = None
    forum_category: str | None = None
    tags: list[str] = field(default_factory=list)
    performers: list[tuple[str, float]] = field(default_factory=list)
    posts: list[PostSnapshot] = field(default_factory=list)


@dataclass(slots=True)
class SnapshotResult:
    thread_id: int
    posts_added: int = 0
    posts_updated: int = 0
    posts_removed: int = 0
    links_added: int = 0
    links_total: int = 0
    last_scraped_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "posts_added": self.posts_added,
            "posts_updated": self.posts_updated,
            "posts_removed": self.posts_removed,
            "links_added": self.links_added,
            "links_total": self.links_total,
            "last_scraped_at": self.last_scraped_at,
        }


class Store:
    """Typed access to every table, borrowing pooled connections per call."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> str | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT value FROM app_settings WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self.pool.transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_settings(key, value, updated_at) VALUES(?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, to_iso(utc_now())),
            )

    def delete_setting(self, key: str) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute("DELETE FROM app_settings WHERE key=?", (key,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------
    def create_job(
        self,
        *,
        kind: str,
        schedule_kind: str,
        schedule_config: Mapping[str, Any],
        next_run_at: datetime | None,
        target_kind: str | None = None,
        target_id: int | None = None,
        enabled: bool = True,
        name: str = "",
    ) -> ScheduledJob:
        with self.pool.transaction() as conn:
            return self._insert_job(
                conn,
                kind=kind,
                schedule_kind=schedule_kind,
                schedule_config=schedule_config,
                next_run_at=next_run_at,
                target_kind=target_kind,
                target_id=target_id,
                enabled=enabled,
                name=name,
            )

    def create_job_unless_pending(
        self,
        *,
        kind: str,
        target_kind: str,
        target_id: int,
        schedule_config: Mapping[str, Any] | None = None,
        next_run_at: datetime,
        name: str = "",
    ) -> tuple[ScheduledJob, bool]:
        """Create a one-shot job unless an equivalent one is still waiting.

        Returns ``(job, created)``. The check and the insert happen under one
        write lock so concurrent callers cannot both create a job.
        """

        with self.pool.transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE kind=? AND schedule_kind='once' AND target_kind=? AND target_id=?
                  AND enabled=1 AND next_run_at IS NOT NULL
                ORDER BY id LIMIT 1
                """,
                (kind, target_kind, target_id),
            ).fetchone()
            if row is not None:
                return ScheduledJob.from_row(row), False
            job = self._insert_job(
                conn,
                kind=kind,
                schedule_kind="once",
                schedule_config=schedule_config or {},
                next_run_at=next_run_at,
                target_kind=target_kind,
                target_id=target_id,
                enabled=True,
                name=name,
            )
            return job, True

    def _insert_job(
        self,
        conn: sqlite3.Connection,
        *,
        kind: str,
        schedule_kind: str,
        schedule_config: Mapping[str, Any],
        next_run_at: datetime | None,
        target_kind: str | None,
        target_id: int | None,
        enabled: bool,
        name: str,
    ) -> ScheduledJob:
        now = to_iso(utc_now())
        cur = conn.execute(
            """
            INSERT INTO scheduled_jobs(
                name, kind, schedule_kind, schedule_config, target_kind, target_id,
                enabled, next_run_at, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                kind,
                schedule_kind,
                _serialize(dict(schedule_config)),
                target_kind,
                target_id,
                1 if enabled else 0,
                to_iso(next_run_at),
                now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM scheduled_jobs WHERE id=?", (cur.lastrowid,)).fetchone()
        return ScheduledJob.from_row(row)

    def get_job(self, job_id: int) -> ScheduledJob | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM scheduled_jobs WHERE id=?", (job_id,)).fetchone()
        return ScheduledJob.from_row(row) if row else None

    def list_jobs(self) -> list[ScheduledJob]:
        with self.pool.connection() as conn:
            rows = conn.execute("SELECT * FROM scheduled_jobs ORDER BY id").fetchall()
        return [ScheduledJob.from_row(row) for row in rows]

    def update_job(self, job_id: int, changes: Mapping[str, Any]) -> ScheduledJob | None:
        unknown = set(changes) - _JOB_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported job fields: {sorted(unknown)}")
        assignments: list[str] = []
        params: list[Any] = []
        for column, value in changes.items():
            if column == "schedule_config":
                value = _serialize(dict(value or {}))
            elif column == "enabled":
                value = 1 if value else 0
            elif column == "next_run_at" and isinstance(value, datetime):
                value = to_iso(value)
            assignments.append(f"{column}=?")
            params.append(value)
        assignments.append("updated_at=?")
        params.append(to_iso(utc_now()))
        with self.pool.transaction() as conn:
            cur = conn.execute(
                f"UPDATE scheduled_jobs SET {', '.join(assignments)} WHERE id=?",
                (*params, job_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM scheduled_jobs WHERE id=?", (job_id,)).fetchone()
        return ScheduledJob.from_row(row)

    def delete_job(self, job_id: int) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute("DELETE FROM scheduled_jobs WHERE id=?", (job_id,))
        return cur.rowcount > 0

    def due_jobs(self, now: datetime, limit: int) -> list[ScheduledJob]:
        stamp = to_iso(now)
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_jobs
                WHERE enabled=1 AND next_run_at IS NOT NULL AND next_run_at <= ?
                  AND (claim_token IS NULL OR claim_expires_at <= ?)
                ORDER BY next_run_at ASC, id ASC
                LIMIT ?
                """,
                (stamp, stamp, int(limit)),
            ).fetchall()
        return [ScheduledJob.from_row(row) for row in rows]

    def claim_job(self, job_id: int, token: str, *, now: datetime, lease_until: datetime) -> bool:
        """Atomically take the lease on ``job_id``; ``True`` only for the winner."""

        stamp = to_iso(now)
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scheduled_jobs
                SET claim_token=?, claim_expires_at=?
                WHERE id=? AND enabled=1
                  AND (claim_token IS NULL OR claim_expires_at <= ?)
                """,
                (token, to_iso(lease_until), job_id, stamp),
            )
        return cur.rowcount == 1

    def renew_claim(self, job_id: int, token: str, lease_until: datetime) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                "UPDATE scheduled_jobs SET claim_expires_at=? WHERE id=? AND claim_token=?",
                (to_iso(lease_until), job_id, token),
            )
        return cur.rowcount == 1

    def open_execution(self, job_id: int, token: str, started_at: datetime) -> int:
        """Record a running execution, failing any left behind by a lost lease."""

        stamp = to_iso(started_at)
        with self.pool.transaction() as conn:
            conn.execute(
                """
                UPDATE job_executions
                SET status='failed', finished_at=?, error='lease expired before the run finished'
                WHERE job_id=? AND status='running' AND claim_token IS NOT ?
                """,
                (stamp, job_id, token),
            )
            cur = conn.execute(
                """
                INSERT INTO job_executions(job_id, claim_token, started_at, status)
                VALUES(?, ?, ?, 'running')
                """,
                (job_id, token, stamp),
            )
        return int(cur.lastrowid)

    def close_execution(
        self,
        execution_id: int,
        *,
        status: str,
        finished_at: datetime,
        duration_ms: int,
        error: str | None = None,
        stats: Mapping[str, Any] | None = None,
    ) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE job_executions
                SET status=?, finished_at=?, duration_ms=?, error=?, stats=?
                WHERE id=? AND status='running'
                """,
                (
                    status,
                    to_iso(finished_at),
                    int(duration_ms),
                    error,
                    _serialize(dict(stats or {})),
                    execution_id,
                ),
            )
        return cur.rowcount == 1

    def finish_job(
        self,
        job_id: int,
        token: str,
        *,
        ok: bool,
        last_run_at: datetime,
        next_run_at: datetime | None,
        enabled: bool,
        consecutive_failures: int,
        error: str | None,
    ) -> bool:
        """Release the lease and advance the schedule, only for the lease holder."""

        with self.pool.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE scheduled_jobs
                SET claim_token=NULL, claim_expires_at=NULL,
                    last_run_at=?, next_run_at=?, enabled=?,
                    last_status=?, last_error=?, consecutive_failures=?,
                    run_count=run_count + 1,
                    {'success_count=success_count + 1' if ok else 'failure_count=failure_count + 1'},
                    updated_at=?
                WHERE id=? AND claim_token=?
                """,
                (
                    to_iso(last_run_at),
                    to_iso(next_run_at),
                    1 if enabled else 0,
                    "ok" if ok else "failed",
                    error,
                    int(consecutive_failures),
                    to_iso(utc_now()),
                    job_id,
                    token,
                ),
            )
        return cur.rowcount == 1

    def release_claim(self, job_id: int, token: str) -> None:
        with self.pool.transaction() as conn:
            conn.execute(
                "UPDATE scheduled_jobs SET claim_token=NULL, claim_expires_at=NULL WHERE id=? AND claim_token=?",
                (job_id, token),
            )

    def job_history(self, job_id: int, limit: int = 20) -> list[dict[str, Any]]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, job_id, started_at, finished_at, status, error, stats, duration_ms
                FROM job_executions WHERE job_id=?
                ORDER BY started_at DESC, id DESC LIMIT ?
                """,
                (job_id, int(limit)),
            ).fetchall()
        history = []
        for row in rows:
            item = dict(row)
            item["stats"] = _deserialize(item.get("stats"), {})
            history.append(item)
        return history

    def prune_executions(self, before: datetime) -> int:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM job_executions WHERE status != 'running' AND finished_at < ?",
                (to_iso(before),),
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def insert_activity(
        self,
        task_type: str,
        label: str,
        total: int | None,
        details: Mapping[str, Any] | None,
        now: datetime,
    ) -> dict[str, Any]:
        stamp = to_iso(now)
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO activities(task_type, label, status, progress_total, details, started_at, updated_at)
                VALUES(?, ?, 'running', ?, ?, ?, ?)
                """,
                (task_type, label, total, _serialize(dict(details or {})), stamp, stamp),
            )
            row = conn.execute("SELECT * FROM activities WHERE id=?", (cur.lastrowid,)).fetchone()
        return self._activity_dict(row)

    def update_activity_progress(
        self,
        activity_id: int,
        *,
        current: int,
        total: int | None,
        details: Mapping[str, Any] | None,
        now: datetime,
    ) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE activities
                SET progress_current=?, progress_total=COALESCE(?, progress_total),
                    details=COALESCE(?, details), updated_at=?
                WHERE id=? AND status='running'
                """,
                (
                    int(current),
                    total,
                    _serialize(dict(details)) if details is not None else None,
                    to_iso(now),
                    activity_id,
                ),
            )
        return cur.rowcount == 1

    def finish_activity(
        self,
        activity_id: int,
        *,
        status: str,
        error: str | None,
        now: datetime,
    ) -> bool:
        stamp = to_iso(now)
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE activities
                SET status=?, error=?, is_paused=0, finished_at=?, updated_at=?
                WHERE id=? AND status='running'
                """,
                (status, error, stamp, stamp, activity_id),
            )
        return cur.rowcount == 1

    def set_activity_paused(self, activity_id: int, paused: bool, now: datetime) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                "UPDATE activities SET is_paused=?, updated_at=? WHERE id=? AND status='running'",
                (1 if paused else 0, to_iso(now), activity_id),
            )
        return cur.rowcount == 1

    def get_activity(self, activity_id: int) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM activities WHERE id=?", (activity_id,)).fetchone()
        return self._activity_dict(row) if row else None

    def query_activities(
        self,
        *,
        status: str | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status=?")
            params.append(status)
        if task_type:
            clauses.append("task_type=?")
            params.append(task_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.pool.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM activities {where} ORDER BY started_at DESC, id DESC LIMIT ?",
                (*params, int(limit)),
            ).fetchall()
        return [self._activity_dict(row) for row in rows]

    def delete_finished_activities(self, before: datetime) -> int:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM activities WHERE status IN ('completed', 'failed') AND finished_at < ?",
                (to_iso(before),),
            )
        return cur.rowcount

    @staticmethod
    def _activity_dict(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        item["is_paused"] = bool(item.get("is_paused"))
        item["details"] = _deserialize(item.get("details"), {})
        return item

    # ------------------------------------------------------------------
    # Threads, posts and links
    # ------------------------------------------------------------------
    def ensure_thread(self, url: str) -> tuple[dict[str, Any], bool]:
        """Return the thread row for ``url``, inserting a stub when missing."""

        with self.pool.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO threads(url, first_seen_at) VALUES(?, ?)",
                (url, to_iso(utc_now())),
            )
            row = conn.execute("SELECT * FROM threads WHERE url=?", (url,)).fetchone()
        return self._thread_dict(row), cur.rowcount == 1

    def get_thread(self, thread_id: int) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id=?", (thread_id,)).fetchone()
        return self._thread_dict(row) if row else None

    def get_thread_by_url(self, url: str) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM threads WHERE url=?", (url,)).fetchone()
        return self._thread_dict(row) if row else None

    def delete_thread(self, thread_id: int) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute("DELETE FROM threads WHERE id=?", (thread_id,))
        return cur.rowcount > 0

    def list_threads(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        sort: str = "date_desc",
        provider: str | None = None,
        filter_name: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        order_by = THREAD_SORTS.get(sort)
        if order_by is None:
            raise ValueError(f"unknown sort '{sort}'")
        clauses: list[str] = []
        params: list[Any] = []
        if filter_name:
            clause = THREAD_FILTERS.get(filter_name)
            if clause is None:
                raise ValueError(f"unknown filter '{filter_name}'")
            clauses.append(clause)
        if provider:
            clauses.append(
                "EXISTS (SELECT 1 FROM download_links l WHERE l.thread_id = t.id AND l.provider = ?)"
            )
            params.append(provider)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (max(1, page) - 1) * limit
        with self.pool.snapshot() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM threads t {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT t.*,
                    (SELECT COUNT(*) FROM download_links l WHERE l.thread_id = t.id) AS link_count,
                    (SELECT COUNT(*) FROM posts p WHERE p.thread_id = t.id AND p.removed_at IS NULL) AS post_count
                FROM threads t {where}
                ORDER BY {order_by}
                LIMIT ? OFFSET ?
                """,
                (*params, int(limit), int(offset)),
            ).fetchall()
        return [self._thread_dict(row) for row in rows], int(total)

    def thread_detail(self, thread_id: int) -> dict[str, Any] | None:
        with self.pool.snapshot() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id=?", (thread_id,)).fetchone()
            if row is None:
                return None
            thread = self._thread_dict(row)
            posts = conn.execute(
                "SELECT * FROM posts WHERE thread_id=? ORDER BY order_index, id",
                (thread_id,),
            ).fetchall()
            links = conn.execute(
                "SELECT * FROM download_links WHERE thread_id=? ORDER BY id",
                (thread_id,),
            ).fetchall()
            performers = conn.execute(
                """
                SELECT p.id, p.name, tp.confidence
                FROM thread_performers tp JOIN performers p ON p.id = tp.performer_id
                WHERE tp.thread_id=? ORDER BY tp.confidence DESC, p.name
                """,
                (thread_id,),
            ).fetchall()
        thread["posts"] = [dict(post) for post in posts]
        thread["links"] = [self._link_dict(link) for link in links]
        thread["performers"] = [dict(item) for item in performers]
        return thread

    def commit_thread_snapshot(self, snapshot: ThreadSnapshot) -> SnapshotResult:
        """Persist a complete scrape of one thread in a single transaction.

        Posts and links keep their identity across scrapes. Posts missing from
        the snapshot get ``removed_at``; links are never deleted so their
        verification history survives. ``last_scraped_at`` is written last.
        """

        with self.pool.transaction(immediate=True) as conn:
            now = to_iso(utc_now())
            row = conn.execute("SELECT id FROM threads WHERE url=?", (snapshot.url,)).fetchone()
            if row is None:
                cur = conn.execute(
                    """
                    INSERT INTO threads(url, external_id, title, author, forum_category, tags, first_seen_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.url,
                        snapshot.external_id,
                        snapshot.title,
                        snapshot.author,
                        snapshot.forum_category,
                        _serialize(snapshot.tags),
                        now,
                    ),
                )
                thread_id = int(cur.lastrowid)
            else:
                thread_id = int(row["id"])
                conn.execute(
                    """
                    UPDATE threads
                    SET external_id=COALESCE(?, external_id), title=?, author=COALESCE(?, author),
                        forum_category=COALESCE(?, forum_category), tags=?, is_active=1
                    WHERE id=?
                    """,
                    (
                        snapshot.external_id,
                        snapshot.title,
                        snapshot.author,
                        snapshot.forum_category,
                        _serialize(snapshot.tags),
                        thread_id,
                    ),
                )
            result = SnapshotResult(thread_id=thread_id)

            existing_posts = {
                r["external_post_id"]: r["id"]
                for r in conn.execute(
                    "SELECT id, external_post_id FROM posts WHERE thread_id=?", (thread_id,)
                )
            }
            existing_links = {
                r["url"]
                for r in conn.execute("SELECT url FROM download_links WHERE thread_id=?", (thread_id,))
            }

            seen_posts: set[str] = set()
            for post in snapshot.posts:
                conn.execute(
                    """
                    INSERT INTO posts(thread_id, external_post_id, author, posted_at, body, order_index, scraped_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(thread_id, external_post_id) DO UPDATE SET
                        author=excluded.author, posted_at=excluded.posted_at, body=excluded.body,
                        order_index=excluded.order_index, scraped_at=excluded.scraped_at, removed_at=NULL
                    """,
                    (
                        thread_id,
                        post.external_post_id,
                        post.author,
                        post.posted_at,
                        post.body,
                        post.order_index,
                        now,
                    ),
                )
                if post.external_post_id in existing_posts:
                    result.posts_updated += 1
                    post_id = existing_posts[post.external_post_id]
                else:
                    result.posts_added += 1
                    post_id = conn.execute(
                        "SELECT id FROM posts WHERE thread_id=? AND external_post_id=?",
                        (thread_id, post.external_post_id),
                    ).fetchone()["id"]
                seen_posts.add(post.external_post_id)

                for link in post.links:
                    conn.execute(
                        """
                        INSERT INTO download_links(thread_id, post_id, url, provider, filename, discovered_at, updated_at)
                        VALUES(?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(thread_id, url) DO UPDATE SET
                            post_id=excluded.post_id, provider=excluded.provider,
                            filename=COALESCE(excluded.filename, download_links.filename),
                            updated_at=excluded.updated_at
                        """,
                        (thread_id, post_id, link.url, link.provider, link.filename, now, now),
                    )
                    if link.url not in existing_links:
                        existing_links.add(link.url)
                        result.links_added += 1

            vanished = [
                (now, post_id)
                for external_id, post_id in existing_posts.items()
                if external_id not in seen_posts
            ]
            if vanished:
                cur = conn.executemany(
                    "UPDATE posts SET removed_at=? WHERE id=? AND removed_at IS NULL", vanished
                )
                result.posts_removed = max(cur.rowcount, 0)

            for name, confidence in snapshot.performers:
                conn.execute(
                    "INSERT OR IGNORE INTO performers(name, created_at) VALUES(?, ?)", (name, now)
                )
                performer_id = conn.execute(
                    "SELECT id FROM performers WHERE name=?", (name,)
                ).fetchone()["id"]
                conn.execute(
                    """
                    INSERT INTO thread_performers(thread_id, performer_id, confidence, linked_at)
                    VALUES(?, ?, ?, ?)
                    ON CONFLICT(thread_id, performer_id) DO UPDATE SET
                        confidence=MAX(thread_performers.confidence, excluded.confidence)
                    """,
                    (thread_id, performer_id, float(confidence), now),
                )

            result.links_total = len(existing_links)
            result.last_scraped_at = to_iso(utc_now())
            conn.execute(
                "UPDATE threads SET last_scraped_at=? WHERE id=?",
                (result.last_scraped_at, thread_id),
            )
        return result

    def scraper_stats(self) -> dict[str, Any]:
        with self.pool.snapshot() as conn:
            threads = conn.execute(
                "SELECT COUNT(*), COUNT(last_scraped_at) FROM threads"
            ).fetchone()
            posts = conn.execute(
                "SELECT COUNT(*), COUNT(removed_at) FROM posts"
            ).fetchone()
            by_provider = conn.execute(
                "SELECT provider, COUNT(*) AS total FROM download_links GROUP BY provider ORDER BY total DESC"
            ).fetchall()
        return {
            "threads": {"total": threads[0], "scraped": threads[1]},
            "posts": {"total": posts[0], "removed": posts[1]},
            "links": self.link_stats(),
            "links_by_provider": {row["provider"]: row["total"] for row in by_provider},
        }

    def get_link(self, link_id: int) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM download_links WHERE id=?", (link_id,)).fetchone()
        return self._link_dict(row) if row else None

    def links_for_thread(self, thread_id: int) -> list[dict[str, Any]]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM download_links WHERE thread_id=? ORDER BY id", (thread_id,)
            ).fetchall()
        return [self._link_dict(row) for row in rows]

    def stale_links(
        self, *, cutoff: datetime, now: datetime, limit: int
    ) -> list[dict[str, Any]]:
        """Links never checked or checked before ``cutoff`` and not cooling down."""

        with self.pool.snapshot() as conn:
            rows = conn.execute(
                """
                SELECT * FROM download_links
                WHERE (last_checked_at IS NULL OR last_checked_at < ?)
                  AND (rate_limited_until IS NULL OR rate_limited_until <= ?)
                ORDER BY last_checked_at ASC, id ASC
                LIMIT ?
                """,
                (to_iso(cutoff), to_iso(now), int(limit)),
            ).fetchall()
        return [self._link_dict(row) for row in rows]

    def expired_cooldowns(self, now: datetime) -> dict[str, str]:
        """Latest already-expired ``rate_limited_until`` stamp per provider."""

        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT provider, MAX(rate_limited_until) AS expired_at FROM download_links
                WHERE rate_limited_until IS NOT NULL AND rate_limited_until <= ?
                GROUP BY provider
                """,
                (to_iso(now),),
            ).fetchall()
        return {row["provider"]: row["expired_at"] for row in rows}

    def apply_link_check(
        self, link_id: int, expected_version: int, changes: Mapping[str, Any]
    ) -> bool:
        """Compare-and-swap the verifier columns of one link.

        Returns ``False`` when another writer bumped ``status_version`` first.
        """

        unknown = set(changes) - _VERIFIER_COLUMNS
        if unknown:
            raise ValueError(f"verifier may not write {sorted(unknown)}")
        assignments = [f"{column}=?" for column in changes]
        params = [
            to_iso(value) if isinstance(value, datetime) else value for value in changes.values()
        ]
        with self.pool.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE download_links
                SET {', '.join(assignments)}, status_version=status_version + 1
                WHERE id=? AND status_version=?
                """,
                (*params, link_id, int(expected_version)),
            )
        return cur.rowcount == 1

    def link_stats(self, thread_id: int | None = None) -> dict[str, int]:
        where, params = ("WHERE thread_id=?", (thread_id,)) if thread_id is not None else ("", ())
        with self.pool.connection() as conn:
            rows = conn.execute(
                f"SELECT status, COUNT(*) AS total FROM download_links {where} GROUP BY status",
                params,
            ).fetchall()
            downloads = conn.execute(
                f"SELECT download_status, COUNT(*) AS total FROM download_links {where} GROUP BY download_status",
                params,
            ).fetchall()
        stats = {status: 0 for status in LINK_STATUSES}
        for row in rows:
            stats[row["status"]] = row["total"]
        stats["total"] = sum(stats[status] for status in LINK_STATUSES)
        for row in downloads:
            stats[f"download_{row['download_status']}"] = row["total"]
        return stats

    def provider_totals(self) -> dict[str, dict[str, int]]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                "SELECT provider, status, COUNT(*) AS total FROM download_links GROUP BY provider, status"
            ).fetchall()
        totals: dict[str, dict[str, int]] = {}
        for row in rows:
            bucket = totals.setdefault(row["provider"], {status: 0 for status in LINK_STATUSES})
            bucket[row["status"]] = row["total"]
        return totals

    def links_for_dispatch(self, thread_id: int) -> list[dict[str, Any]]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM download_links
                WHERE thread_id=? AND download_status='pending' AND status='active'
                ORDER BY id
                """,
                (thread_id,),
            ).fetchall()
        return [self._link_dict(row) for row in rows]

    def mark_download(
        self,
        link_id: int,
        status: str,
        *,
        path: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """Advance ``download_status``; returns ``False`` if that would move it backwards."""

        if status == "downloaded":
            allowed: Sequence[str] = ("pending", "failed", "downloaded")
        elif status == "failed":
            allowed = ("pending", "failed")
        else:
            raise ValueError(f"cannot mark a link as '{status}'")
        placeholders = ", ".join("?" for _ in allowed)
        now = to_iso(utc_now())
        with self.pool.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE download_links
                SET download_status=?,
                    downloaded_at=CASE WHEN ?='downloaded' THEN ? ELSE downloaded_at END,
                    download_path=COALESCE(?, download_path),
                    download_notes=COALESCE(?, download_notes)
                WHERE id=? AND download_status IN ({placeholders})
                """,
                (status, status, now, path, notes, link_id, *allowed),
            )
        return cur.rowcount == 1

    def reset_download(self, link_id: int) -> bool:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE download_links
                SET download_status='pending', downloaded_at=NULL, download_path=NULL, download_notes=NULL
                WHERE id=?
                """,
                (link_id,),
            )
        return cur.rowcount == 1

    @staticmethod
    def _thread_dict(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        item["is_active"] = bool(item.get("is_active"))
        if "tags" in item:
            item["tags"] = _deserialize(item.get("tags"), [])
        return item

    @staticmethod
    def _link_dict(row: sqlite3.Row) -> dict[str, Any]:
        item = dict(row)
        item["requires_auth"] = bool(item.get("requires_auth"))
        return item

    # ------------------------------------------------------------------
    # Libraries and videos
    # ------------------------------------------------------------------
    def create_library(self, name: str, path: str) -> dict[str, Any]:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO libraries(name, path, created_at) VALUES(?, ?, ?)",
                (name, path, to_iso(utc_now())),
            )
            row = conn.execute("SELECT * FROM libraries WHERE id=?", (cur.lastrowid,)).fetchone()
        return dict(row)

    def list_libraries(self) -> list[dict[str, Any]]:
        with self.pool.connection() as conn:
            rows = conn.execute("SELECT * FROM libraries ORDER BY id").fetchall()
        return [dict(row) for row in rows]

    def get_library(self, library_id: int) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute("SELECT * FROM libraries WHERE id=?", (library_id,)).fetchone()
        return _row_dict(row)

    def add_video(self, library_id: int, file_path: str, title: str) -> dict[str, Any]:
        with self.pool.transaction() as conn:
            conn.execute(
                """
                INSERT INTO videos(library_id, title, file_path, created_at) VALUES(?, ?, ?, ?)
                ON CONFLICT(library_id, file_path) DO UPDATE SET title=excluded.title
                """,
                (library_id, title, file_path, to_iso(utc_now())),
            )
            row = conn.execute(
                "SELECT * FROM videos WHERE library_id=? AND file_path=?", (library_id, file_path)
            ).fetchone()
        return dict(row)

    def get_video(self, video_id: int) -> dict[str, Any] | None:
        with self.pool.connection() as conn:
            row = conn.execute(
                """
                SELECT v.*, l.path AS library_path FROM videos v
                JOIN libraries l ON l.id = v.library_id WHERE v.id=?
                """,
                (video_id,),
            ).fetchone()
        return _row_dict(row)

    # ------------------------------------------------------------------
    # AI audit log
    # ------------------------------------------------------------------
    def record_ai_audit(
        self,
        *,
        operation: str,
        status: str,
        subject_kind: str | None = None,
        subject_id: int | None = None,
        model: str | None = None,
        prompt: str | None = None,
        response: str | None = None,
        duration_ms: int | None = None,
    ) -> int:
        with self.pool.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO ai_audit_logs(
                    operation, subject_kind, subject_id, model, prompt, response, status, duration_ms, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation,
                    subject_kind,
                    subject_id,
                    model,
                    prompt,
                    response,
                    status,
                    duration_ms,
                    to_iso(utc_now()),
                ),
            )
        return int(cur.lastrowid)

    def list_ai_audit(self, limit: int = 50) -> list[dict[str, Any]]:
        with self.pool.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_audit_logs ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [dict(row) for row in rows]

    def prune_ai_audit(self, before: datetime) -> int:
        with self.pool.transaction() as conn:
            cur = conn.execute("DELETE FROM ai_audit_logs WHERE created_at < ?", (to_iso(before),))
        return cur.rowcount


__all__ = [
    "DOWNLOAD_STATUSES",
    "JOB_KINDS",
    "LINK_STATUSES",
    "LinkSnapshot",
    "PostSnapshot",
    "SCHEDULE_KINDS",
    "ScheduledJob",
    "SnapshotResult",
    "Store",
    "THREAD_FILTERS",
    "THREAD_SORTS",
    "ThreadSnapshot",
    "from_iso",
    "to_iso",
    "utc_now",
]
