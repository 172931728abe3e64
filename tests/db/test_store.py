from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from mediavault.db.pool import ConnectionPool, PoolTimeout
from mediavault.db.schema import MIGRATION_IDS, applied_migrations
from mediavault.db.store import LinkSnapshot, PostSnapshot, Store, ThreadSnapshot, to_iso

THREAD_URL = "https://forum.example/threads/sample-thread.4242"


def _snapshot(*posts: PostSnapshot, title: str = "Sample thread") -> ThreadSnapshot:
    return ThreadSnapshot(url=THREAD_URL, title=title, external_id="4242", posts=list(posts))


def _post(post_id: str, index: int, *urls: str) -> PostSnapshot:
    return PostSnapshot(
        external_post_id=post_id,
        author="uploader",
        posted_at="2024-01-01T00:00:00+00:00",
        body=f"post {post_id}",
        order_index=index,
        links=[LinkSnapshot(url=url, provider="gofile") for url in urls],
    )


def test_migrations_are_recorded_and_idempotent(tmp_path):
    db_path = tmp_path / "vault.sqlite3"
    first = ConnectionPool(db_path, size=1)
    first.close()
    second = ConnectionPool(db_path, size=1)
    with second.connection() as conn:
        assert applied_migrations(conn) == sorted(MIGRATION_IDS)
    second.close()


def test_pool_times_out_when_exhausted(tmp_path):
    pool = ConnectionPool(tmp_path / "vault.sqlite3", size=1, timeout=0.1)
    with pool.connection():
        with pytest.raises(PoolTimeout):
            with pool.connection():
                pass
    metrics = pool.metrics()
    assert metrics["wait_timeouts"] == 1
    assert metrics["in_use"] == 0
    assert pool.ping() is True
    pool.close()
    assert pool.ping() is False


def test_only_one_thread_wins_a_job_claim(store: Store):
    now = datetime.now(tz=timezone.utc)
    job = store.create_job(
        kind="cleanup_activities",
        schedule_kind="interval",
        schedule_config={"interval_minutes": 5},
        next_run_at=now - timedelta(seconds=1),
    )
    results: list[bool] = []
    barrier = threading.Barrier(6)

    def _claim(token: str) -> None:
        barrier.wait()
        results.append(
            store.claim_job(job.id, token, now=now, lease_until=now + timedelta(seconds=60))
        )

    threads = [threading.Thread(target=_claim, args=(f"token-{i}",)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert store.due_jobs(now, 10) == []


def test_expired_lease_can_be_reclaimed(store: Store):
    now = datetime.now(tz=timezone.utc)
    job = store.create_job(
        kind="cleanup_audit",
        schedule_kind="once",
        schedule_config={},
        next_run_at=now - timedelta(minutes=5),
    )
    assert store.claim_job(job.id, "crashed", now=now - timedelta(minutes=5), lease_until=now - timedelta(seconds=1))
    assert [due.id for due in store.due_jobs(now, 10)] == [job.id]
    assert store.claim_job(job.id, "fresh", now=now, lease_until=now + timedelta(seconds=60))
    assert store.get_job(job.id).claim_token == "fresh"
    assert not store.renew_claim(job.id, "crashed", now + timedelta(seconds=120))


def test_create_job_unless_pending_deduplicates(store: Store):
    thread, created = store.ensure_thread(THREAD_URL)
    assert created
    now = datetime.now(tz=timezone.utc)
    first, made = store.create_job_unless_pending(
        kind="scrape_thread", target_kind="thread", target_id=thread["id"], next_run_at=now
    )
    second, made_again = store.create_job_unless_pending(
        kind="scrape_thread", target_kind="thread", target_id=thread["id"], next_run_at=now
    )
    assert made and not made_again
    assert first.id == second.id
    assert len(store.list_jobs()) == 1


def test_rescrape_marks_vanished_posts_and_keeps_links(store: Store):
    first = store.commit_thread_snapshot(
        _snapshot(
            _post("1", 0, "https://gofile.io/d/aaa"),
            _post("2", 1, "https://gofile.io/d/bbb"),
        )
    )
    assert (first.posts_added, first.links_added, first.links_total) == (2, 2, 2)

    second = store.commit_thread_snapshot(
        _snapshot(
            _post("2", 0, "https://gofile.io/d/bbb"),
            _post("3", 1, "https://gofile.io/d/ccc"),
            title="Sample thread (updated)",
        )
    )
    assert second.thread_id == first.thread_id
    assert (second.posts_added, second.posts_updated, second.posts_removed) == (1, 1, 1)
    assert second.links_added == 1
    assert second.links_total == 3

    detail = store.thread_detail(first.thread_id)
    assert detail["title"] == "Sample thread (updated)"
    assert detail["last_scraped_at"] == second.last_scraped_at
    removed = {post["external_post_id"]: post["removed_at"] for post in detail["posts"]}
    assert removed["1"] is not None
    assert removed["2"] is None and removed["3"] is None
    assert sorted(link["url"] for link in detail["links"]) == [
        "https://gofile.io/d/aaa",
        "https://gofile.io/d/bbb",
        "https://gofile.io/d/ccc",
    ]


def test_link_check_is_compare_and_swap(store: Store):
    result = store.commit_thread_snapshot(_snapshot(_post("1", 0, "https://gofile.io/d/aaa")))
    link = store.links_for_thread(result.thread_id)[0]
    assert link["status"] == "unknown"
    assert link["status_version"] == 0

    assert store.apply_link_check(link["id"], 0, {"status": "active", "check_count": 1})
    assert not store.apply_link_check(link["id"], 0, {"status": "dead"})
    assert store.get_link(link["id"])["status"] == "active"

    with pytest.raises(ValueError):
        store.apply_link_check(link["id"], 1, {"url": "https://elsewhere.example"})


def test_download_status_only_moves_forward(store: Store):
    result = store.commit_thread_snapshot(_snapshot(_post("1", 0, "https://gofile.io/d/aaa")))
    link_id = store.links_for_thread(result.thread_id)[0]["id"]

    assert store.mark_download(link_id, "downloaded", path="/media/a.mp4")
    assert not store.mark_download(link_id, "failed")
    assert store.get_link(link_id)["download_status"] == "downloaded"

    assert store.reset_download(link_id)
    reset = store.get_link(link_id)
    assert reset["download_status"] == "pending"
    assert reset["download_path"] is None
    assert store.mark_download(link_id, "failed", notes="checksum mismatch")
    with pytest.raises(ValueError):
        store.mark_download(link_id, "pending")


def test_list_threads_paginates_and_filters(store: Store):
    store.commit_thread_snapshot(_snapshot(_post("1", 0, "https://gofile.io/d/aaa")))
    store.ensure_thread("https://forum.example/threads/empty.1")
    store.ensure_thread("https://forum.example/threads/other.2")

    items, total = store.list_threads(page=1, limit=2)
    assert total == 3
    assert len(items) == 2

    with_links, total_with_links = store.list_threads(filter_name="has_downloads")
    assert total_with_links == 1
    assert with_links[0]["link_count"] == 1

    by_provider, _ = store.list_threads(provider="pixeldrain")
    assert by_provider == []

    with pytest.raises(ValueError):
        store.list_threads(sort="random")


def test_timestamps_are_fixed_width_utc():
    naive = datetime(2024, 5, 1, 12, 0, 0)
    aware = datetime(2024, 5, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_iso(naive) == "2024-05-01T12:00:00.000000+00:00"
    assert to_iso(aware) == to_iso(naive)
