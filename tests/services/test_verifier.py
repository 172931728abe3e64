from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mediavault.config import VerifierConfig
from mediavault.db.store import LinkSnapshot, PostSnapshot, ThreadSnapshot, from_iso
from mediavault.services.verifier import LinkVerifier, VerificationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

GOFILE = "https://gofile.io/d/aaa"
PIXELDRAIN = "https://pixeldrain.com/u/bbb"
MEDIAFIRE = "https://mediafire.com/file/ccc/clip.mp4"
MEGA = "https://mega.nz/file/ddd"


def _seed(store, *links: tuple[str, str]) -> int:
    snapshot = ThreadSnapshot(
        url="https://forum.example/threads/links.9",
        title="Links",
        external_id="9",
        posts=[
            PostSnapshot(
                external_post_id="1",
                author="uploader",
                posted_at=None,
                body="links",
                order_index=0,
                links=[LinkSnapshot(url=url, provider=provider) for url, provider in links],
            )
        ],
    )
    return store.commit_thread_snapshot(snapshot).thread_id


@pytest.fixture()
def verifier(store, ledger, limiter, fake_http):
    return LinkVerifier(
        store,
        ledger,
        limiter,
        config=VerifierConfig(worker_count=4, per_host_spacing_ms=0, failure_threshold=3),
        session=fake_http,
        clock=lambda: NOW,
    )


def _by_url(store, thread_id):
    return {link["url"]: link for link in store.links_for_thread(thread_id)}


def test_thread_verification_classifies_each_link(verifier, store, fake_http):
    thread_id = _seed(
        store,
        (GOFILE, "gofile"),
        (PIXELDRAIN, "pixeldrain"),
        (MEDIAFIRE, "mediafire"),
        (MEGA, "mega"),
    )
    fake_http.add(
        "HEAD",
        GOFILE,
        status=200,
        headers={"Content-Type": "video/mp4", "Content-Length": "1000000"},
    )
    fake_http.add("HEAD", PIXELDRAIN, status=404)
    fake_http.add("HEAD", MEDIAFIRE, status=429, headers={"Retry-After": "120"})
    fake_http.add("HEAD", MEGA, status=403)

    result = verifier.verify_thread(thread_id)

    assert result == {
        "total": 4,
        "checked": 4,
        "deferred": 0,
        "active": 2,
        "dead": 1,
        "rate_limited": 1,
        "transient": 0,
    }
    links = _by_url(store, thread_id)
    assert links[GOFILE]["status"] == "active"
    assert links[GOFILE]["file_size"] == 1000000
    assert links[GOFILE]["file_type"] == "video/mp4"
    assert links[PIXELDRAIN]["status"] == "dead"
    assert links[MEDIAFIRE]["status"] == "rate_limited"
    assert from_iso(links[MEDIAFIRE]["rate_limited_until"]) == NOW + timedelta(seconds=120)
    assert links[MEGA]["status"] == "active"
    assert links[MEGA]["requires_auth"]
    assert all(link["check_count"] == 1 for link in links.values())

    stats = verifier.stats()
    assert stats["total_checked"] == 4
    assert stats["in_progress"] == 0


def test_rate_limited_links_are_not_stale_until_cooldown_ends(verifier, store, fake_http):
    thread_id = _seed(store, (MEDIAFIRE, "mediafire"))
    fake_http.add("HEAD", MEDIAFIRE, status=429, headers={"Retry-After": "120"})
    verifier.verify_thread(thread_id)

    cutoff = NOW + timedelta(days=1)
    assert store.stale_links(cutoff=cutoff, now=NOW, limit=10) == []
    later = NOW + timedelta(seconds=121)
    assert [link["url"] for link in store.stale_links(cutoff=cutoff, now=later, limit=10)] == [MEDIAFIRE]


def test_transient_failures_turn_dead_at_the_threshold(verifier, store, fake_http):
    thread_id = _seed(store, (GOFILE, "gofile"))
    fake_http.add("HEAD", GOFILE, status=500)

    for expected_failures in (1, 2):
        result = verifier.verify_thread(thread_id)
        assert result["transient"] == 1
        link = _by_url(store, thread_id)[GOFILE]
        assert link["consecutive_failures"] == expected_failures
        assert link["status"] == "unknown"

    result = verifier.verify_thread(thread_id)
    assert result["dead"] == 1
    assert _by_url(store, thread_id)[GOFILE]["status"] == "dead"


def test_small_html_answer_is_sniffed_for_not_found_pages(verifier, store, fake_http):
    thread_id = _seed(store, (GOFILE, "gofile"))
    fake_http.add("HEAD", GOFILE, status=200, headers={"Content-Type": "text/html; charset=utf-8"})
    fake_http.add("GET", GOFILE, text="<html><h1>This content does not exist</h1></html>")

    result = verifier.verify_thread(thread_id)

    assert result["dead"] == 1
    assert _by_url(store, thread_id)[GOFILE]["notes"] == "not-found page"


def test_head_not_allowed_falls_back_to_ranged_get(verifier, store, fake_http):
    thread_id = _seed(store, (PIXELDRAIN, "pixeldrain"))
    fake_http.add("HEAD", PIXELDRAIN, status=405)
    fake_http.add(
        "GET",
        PIXELDRAIN,
        status=206,
        headers={"Content-Type": "video/mp4", "Content-Range": "bytes 0-0/5000"},
    )

    verifier.verify_thread(thread_id)

    link = _by_url(store, thread_id)[PIXELDRAIN]
    assert link["status"] == "active"
    assert link["file_size"] == 5000
    _, _, kwargs = fake_http.calls[-1]
    assert kwargs["headers"]["Range"] == "bytes=0-0"


def test_provider_health_scores_decisive_outcomes(verifier, store, fake_http):
    thread_id = _seed(store, (GOFILE, "gofile"), (PIXELDRAIN, "pixeldrain"), (MEDIAFIRE, "mediafire"))
    fake_http.add("HEAD", GOFILE, status=200, headers={"Content-Type": "video/mp4", "Content-Length": "9999"})
    fake_http.add("HEAD", PIXELDRAIN, status=410)
    fake_http.add("HEAD", MEDIAFIRE, status=429)
    verifier.verify_thread(thread_id)

    health = {entry["provider"]: entry for entry in verifier.provider_health()}
    assert health["gofile"]["score"] == 1.0
    assert health["pixeldrain"]["score"] == 0.0
    assert health["mediafire"]["window"]["unknown"] == 1
    assert health["mediafire"]["score"] == 1.0

    [only] = verifier.provider_health("pixeldrain")
    assert only["totals"]["dead"] == 1


def test_unknown_thread_is_rejected(verifier):
    with pytest.raises(VerificationError):
        verifier.verify_thread(424242)
