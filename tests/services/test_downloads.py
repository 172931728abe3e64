from __future__ import annotations

import pytest

from mediavault.config import DownloadsConfig
from mediavault.db.store import LinkSnapshot, PostSnapshot, ThreadSnapshot
from mediavault.services.downloads import DownloadDispatcher, DownloadManagerError

MANAGER = "http://jd.local:3128"


@pytest.fixture()
def dispatcher(store, fake_http):
    return DownloadDispatcher(
        store, config=DownloadsConfig(manager_url=f"{MANAGER}/"), session=fake_http
    )


def _seed(store) -> tuple[int, dict]:
    result = store.commit_thread_snapshot(
        ThreadSnapshot(
            url="https://forum.example/threads/pack.3",
            title="Beach pack",
            external_id="3",
            posts=[
                PostSnapshot(
                    external_post_id="1",
                    author="uploader",
                    posted_at=None,
                    body="two mirrors",
                    order_index=0,
                    links=[
                        LinkSnapshot(url="https://gofile.io/d/live", provider="gofile"),
                        LinkSnapshot(url="https://gofile.io/d/gone", provider="gofile"),
                    ],
                )
            ],
        )
    )
    links = {link["url"]: link for link in store.links_for_thread(result.thread_id)}
    return result.thread_id, links


def test_version_and_availability(dispatcher, fake_http):
    assert not dispatcher.is_available()
    fake_http.add("GET", f"{MANAGER}/flash/get/version", text="2.0.1\n")
    assert dispatcher.version() == "2.0.1"
    assert dispatcher.is_available()


def test_dispatch_sends_only_active_pending_links(dispatcher, store, fake_http):
    thread_id, links = _seed(store)
    live = links["https://gofile.io/d/live"]
    gone = links["https://gofile.io/d/gone"]
    assert store.apply_link_check(live["id"], live["status_version"], {"status": "active"})
    assert store.apply_link_check(gone["id"], gone["status_version"], {"status": "dead"})
    fake_http.add("POST", f"{MANAGER}/linkgrabberv2/addLinks", text="ok")

    result = dispatcher.dispatch_thread(thread_id, destination="/media/beach")

    assert result == {"thread_id": thread_id, "dispatched": 1, "links": [live["id"]]}
    _, _, kwargs = fake_http.calls[-1]
    assert kwargs["json"] == {
        "links": ["https://gofile.io/d/live"],
        "autostart": False,
        "autoExtract": False,
        "packageName": "Beach pack",
        "destinationFolder": "/media/beach",
    }


def test_dispatch_without_candidates_makes_no_request(dispatcher, store, fake_http):
    thread_id, _ = _seed(store)
    assert dispatcher.dispatch_thread(thread_id)["dispatched"] == 0
    assert fake_http.calls == []


def test_manager_errors_are_transient(dispatcher, fake_http):
    fake_http.add("POST", f"{MANAGER}/linkgrabberv2/addLinks", status=500, text="boom")
    with pytest.raises(DownloadManagerError) as info:
        dispatcher.add_links(["https://gofile.io/d/x"])
    assert info.value.retryable
    with pytest.raises(ValueError):
        dispatcher.add_links([])


def test_unknown_thread_and_mark_rules(dispatcher, store):
    with pytest.raises(LookupError):
        dispatcher.dispatch_thread(999)

    _, links = _seed(store)
    link_id = links["https://gofile.io/d/live"]["id"]
    with pytest.raises(ValueError):
        dispatcher.mark(link_id, "pending")
    assert dispatcher.mark(link_id, "downloaded", path="/media/a.mp4")
    assert not dispatcher.mark(link_id, "failed")
    assert dispatcher.reset(link_id)
    assert store.get_link(link_id)["download_status"] == "pending"
