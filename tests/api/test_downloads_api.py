from __future__ import annotations

import pytest

from mediavault.config import DownloadsConfig
from mediavault.db.store import LinkSnapshot, PostSnapshot, ThreadSnapshot
from mediavault.services.downloads import DownloadDispatcher

MANAGER = "http://jd.local:3128"


@pytest.fixture()
def wired(app, fake_http):
    store = app.config["STORE"]
    app.config["DOWNLOADS"] = DownloadDispatcher(
        store, config=DownloadsConfig(manager_url=MANAGER), session=fake_http
    )
    result = store.commit_thread_snapshot(
        ThreadSnapshot(
            url="https://forum.example/threads/dl.1",
            title="Download me",
            posts=[
                PostSnapshot(
                    external_post_id="1",
                    author=None,
                    posted_at=None,
                    body="",
                    order_index=0,
                    links=[LinkSnapshot(url="https://gofile.io/d/a", provider="gofile")],
                )
            ],
        )
    )
    link = store.links_for_thread(result.thread_id)[0]
    store.apply_link_check(link["id"], link["status_version"], {"status": "active"})
    return result.thread_id, link["id"]


def test_status_reports_unavailable_manager(client, wired):
    data = client.get("/api/v1/downloads/status").get_json()["data"]
    assert data["available"] is False
    assert data["url"] == MANAGER


def test_status_reports_version(client, wired, fake_http):
    fake_http.add("GET", f"{MANAGER}/flash/get/version", text="2.0")
    assert client.get("/api/v1/downloads/status").get_json()["data"] == {
        "available": True,
        "url": MANAGER,
        "version": "2.0",
    }


def test_dispatch_and_failures(client, wired, fake_http):
    thread_id, link_id = wired
    unreachable = client.post(f"/api/v1/downloads/threads/{thread_id}/dispatch", json={})
    assert unreachable.status_code == 503

    fake_http.add("POST", f"{MANAGER}/linkgrabberv2/addLinks", text="ok")
    response = client.post(f"/api/v1/downloads/threads/{thread_id}/dispatch", json={})
    assert response.status_code == 200
    assert response.get_json()["data"]["links"] == [link_id]
    assert client.post("/api/v1/downloads/threads/999/dispatch", json={}).status_code == 404


def test_mark_and_reset(client, wired):
    _, link_id = wired
    marked = client.post(f"/api/v1/downloads/links/{link_id}/mark", json={"status": "downloaded", "path": "/m/a.mp4"})
    assert marked.status_code == 200
    assert marked.get_json()["data"]["download_status"] == "downloaded"

    backwards = client.post(f"/api/v1/downloads/links/{link_id}/mark", json={"status": "failed"})
    assert backwards.status_code == 409

    assert client.post(f"/api/v1/downloads/links/{link_id}/mark", json={"status": "pending"}).status_code == 400
    reset = client.post(f"/api/v1/downloads/links/{link_id}/reset")
    assert reset.get_json()["data"]["download_status"] == "pending"
    assert client.post("/api/v1/downloads/links/999/reset").status_code == 404
