from __future__ import annotations

THREADS = "/api/v1/scraper/threads"
THREAD_URL = "https://forum.example/threads/sample-thread.4242"


def test_duplicate_submissions_share_one_job(app, client):
    first = client.post(THREADS, json={"url": f"{THREAD_URL}/page-3"})
    second = client.post(THREADS, json={"url": f"{THREAD_URL}/unread#post-9"})

    assert first.status_code == 202
    assert second.status_code == 202
    one, two = first.get_json()["data"], second.get_json()["data"]
    assert one["url"] == THREAD_URL
    assert one["thread_id"] == two["thread_id"]
    assert one["job_id"] == two["job_id"]
    assert (one["queued"], two["queued"]) == (True, False)

    jobs = app.config["SCHEDULER"].jobs()
    assert len(jobs) == 1
    assert (jobs[0].kind, jobs[0].target_kind, jobs[0].target_id) == ("scrape_thread", "thread", one["thread_id"])

    rescrape = client.post(f"{THREADS}/{one['thread_id']}/rescrape")
    assert rescrape.status_code == 202
    assert rescrape.get_json()["data"]["job_id"] == one["job_id"]


def test_thread_url_must_be_http(client):
    response = client.post(THREADS, json={"url": "ftp://forum.example/threads/x.1"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_argument"
    assert client.post(THREADS, json={}).status_code == 400


def test_list_and_detail(client):
    client.post(THREADS, json={"url": THREAD_URL})
    client.post(THREADS, json={"url": "https://forum.example/threads/other.7"})

    listing = client.get(f"{THREADS}?limit=1&page=2").get_json()["data"]
    assert listing["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}
    assert len(listing["items"]) == 1

    thread_id = listing["items"][0]["id"]
    detail = client.get(f"{THREADS}/{thread_id}")
    assert detail.status_code == 200
    assert detail.get_json()["data"]["posts"] == []

    assert client.get(f"{THREADS}/9999").status_code == 404
    assert client.post(f"{THREADS}/9999/rescrape").status_code == 404


def test_list_rejects_bad_query_arguments(client):
    assert client.get(f"{THREADS}?sort=random").status_code == 400
    assert client.get(f"{THREADS}?filter=everything").status_code == 400
    assert client.get(f"{THREADS}?page=0").status_code == 400
    assert client.get(f"{THREADS}?limit=abc").status_code == 400


def test_delete_thread(client):
    thread_id = client.post(THREADS, json={"url": THREAD_URL}).get_json()["data"]["thread_id"]
    assert client.delete(f"{THREADS}/{thread_id}").status_code == 200
    assert client.delete(f"{THREADS}/{thread_id}").status_code == 404


def test_forum_scrape_is_queued_as_a_job(app, client):
    response = client.post("/api/v1/scraper/forums", json={"url": "https://forum.example/forums/videos.5/"})
    assert response.status_code == 202
    job = app.config["SCHEDULER"].get_job(response.get_json()["data"]["job_id"])
    assert job.target_kind == "forum"
    assert job.schedule_config["url"] == "https://forum.example/forums/videos.5/"


def test_session_cookie_lifecycle(client):
    assert client.get("/api/v1/scraper/session").get_json()["data"] == {"configured": False}
    assert client.put("/api/v1/scraper/session", json={"cookie": "xf_session=abc"}).status_code == 200
    assert client.get("/api/v1/scraper/session").get_json()["data"] == {"configured": True}
    assert client.put("/api/v1/scraper/session", json={"cookie": ""}).status_code == 400
    assert client.delete("/api/v1/scraper/session").status_code == 200
    assert client.get("/api/v1/scraper/session").get_json()["data"] == {"configured": False}


def test_scraper_stats(client):
    client.post(THREADS, json={"url": THREAD_URL})
    stats = client.get("/api/v1/scraper/stats").get_json()["data"]
    assert stats["threads"] == {"total": 1, "scraped": 0}
    assert stats["links"]["total"] == 0
