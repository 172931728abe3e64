from __future__ import annotations

import time

import pytest

from mediavault.config import ScraperConfig
from mediavault.services import scraper as scraper_module
from mediavault.services.scraper import ForumScraper, ScrapeError

THREAD_URL = "https://forum.example/threads/sample.77"


def _thread_page(title: str, posts: list[tuple[str, str]], *, pages: int = 1, next_page: bool = False) -> str:
    articles = "".join(
        f'<article class="message message--post" data-content="post-{post_id}">'
        f'<div class="message-name"><a class="username">user{post_id}</a></div>'
        f'<div class="message-body"><div class="bbWrapper">{body}</div></div></article>'
        for post_id, body in posts
    )
    nav = "".join(f'<li class="pageNav-page"><a>{n}</a></li>' for n in range(1, pages + 1))
    next_link = '<a class="pageNav-jump pageNav-jump--next">Next</a>' if next_page else ""
    return (
        f'<h1 class="p-title-value">{title}</h1>{articles}'
        f'<nav class="pageNav"><ul>{nav}</ul>{next_link}</nav>'
    )


@pytest.fixture(autouse=True)
def _no_retry_delay(monkeypatch):
    monkeypatch.setattr(scraper_module, "RETRY_BASE_SECONDS", 0.0)


@pytest.fixture()
def forum_scraper(store, ledger, limiter, hub, fake_http):
    return ForumScraper(
        store,
        ledger,
        limiter,
        hub,
        config=ScraperConfig(per_host_spacing_ms=0, category_workers=2),
        session=fake_http,
        jitter=lambda: 0.5,
    )


def _drain(observer, count, timeout=2.0):
    messages = []
    deadline = time.monotonic() + timeout
    while len(messages) < count and time.monotonic() < deadline:
        message = observer.get(timeout=0.1)
        if message is not None:
            messages.append(message)
    return messages


def test_multi_page_thread_is_committed_with_ordered_events(forum_scraper, fake_http, hub, store):
    observer = hub.register(topics=["scrape"])
    fake_http.add(
        "GET",
        THREAD_URL,
        text=_thread_page(
            "Jane Doe - Set [OnlyFans]",
            [("1", "https://gofile.io/d/one"), ("2", "no links here")],
            pages=2,
            next_page=True,
        ),
    )
    fake_http.add(
        "GET",
        f"{THREAD_URL}/page-2",
        text=_thread_page("Jane Doe - Set [OnlyFans]", [("3", "https://pixeldrain.com/u/two")], pages=2),
    )

    result = forum_scraper.scrape_thread(f"{THREAD_URL}/page-2?utm=1")

    assert result.url == THREAD_URL
    assert (result.pages, result.posts, result.links_total) == (2, 3, 2)
    assert fake_http.urls("GET") == [THREAD_URL, f"{THREAD_URL}/page-2"]

    detail = store.thread_detail(result.thread_id)
    assert detail["title"] == "Jane Doe - Set [OnlyFans]"
    assert [post["external_post_id"] for post in detail["posts"]] == ["1", "2", "3"]

    events = _drain(observer, 4)
    assert [event["type"] for event in events] == [
        "scrape:started",
        "scrape:progress",
        "scrape:progress",
        "scrape:completed",
    ]
    assert [(e["payload"]["current"], e["payload"]["total"]) for e in events[1:3]] == [(1, 2), (2, 2)]
    assert events[3]["payload"]["thread_id"] == result.thread_id


def test_throttled_page_is_retried(forum_scraper, fake_http, response_factory):
    fake_http.add(
        "GET",
        THREAD_URL,
        response_factory(503),
        response_factory(200, text=_thread_page("Retry", [("1", "hello")])),
    )
    result = forum_scraper.scrape_thread(THREAD_URL)
    assert result.posts == 1
    assert len(fake_http.urls("GET")) == 2


def test_missing_thread_fails_without_retry(forum_scraper, fake_http, ledger, hub):
    observer = hub.register(topics=["scrape"])
    fake_http.add("GET", THREAD_URL, status=404)

    with pytest.raises(ScrapeError):
        forum_scraper.scrape_thread(THREAD_URL)

    assert len(fake_http.urls("GET")) == 1
    failed = ledger.query(status="failed")
    assert len(failed) == 1 and "404" in failed[0]["error"]
    events = _drain(observer, 2)
    assert [event["type"] for event in events] == ["scrape:started", "scrape:failed"]


def test_persistent_server_errors_give_up_after_max_attempts(forum_scraper, fake_http):
    fake_http.add("GET", THREAD_URL, status=500)
    with pytest.raises(ScrapeError, match="after 3 attempts"):
        forum_scraper.scrape_thread(THREAD_URL)
    assert len(fake_http.urls("GET")) == 3


def test_session_cookie_is_sent_when_configured(forum_scraper, fake_http):
    forum_scraper.set_session_cookie("  xf_session=abc  ")
    fake_http.add("GET", THREAD_URL, text=_thread_page("Cookie", [("1", "x")]))
    forum_scraper.scrape_thread(THREAD_URL)
    _, _, kwargs = fake_http.calls[0]
    assert kwargs["headers"]["Cookie"] == "xf_session=abc"
    assert forum_scraper.clear_session_cookie()
    assert forum_scraper.session_cookie() is None


def test_forum_category_collects_failures(forum_scraper, fake_http):
    forum_url = "https://forum.example/forums/videos.5"
    fake_http.add(
        "GET",
        forum_url,
        text=(
            '<div class="structItem structItem--thread"><div class="structItem-title">'
            '<a href="/threads/good.1/">Good</a></div></div>'
            '<div class="structItem structItem--thread"><div class="structItem-title">'
            '<a href="/threads/gone.2/">Gone</a></div></div>'
        ),
    )
    fake_http.add("GET", "https://forum.example/threads/good.1", text=_thread_page("Good", [("1", "x")]))
    fake_http.add("GET", "https://forum.example/threads/gone.2", status=404)

    result = forum_scraper.scrape_forum_category(forum_url)

    assert result.threads_found == 2
    assert len(result.scraped) == 1
    assert list(result.failed) == ["https://forum.example/threads/gone.2"]
