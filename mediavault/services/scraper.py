"""Fetch, parse, diff and persist remote forum threads."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from mediavault.config import ScraperConfig
from mediavault.db.store import PostSnapshot, Store, ThreadSnapshot, utc_now
from mediavault.errors import JobCancelled, PermanentError, TransientError, WorkerError
from mediavault.metrics import MetricsRegistry
from mediavault.services.activity import ActivityLedger
from mediavault.services.forum_parser import (
    clean_thread_url,
    external_thread_id,
    extract_performers,
    extract_tags,
    listing_page_url,
    page_url,
    parse_listing,
    parse_thread_page,
)
from mediavault.services.hub import BroadcastHub
from mediavault.services.rate_limit import HostRateLimiter

LOGGER = logging.getLogger(__name__)

SESSION_COOKIE_KEY = "scraper.session_cookie"
RETRY_BASE_SECONDS = 1.0
RETRY_FACTOR = 2.0
RETRY_JITTER = 0.2
_THROTTLE_STATUSES = {429, 503}


class ScrapeError(PermanentError):
    """Raised when a thread or listing cannot be scraped."""


class FetchError(TransientError):
    """A single page fetch failed in a way worth retrying."""


@dataclass(slots=True)
class ScrapeResult:
    thread_id: int
    url: str
    title: str
    pages: int
    posts: int
    posts_added: int = 0
    posts_removed: int = 0
    links_added: int = 0
    links_total: int = 0
    last_scraped_at: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "url": self.url,
            "title": self.title,
            "pages": self.pages,
            "posts": self.posts,
            "posts_added": self.posts_added,
            "posts_removed": self.posts_removed,
            "links_added": self.links_added,
            "links_total": self.links_total,
            "last_scraped_at": self.last_scraped_at,
        }


@dataclass(slots=True)
class CategoryResult:
    url: str
    threads_found: int = 0
    scraped: List[int] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "threads_found": self.threads_found,
            "scraped": len(self.scraped),
            "failed": len(self.failed),
            "thread_ids": list(self.scraped),
            "errors": dict(self.failed),
        }


def _retry_after_seconds(response: requests.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    raw = raw.strip()
    if raw.isdigit():
        return float(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utc_now()).total_seconds())


class ForumScraper:
    """Scrape one thread (or a whole listing) into a consistent snapshot."""

    def __init__(
        self,
        store: Store,
        ledger: ActivityLedger,
        limiter: HostRateLimiter,
        hub: BroadcastHub | None = None,
        *,
        config: ScraperConfig | None = None,
        metrics: MetricsRegistry | None = None,
        session: Optional[requests.Session] = None,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.limiter = limiter
        self.hub = hub
        self.config = config or ScraperConfig()
        self.metrics = metrics
        self._session = session or requests.Session()
        self._jitter = jitter

    # ------------------------------------------------------------------
    # Session credential
    # ------------------------------------------------------------------
    def session_cookie(self) -> str | None:
        value = self.store.get_setting(SESSION_COOKIE_KEY)
        return value or None

    def set_session_cookie(self, cookie: str) -> None:
        self.store.set_setting(SESSION_COOKIE_KEY, cookie.strip())
        LOGGER.info("scraper session cookie updated (%d chars)", len(cookie.strip()))

    def clear_session_cookie(self) -> bool:
        return self.store.delete_setting(SESSION_COOKIE_KEY)

    def _headers(self, cookie: str | None) -> Dict[str, str]:
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        if cookie:
            headers["Cookie"] = cookie
        return headers

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    def _backoff(self, attempt: int) -> float:
        base = RETRY_BASE_SECONDS * (RETRY_FACTOR ** (attempt - 1))
        return base * (1 + RETRY_JITTER * (2 * self._jitter() - 1))

    def _fetch_once(self, url: str, headers: Dict[str, str], cancel: threading.Event) -> str:
        spacing = self.config.per_host_spacing_ms / 1000
        if not self.limiter.acquire(url, spacing=spacing, cancel=cancel):
            raise JobCancelled(f"cancelled before fetching {url}")
        cooldown: float | None = None
        try:
            try:
                response = self._session.get(
                    url,
                    headers=headers,
                    timeout=self.config.request_timeout_ms / 1000,
                    allow_redirects=True,
                )
            except requests.RequestException as exc:
                raise FetchError(f"request to {url} failed: {exc}") from exc
            status = response.status_code
            if status == 200:
                return response.text
            if status in _THROTTLE_STATUSES:
                cooldown = _retry_after_seconds(response)
                raise FetchError(f"{url} answered {status}")
            if status in (404, 410):
                raise ScrapeError(f"{url} answered {status}")
            if 400 <= status < 500 and status != 408:
                raise ScrapeError(f"{url} answered {status}")
            raise FetchError(f"{url} answered {status}")
        finally:
            self.limiter.release(url, cooldown=cooldown)

    def fetch(
        self,
        url: str,
        cancel: threading.Event | None = None,
        cookie: str | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> str:
        """GET ``url`` with retries: 3 attempts, base 1 s, factor 2, 20% jitter.

        ``heartbeat`` is called before every attempt so a scheduled caller
        can show it is still making progress.
        """

        cancel = cancel or threading.Event()
        headers = self._headers(cookie)
        attempts = max(1, self.config.max_attempts)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            if cancel.is_set():
                raise JobCancelled(f"cancelled before fetching {url}")
            if heartbeat is not None:
                heartbeat()
            try:
                html = self._fetch_once(url, headers, cancel)
            except FetchError as exc:
                last_error = exc
                if attempt == attempts:
                    break
                delay = self._backoff(attempt)
                LOGGER.warning(
                    "fetch attempt %d/%d for %s failed (%s); retrying in %.2fs",
                    attempt,
                    attempts,
                    url,
                    exc,
                    delay,
                )
                if cancel.wait(delay):
                    raise JobCancelled(f"cancelled while retrying {url}") from exc
                continue
            if self.metrics:
                self.metrics.record_page_fetch(retries=attempt - 1)
            return html
        raise ScrapeError(f"giving up on {url} after {attempts} attempts: {last_error}")

    # ------------------------------------------------------------------
    # Scraping
    # ------------------------------------------------------------------
    def scrape_thread(
        self,
        url: str,
        *,
        cancel: threading.Event | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> ScrapeResult:
        """Fetch every page of a thread and commit it as one snapshot."""

        cancel = cancel or threading.Event()
        thread_url = clean_thread_url(url)
        cookie = self.session_cookie()
        if not cookie:
            LOGGER.info("no session cookie configured; scraping %s anonymously", thread_url)
        activity_id = self.ledger.open(
            "scrape_thread", f"Scraping {thread_url}", details={"url": thread_url}
        )
        self._publish("started", {"url": thread_url, "activity_id": activity_id})
        budget = max(1, self.config.max_pages_per_thread)
        try:
            posts: List[PostSnapshot] = []
            seen_ids: set[str] = set()
            first = None
            page = 1
            last_reported: tuple[int, int] | None = None
            while True:
                if not self.ledger.wait_while_paused(activity_id, cancel):
                    raise JobCancelled("scrape cancelled")
                html = self.fetch(page_url(thread_url, page), cancel, cookie, heartbeat)
                parsed = parse_thread_page(html, current_page=page, first_index=len(posts))
                if first is None:
                    first = parsed
                if page > 1 and not parsed.posts:
                    LOGGER.info("page %d of %s has no posts; stopping", page, thread_url)
                    break
                for post in parsed.posts:
                    if post.external_post_id not in seen_ids:
                        seen_ids.add(post.external_post_id)
                        posts.append(post)
                has_more = parsed.has_next and page < budget
                total = min(max(parsed.last_page, page), budget) if has_more else page
                self.ledger.step(activity_id, page, total=total)
                self._publish(
                    "progress",
                    {"url": thread_url, "current": page, "total": total, "posts": len(posts)},
                )
                last_reported = (page, total)
                if not has_more:
                    break
                page += 1

            pages = last_reported[0] if last_reported else 0
            if last_reported and last_reported[0] != last_reported[1]:
                self._publish(
                    "progress",
                    {"url": thread_url, "current": pages, "total": pages, "posts": len(posts)},
                )

            title = first.title if first else ""
            snapshot = ThreadSnapshot(
                url=thread_url,
                title=title,
                external_id=external_thread_id(thread_url),
                author=first.author if first else None,
                forum_category=first.category if first else None,
                tags=extract_tags(title),
                performers=extract_performers(title) if title else [],
                posts=posts,
            )
            committed = self.store.commit_thread_snapshot(snapshot)
        except WorkerError as exc:
            self._fail(activity_id, thread_url, exc)
            raise
        except Exception as exc:
            self._fail(activity_id, thread_url, exc)
            raise ScrapeError(f"scrape of {thread_url} failed: {exc}") from exc

        result = ScrapeResult(
            thread_id=committed.thread_id,
            url=thread_url,
            title=title,
            pages=pages,
            posts=len(posts),
            posts_added=committed.posts_added,
            posts_removed=committed.posts_removed,
            links_added=committed.links_added,
            links_total=committed.links_total,
            last_scraped_at=committed.last_scraped_at,
        )
        self.ledger.close(activity_id, "completed")
        self._publish("completed", {**result.to_dict(), "activity_id": activity_id})
        LOGGER.info(
            "scraped %s: %d pages, %d posts, %d new links",
            thread_url,
            result.pages,
            result.posts,
            result.links_added,
        )
        return result

    def list_category_threads(
        self,
        forum_url: str,
        *,
        cancel: threading.Event | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> List[str]:
        cancel = cancel or threading.Event()
        cookie = self.session_cookie()
        urls: List[str] = []
        seen: set[str] = set()
        for page in range(1, max(1, self.config.max_pages_per_thread) + 1):
            html = self.fetch(listing_page_url(forum_url, page), cancel, cookie, heartbeat)
            listing = parse_listing(html, forum_url)
            for url, _title in listing.threads:
                if url not in seen:
                    seen.add(url)
                    urls.append(url)
            if not listing.has_next or not listing.threads:
                break
        return urls

    def scrape_forum_category(
        self,
        forum_url: str,
        *,
        cancel: threading.Event | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> CategoryResult:
        """Enumerate a listing and scrape each thread on a bounded pool."""

        cancel = cancel or threading.Event()
        activity_id = self.ledger.open(
            "scrape_forum", f"Scraping forum {forum_url}", details={"url": forum_url}
        )
        result = CategoryResult(url=forum_url)
        try:
            urls = self.list_category_threads(forum_url, cancel=cancel, heartbeat=heartbeat)
        except WorkerError as exc:
            self.ledger.close(activity_id, "failed", str(exc))
            raise
        result.threads_found = len(urls)
        self.ledger.step(activity_id, 0, total=len(urls))

        done = 0
        workers = max(1, self.config.category_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scrape-forum") as pool:
            futures = {
                pool.submit(self.scrape_thread, url, cancel=cancel, heartbeat=heartbeat): url
                for url in urls
            }
            for future in as_completed(futures):
                url = futures[future]
                done += 1
                try:
                    result.scraped.append(future.result().thread_id)
                except WorkerError as exc:
                    result.failed[url] = str(exc)
                    LOGGER.warning("thread %s failed during forum scrape: %s", url, exc)
                self.ledger.step(activity_id, done, total=len(urls))

        if cancel.is_set():
            self.ledger.close(activity_id, "failed", "cancelled")
            raise JobCancelled("forum scrape cancelled")
        if urls and not result.scraped:
            self.ledger.close(activity_id, "failed", "every thread failed")
            raise ScrapeError(f"no thread of {forum_url} could be scraped")
        self.ledger.close(activity_id, "completed")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fail(self, activity_id: int, url: str, exc: BaseException) -> None:
        LOGGER.warning("scrape of %s failed: %s", url, exc)
        self.ledger.close(activity_id, "failed", str(exc))
        self._publish("failed", {"url": url, "activity_id": activity_id, "error": str(exc)})

    def _publish(self, name: str, payload: Dict[str, Any]) -> None:
        if self.hub is not None:
            self.hub.publish("scrape", name, payload)


__all__ = [
    "CategoryResult",
    "FetchError",
    "ForumScraper",
    "SESSION_COOKIE_KEY",
    "ScrapeError",
    "ScrapeResult",
]
