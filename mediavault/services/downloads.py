"""Dispatch of verified links to an external JDownloader instance."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from mediavault.config import DownloadsConfig
from mediavault.db.store import DOWNLOAD_STATUSES, Store
from mediavault.errors import TransientError

LOGGER = logging.getLogger(__name__)


class DownloadManagerError(TransientError):
    """Raised when the download manager cannot be reached or rejects a request."""


class DownloadDispatcher:
    """Thin client for the JDownloader direct-connection API plus link bookkeeping."""

    def __init__(
        self,
        store: Store,
        *,
        config: DownloadsConfig | None = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.store = store
        self.config = config or DownloadsConfig()
        self.base_url = self.config.manager_url.rstrip("/")
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.config.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise DownloadManagerError(f"download manager {method} {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise DownloadManagerError(
                f"download manager {method} {url} returned {response.status_code}: {response.text[:200]}"
            )
        return response

    def version(self) -> str:
        return self._request("GET", "/flash/get/version").text.strip()

    def is_available(self) -> bool:
        try:
            self.version()
        except DownloadManagerError as exc:
            LOGGER.debug("download manager unavailable: %s", exc)
            return False
        return True

    def add_links(
        self,
        links: Sequence[str],
        *,
        package_name: str | None = None,
        destination: str | None = None,
    ) -> None:
        if not links:
            raise ValueError("no links provided")
        payload: Dict[str, Any] = {"links": list(links), "autostart": False, "autoExtract": False}
        if package_name:
            payload["packageName"] = package_name
        if destination:
            payload["destinationFolder"] = destination
        self._request("POST", "/linkgrabberv2/addLinks", json=payload)

    def dispatch_thread(self, thread_id: int, *, destination: str | None = None) -> Dict[str, Any]:
        """Send a thread's active, still-pending links to the manager."""

        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise LookupError(f"thread {thread_id} not found")
        links = self.store.links_for_dispatch(thread_id)
        urls: List[str] = [link["url"] for link in links]
        if urls:
            self.add_links(urls, package_name=thread.get("title") or f"thread-{thread_id}", destination=destination)
            LOGGER.info("dispatched %d links of thread %s to the download manager", len(urls), thread_id)
        return {"thread_id": thread_id, "dispatched": len(urls), "links": [link["id"] for link in links]}

    def mark(self, link_id: int, status: str, *, path: str | None = None, notes: str | None = None) -> bool:
        if status not in DOWNLOAD_STATUSES or status == "pending":
            raise ValueError("status must be 'downloaded' or 'failed'; use reset to return to pending")
        return self.store.mark_download(link_id, status, path=path, notes=notes)

    def reset(self, link_id: int) -> bool:
        return self.store.reset_download(link_id)


__all__ = ["DownloadDispatcher", "DownloadManagerError"]
