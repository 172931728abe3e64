"""Concurrent liveness probing of harvested download links."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

import requests

from mediavault.config import BROWSER_USER_AGENT, VerifierConfig
from mediavault.db.store import Store, from_iso, utc_now
from mediavault.errors import JobCancelled, PermanentError
from mediavault.metrics import MetricsRegistry
from mediavault.services.activity import ActivityLedger
from mediavault.services.hub import BroadcastHub
from mediavault.services.providers import ProviderProfile, profile_for
from mediavault.services.rate_limit import HostRateLimiter

LOGGER = logging.getLogger(__name__)

ACTIVE = "active"
DEAD = "dead"
RATE_LIMITED = "rate_limited"
TRANSIENT = "transient"

MAX_REDIRECTS = 5
SMALL_BODY_BYTES = 4096
SNIFF_BYTES = 64 * 1024
# Links whose host is cooling down longer than this are left for a later run.
DEFER_AFTER_SECONDS = 5.0


class VerificationError(PermanentError):
    """A verification request that cannot be carried out."""


@dataclass(slots=True)
class ProbeOutcome:
    kind: str
    status_code: int | None = None
    file_size: int | None = None
    file_type: str | None = None
    requires_auth: bool = False
    cooldown_seconds: float | None = None
    note: str | None = None


class ProviderWindow:
    """Rolling window of the last ``size`` decisive outcomes for one provider."""

    def __init__(self, size: int = 500) -> None:
        self._outcomes: Deque[str] = deque(maxlen=max(1, size))

    def add(self, outcome: str) -> None:
        self._outcomes.append(outcome)

    def summary(self) -> Dict[str, Any]:
        active = sum(1 for item in self._outcomes if item == ACTIVE)
        dead = sum(1 for item in self._outcomes if item == DEAD)
        unknown = len(self._outcomes) - active - dead
        decisive = active + dead
        return {
            "active": active,
            "dead": dead,
            "unknown": unknown,
            "checks": len(self._outcomes),
            "score": round(active / decisive, 4) if decisive else 1.0,
        }


def _content_length(response: requests.Response) -> int | None:
    content_range = response.headers.get("Content-Range")
    if content_range and "/" in content_range:
        total = content_range.rsplit("/", 1)[-1].strip()
        if total.isdigit():
            return int(total)
    raw = response.headers.get("Content-Length")
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return None


def _media_type(response: requests.Response) -> str | None:
    raw = response.headers.get("Content-Type")
    if not raw:
        return None
    return raw.split(";", 1)[0].strip().lower() or None


def _matches(text: str, signatures: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(signature in lowered for signature in signatures)


class LinkVerifier:
    """Probe links under per-host politeness and track provider health."""

    def __init__(
        self,
        store: Store,
        ledger: ActivityLedger,
        limiter: HostRateLimiter,
        hub: BroadcastHub | None = None,
        *,
        config: VerifierConfig | None = None,
        metrics: MetricsRegistry | None = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.limiter = limiter
        self.hub = hub
        self.config = config or VerifierConfig()
        self.metrics = metrics
        self._session = session or requests.Session()
        self._session.max_redirects = MAX_REDIRECTS
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, ProviderWindow] = {}
        self._counters = {
            "total_checked": 0,
            ACTIVE: 0,
            DEAD: 0,
            RATE_LIMITED: 0,
            TRANSIENT: 0,
            "conflicts": 0,
        }
        self._in_flight = 0
        self._last_check_at: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Background stale-link loop
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="link-verifier", daemon=True)
        self._thread.start()
        LOGGER.info(
            "link verifier loop started (every %.0fs, ttl %d days)",
            self.config.poll_interval_seconds,
            self.config.default_ttl_days,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.config.poll_interval_seconds):
            cutoff = self._clock() - timedelta(days=self.config.default_ttl_days)
            try:
                self.verify_stale(cutoff, self.config.batch_size, cancel=self._stop)
            except JobCancelled:
                return
            except Exception:  # noqa: BLE001 - the loop must survive a bad batch
                LOGGER.exception("periodic link verification failed")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def verify_thread(
        self,
        thread_id: int,
        *,
        cancel: threading.Event | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> Dict[str, Any]:
        if self.store.get_thread(thread_id) is None:
            raise VerificationError(f"thread {thread_id} does not exist")
        links = self.store.links_for_thread(thread_id)
        return self._run_batch(
            links,
            task_type="verify_thread",
            label=f"Verifying links of thread {thread_id}",
            cancel=cancel,
            heartbeat=heartbeat,
            context={"thread_id": thread_id},
        )

    def verify_stale(
        self,
        cutoff: datetime,
        max_links: int,
        *,
        cancel: threading.Event | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> Dict[str, Any]:
        now = self._clock()
        links = self.store.stale_links(cutoff=cutoff, now=now, limit=max_links)
        return self._run_batch(
            self._dispatch_order(links, now),
            task_type="verify_stale",
            label=f"Verifying up to {max_links} stale links",
            cancel=cancel,
            heartbeat=heartbeat,
            context={"cutoff": cutoff.isoformat(), "limit": max_links},
        )

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            counters["in_progress"] = self._in_flight
            counters["last_check_at"] = self._last_check_at
        counters["links"] = self.store.link_stats()
        return counters

    def provider_health(self, provider: str | None = None) -> List[Dict[str, Any]]:
        totals = self.store.provider_totals()
        with self._lock:
            windows = {name: window.summary() for name, window in self._windows.items()}
        names = sorted(set(totals) | set(windows))
        if provider:
            names = [name for name in names if name == provider] or [provider]
        empty_window = ProviderWindow().summary()
        return [
            {
                "provider": name,
                "window": windows.get(name, empty_window),
                "score": windows.get(name, empty_window)["score"],
                "totals": totals.get(name, {}),
                "cooldown_seconds": profile_for(name).cooldown_seconds,
            }
            for name in names
        ]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch_order(self, links: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
        """Providers whose cooldown expired most recently go first, then oldest checks."""

        expired = self.store.expired_cooldowns(now)

        def _key(link: Dict[str, Any]) -> tuple:
            stamp = from_iso(expired.get(link["provider"]))
            freshness = -stamp.timestamp() if stamp else float("inf")
            return (freshness, link.get("last_checked_at") or "", link["id"])

        return sorted(links, key=_key)

    def _run_batch(
        self,
        links: List[Dict[str, Any]],
        *,
        task_type: str,
        label: str,
        cancel: threading.Event | None,
        context: Dict[str, Any],
        heartbeat: Callable[[], None] | None = None,
    ) -> Dict[str, Any]:
        cancel = cancel or threading.Event()
        beat = heartbeat or (lambda: None)
        total = len(links)
        activity_id = self.ledger.open(task_type, label, total=total, details=context)
        tally = {"checked": 0, "deferred": 0, ACTIVE: 0, DEAD: 0, RATE_LIMITED: 0, TRANSIENT: 0}
        pending: Deque[Dict[str, Any]] = deque(links)
        in_flight: Dict[Future, Dict[str, Any]] = {}
        workers = max(1, self.config.worker_count)
        spacing = self.config.per_host_spacing_ms / 1000

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify") as pool:
                while pending or in_flight:
                    if cancel.is_set():
                        pending.clear()
                    for _ in range(len(pending)):
                        if len(in_flight) >= workers:
                            break
                        link = pending.popleft()
                        if self.limiter.ready_in(link["url"]) > max(DEFER_AFTER_SECONDS, spacing):
                            tally["deferred"] += 1
                            continue
                        if self.limiter.try_acquire(link["url"], spacing=spacing):
                            in_flight[pool.submit(self._check_link, link, cancel)] = link
                            beat()
                        else:
                            pending.append(link)
                    if not in_flight:
                        if pending:
                            cancel.wait(0.05)
                        continue
                    done, _ = wait(list(in_flight), timeout=0.05, return_when=FIRST_COMPLETED)
                    for future in done:
                        link = in_flight.pop(future)
                        outcome = future.result()
                        tally["checked"] += 1
                        tally[outcome] = tally.get(outcome, 0) + 1
                        self.ledger.step(activity_id, tally["checked"], total=total)
                        beat()
                        self._publish(
                            "progress",
                            {
                                "activity_id": activity_id,
                                "current": tally["checked"],
                                "total": total,
                                "link_id": link["id"],
                                "outcome": outcome,
                            },
                        )
        except Exception as exc:
            self.ledger.close(activity_id, "failed", str(exc))
            raise

        health = self.provider_health()
        self._publish("provider_health", {"providers": health})
        if cancel.is_set() and tally["checked"] + tally["deferred"] < total:
            self.ledger.close(activity_id, "failed", "cancelled")
            raise JobCancelled(f"verification cancelled after {tally['checked']} of {total} links")
        self.ledger.close(activity_id, "completed")
        LOGGER.info("verified %d links (%s)", tally["checked"], context)
        return {"total": total, **tally}

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------
    def _check_link(self, link: Dict[str, Any], cancel: threading.Event) -> str:
        """Probe one link (the caller holds its host token) and persist the result."""

        url = link["url"]
        profile = profile_for(link.get("provider"))
        with self._lock:
            self._in_flight += 1
        started = time.perf_counter()
        outcome: ProbeOutcome | None = None
        try:
            outcome = self.probe(url, profile)
        except Exception as exc:  # noqa: BLE001 - any probe crash counts as a transient failure
            LOGGER.exception("probe of %s crashed", url)
            outcome = ProbeOutcome(kind=TRANSIENT, note=f"probe error: {exc}")
        finally:
            cooldown = outcome.cooldown_seconds if outcome and outcome.kind == RATE_LIMITED else None
            self.limiter.release(url, cooldown=cooldown)
            with self._lock:
                self._in_flight -= 1
        if self.metrics:
            self.metrics.record_probe((time.perf_counter() - started) * 1000)
        return self._apply(link, outcome, profile)

    def probe(self, url: str, profile: ProviderProfile) -> ProbeOutcome:
        timeout = self.config.request_timeout_ms / 1000
        headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": "*/*"}
        try:
            response = self._session.head(url, headers=headers, timeout=timeout, allow_redirects=True)
            if response.status_code in (405, 501):
                response.close()
                response = self._session.get(
                    url,
                    headers={**headers, "Range": "bytes=0-0"},
                    timeout=timeout,
                    allow_redirects=True,
                    stream=True,
                )
            try:
                return self._classify(url, response, profile, headers, timeout)
            finally:
                response.close()
        except requests.TooManyRedirects:
            return ProbeOutcome(kind=DEAD, note="redirect loop")
        except requests.RequestException as exc:
            return ProbeOutcome(kind=TRANSIENT, note=f"{type(exc).__name__}: {exc}")

    def _classify(
        self,
        url: str,
        response: requests.Response,
        profile: ProviderProfile,
        headers: Dict[str, str],
        timeout: float,
    ) -> ProbeOutcome:
        status = response.status_code
        if response.history:
            final_url = str(response.url).lower()
            if any(marker in final_url for marker in profile.dead_redirect_markers):
                return ProbeOutcome(kind=DEAD, status_code=status, note=f"redirected to {response.url}")
        if status == 429:
            return ProbeOutcome(
                kind=RATE_LIMITED,
                status_code=status,
                cooldown_seconds=self._cooldown(response, profile),
            )
        if status in (404, 410):
            return ProbeOutcome(kind=DEAD, status_code=status)
        if status in (401, 403):
            return ProbeOutcome(kind=ACTIVE, status_code=status, requires_auth=True, note="requires auth")
        if 200 <= status < 300:
            size = _content_length(response)
            media_type = _media_type(response)
            looks_like_page = media_type in (None, "text/html", "text/plain", "application/json")
            if looks_like_page and (size is None or size < SMALL_BODY_BYTES or response.history):
                body = self._sniff(url, response, headers, timeout)
                if _matches(body, profile.not_found_signatures):
                    return ProbeOutcome(kind=DEAD, status_code=status, note="not-found page")
                if _matches(body, profile.throttle_signatures):
                    return ProbeOutcome(
                        kind=RATE_LIMITED,
                        status_code=status,
                        cooldown_seconds=profile.cooldown_seconds,
                        note="throttle page",
                    )
            file_type = None if looks_like_page else media_type
            file_size = None if looks_like_page else size
            return ProbeOutcome(kind=ACTIVE, status_code=status, file_size=file_size, file_type=file_type)
        return ProbeOutcome(kind=TRANSIENT, status_code=status, note=f"http {status}")

    def _sniff(
        self, url: str, response: requests.Response, headers: Dict[str, str], timeout: float
    ) -> str:
        """Read the start of the body, issuing a small GET when we only have a HEAD."""

        if response.request is not None and response.request.method == "GET":
            source = response
            close_after = False
        else:
            source = self._session.get(
                url, headers=headers, timeout=timeout, allow_redirects=True, stream=True
            )
            close_after = True
        try:
            chunk = b""
            for piece in source.iter_content(chunk_size=8192):
                chunk += piece
                if len(chunk) >= SNIFF_BYTES:
                    break
            return chunk[:SNIFF_BYTES].decode(source.encoding or "utf-8", errors="replace")
        finally:
            if close_after:
                source.close()

    def _cooldown(self, response: requests.Response, profile: ProviderProfile) -> float:
        raw = response.headers.get("Retry-After", "").strip()
        if raw.isdigit():
            return max(float(raw), 1.0)
        return profile.cooldown_seconds

    def _apply(self, link: Dict[str, Any], outcome: ProbeOutcome, profile: ProviderProfile) -> str:
        now = self._clock()
        threshold = max(1, self.config.failure_threshold)
        failures = int(link.get("consecutive_failures") or 0)
        changes: Dict[str, Any] = {
            "last_checked_at": now,
            "check_count": int(link.get("check_count") or 0) + 1,
        }
        result_kind = outcome.kind
        if outcome.kind == ACTIVE:
            changes.update(
                status=ACTIVE,
                consecutive_failures=0,
                rate_limited_until=None,
                requires_auth=1 if outcome.requires_auth else 0,
                notes=outcome.note,
            )
            if outcome.file_size is not None:
                changes["file_size"] = outcome.file_size
            if outcome.file_type is not None:
                changes["file_type"] = outcome.file_type
        elif outcome.kind == DEAD:
            changes.update(status=DEAD, consecutive_failures=0, rate_limited_until=None, notes=outcome.note)
        elif outcome.kind == RATE_LIMITED:
            cooldown = outcome.cooldown_seconds or profile.cooldown_seconds
            changes.update(
                status=RATE_LIMITED,
                rate_limited_until=now + timedelta(seconds=cooldown),
                notes=outcome.note or f"rate limited for {int(cooldown)}s",
            )
        else:
            failures += 1
            changes.update(consecutive_failures=failures, notes=outcome.note)
            if failures >= threshold:
                changes["status"] = DEAD
                changes["notes"] = f"dead after {failures} consecutive failures: {outcome.note}"
                result_kind = DEAD

        if not self.store.apply_link_check(link["id"], int(link.get("status_version") or 0), changes):
            LOGGER.info("link %s changed concurrently; skipping stale probe result", link["id"])
            with self._lock:
                self._counters["conflicts"] += 1
            return result_kind

        with self._lock:
            self._counters["total_checked"] += 1
            self._counters[result_kind] = self._counters.get(result_kind, 0) + 1
            self._last_check_at = changes["last_checked_at"].isoformat()
            window = self._windows.setdefault(
                link["provider"], ProviderWindow(self.config.health_window)
            )
            window.add(result_kind if result_kind in (ACTIVE, DEAD) else "unknown")
        return result_kind

    def _publish(self, name: str, payload: Dict[str, Any]) -> None:
        if self.hub is not None:
            self.hub.publish("verification", name, payload)


__all__ = ["LinkVerifier", "ProbeOutcome", "ProviderWindow", "VerificationError"]
