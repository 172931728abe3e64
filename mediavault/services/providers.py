"""Download-host classification, URL normalization and provider profiles."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import Iterable, Iterator
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    """How one file host is recognized and how its responses are read."""

    name: str
    pattern: re.Pattern[str]
    not_found_signatures: tuple[str, ...] = ()
    throttle_signatures: tuple[str, ...] = ()
    dead_redirect_markers: tuple[str, ...] = ()
    cooldown_seconds: float = 300.0
    keep_fragment: bool = False


_COMMON_NOT_FOUND = (
    "file not found",
    "file does not exist",
    "file has been removed",
    "has been deleted",
    "no longer available",
)
_COMMON_THROTTLE = ("too many requests", "rate limit", "slow down")
_COMMON_DEAD_REDIRECTS = ("/404", "/error", "not-found", "notfound", "removed")

PROFILES: tuple[ProviderProfile, ...] = (
    ProviderProfile(
        name="gofile",
        pattern=re.compile(r"https?://(?:www\.)?gofile\.io/d/[A-Za-z0-9_-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("this content does not exist", "content not found"),
        throttle_signatures=_COMMON_THROTTLE,
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS,
        cooldown_seconds=600.0,
    ),
    ProviderProfile(
        name="pixeldrain",
        pattern=re.compile(r"https?://(?:www\.)?pixeldrain\.com/(?:u|l)/[A-Za-z0-9_-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("not_found", "the file you are looking for"),
        throttle_signatures=_COMMON_THROTTLE + ("hotlink", "captcha_required"),
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS,
        cooldown_seconds=900.0,
    ),
    ProviderProfile(
        name="bunkr",
        pattern=re.compile(r"https?://(?:www\.)?(?:bunkr|bunkrr)\.[a-z]+/[a-z]/[A-Za-z0-9_-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("album not found", "404 not found"),
        throttle_signatures=_COMMON_THROTTLE + ("ddos-guard", "checking your browser"),
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS + ("maintenance",),
        cooldown_seconds=300.0,
    ),
    ProviderProfile(
        name="cyberdrop",
        pattern=re.compile(r"https?://(?:www\.)?cyberdrop\.(?:me|to|cc)/a/[A-Za-z0-9_-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("album not found",),
        throttle_signatures=_COMMON_THROTTLE,
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS,
        cooldown_seconds=300.0,
    ),
    ProviderProfile(
        name="mediafire",
        pattern=re.compile(r"https?://(?:www\.)?mediafire\.com/(?:file|folder)/[A-Za-z0-9_/.-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("invalid or deleted file", "file belongs to a suspended account"),
        throttle_signatures=_COMMON_THROTTLE,
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS + ("error.php",),
        cooldown_seconds=300.0,
    ),
    ProviderProfile(
        name="mega",
        pattern=re.compile(r"https?://(?:www\.)?mega\.nz/(?:file|folder)/[A-Za-z0-9#_-]+", re.I),
        not_found_signatures=_COMMON_NOT_FOUND + ("the file you are trying to download is no longer available",),
        throttle_signatures=_COMMON_THROTTLE + ("bandwidth limit",),
        dead_redirect_markers=_COMMON_DEAD_REDIRECTS,
        cooldown_seconds=1800.0,
        keep_fragment=True,
    ),
)

GENERIC = ProviderProfile(
    name="other",
    pattern=re.compile(r"(?!)"),
    not_found_signatures=_COMMON_NOT_FOUND,
    throttle_signatures=_COMMON_THROTTLE,
    dead_redirect_markers=_COMMON_DEAD_REDIRECTS,
)

_BY_NAME = {profile.name: profile for profile in PROFILES}

_TRACKING_PARAMS = {"fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid", "ref", "ref_src", "igshid"}
_DEFAULT_PORTS = {"http": "80", "https": "443"}
_URL_IN_TEXT = re.compile(r"https?://[^\s<>\"'\]\[)]+", re.I)


def profile_for(provider: str | None) -> ProviderProfile:
    return _BY_NAME.get(provider or "", GENERIC)


def classify(url: str) -> str | None:
    """Return the provider name for ``url`` or ``None`` for non-download hosts."""

    for profile in PROFILES:
        if profile.pattern.match(url):
            return profile.name
    return None


def normalize_url(url: str, provider: str | None = None) -> str:
    """Lower-case scheme and host, drop default ports and tracking parameters."""

    parts = urlsplit(url.strip())
    scheme = (parts.scheme or "https").lower()
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    netloc = host
    if parts.port and str(parts.port) != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    path = parts.path or "/"
    normalized_path = posixpath.normpath(path)
    if normalized_path == ".":
        normalized_path = "/"
    if len(normalized_path) > 1:
        normalized_path = normalized_path.rstrip("/")
    query_items = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in _TRACKING_PARAMS
    ]
    query = urlencode(sorted(query_items)) if query_items else ""
    fragment = parts.fragment if profile_for(provider or classify(url)).keep_fragment else ""
    return urlunsplit((scheme, netloc, normalized_path, query, fragment))


def filename_from_url(url: str) -> str | None:
    segment = unquote(urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1])
    if "." in segment and not segment.startswith("."):
        return segment
    return None


def find_links(candidates: Iterable[str]) -> Iterator[tuple[str, str]]:
    """Yield ``(normalized_url, provider)`` for every download link found.

    Each candidate may be an ``href`` or free text; provider patterns are
    matched anywhere inside it.
    """

    for candidate in candidates:
        if not candidate:
            continue
        for profile in PROFILES:
            for match in profile.pattern.finditer(candidate):
                yield normalize_url(match.group(0), profile.name), profile.name


def urls_in_text(text: str) -> list[str]:
    return _URL_IN_TEXT.findall(text or "")


__all__ = [
    "GENERIC",
    "PROFILES",
    "ProviderProfile",
    "classify",
    "filename_from_url",
    "find_links",
    "normalize_url",
    "profile_for",
    "urls_in_text",
]
