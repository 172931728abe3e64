"""HTML parsing for XenForo-style forum threads and listings."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from mediavault.db.store import LinkSnapshot, PostSnapshot
from mediavault.services.providers import filename_from_url, find_links

KNOWN_TAGS = (
    "XXX",
    "OnlyFans",
    "BBW",
    "T H I C C",
    "MILF",
    "Petite",
    "Teen",
    "Asian",
    "Indian",
    "Ebony",
    "Latina",
    "Feet",
    "Retired",
)

_THREAD_SUFFIXES = ("/unread", "/latest")
_PAGE_SUFFIX = re.compile(r"/page-\d+$")
_BRACKETED = re.compile(r"\[(.*?)\]")
_AKA = re.compile(r"\(aka\s+(.*?)\)", re.I)


@dataclass(slots=True)
class ThreadPage:
    title: str
    author: str | None
    category: str | None
    posts: List[PostSnapshot] = field(default_factory=list)
    has_next: bool = False
    last_page: int = 1


@dataclass(slots=True)
class ListingPage:
    threads: List[tuple[str, str]] = field(default_factory=list)
    has_next: bool = False


def clean_thread_url(url: str) -> str:
    """Canonical thread URL: no query, fragment, page or unread suffix."""

    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    changed = True
    while changed:
        changed = False
        for suffix in _THREAD_SUFFIXES:
            if path.endswith(suffix):
                path = path[: -len(suffix)].rstrip("/")
                changed = True
        stripped = _PAGE_SUFFIX.sub("", path)
        if stripped != path:
            path = stripped.rstrip("/")
            changed = True
    return urlunsplit(((parts.scheme or "https").lower(), parts.netloc.lower(), path, "", ""))


def page_url(thread_url: str, page: int) -> str:
    return thread_url if page <= 1 else f"{thread_url}/page-{page}"


def external_thread_id(url: str) -> str | None:
    """``/threads/some-title.12345`` → ``12345``."""

    path = urlsplit(url).path.strip("/")
    if "." not in path:
        return None
    candidate = path.rsplit(".", 1)[-1].strip("/")
    return candidate or None


def _text(node: Optional[Tag]) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


def _post_id(node: Tag, order_index: int) -> str:
    content = node.get("data-content") or node.get("id") or ""
    if isinstance(content, list):
        content = content[0] if content else ""
    for prefix in ("js-post-", "post-"):
        if content.startswith(prefix):
            return content[len(prefix) :]
    return content or f"idx-{order_index}"


def _post_links(body: Optional[Tag]) -> List[LinkSnapshot]:
    if body is None:
        return []
    candidates = [str(body)]
    candidates.extend(
        str(anchor.get("href") or "") for anchor in body.find_all("a") if anchor.get("href")
    )
    seen: dict[str, LinkSnapshot] = {}
    for url, provider in find_links(candidates):
        if url not in seen:
            seen[url] = LinkSnapshot(url=url, provider=provider, filename=filename_from_url(url))
    return list(seen.values())


def _page_numbers(soup: BeautifulSoup) -> List[int]:
    numbers = []
    for node in soup.select(".pageNav-page"):
        text = _text(node)
        if text.isdigit():
            numbers.append(int(text))
    return numbers


def parse_thread_page(html: str, *, current_page: int = 1, first_index: int = 0) -> ThreadPage:
    soup = BeautifulSoup(html or "", "html.parser")
    title = _text(soup.select_one("h1.p-title-value"))
    author = _text(soup.select_one(".p-description .username")) or None
    # the last breadcrumb is the forum the thread lives in
    crumbs = soup.select(".p-breadcrumbs li a")
    category = _text(crumbs[-1]) if crumbs else ""

    posts: List[PostSnapshot] = []
    for offset, node in enumerate(soup.select(".message--post")):
        order_index = first_index + offset
        body = node.select_one(".message-body .bbWrapper")
        time_node = node.select_one(".message-attribution-main time[datetime]") or node.select_one(
            "time[datetime]"
        )
        posts.append(
            PostSnapshot(
                external_post_id=_post_id(node, order_index),
                author=_text(node.select_one(".message-name .username")) or None,
                posted_at=str(time_node["datetime"]) if time_node is not None else None,
                body=_text(body),
                order_index=order_index,
                links=_post_links(body),
            )
        )

    next_button = soup.select_one(".pageNav-jump--next")
    has_next = next_button is not None and "is-disabled" not in (next_button.get("class") or [])
    numbers = _page_numbers(soup)
    if not has_next and any(number > current_page for number in numbers):
        has_next = True
    last_page = max([current_page, *numbers])
    return ThreadPage(
        title=title,
        author=author,
        category=category or None,
        posts=posts,
        has_next=has_next,
        last_page=last_page,
    )


def parse_listing(html: str, base_url: str) -> ListingPage:
    soup = BeautifulSoup(html or "", "html.parser")
    threads: List[tuple[str, str]] = []
    for item in soup.select(".structItem--thread"):
        anchor = item.select_one(".structItem-title a[data-tp-primary]") or item.select_one(
            ".structItem-title a"
        )
        if anchor is None or not anchor.get("href"):
            continue
        url = clean_thread_url(urljoin(base_url, str(anchor["href"])))
        title = _text(anchor)
        if title and url:
            threads.append((url, title))
    next_button = soup.select_one(".pageNav-jump--next")
    has_next = next_button is not None and "is-disabled" not in (next_button.get("class") or [])
    return ListingPage(threads=threads, has_next=has_next)


def listing_page_url(forum_url: str, page: int) -> str:
    base = forum_url.rstrip("/")
    base = _PAGE_SUFFIX.sub("", base)
    return base if page <= 1 else f"{base}/page-{page}"


def extract_tags(title: str) -> List[str]:
    upper = title.upper()
    return [tag for tag in KNOWN_TAGS if tag.upper() in upper]


def clean_title(title: str) -> str:
    cleaned = title
    for tag in KNOWN_TAGS:
        for opener, closer in (("[", "]"), ("(", ")"), ("{", "}")):
            cleaned = re.sub(re.escape(f"{opener}{tag}{closer}"), "", cleaned, flags=re.I)
        cleaned = re.sub(rf"\b{re.escape(tag)}\b", "", cleaned, flags=re.I)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r"\s*[-|]\s*$", "", cleaned)
    cleaned = re.sub(r"^\s*[-|]\s*", "", cleaned)
    return cleaned.strip()


def extract_performers(title: str) -> List[tuple[str, float]]:
    """Guess performer names from a thread title with a confidence score."""

    cleaned = clean_title(title)
    found: dict[str, float] = {}

    def _add(name: str, confidence: float) -> None:
        name = name.strip().strip("[]").strip()
        if len(name) < 2:
            return
        key = name.lower()
        existing = next((k for k in found if k.lower() == key), None)
        if existing is None:
            found[name] = confidence
        else:
            found[existing] = max(found[existing], confidence)

    for match in _AKA.findall(cleaned):
        _add(match, 0.9)
    for match in _BRACKETED.findall(cleaned):
        _add(match, 0.8)
    without_aka = _BRACKETED.sub("", _AKA.sub("", cleaned)).strip()
    if " - " in without_aka:
        _add(without_aka.split(" - ", 1)[0], 0.7)
    if " | " in without_aka:
        _add(without_aka.split(" | ", 1)[0], 0.6)
    return list(found.items())


__all__ = [
    "KNOWN_TAGS",
    "ListingPage",
    "ThreadPage",
    "clean_thread_url",
    "clean_title",
    "external_thread_id",
    "extract_performers",
    "extract_tags",
    "listing_page_url",
    "page_url",
    "parse_listing",
    "parse_thread_page",
]
