"""RSS/Atom feed client for fetching feed entries."""

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import feedparser
import requests

from .errors import FetchError, HttpError, InvalidFeedUrl, NetworkError, ParseError, RSSNotifierError
from .models import FeedEntry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
CHUNK_SIZE = 64 * 1024
SNIPPET_LENGTH = 600
USER_AGENT = "rss-notifier/0.1"


class FeedDialect(enum.Enum):
    """Feed formats understood by the normalizer."""
    RSS = "rss"
    ATOM = "atom"
    JSON = "json"

    @classmethod
    def from_version(cls, version: str) -> Optional["FeedDialect"]:
        """Map a feedparser version string (e.g. "rss20", "atom10") to a dialect."""
        version = (version or "").lower()
        for dialect in cls:
            if version.startswith(dialect.value):
                return dialect
        return None


@dataclass
class FetchResult:
    """Entries of a fetched feed, or the error that prevented fetching it."""
    entries: List[FeedEntry] = field(default_factory=list)
    error: Optional[RSSNotifierError] = None
    dialect: Optional[FeedDialect] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_valid_feed_url(url: str) -> bool:
    """Return True if url is an absolute http(s) URI."""
    try:
        parsed = urlparse(url)
    except (TypeError, ValueError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _download(
    url: str,
    timeout: float,
    max_bytes: int,
    session: Optional[requests.Session],
) -> Tuple[bytes, Dict[str, str]]:
    """
    GET url and return (body, headers), refusing bodies larger than max_bytes.

    The timeout bounds both the connection and the whole body transfer.
    """
    http = session or requests
    deadline = time.monotonic() + timeout
    try:
        with http.get(
            url,
            timeout=timeout,
            stream=True,
            headers={"User-Agent": USER_AGENT},
        ) as response:
            if response.status_code >= 400:
                raise HttpError(response.status_code, f"HTTP {response.status_code} for {url}")

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise ParseError(f"Feed is {declared} bytes, limit is {max_bytes}")

            body = bytearray()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise ParseError(f"Feed exceeds {max_bytes} bytes")
                if time.monotonic() > deadline:
                    raise NetworkError(f"Timed out after {timeout}s reading {url}")
            # feedparser looks headers up by lowercase name
            headers = {key.lower(): value for key, value in response.headers.items()}
            return bytes(body), headers
    except requests.exceptions.Timeout as e:
        raise NetworkError(f"Timed out fetching {url}: {e}") from e
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"Error fetching {url}: {e}") from e


def _parse_timestamp(entry) -> Optional[datetime]:
    # feedparser returns time_struct in UTC
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        value = entry.get(key)
        if value:
            try:
                return datetime(*value[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None


def _snippet(entry) -> str:
    snippet = ""
    if "summary" in entry:
        snippet = entry.summary
    elif "description" in entry:
        snippet = entry.description
    elif "content" in entry:
        if isinstance(entry.content, list) and entry.content:
            snippet = entry.content[0].get("value", "")
        else:
            snippet = str(entry.content)

    snippet = (snippet or "").strip()
    if len(snippet) > SNIPPET_LENGTH:
        snippet = snippet[:SNIPPET_LENGTH] + "..."
    return snippet


def _normalize_entry(entry) -> FeedEntry:
    title = entry.get("title", "") or ""
    published_at = _parse_timestamp(entry)

    entry_id = entry.get("id") or entry.get("guid")
    if not entry_id:
        raw_date = entry.get("published") or entry.get("updated") or ""
        entry_id = f"{title}|{raw_date}"

    return FeedEntry(
        entry_id=str(entry_id),
        title=title or "(untitled)",
        link=entry.get("link", "") or "",
        published_at=published_at,
        summary=_snippet(entry),
    )


def parse_feed(body: bytes, headers: Optional[Dict[str, str]] = None) -> FetchResult:
    """
    Parse a feed document into entries, in document order.

    Returns:
        A FetchResult; documents in an unrecognized dialect yield a ParseError.
    """
    parsed = feedparser.parse(body, response_headers=headers or {})
    dialect = FeedDialect.from_version(parsed.get("version", ""))

    if dialect is None:
        reason = parsed.get("bozo_exception") or "unrecognized feed format"
        return FetchResult(error=ParseError(f"Not a feed document: {reason}"))

    if parsed.bozo and parsed.get("bozo_exception"):
        # Recoverable problems (encoding overrides, undefined entities)
        logger.debug(f"Feed parsed with warnings: {parsed.bozo_exception}")

    entries = []
    for raw in parsed.entries:
        entries.append(_normalize_entry(raw))
    return FetchResult(entries=entries, dialect=dialect)


def fetch_feed(
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    max_bytes: int = DEFAULT_MAX_BYTES,
    session: Optional[requests.Session] = None,
) -> FetchResult:
    """
    Fetch and parse the feed at url.

    Args:
        url: Absolute http(s) feed URL.
        timeout: Seconds allowed for connecting and reading the body.
        max_bytes: Largest body accepted.
        session: Optional requests session to reuse connections.

    Returns:
        FetchResult with the entries in document order, or the error.
    """
    if not is_valid_feed_url(url):
        return FetchResult(error=InvalidFeedUrl(f"Invalid feed URL: {url!r}"))

    try:
        body, headers = _download(url, timeout, max_bytes, session)
    except FetchError as e:
        return FetchResult(error=e)

    result = parse_feed(body, headers)
    if result.ok:
        logger.debug(f"Extracted {len(result.entries)} {result.dialect.value} entries from {url}")
    return result
