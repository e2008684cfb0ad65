from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests

from rss_notifier.errors import HttpError, InvalidFeedUrl, NetworkError, ParseError
from rss_notifier.fetcher import FeedDialect, fetch_feed, is_valid_feed_url, parse_feed

RSS_DOC = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com/</link>
    <description>Posts</description>
    <item>
      <title>Second post</title>
      <link>https://example.com/2</link>
      <guid>https://example.com/2</guid>
      <pubDate>Wed, 03 Jan 2024 00:00:00 GMT</pubDate>
      <description>Second body</description>
    </item>
    <item>
      <title>First post</title>
      <link>https://example.com/1</link>
      <pubDate>Tue, 02 Jan 2024 00:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

ATOM_DOC = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <id>urn:example:feed</id>
  <updated>2024-01-03T00:00:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <id>urn:example:entry:1</id>
    <link href="https://example.com/atom/1"/>
    <updated>2024-01-03T12:30:00Z</updated>
    <summary>Atom summary</summary>
  </entry>
</feed>
"""


def _session(status=200, body=b"", headers=None, error=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.iter_content.return_value = [body[i:i + 10] for i in range(0, len(body), 10)]
    response.__enter__.return_value = response
    response.__exit__.return_value = False

    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return session


def test_parse_rss_document():
    result = parse_feed(RSS_DOC)

    assert result.ok
    assert result.dialect is FeedDialect.RSS
    assert [e.title for e in result.entries] == ["Second post", "First post"]
    second, first = result.entries
    assert second.entry_id == "https://example.com/2"
    assert second.link == "https://example.com/2"
    assert second.published_at == datetime(2024, 1, 3, tzinfo=timezone.utc)
    assert second.summary == "Second body"
    # No guid: title and raw date form the identity
    assert first.entry_id == "First post|Tue, 02 Jan 2024 00:00:00 GMT"


def test_parse_atom_document():
    result = parse_feed(ATOM_DOC)

    assert result.ok
    assert result.dialect is FeedDialect.ATOM
    (entry,) = result.entries
    assert entry.entry_id == "urn:example:entry:1"
    assert entry.link == "https://example.com/atom/1"
    assert entry.published_at == datetime(2024, 1, 3, 12, 30, tzinfo=timezone.utc)


def test_parse_rejects_html():
    result = parse_feed(b"<html><head><title>Hi</title></head><body><p>Not a feed</p></body></html>")

    assert not result.ok
    assert isinstance(result.error, ParseError)
    assert not result.error.retryable


def test_dialect_from_version():
    assert FeedDialect.from_version("rss20") is FeedDialect.RSS
    assert FeedDialect.from_version("rss10") is FeedDialect.RSS
    assert FeedDialect.from_version("atom10") is FeedDialect.ATOM
    assert FeedDialect.from_version("json11") is FeedDialect.JSON
    assert FeedDialect.from_version("") is None
    assert FeedDialect.from_version("cdf") is None


def test_valid_feed_urls():
    assert is_valid_feed_url("https://example.com/feed.xml")
    assert is_valid_feed_url("http://example.com")
    assert not is_valid_feed_url("example.com/feed")
    assert not is_valid_feed_url("ftp://example.com/feed")
    assert not is_valid_feed_url("/relative/feed")


def test_fetch_invalid_url_makes_no_request():
    session = _session(body=RSS_DOC)

    result = fetch_feed("not a url", session=session)

    assert isinstance(result.error, InvalidFeedUrl)
    session.get.assert_not_called()


def test_fetch_feed_success():
    session = _session(body=RSS_DOC)

    result = fetch_feed("https://example.com/feed", timeout=5, session=session)

    assert result.ok
    assert len(result.entries) == 2
    args, kwargs = session.get.call_args
    assert args == ("https://example.com/feed",)
    assert kwargs["timeout"] == 5
    assert kwargs["stream"] is True


def test_fetch_feed_server_error_is_retryable():
    result = fetch_feed("https://example.com/feed", session=_session(status=503))

    assert isinstance(result.error, HttpError)
    assert result.error.status == 503
    assert result.error.retryable


def test_fetch_feed_client_error_is_not_retryable():
    result = fetch_feed("https://example.com/feed", session=_session(status=404))

    assert isinstance(result.error, HttpError)
    assert not result.error.retryable


def test_fetch_feed_rate_limit_is_retryable():
    result = fetch_feed("https://example.com/feed", session=_session(status=429))

    assert result.error.retryable


def test_fetch_feed_timeout():
    session = _session(error=requests.exceptions.ConnectTimeout("timed out"))

    result = fetch_feed("https://example.com/feed", session=session)

    assert isinstance(result.error, NetworkError)
    assert result.error.retryable


def test_fetch_feed_connection_refused():
    session = _session(error=requests.exceptions.ConnectionError("refused"))

    result = fetch_feed("https://example.com/feed", session=session)

    assert isinstance(result.error, NetworkError)


def test_fetch_feed_body_over_limit():
    result = fetch_feed("https://example.com/feed", max_bytes=100, session=_session(body=RSS_DOC))

    assert isinstance(result.error, ParseError)


def test_fetch_feed_declared_length_over_limit():
    session = _session(body=RSS_DOC, headers={"Content-Length": "999999"})

    result = fetch_feed("https://example.com/feed", max_bytes=1000, session=session)

    assert isinstance(result.error, ParseError)


def test_fetch_feed_empty_channel_is_not_an_error():
    doc = b'<?xml version="1.0"?><rss version="2.0"><channel><title>Empty</title></channel></rss>'

    result = fetch_feed("https://example.com/feed", session=_session(body=doc))

    assert result.ok
    assert result.entries == []


def test_fetch_feed_uses_charset_from_content_type():
    doc = (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Новости</title>'
        "<item><title>Привет</title><link>https://example.com/ru/1</link>"
        "<guid>ru-1</guid></item></channel></rss>"
    ).encode("koi8-r")
    session = _session(body=doc, headers={"Content-Type": "application/rss+xml; charset=koi8-r"})

    result = fetch_feed("https://example.com/feed", session=session)

    assert result.ok
    assert result.entries[0].title == "Привет"


def test_parse_feed_accepts_response_headers():
    result = parse_feed(RSS_DOC, {"content-type": "application/rss+xml; charset=utf-8"})

    assert result.dialect is FeedDialect.RSS
    assert [e.title for e in result.entries] == ["Second post", "First post"]
