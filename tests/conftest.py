"""Shared test fixtures for feedpush tests."""

import os
import tempfile
from datetime import datetime, timezone

import httpx
import pytest

from feedpush.channel import NotificationChannel
from feedpush.database import Database
from feedpush.models import Feed


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Third Article</title>
      <link>https://example.com/article-3</link>
      <guid>article-3</guid>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link rel="alternate" href="https://example.com/"/>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom Entry 1</title>
    <link rel="alternate" href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
  <entry>
    <link rel="alternate" href="https://example.com/entry-2"/>
    <id>urn:uuid:entry-2</id>
    <published>2026-02-12T08:30:00Z</published>
    <updated>2026-02-13T08:30:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

SAMPLE_TRUNCATED_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
    </item>
    <item>
      <title>Cut off</title>
      <link>https://example.com/article-2"""

NOW = datetime(2026, 2, 14, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected database with the schema created."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def channel(db):
    return NotificationChannel(db)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML with three items."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML


@pytest.fixture
def sample_truncated_rss_xml():
    """RSS cut off mid-item, as from an interrupted response."""
    return SAMPLE_TRUNCATED_RSS_XML


@pytest.fixture
def add_feed(db):
    """Insert a feed row, overriding any Feed field."""
    counter = iter(range(1, 10_000))

    def _add(**fields) -> Feed:
        n = next(counter)
        fields.setdefault("id", f"feed_{n}")
        fields.setdefault("url", f"https://feeds.example.com/{n}.xml")
        fields.setdefault("created_at", datetime(2026, 1, 1, tzinfo=timezone.utc))
        return db.add_feed(Feed(**fields))

    return _add


@pytest.fixture
def mock_client():
    """Build an AsyncClient serving (status, body) pairs keyed by URL.

    Every requested URL is appended to ``requested`` when given.
    """

    def _make(routes: dict[str, tuple[int, str]], requested: list | None = None):
        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if requested is not None:
                requested.append(url)
            if url not in routes:
                return httpx.Response(404, text="not found")
            status, body = routes[url]
            return httpx.Response(status, text=body)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)

    return _make
