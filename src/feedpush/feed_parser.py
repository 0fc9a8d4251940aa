"""RSS/Atom feed parsing using feedparser."""

import io
import xml.sax
from dataclasses import dataclass
from datetime import datetime, timezone
from time import struct_time
from urllib.parse import urljoin

import feedparser


UNTITLED = "(untitled)"


@dataclass
class ParsedEntry:
    """One normalized feed item."""

    guid_or_url: str
    title: str
    url: str
    published_at: datetime | None


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom document."""

    title: str | None
    site_url: str | None
    entries: list[ParsedEntry]


class FeedParseError(Exception):
    """Raised when a document is not a usable RSS or Atom feed."""


def parse_feed(body: bytes | str, base_url: str | None = None) -> ParsedFeed:
    """Parse an RSS 2.0 or Atom document.

    Args:
        body: The raw document as returned by the server.
        base_url: URL the document was served from, used to resolve
            relative links.

    Returns:
        ParsedFeed with entries in document order.

    Raises:
        FeedParseError: If the document is not RSS or Atom, is not
            well-formed XML, or yields neither a title nor any entries.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")

    headers = {"content-location": base_url} if base_url else None
    parsed = feedparser.parse(io.BytesIO(body), response_headers=headers)

    version = parsed.get("version") or ""
    if not version.startswith(("rss", "atom")):
        raise FeedParseError("Unsupported feed format")

    error = parsed.get("bozo_exception")
    # encoding overrides and the like still parse; broken XML does not
    if parsed.bozo and isinstance(error, xml.sax.SAXParseException):
        raise FeedParseError(f"Malformed feed: {error}")
    if parsed.bozo and not parsed.entries and not parsed.feed.get("title"):
        raise FeedParseError(f"Malformed feed: {error}")

    site_url = _text(parsed.feed.get("link"))
    if site_url and base_url:
        site_url = urljoin(base_url, site_url)

    return ParsedFeed(
        title=_text(parsed.feed.get("title")),
        site_url=site_url,
        entries=_extract_entries(parsed.entries),
    )


def _extract_entries(entries: list) -> list[ParsedEntry]:
    """Normalize feedparser entries, skipping ones with no link or id."""
    items = []
    for entry in entries:
        guid = _text(entry.get("id"))
        url = _text(entry.get("link")) or guid
        if not url:
            continue
        items.append(
            ParsedEntry(
                guid_or_url=guid or url,
                title=_text(entry.get("title")) or UNTITLED,
                url=url,
                published_at=_parse_date(entry),
            )
        )
    return items


def _text(value) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _parse_date(entry: dict) -> datetime | None:
    """Publication date as aware UTC, falling back to the updated date."""
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if isinstance(time_struct, struct_time):
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None
