"""
Feed parsers.

``FeedparserFeedParser`` is the default: feedparser handles RSS 0.9x/1.0/2.0,
Atom, ``content:encoded``, ``dc:date`` and the many date dialects found in the
wild. ``RegexFeedParser`` understands the common RSS/Atom tags only and is
kept for feeds that were tuned against it.
"""

from __future__ import annotations

import calendar
import html
import logging
import re
from datetime import datetime, timezone

import feedparser

from src.ingestion.parsers.base import FeedEntry, FeedParser
from src.ingestion.normalization.text import parse_datetime

logger = logging.getLogger(__name__)


def _struct_to_datetime(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class FeedparserFeedParser(FeedParser):
    name = "feedparser"

    def parse(self, text: str) -> list[FeedEntry]:
        parsed = feedparser.parse(text)
        if parsed.get("bozo") and not parsed.entries:
            logger.warning(f"Feed could not be parsed: {parsed.get('bozo_exception')}")
            return []

        entries: list[FeedEntry] = []
        for raw in parsed.entries:
            link = raw.get("link")
            guid = raw.get("id")
            if not link and not guid:
                logger.warning(f"Skipping feed entry without link or id: {raw.get('title')!r}")
                continue

            content = None
            if raw.get("content"):
                content = raw["content"][0].get("value")

            entries.append(
                FeedEntry(
                    title=raw.get("title"),
                    link=link,
                    guid=guid,
                    summary=raw.get("summary"),
                    content=content,
                    published=_struct_to_datetime(raw.get("published_parsed")),
                    updated=_struct_to_datetime(raw.get("updated_parsed")),
                    author=raw.get("author"),
                    categories=[t.get("term") for t in raw.get("tags", []) if t.get("term")],
                )
            )
        return entries


_ITEM_RE = re.compile(r"<(item|entry)\b[^>]*>(.*?)</\1>", re.IGNORECASE | re.DOTALL)
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_HREF_RE = re.compile(r"<link\b[^>]*\bhref=[\"']([^\"']+)[\"']", re.IGNORECASE)


def _tag(block: str, *names: str) -> str | None:
    for name in names:
        m = re.search(
            rf"<{re.escape(name)}\b[^>]*>(.*?)</{re.escape(name)}>",
            block,
            re.IGNORECASE | re.DOTALL,
        )
        if m:
            value = _CDATA_RE.sub(r"\1", m.group(1)).strip()
            return html.unescape(value) if value else None
    return None


class RegexFeedParser(FeedParser):
    name = "regex"

    def parse(self, text: str) -> list[FeedEntry]:
        entries: list[FeedEntry] = []
        for m in _ITEM_RE.finditer(text or ""):
            block = m.group(2)
            link = _tag(block, "link")
            if not link:
                href = _HREF_RE.search(block)
                link = href.group(1) if href else None
            guid = _tag(block, "guid", "id")
            if not link and not guid:
                logger.warning("Skipping feed entry without link or id")
                continue

            categories = [
                html.unescape(_CDATA_RE.sub(r"\1", c)).strip()
                for c in re.findall(r"<category\b[^>]*>(.*?)</category>", block, re.IGNORECASE | re.DOTALL)
            ]
            entries.append(
                FeedEntry(
                    title=_tag(block, "title"),
                    link=link,
                    guid=guid,
                    summary=_tag(block, "description", "summary"),
                    content=_tag(block, "content:encoded", "content"),
                    published=parse_datetime(_tag(block, "pubDate", "published", "dc:date")),
                    updated=parse_datetime(_tag(block, "updated")),
                    author=_tag(block, "author", "dc:creator"),
                    categories=[c for c in categories if c],
                )
            )
        return entries


FEED_PARSERS = {
    FeedparserFeedParser.name: FeedparserFeedParser,
    RegexFeedParser.name: RegexFeedParser,
}


def get_feed_parser(name: str = "feedparser") -> FeedParser:
    try:
        return FEED_PARSERS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown feed parser '{name}'. Available: {', '.join(FEED_PARSERS)}"
        ) from None
