"""Parser interfaces and the records they produce."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class FeedEntry:
    title: str | None = None
    link: str | None = None
    guid: str | None = None
    summary: str | None = None
    content: str | None = None
    published: datetime | None = None
    updated: datetime | None = None
    author: str | None = None
    categories: list[str] = field(default_factory=list)

    @property
    def timestamp(self) -> datetime | None:
        return self.published or self.updated

    @property
    def body(self) -> str | None:
        return self.content or self.summary


@dataclass
class SitemapEntry:
    loc: str
    lastmod: datetime | None = None
    priority: float | None = None
    changefreq: str | None = None


@dataclass
class SitemapDocument:
    urls: list[SitemapEntry] = field(default_factory=list)
    # Child sitemaps listed by a sitemap index
    sitemaps: list[SitemapEntry] = field(default_factory=list)


class FeedParser(ABC):
    """Turns an RSS/Atom/RDF document into entries. Malformed entries are skipped."""

    name: str = "base"

    @abstractmethod
    def parse(self, text: str) -> list[FeedEntry]:
        """Parse feed text into entries."""


class SitemapParser(ABC):
    name: str = "base"

    @abstractmethod
    def parse(self, text: str | bytes) -> SitemapDocument:
        """Parse sitemap XML."""
