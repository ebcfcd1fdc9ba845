"""
Parsers for the formats the handlers consume.

- feeds: RSS/Atom/RDF entries (feedparser, plus a regex compatibility parser)
- sitemap: sitemap.xml / sitemap index (lxml, plus a regex compatibility parser)
- html: BeautifulSoup and trafilatura helpers for pages
"""

from src.ingestion.parsers.base import FeedEntry, FeedParser, SitemapEntry, SitemapParser
from src.ingestion.parsers.feeds import FeedparserFeedParser, RegexFeedParser, get_feed_parser
from src.ingestion.parsers.sitemap import LxmlSitemapParser, RegexSitemapParser, get_sitemap_parser

__all__ = [
    "FeedEntry",
    "FeedParser",
    "FeedparserFeedParser",
    "RegexFeedParser",
    "get_feed_parser",
    "SitemapEntry",
    "SitemapParser",
    "LxmlSitemapParser",
    "RegexSitemapParser",
    "get_sitemap_parser",
]
