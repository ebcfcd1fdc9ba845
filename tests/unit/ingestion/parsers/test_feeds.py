"""
Unit tests for feed and sitemap parsers.

Both implementations of each interface are run against the same fixtures.
"""

from datetime import datetime, timezone

import pytest

from src.ingestion.parsers.feeds import FeedparserFeedParser, RegexFeedParser, get_feed_parser
from src.ingestion.parsers.sitemap import LxmlSitemapParser, RegexSitemapParser, get_sitemap_parser

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Engineering Blog</title>
    <item>
      <title>Second post</title>
      <link>https://blog.example.com/second</link>
      <guid>post-2</guid>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
      <description>Short summary</description>
      <content:encoded><![CDATA[<p>Full <b>body</b></p>]]></content:encoded>
      <category>python</category>
    </item>
    <item>
      <title>First post</title>
      <link>https://blog.example.com/first</link>
      <pubDate>Mon, 01 Jan 2024 10:00:00 GMT</pubDate>
      <description>Another summary</description>
    </item>
    <item>
      <title>Broken entry without link</title>
    </item>
  </channel>
</rss>
"""

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Changelog</title>
  <entry>
    <title>Release 1.2</title>
    <link href="https://example.com/releases/1.2"/>
    <id>urn:release:1.2</id>
    <updated>2024-03-01T09:30:00Z</updated>
    <summary>Bug fixes</summary>
  </entry>
</feed>
"""

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc>https://docs.example.com/a</loc>
    <lastmod>2024-02-01</lastmod>
    <priority>0.8</priority>
    <changefreq>weekly</changefreq>
  </url>
  <url>
    <loc>https://docs.example.com/b</loc>
  </url>
  <url>
    <lastmod>2024-02-01</lastmod>
  </url>
</urlset>
"""

SITEMAP_INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://docs.example.com/sitemap-1.xml</loc></sitemap>
  <sitemap><loc>https://docs.example.com/sitemap-2.xml</loc></sitemap>
</sitemapindex>
"""


@pytest.fixture(params=[FeedparserFeedParser, RegexFeedParser], ids=["feedparser", "regex"])
def feed_parser(request):
    return request.param()


@pytest.fixture(params=[LxmlSitemapParser, RegexSitemapParser], ids=["lxml", "regex"])
def sitemap_parser(request):
    return request.param()


class TestFeedParsers:
    """Tests shared by every FeedParser implementation."""

    def test_rss_entries(self, feed_parser):
        entries = feed_parser.parse(RSS)

        assert [e.link for e in entries] == [
            "https://blog.example.com/second",
            "https://blog.example.com/first",
        ]
        second = entries[0]
        assert second.title == "Second post"
        assert second.published == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)
        assert second.timestamp == second.published
        assert "body" in second.body
        assert second.categories == ["python"]

    def test_summary_used_when_no_content(self, feed_parser):
        first = feed_parser.parse(RSS)[1]
        assert first.body == "Another summary"

    def test_atom_entry(self, feed_parser):
        entries = feed_parser.parse(ATOM)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.link == "https://example.com/releases/1.2"
        assert entry.guid == "urn:release:1.2"
        assert entry.timestamp == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)

    def test_garbage_yields_nothing(self, feed_parser):
        assert feed_parser.parse("this is not a feed") == []


class TestSitemapParsers:
    """Tests shared by every SitemapParser implementation."""

    def test_urlset(self, sitemap_parser):
        doc = sitemap_parser.parse(URLSET)

        assert [u.loc for u in doc.urls] == ["https://docs.example.com/a", "https://docs.example.com/b"]
        first = doc.urls[0]
        assert first.lastmod == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert first.priority == 0.8
        assert first.changefreq == "weekly"
        assert doc.sitemaps == []

    def test_sitemap_index(self, sitemap_parser):
        doc = sitemap_parser.parse(SITEMAP_INDEX.encode("utf-8"))

        assert doc.urls == []
        assert [s.loc for s in doc.sitemaps] == [
            "https://docs.example.com/sitemap-1.xml",
            "https://docs.example.com/sitemap-2.xml",
        ]

    def test_malformed_xml(self, sitemap_parser):
        assert sitemap_parser.parse("<urlset><url><loc>broken").urls == []


class TestParserLookup:
    def test_get_feed_parser(self):
        assert isinstance(get_feed_parser("regex"), RegexFeedParser)
        assert isinstance(get_feed_parser(), FeedparserFeedParser)

    def test_get_sitemap_parser(self):
        assert isinstance(get_sitemap_parser(), LxmlSitemapParser)

    def test_unknown_parser(self):
        with pytest.raises(ValueError, match="Unknown feed parser"):
            get_feed_parser("nope")
        with pytest.raises(ValueError, match="Unknown sitemap parser"):
            get_sitemap_parser("nope")
