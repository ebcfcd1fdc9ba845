"""
Unit tests for DynamicUnstructuredSourceHandler.

Network and browser access are replaced with FakeHttpClient and a fake
renderer; rate limiting is observed through the recorded sleep.
"""

import json
from unittest.mock import MagicMock

import pytest

from src.ingestion.engine import EngineOptions, IngestionEngine
from src.ingestion.errors import ConfigurationError, ExtractionError
from src.ingestion.handlers import DynamicUnstructuredSourceHandler
from src.ingestion.transport.browser import RenderedPage
from src.ingestion.types import SourceConfig

SITE = "https://docs.example.com"


def page(title, *links, body="Documentation body text."):
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links)
    return f"<html><head><title>{title}</title></head><body><main><p>{body}</p>{anchors}</main></body></html>"


SITEMAP = f"""<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>{SITE}/guide</loc><lastmod>2024-01-10</lastmod></url>
  <url><loc>{SITE}/api</loc><lastmod>2023-06-01</lastmod></url>
</urlset>
"""


class FakeRenderer:
    """Serves RenderedPage objects by URL; records calls."""

    def __init__(self, pages=None):
        self.pages = pages or {}
        self.calls = []
        self.closed = False

    def render(self, url, *, selectors=None, wait_for_selector=None):
        self.calls.append({"url": url, "selectors": selectors, "wait_for_selector": wait_for_selector})
        result = self.pages.get(url)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return RenderedPage(url=url, final_url=url, status_code=404, html="")
        return result

    def close(self):
        self.closed = True


@pytest.fixture
def site(fake_http):
    """A three-page site with robots.txt and a sitemap."""
    fake_http.add(f"{SITE}/", page("Home", "/guide", "/api", "https://elsewhere.org/x"), headers={"Content-Type": "text/html"})
    fake_http.add(f"{SITE}/guide", page("Guide", "/", "/guide/deep"), headers={"Content-Type": "text/html"})
    fake_http.add(f"{SITE}/api", page("API"), headers={"Content-Type": "text/html"})
    fake_http.add(f"{SITE}/guide/deep", page("Deep"), headers={"Content-Type": "text/html"})
    fake_http.add(f"{SITE}/robots.txt", "User-agent: *\nDisallow: /api\n")
    fake_http.add(f"{SITE}/sitemap.xml", SITEMAP, headers={"Content-Type": "application/xml"})
    return fake_http


@pytest.fixture
def make_handler(make_source_config, fake_http, recorded_sleep):
    handlers = []

    def _make(targets, renderer=None, authentication=None, **config):
        source = make_source_config("dynamic_unstructured", "docs", config={"targets": targets, **config})
        if authentication is not None:
            source["authentication"] = authentication
        cfg = SourceConfig.from_dict(source)
        handler = DynamicUnstructuredSourceHandler(
            cfg, http_client=fake_http, sleep=recorded_sleep, renderer=renderer or FakeRenderer()
        )
        handler.initialize()
        handlers.append(handler)
        return handler

    yield _make
    for handler in handlers:
        handler.cleanup()


def crawler(name="crawl", **config):
    config.setdefault("start_urls", [f"{SITE}/"])
    config.setdefault("allowed_domains", ["docs.example.com"])
    config.setdefault("crawl_delay_ms", 0)
    return {"name": name, "type": "web-crawler", "config": config}


# =============================================================================
# TEST CLASSES
# =============================================================================


class TestSettings:
    def test_duplicate_target_names_rejected(self, make_source_config):
        cfg = SourceConfig.from_dict(
            make_source_config("dynamic_unstructured", config={"targets": [crawler("a"), crawler("a")]})
        )
        with pytest.raises(ConfigurationError, match="duplicate target names: a"):
            DynamicUnstructuredSourceHandler(cfg).validate_config()

    def test_strategy_config_validated(self, make_source_config):
        cfg = SourceConfig.from_dict(
            make_source_config("dynamic_unstructured", config={"targets": [{"name": "s", "type": "sitemap", "config": {}}]})
        )
        with pytest.raises(ConfigurationError, match="sitemap_url"):
            DynamicUnstructuredSourceHandler(cfg).validate_config()

    def test_discovery_rules_alias_and_underscore_type(self, make_source_config):
        cfg = SourceConfig.from_dict(
            make_source_config(
                "dynamic-unstructured",
                config={"discoveryRules": [{"name": "s", "type": "rss_discovery", "config": {"seedUrls": [SITE]}}]},
            )
        )
        settings = DynamicUnstructuredSourceHandler(cfg).validate_config()
        assert settings.targets[0].type.value == "rss-discovery"
        assert settings.targets[0].strategy.seed_urls == [SITE]

    def test_authentication_applied_once(self, make_handler, fake_http):
        make_handler([crawler()], authentication={"type": "bearer", "token": "t"})
        assert fake_http.auth.token == "t"

    def test_default_renderer_carries_credentials(self, make_source_config, fake_http):
        source = make_source_config(
            "dynamic_unstructured",
            "docs",
            config={"targets": [crawler()], "headers": {"X-Team": "docs"}},
            authentication={"type": "api_key", "key": "k1", "header_name": "X-Key"},
        )
        handler = DynamicUnstructuredSourceHandler(SourceConfig.from_dict(source), http_client=fake_http)
        handler.initialize()

        options = handler.renderer.options
        handler.cleanup()

        assert options.extra_http_headers == {"X-Team": "docs", "X-Key": "k1"}
        assert options.http_credentials is None

    def test_basic_auth_becomes_http_credentials(self, make_source_config, fake_http):
        source = make_source_config(
            "dynamic_unstructured",
            "docs",
            config={"targets": [crawler()]},
            authentication={"type": "basic", "username": "reader", "password": "pw"},
        )
        handler = DynamicUnstructuredSourceHandler(SourceConfig.from_dict(source), http_client=fake_http)
        handler.initialize()

        options = handler.renderer.options
        handler.cleanup()

        assert options.http_credentials == {"username": "reader", "password": "pw"}
        assert options.extra_http_headers is None


class TestCrawlDiscovery:
    """Tests for the bounded breadth-first crawler."""

    def test_breadth_first_within_domain_and_depth(self, site, make_handler):
        handler = make_handler([crawler(max_depth=1)])

        documents = list(handler.discover())

        assert [d.url for d in documents] == [f"{SITE}/", f"{SITE}/guide", f"{SITE}/api"]
        assert documents[0].title == "Home"
        assert documents[1].metadata["depth"] == 1
        assert documents[1].metadata["parent_url"] == f"{SITE}/"
        assert "https://elsewhere.org/x" not in site.urls()
        assert handler.discovered_urls == {d.url for d in documents}

    def test_depth_two_reaches_deep_page(self, site, make_handler):
        handler = make_handler([crawler(max_depth=2)])
        assert f"{SITE}/guide/deep" in [d.url for d in handler.discover()]

    def test_max_pages(self, site, make_handler):
        handler = make_handler([crawler(max_pages=2)])
        assert len(list(handler.discover())) == 2

    def test_robots_respected(self, site, make_handler):
        handler = make_handler([crawler(max_depth=1, respect_robots_txt=True)])

        urls = [d.url for d in handler.discover()]

        assert f"{SITE}/api" not in urls
        assert f"{SITE}/api" not in site.urls()

    def test_crawl_delay_applied_between_fetches(self, site, make_handler, recorded_sleep):
        handler = make_handler([crawler(max_depth=1, crawl_delay_ms=1000)])

        documents = list(handler.discover())

        assert len(recorded_sleep.calls) == len(documents) - 1
        assert all(0.5 < s <= 1.0 for s in recorded_sleep.calls)

    def test_unreachable_start_url_yields_nothing(self, fake_http, make_handler, transport_error):
        fake_http.routes[f"{SITE}/"] = transport_error(f"{SITE}/")
        handler = make_handler([crawler()])
        assert list(handler.discover()) == []

    def test_discovered_urls_reflect_latest_run(self, site, make_handler, transport_error):
        handler = make_handler([crawler(max_depth=1)])
        list(handler.discover())
        site.routes[f"{SITE}/guide"] = transport_error(f"{SITE}/guide")

        list(handler.discover())

        assert handler.discovered_urls == {f"{SITE}/", f"{SITE}/api"}

    def test_cancel_stops_discovery(self, site, make_handler):
        handler = make_handler([crawler()])
        handler.cancel()
        assert list(handler.discover()) == []


class TestOtherStrategies:
    def test_same_url_from_two_targets_yields_one_document(self, site, make_handler):
        sitemap = {"name": "map", "type": "sitemap", "config": {"sitemap_url": f"{SITE}/sitemap.xml"}}
        handler = make_handler([crawler(max_depth=1), sitemap])

        urls = [d.url for d in handler.discover()]

        assert urls.count(f"{SITE}/guide") == 1
        assert urls.count(f"{SITE}/api") == 1

    def test_sitemap_incremental(self, site, make_handler):
        target = {
            "name": "map",
            "type": "sitemap",
            "config": {"sitemap_url": f"{SITE}/sitemap.xml", "incremental": True},
        }
        handler = make_handler([target], last_discovery_time="2024-01-01T00:00:00Z")

        documents = list(handler.discover())

        assert [d.url for d in documents] == [f"{SITE}/guide"]
        assert documents[0].metadata["target_type"] == "sitemap"

    def test_sitemap_index(self, fake_http, make_handler):
        fake_http.add(
            f"{SITE}/index.xml",
            f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9"><sitemap><loc>{SITE}/sitemap.xml</loc></sitemap></sitemapindex>',
        )
        fake_http.add(f"{SITE}/sitemap.xml", SITEMAP)
        handler = make_handler([{"name": "idx", "type": "sitemap", "config": {"sitemap_url": f"{SITE}/index.xml", "max_urls": 1}}])

        assert [d.url for d in handler.discover()] == [f"{SITE}/guide"]

    def test_failing_child_sitemap_skipped(self, fake_http, make_handler, transport_error):
        fake_http.add(
            f"{SITE}/index.xml",
            '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            f"<sitemap><loc>{SITE}/broken.xml</loc></sitemap>"
            f"<sitemap><loc>{SITE}/sitemap.xml</loc></sitemap>"
            "</sitemapindex>",
        )
        fake_http.routes[f"{SITE}/broken.xml"] = transport_error(f"{SITE}/broken.xml")
        fake_http.add(f"{SITE}/sitemap.xml", SITEMAP)
        handler = make_handler([{"name": "idx", "type": "sitemap", "config": {"sitemap_url": f"{SITE}/index.xml"}}])

        urls = [d.url for d in handler.discover()]

        assert urls == [f"{SITE}/guide", f"{SITE}/api"]
        assert f"{SITE}/broken.xml" in fake_http.urls()

    def test_search_api(self, fake_http, make_handler):
        results = {"data": {"hits": [{"url": f"{SITE}/a", "title": "A", "score": 0.9}, {"title": "no url"}]}}
        fake_http.add("https://search.example.com/api", json.dumps(results))
        target = {
            "name": "search",
            "type": "search-api",
            "config": {
                "api_url": "https://search.example.com/api",
                "query": "install",
                "max_results": 5,
                "results_path": "data.hits",
            },
        }
        handler = make_handler([target])

        documents = list(handler.discover())

        assert [d.title for d in documents] == ["A"]
        assert documents[0].metadata["rank"] == 0
        assert fake_http.calls[-1]["params"] == {"q": "install", "limit": 5}

    def test_rss_discovery(self, fake_http, make_handler):
        fake_http.add(
            f"{SITE}/blog",
            '<html><head><link rel="alternate" type="application/atom+xml" title="News" href="/atom.xml"></head></html>',
        )
        target = {"name": "feeds", "type": "rss-discovery", "config": {"seed_urls": [f"{SITE}/blog"]}}
        handler = make_handler([target])

        documents = list(handler.discover())

        assert [d.url for d in documents] == [f"{SITE}/atom.xml"]
        assert documents[0].metadata["feed_type"] == "application/atom+xml"

    def test_failing_target_does_not_stop_others(self, site, make_handler):
        broken = {"name": "search", "type": "search-api", "config": {"api_url": f"{SITE}/search", "query": "x"}}
        site.routes[f"{SITE}/search"] = lambda *args: MagicMock(ok=True, json=MagicMock(side_effect=ValueError("bad json")))
        handler = make_handler([broken, crawler(max_depth=0)])

        assert [d.url for d in handler.discover()] == [f"{SITE}/"]


class TestExtraction:
    """Tests for rendered and plain HTTP extraction."""

    def test_rendered_extraction_with_selectors(self, site, make_handler):
        renderer = FakeRenderer(
            {
                f"{SITE}/": RenderedPage(
                    url=f"{SITE}/",
                    final_url=f"{SITE}/",
                    status_code=200,
                    html="<html></html>",
                    title="Home",
                    text="whole page text",
                    fields={"content": "Selected main content", "title": "Selected title"},
                )
            }
        )
        target = crawler(max_depth=0)
        target["selectors"] = {"content": "main", "title": "h1"}
        target["wait_for_selector"] = "main"
        handler = make_handler([target], renderer=renderer)
        document = next(iter(handler.discover()))

        extracted = handler.extract(document)

        assert extracted.extraction_method == "headless-browser"
        assert extracted.content == "Selected main content"
        assert extracted.metadata["title"] == "Selected title"
        assert extracted.metadata["selectors_used"] == ["content", "title"]
        assert renderer.calls[0]["wait_for_selector"] == "main"

    def test_http_extraction(self, site, make_handler):
        handler = make_handler([crawler(max_depth=0)], render_with_browser=False)
        document = next(iter(handler.discover()))

        extracted = handler.extract(document)

        assert extracted.extraction_method == "http-fetch"
        assert "Documentation body text." in extracted.content
        assert extracted.metadata["title"] == "Home"

    def test_fetches_of_one_target_are_spaced(self, site, make_handler, recorded_sleep):
        handler = make_handler([crawler(max_depth=1, crawl_delay_ms=2000)], render_with_browser=False)
        documents = list(handler.discover())
        recorded_sleep.calls.clear()

        for document in documents:
            handler.extract(document)

        assert len(documents) == 3
        assert len(recorded_sleep.calls) == 3
        assert all(0 < s <= 2.0 for s in recorded_sleep.calls)

    def test_renders_of_one_target_are_spaced(self, site, make_handler, recorded_sleep):
        target = {"name": "map", "type": "sitemap", "config": {"sitemap_url": f"{SITE}/sitemap.xml"}, "rate_limit_ms": 500}
        renderer = FakeRenderer()
        handler = make_handler([target], renderer=renderer)
        documents = list(handler.discover())

        for document in documents:
            handler.extract(document)

        assert len(renderer.calls) == 2
        assert len(recorded_sleep.calls) == 1
        assert 0 < recorded_sleep.calls[0] <= 0.5

    def test_concurrent_engine_extraction_shares_target_delay(self, site, make_source_config, recorded_sleep):
        source = make_source_config(
            "dynamic_unstructured",
            "docs",
            config={"targets": [crawler(max_depth=1, crawl_delay_ms=2000)], "render_with_browser": False},
        )
        dependencies = {"http_client": site, "sleep": recorded_sleep}
        with IngestionEngine(
            EngineOptions(max_concurrent_documents=4), handler_dependencies=dependencies, sleep=recorded_sleep
        ) as engine:
            engine.add_source(source)
            result = engine.process_all_documents("docs")

        assert len(result.processed) == 3
        # two waits while crawling, one per extracted page
        assert len(recorded_sleep.calls) == 5
        assert all(0 < s <= 2.0 for s in recorded_sleep.calls)

    def test_render_failure_raises(self, site, make_handler):
        renderer = FakeRenderer({f"{SITE}/": RuntimeError("browser crashed")})
        handler = make_handler([crawler(max_depth=0)], renderer=renderer)
        document = next(iter(handler.discover()))

        with pytest.raises(ExtractionError, match="browser crashed"):
            handler.extract(document)

    def test_missing_page_is_none(self, site, make_handler):
        handler = make_handler([crawler(max_depth=0)], renderer=FakeRenderer())
        document = next(iter(handler.discover()))
        assert handler.extract(document) is None

    def test_content_filters_mark_filtered(self, site, make_handler):
        handler = make_handler(
            [crawler(max_depth=0)],
            render_with_browser=False,
            content_filters={"min_word_count": 50},
        )
        document = next(iter(handler.discover()))

        extracted = handler.extract(document)

        assert extracted.filtered
        assert "below minimum 50" in extracted.filter_reason
        assert handler.transform(extracted) is None


class TestTransform:
    def test_review_flags(self, site, make_handler):
        handler = make_handler([crawler(max_depth=0)], render_with_browser=False)
        document = next(iter(handler.discover()))

        transformed = handler.transform(handler.extract(document))

        assert transformed.title == "Home"
        assert transformed.metadata["requires_review"] is True
        assert "too_short" in transformed.metadata["review_reasons"]
        assert transformed.metadata["visibility"] == "external"


class TestCursorAndCleanup:
    def test_update_cursor(self, make_handler):
        handler = make_handler([crawler()])
        handler.update_cursor("2024-05-01T00:00:00Z")
        assert handler.cursor_store.get("docs", "last_discovery_time") == "2024-05-01T00:00:00+00:00"

    def test_cleanup_clears_state_but_keeps_injected_renderer(self, site, make_handler):
        renderer = FakeRenderer()
        handler = make_handler([crawler(max_depth=0)], renderer=renderer)
        list(handler.discover())

        handler.cleanup()

        assert handler.discovered_urls == set()
        assert renderer.closed is False
