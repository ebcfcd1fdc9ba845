"""
Dynamic unstructured source handler.

Discovers pages on web properties without a feed, through a list of
targets, each with its own discovery strategy:

- web-crawler:   bounded breadth-first crawl from start URLs
- sitemap:       sitemap.xml (and one level of sitemap index)
- search-api:    a JSON search endpoint returning result URLs
- rss-discovery: pages probed for <link rel="alternate"> feed declarations

Pages are rendered in a headless browser at extraction time, optionally
with per-field CSS selectors, and passed through content filters.
"""

from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator

from src.ingestion.deduplication import CompositeDeduplicator
from src.ingestion.errors import ExtractionError, TransformError, format_validation_error
from src.ingestion.handlers.base import BaseSourceHandler
from src.ingestion.normalization.quality import (
    ContentFilterConfig,
    apply_content_filters,
    assess_review,
)
from src.ingestion.normalization.text import (
    clean_text,
    collapse_whitespace,
    content_hash,
    parse_datetime,
)
from src.ingestion.normalization.urls import canonicalize_url, hostname
from src.ingestion.parsers import html as html_parser
from src.ingestion.parsers.base import SitemapDocument, SitemapParser
from src.ingestion.parsers.sitemap import get_sitemap_parser
from src.ingestion.runtime.resilience import RateLimiter
from src.ingestion.transport.browser import BrowserOptions, BrowserRenderer
from src.ingestion.transport.http import TransportError, authentication_headers
from src.ingestion.transport.robots import RobotsChecker
from src.ingestion.types import (
    AuthType,
    CamelModel,
    Document,
    ExtractedContent,
    TransformedDocument,
    Visibility,
    normalize_type_tag,
    utc_now,
)

DISCOVERY_CURSOR = "last_discovery_time"
DEFAULT_USER_AGENT = "SourceIngestion-Crawler/1.0"
MAX_CHILD_SITEMAPS = 10


class TargetType(str, Enum):
    WEB_CRAWLER = "web-crawler"
    SITEMAP = "sitemap"
    SEARCH_API = "search-api"
    RSS_DISCOVERY = "rss-discovery"


# =============================================================================
# SETTINGS
# =============================================================================


class CrawlerSettings(CamelModel):
    start_urls: List[str] = Field(..., min_length=1)
    max_depth: int = Field(default=2, ge=0)
    max_pages: int = Field(default=50, ge=1)
    allowed_domains: List[str] = Field(default_factory=list)
    respect_robots_txt: bool = False
    crawl_delay_ms: float = Field(default=1000, ge=0)


class SitemapSettings(CamelModel):
    sitemap_url: str
    max_urls: int = Field(default=100, ge=1)
    incremental: bool = False


class SearchApiSettings(CamelModel):
    api_url: str
    query: str
    max_results: int = Field(default=50, ge=1)
    api_params: Dict[str, Any] = Field(default_factory=dict)
    results_path: Optional[str] = None
    query_param: str = "q"
    limit_param: str = "limit"


class RssDiscoverySettings(CamelModel):
    seed_urls: List[str] = Field(..., min_length=1)


STRATEGY_SETTINGS = {
    TargetType.WEB_CRAWLER: CrawlerSettings,
    TargetType.SITEMAP: SitemapSettings,
    TargetType.SEARCH_API: SearchApiSettings,
    TargetType.RSS_DISCOVERY: RssDiscoverySettings,
}

StrategySettings = Union[CrawlerSettings, SitemapSettings, SearchApiSettings, RssDiscoverySettings]


class SelectorConfig(CamelModel):
    content: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


class TargetConfig(CamelModel):
    name: str
    type: TargetType
    config: Dict[str, Any] = Field(default_factory=dict)
    selectors: Optional[SelectorConfig] = None
    wait_for_selector: Optional[str] = None
    rate_limit_ms: Optional[float] = Field(default=None, ge=0)
    strategy: Optional[StrategySettings] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        tag = normalize_type_tag(v)
        return tag.replace("_", "-") if isinstance(tag, str) else tag

    @model_validator(mode="after")
    def _parse_strategy(self) -> "TargetConfig":
        try:
            self.strategy = STRATEGY_SETTINGS[self.type].model_validate(self.config)
        except ValidationError as e:
            raise ValueError(f"target '{self.name}' config: {format_validation_error(e)}") from e
        return self


class DynamicUnstructuredSettings(CamelModel):
    targets: List[TargetConfig] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("targets", "discovery_rules", "discoveryRules"),
    )
    content_filters: Optional[ContentFilterConfig] = None
    render_with_browser: bool = True
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = Field(default=45.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit_ms: float = Field(default=0, ge=0)
    review_min_length: int = Field(default=100, ge=0)
    review_max_length: int = Field(default=50000, ge=1)
    last_discovery_time: Optional[datetime] = None
    sitemap_parser: str = "lxml"

    @model_validator(mode="after")
    def _unique_target_names(self) -> "DynamicUnstructuredSettings":
        names = [t.name for t in self.targets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate target names: {', '.join(duplicates)}")
        return self


# =============================================================================
# HANDLER
# =============================================================================


class DynamicUnstructuredSourceHandler(BaseSourceHandler):
    """Handler for crawled and searched web content."""

    settings_model = DynamicUnstructuredSettings
    default_visibility = Visibility.EXTERNAL

    def __init__(
        self,
        config,
        *,
        renderer: Optional[BrowserRenderer] = None,
        sitemap_parser: Optional[SitemapParser] = None,
        **kwargs,
    ):
        super().__init__(config, **kwargs)
        self._renderer = renderer
        self._owns_renderer = renderer is None
        self._sitemap_parser = sitemap_parser
        self._robots: Optional[RobotsChecker] = None
        self._limiters: Dict[str, RateLimiter] = {}
        self._targets: Dict[str, TargetConfig] = {}
        self.discovered_urls: set = set()
        self.last_discovery_time: Optional[datetime] = None

    def _initialize(self) -> None:
        self.http_client.configure_authentication(self.config.authentication)
        self._targets = {t.name: t for t in self.settings.targets}
        if self._sitemap_parser is None:
            self._sitemap_parser = get_sitemap_parser(self.settings.sitemap_parser)
        self._robots = RobotsChecker(self.http_client, user_agent=self.settings.user_agent)
        self._between_targets = RateLimiter.fixed_delay(self.settings.rate_limit_ms, sleep=self._sleep)
        for target in self.settings.targets:
            delay = target.rate_limit_ms
            if delay is None and isinstance(target.strategy, CrawlerSettings):
                delay = target.strategy.crawl_delay_ms
            self._limiters[target.name] = RateLimiter.fixed_delay(delay or 0, sleep=self._sleep)
        self.last_discovery_time = self.load_time_cursor(
            DISCOVERY_CURSOR, self.settings.last_discovery_time, timedelta(days=7)
        )

    @property
    def renderer(self) -> BrowserRenderer:
        if self._renderer is None:
            auth = self.config.authentication
            headers = {**self.settings.headers, **authentication_headers(auth)}
            credentials = None
            if auth is not None and auth.type == AuthType.BASIC:
                credentials = {"username": str(auth.username), "password": str(auth.password)}
            self._renderer = BrowserRenderer(
                options=BrowserOptions(
                    headless=self.settings.headless,
                    nav_timeout_s=self.settings.timeout_seconds,
                    user_agent=self.settings.user_agent,
                    extra_http_headers=headers or None,
                    http_credentials=credentials,
                )
            )
            self._owns_renderer = True
        return self._renderer

    def limiter_for(self, target_name: str) -> RateLimiter:
        return self._limiters[target_name]

    def update_cursor(self, timestamp: Optional[datetime] = None) -> None:
        self.last_discovery_time = parse_datetime(timestamp) if timestamp else utc_now()
        self.save_time_cursor(DISCOVERY_CURSOR, self.last_discovery_time)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def discover(self) -> Iterator[Document]:
        """
        Run every target and return the union, de-duplicated by canonical URL and id.

        Results are materialized before yielding because de-duplication spans
        targets.
        """
        self._require_initialized()
        self.discovered_urls = set()
        strategies = {
            TargetType.WEB_CRAWLER: self._discover_crawl,
            TargetType.SITEMAP: self._discover_sitemap,
            TargetType.SEARCH_API: self._discover_search,
            TargetType.RSS_DISCOVERY: self._discover_feeds,
        }

        collected: List[Document] = []
        for target in self.settings.targets:
            if self.cancel_token.cancelled:
                self.log.info("Discovery cancelled", extra={"stage": "discover"})
                break
            self._between_targets.wait()
            try:
                found = list(strategies[target.type](target))
            except Exception as e:
                self.log.warning(
                    f"Target '{target.name}' ({target.type.value}) failed: {e}",
                    extra={"stage": "discover", "payload": {"target": target.name}},
                )
                continue
            self.log.info(f"Target '{target.name}' found {len(found)} documents", extra={"stage": "discover"})
            collected.extend(found)

        unique = CompositeDeduplicator().deduplicate(collected)
        if len(unique) < len(collected):
            self.log.info(f"Dropped {len(collected) - len(unique)} duplicate documents", extra={"stage": "discover"})
        yield from unique

    def _target_document(self, target: TargetConfig, url: str, **fields: Any) -> Document:
        canonical = canonicalize_url(url)
        metadata = {"target": target.name, "target_type": target.type.value}
        metadata.update(fields.pop("metadata", {}))
        return self.make_document(canonical, canonical, metadata=metadata, **fields)

    @staticmethod
    def _domain_allowed(url: str, allowed: List[str]) -> bool:
        if not allowed:
            return True
        host = hostname(url)
        return any(host == d.lower() or host.endswith("." + d.lower()) for d in allowed)

    def _discover_crawl(self, target: TargetConfig) -> Iterator[Document]:
        settings: CrawlerSettings = target.strategy
        limiter = self.limiter_for(target.name)
        queue = deque((canonicalize_url(u), 0, None) for u in settings.start_urls)
        visited = set()
        pages = 0

        while queue and pages < settings.max_pages:
            if self.cancel_token.cancelled:
                self.log.info(f"Crawl of '{target.name}' cancelled after {pages} pages", extra={"stage": "discover"})
                return
            url, depth, parent = queue.popleft()
            if url in visited or depth > settings.max_depth:
                continue
            visited.add(url)

            if not self._domain_allowed(url, settings.allowed_domains):
                continue
            if settings.respect_robots_txt and not self._robots.allowed(url):
                self.log.debug(f"robots.txt disallows {url}")
                continue

            limiter.wait()
            try:
                response = self.http_client.get(url, headers={"Accept": "text/html,*/*;q=0.8"})
            except TransportError as e:
                self.log.warning(f"Crawl fetch failed for {url}: {e}", extra={"stage": "discover"})
                continue
            if not response.ok:
                self.log.debug(f"Crawl skipped {url}: HTTP {response.status_code}")
                continue

            self.discovered_urls.add(url)
            pages += 1
            is_html = "html" in response.content_type or not response.content_type
            yield self._target_document(
                target,
                url,
                title=html_parser.get_title(response.text) if is_html else None,
                content_type=response.content_type or None,
                metadata={"depth": depth, "parent_url": parent},
            )

            if is_html and depth < settings.max_depth:
                for link in html_parser.extract_links(response.text, response.final_url or url):
                    if link not in visited and self._domain_allowed(link, settings.allowed_domains):
                        queue.append((link, depth + 1, url))

    def _discover_sitemap(self, target: TargetConfig) -> Iterator[Document]:
        settings: SitemapSettings = target.strategy
        parsed = self._fetch_sitemap(settings.sitemap_url)
        entries = list(parsed.urls)
        for child in parsed.sitemaps[:MAX_CHILD_SITEMAPS]:
            if len(entries) >= settings.max_urls:
                break
            try:
                entries.extend(self._fetch_sitemap(child.loc).urls)
            except Exception as e:
                self.log.warning(
                    f"Child sitemap {child.loc} of target '{target.name}' failed: {e}",
                    extra={"stage": "discover"},
                )

        emitted = 0
        for entry in entries:
            if emitted >= settings.max_urls:
                break
            if (
                settings.incremental
                and entry.lastmod is not None
                and self.last_discovery_time is not None
                and entry.lastmod <= self.last_discovery_time
            ):
                continue
            emitted += 1
            yield self._target_document(
                target,
                entry.loc,
                last_modified=entry.lastmod,
                metadata={
                    "sitemap_url": settings.sitemap_url,
                    "priority": entry.priority,
                    "changefreq": entry.changefreq,
                },
            )

    def _fetch_sitemap(self, url: str) -> SitemapDocument:
        response = self.http_client.get(url, headers={"Accept": "application/xml,text/xml;q=0.9,*/*;q=0.5"})
        if not response.ok:
            self.log.warning(f"Sitemap {url} returned HTTP {response.status_code}", extra={"stage": "discover"})
            return SitemapDocument()
        return self._sitemap_parser.parse(response.content or response.text)

    def _discover_search(self, target: TargetConfig) -> Iterator[Document]:
        settings: SearchApiSettings = target.strategy
        params = {settings.query_param: settings.query, settings.limit_param: settings.max_results}
        params.update(settings.api_params)
        response = self.http_client.get(settings.api_url, params=params, headers={"Accept": "application/json"})
        if not response.ok:
            self.log.warning(f"Search API returned HTTP {response.status_code}", extra={"stage": "discover"})
            return

        payload = response.json()
        if settings.results_path:
            results = payload
            for part in settings.results_path.split("."):
                results = results.get(part) if isinstance(results, dict) else None
        elif isinstance(payload, list):
            results = payload
        else:
            results = payload.get("results") or payload.get("items") or payload.get("list") or []

        for rank, item in enumerate((results or [])[: settings.max_results]):
            if not isinstance(item, dict):
                continue
            url = item.get("url") or item.get("link")
            if not url:
                self.log.warning(f"Skipping search result without url in target '{target.name}'")
                continue
            yield self._target_document(
                target,
                str(url),
                title=item.get("title") or item.get("name"),
                metadata={
                    "query": settings.query,
                    "rank": rank,
                    "snippet": item.get("description") or item.get("snippet"),
                    "score": item.get("score"),
                },
            )

    def _discover_feeds(self, target: TargetConfig) -> Iterator[Document]:
        settings: RssDiscoverySettings = target.strategy
        limiter = self.limiter_for(target.name)
        for seed in settings.seed_urls:
            if self.cancel_token.cancelled:
                return
            limiter.wait()
            try:
                response = self.http_client.get(seed, headers={"Accept": "text/html,*/*;q=0.8"})
            except TransportError as e:
                self.log.warning(f"Feed discovery fetch failed for {seed}: {e}", extra={"stage": "discover"})
                continue
            if not response.ok:
                continue
            for feed in html_parser.extract_feed_links(response.text, response.final_url or seed):
                yield self._target_document(
                    target,
                    feed["url"],
                    title=feed["title"] or None,
                    content_type=feed["type"],
                    metadata={"parent_url": seed, "feed_type": feed["type"]},
                )

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def extract(self, document: Document) -> Optional[ExtractedContent]:
        self._require_initialized()
        target = self._targets.get(document.metadata.get("target", ""))
        selectors = target.selectors.as_dict() if target and target.selectors else {}
        # Shared with discovery, so page fetches of one target keep its delay
        if target is not None:
            self.limiter_for(target.name).wait()

        if self.settings.render_with_browser:
            fields, method = self._extract_rendered(document, target, selectors), "headless-browser"
        else:
            fields, method = self._extract_http(document, selectors), "http-fetch"
        if fields is None:
            return None

        content = fields.pop("content")
        metadata = {
            **document.metadata,
            "url": document.url,
            "title": fields.get("title") or document.title,
            "author": fields.get("author"),
            "date": fields.get("date"),
            "final_url": fields.get("final_url"),
            "status_code": fields.get("status_code"),
            "selectors_used": sorted(selectors),
        }

        decision = apply_content_filters(content, self.settings.content_filters)
        if not decision.keep:
            self.log.info(f"Filtered {document.url}: {decision.reason}", extra={"stage": "extract"})

        return ExtractedContent(
            id=document.id,
            content=content,
            content_hash=content_hash(content),
            extraction_method=method,
            metadata=metadata,
            filtered=not decision.keep,
            filter_reason=decision.reason,
        )

    def _extract_rendered(
        self, document: Document, target: Optional[TargetConfig], selectors: Dict[str, str]
    ) -> Optional[Dict[str, Any]]:
        try:
            page = self.renderer.render(
                document.url,
                selectors=selectors,
                wait_for_selector=target.wait_for_selector if target else None,
            )
        except Exception as e:
            raise ExtractionError(
                f"Failed to render {document.url}: {e}",
                source_id=self.source_id,
                document_id=document.id,
            ) from e

        if page.status_code == 404:
            self.log.warning(f"Page not found: {document.url}", extra={"stage": "extract"})
            return None
        if page.status_code is not None and page.status_code >= 400:
            raise ExtractionError(
                f"Rendering {document.url} returned HTTP {page.status_code}",
                source_id=self.source_id,
                document_id=document.id,
            )

        return {
            "content": page.fields.get("content") or page.text,
            "title": page.fields.get("title") or page.title,
            "author": page.fields.get("author"),
            "date": page.fields.get("date"),
            "final_url": page.final_url,
            "status_code": page.status_code,
        }

    def _extract_http(self, document: Document, selectors: Dict[str, str]) -> Optional[Dict[str, Any]]:
        try:
            response = self.http_client.get(document.url, headers={"Accept": "text/html,*/*;q=0.8"})
        except TransportError as e:
            raise ExtractionError(
                f"Failed to fetch {document.url}: {e}",
                source_id=self.source_id,
                document_id=document.id,
            ) from e
        if response.status_code == 404:
            self.log.warning(f"Page not found: {document.url}", extra={"stage": "extract"})
            return None
        if not response.ok:
            raise ExtractionError(
                f"GET {document.url} returned HTTP {response.status_code}",
                source_id=self.source_id,
                document_id=document.id,
            )

        page = response.text
        fields = {name: html_parser.select_text(page, sel) for name, sel in selectors.items()}
        return {
            "content": fields.get("content") or html_parser.get_text(page, drop_page_chrome=True),
            "title": fields.get("title") or html_parser.get_title(page),
            "author": fields.get("author") or None,
            "date": fields.get("date") or None,
            "final_url": response.final_url,
            "status_code": response.status_code,
        }

    # -------------------------------------------------------------------------
    # Transformation
    # -------------------------------------------------------------------------

    def transform(self, extracted: Optional[ExtractedContent]) -> Optional[TransformedDocument]:
        if extracted is None:
            return None
        if extracted.filtered:
            self.log.debug(f"Not transforming filtered document {extracted.id}: {extracted.filter_reason}")
            return None
        try:
            content = clean_text(extracted.content)
            meta = extracted.metadata
            review = assess_review(
                content,
                min_length=self.settings.review_min_length,
                max_length=self.settings.review_max_length,
            )
            title = collapse_whitespace(meta.get("title") or "") or meta.get("url") or f"Document {extracted.id}"
            metadata = self.base_metadata(
                extracted,
                content,
                requires_review=review.requires_review,
                review_reasons=review.reasons,
            )
            return TransformedDocument(
                id=extracted.id,
                title=title,
                content=content,
                content_hash=content_hash(content),
                metadata=metadata,
            )
        except Exception as e:
            raise TransformError(
                f"Failed to transform {extracted.id}: {e}",
                source_id=self.source_id,
                document_id=extracted.id,
            ) from e

    def _cleanup(self) -> None:
        self.discovered_urls.clear()
        if self._robots is not None:
            self._robots.clear()
        if self._renderer is not None and self._owns_renderer:
            self._renderer.close()
        self._renderer = None
