"""
Dynamic consistent source handler.

Consumes structured, regularly updated sources: RSS/Atom feeds and JSON
APIs. Discovery is incremental against a ``last_sync_time`` cursor that only
moves when the caller advances it.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from pydantic import Field, model_validator

from src.ingestion.errors import ExtractionError, TransformError
from src.ingestion.handlers.base import BaseSourceHandler
from src.ingestion.normalization.text import (
    collapse_whitespace,
    content_hash,
    looks_like_html,
    parse_datetime,
    strip_html,
)
from src.ingestion.parsers import html as html_parser
from src.ingestion.parsers.base import FeedParser
from src.ingestion.parsers.feeds import get_feed_parser
from src.ingestion.transport.http import TransportError, authentication_headers
from src.ingestion.types import (
    AuthenticationConfig,
    CamelModel,
    Document,
    ExtractedContent,
    TransformedDocument,
    Visibility,
    utc_now,
)

SYNC_CURSOR = "last_sync_time"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"

API_LIST_KEYS = ("articles", "items", "results", "data", "entries")
API_TITLE_KEYS = ("title", "name", "headline")
API_CONTENT_KEYS = ("content", "body", "description", "summary")
API_URL_KEYS = ("url", "link", "permalink")
API_DATE_KEYS = ("publishedAt", "published_at", "published", "created_at", "createdAt", "date", "updated_at")


class FeedSourceConfig(CamelModel):
    url: str
    type: str = "rss"  # rss | api
    name: Optional[str] = None
    authentication: Optional[AuthenticationConfig] = None
    items_path: Optional[str] = None

    @model_validator(mode="after")
    def _check_type(self) -> "FeedSourceConfig":
        self.type = self.type.lower()
        if self.type not in ("rss", "api"):
            raise ValueError(f"unsupported feed source type '{self.type}' (expected rss or api)")
        return self


class DynamicConsistentSettings(CamelModel):
    feed_url: Optional[str] = None
    api_endpoint: Optional[str] = None
    sources: List[FeedSourceConfig] = Field(default_factory=list)
    items_path: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    lookback_hours: float = Field(default=24.0, gt=0)
    min_content_length: int = Field(default=200, ge=0)
    fetch_full_content: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    feed_parser: str = "feedparser"

    @model_validator(mode="after")
    def _require_a_source(self) -> "DynamicConsistentSettings":
        if not (self.feed_url or self.api_endpoint or self.sources):
            raise ValueError("one of feed_url, api_endpoint or sources is required")
        return self

    def all_sources(self) -> List[FeedSourceConfig]:
        sources = []
        if self.feed_url:
            sources.append(FeedSourceConfig(url=self.feed_url, type="rss"))
        if self.api_endpoint:
            sources.append(FeedSourceConfig(url=self.api_endpoint, type="api", items_path=self.items_path))
        sources.extend(self.sources)
        return sources


def _first(item: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _dig(data: Any, dotted: str) -> Any:
    for part in dotted.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def api_items(payload: Any, items_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Locate the item list of an API response."""
    if items_path:
        found = _dig(payload, items_path)
        return [i for i in found if isinstance(i, dict)] if isinstance(found, list) else []
    if isinstance(payload, list):
        return [i for i in payload if isinstance(i, dict)]
    if isinstance(payload, dict):
        for key in API_LIST_KEYS:
            if isinstance(payload.get(key), list):
                return [i for i in payload[key] if isinstance(i, dict)]
        return [payload]
    return []


class DynamicConsistentSourceHandler(BaseSourceHandler):
    """Handler for RSS/Atom feeds and JSON APIs."""

    settings_model = DynamicConsistentSettings
    default_visibility = Visibility.EXTERNAL

    def __init__(self, config, *, feed_parser: Optional[FeedParser] = None, **kwargs):
        super().__init__(config, **kwargs)
        self._feed_parser = feed_parser
        self.last_sync_time: Optional[datetime] = None

    def _initialize(self) -> None:
        self.http_client.configure_authentication(self.config.authentication)
        if self._feed_parser is None:
            self._feed_parser = get_feed_parser(self.settings.feed_parser)
        self.last_sync_time = self.load_time_cursor(
            SYNC_CURSOR,
            self.settings.last_sync_time,
            timedelta(hours=self.settings.lookback_hours),
        )
        self.log.info(f"Sync cursor at {self.last_sync_time.isoformat()}", extra={"stage": "initialize"})

    def update_cursor(self, timestamp: Optional[datetime] = None) -> None:
        """Advance ``last_sync_time``; later discoveries only return newer entries."""
        self.last_sync_time = parse_datetime(timestamp) if timestamp else utc_now()
        self.save_time_cursor(SYNC_CURSOR, self.last_sync_time)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def discover(self) -> Iterator[Document]:
        self._require_initialized()
        cursor = self.last_sync_time
        for source in self.settings.all_sources():
            try:
                if source.type == "api":
                    documents = self._discover_api(source)
                else:
                    documents = self._discover_feed(source)
            except Exception as e:
                self.log.warning(
                    f"Skipping {source.type} source {source.url}: {e}",
                    extra={"stage": "discover", "payload": {"url": source.url}},
                )
                continue

            for document in documents:
                if document.last_modified is not None and cursor is not None and document.last_modified <= cursor:
                    continue
                yield document

    def _discover_feed(self, source: FeedSourceConfig) -> List[Document]:
        response = self.http_client.get(
            source.url,
            headers={"Accept": FEED_ACCEPT, **authentication_headers(source.authentication)},
        )
        if not response.ok:
            self.log.warning(f"Feed {source.url} returned HTTP {response.status_code}", extra={"stage": "discover"})
            return []

        documents = []
        for entry in self._feed_parser.parse(response.text):
            identifier = entry.link or entry.guid
            documents.append(
                self.make_document(
                    identifier,
                    entry.link or entry.guid,
                    title=collapse_whitespace(entry.title) or None,
                    last_modified=entry.timestamp,
                    content=entry.body,
                    metadata={
                        "feed_url": source.url,
                        "feed_name": source.name,
                        "guid": entry.guid,
                        "author": entry.author,
                        "categories": list(entry.categories),
                        "published_date": entry.published.isoformat() if entry.published else None,
                    },
                )
            )
        return documents

    def _discover_api(self, source: FeedSourceConfig) -> List[Document]:
        response = self.http_client.get(
            source.url,
            headers={"Accept": "application/json", **authentication_headers(source.authentication)},
        )
        if not response.ok:
            self.log.warning(f"API {source.url} returned HTTP {response.status_code}", extra={"stage": "discover"})
            return []

        documents = []
        for item in api_items(response.json(), source.items_path or self.settings.items_path):
            url = _first(item, API_URL_KEYS)
            identifier = url or item.get("id")
            if not identifier:
                self.log.warning(f"Skipping API item without url or id from {source.url}")
                continue
            published = parse_datetime(_first(item, API_DATE_KEYS))
            content = _first(item, API_CONTENT_KEYS)
            documents.append(
                self.make_document(
                    str(identifier),
                    str(url or identifier),
                    title=collapse_whitespace(str(_first(item, API_TITLE_KEYS) or "")) or None,
                    last_modified=published,
                    content=str(content) if content is not None else None,
                    metadata={
                        "api_endpoint": source.url,
                        "item_id": item.get("id"),
                        "author": item.get("author"),
                        "categories": item.get("categories") or item.get("tags") or [],
                        "published_date": published.isoformat() if published else None,
                    },
                )
            )
        return documents

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def extract(self, document: Document) -> Optional[ExtractedContent]:
        self._require_initialized()
        inline = document.content or ""
        inline_text = strip_html(inline) if looks_like_html(inline) else inline.strip()
        wants_fetch = (
            self.settings.fetch_full_content
            and document.url.startswith(("http://", "https://"))
            and len(inline_text) < self.settings.min_content_length
        )

        content, method = inline, "direct"
        if wants_fetch:
            try:
                content, method = self._fetch_permalink(document), "permalink-fetch"
            except ExtractionError as e:
                if not inline_text:
                    raise
                self.log.warning(f"{e}; using inline content", extra={"stage": "extract"})
                content, method = inline, "direct"

        return ExtractedContent(
            id=document.id,
            content=content,
            content_hash=content_hash(content),
            extraction_method=method,
            metadata={
                **document.metadata,
                "url": document.url,
                "original_title": document.title,
                "last_modified": document.last_modified.isoformat() if document.last_modified else None,
            },
        )

    def _fetch_permalink(self, document: Document) -> str:
        try:
            response = self.http_client.get(document.url, headers={"Accept": "text/html,*/*;q=0.8"})
        except TransportError as e:
            raise ExtractionError(
                f"Failed to fetch {document.url}: {e}",
                source_id=self.source_id,
                document_id=document.id,
            ) from e
        if not response.ok:
            raise ExtractionError(
                f"GET {document.url} returned HTTP {response.status_code}",
                source_id=self.source_id,
                document_id=document.id,
            )
        if "html" in response.content_type or looks_like_html(response.text):
            return html_parser.extract_main_text(response.text, url=document.url)
        return response.text

    # -------------------------------------------------------------------------
    # Transformation
    # -------------------------------------------------------------------------

    def transform(self, extracted: Optional[ExtractedContent]) -> Optional[TransformedDocument]:
        if extracted is None:
            return None
        try:
            raw = extracted.content or ""
            content = strip_html(raw) if looks_like_html(raw) else collapse_whitespace(raw)
            meta = extracted.metadata
            title = meta.get("original_title") or meta.get("url") or f"Document {extracted.id}"
            metadata = self.base_metadata(
                extracted,
                content,
                published_date=meta.get("published_date"),
                author=meta.get("author"),
                categories=list(meta.get("categories") or []),
            )
            metadata.pop("original_title", None)
            return TransformedDocument(
                id=extracted.id,
                title=collapse_whitespace(title),
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
