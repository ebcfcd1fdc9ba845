"""
Semi-static source handler.

Polls a fixed list of HTTP endpoints (policy pages, manifests, status pages).
Each endpoint is one document. Unchanged endpoints are detected with
conditional requests and reported as ``None`` from ``extract``.
"""

import json
import threading
from typing import Any, Dict, Iterator, List, Optional

from pydantic import Field

from src.ingestion.errors import ExtractionError, TransformError
from src.ingestion.handlers.base import BaseSourceHandler
from src.ingestion.normalization.text import (
    clean_text,
    collapse_whitespace,
    content_hash,
    format_http_date,
    parse_datetime,
)
from src.ingestion.parsers import html as html_parser
from src.ingestion.transport.http import TransportError
from src.ingestion.types import (
    CamelModel,
    Document,
    ExtractedContent,
    TransformedDocument,
    Visibility,
    utc_now,
)

ACCEPT_HEADERS = {
    "text/html": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "application/json": "application/json,text/plain;q=0.9,*/*;q=0.8",
    "text/plain": "text/plain,*/*;q=0.8",
    "application/xml": "application/xml,text/xml;q=0.9,*/*;q=0.8",
}
KEPT_RESPONSE_HEADERS = ("content-type", "content-length", "last-modified", "etag", "cache-control")
VALIDATORS_CURSOR = "validators"
LAST_POLL_CURSOR = "last_poll_time"


class EndpointConfig(CamelModel):
    name: str
    url: str
    type: str = "webpage"
    content_type: str = "text/html"
    visibility: Optional[Visibility] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SemiStaticSettings(CamelModel):
    endpoints: List[EndpointConfig] = Field(..., min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    poll_frequency: str = "weekly"
    check_last_modified: bool = True


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class SemiStaticSourceHandler(BaseSourceHandler):
    """Handler for periodically polled HTTP endpoints."""

    settings_model = SemiStaticSettings
    default_visibility = Visibility.EXTERNAL

    def __init__(self, config, **kwargs):
        super().__init__(config, **kwargs)
        self._endpoints: Dict[str, EndpointConfig] = {}
        self._validators: Dict[str, Dict[str, str]] = {}
        self._pending_validators: Dict[str, Dict[str, str]] = {}
        self._validators_lock = threading.Lock()
        self.last_poll_time = None

    def _initialize(self) -> None:
        self.http_client.configure_authentication(self.config.authentication)
        self._endpoints = {e.url: e for e in self.settings.endpoints}
        stored = self.cursor_store.get(self.source_id, VALIDATORS_CURSOR)
        self._validators = dict(stored or {})
        self.last_poll_time = parse_datetime(self.cursor_store.get(self.source_id, LAST_POLL_CURSOR))

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def discover(self) -> Iterator[Document]:
        self._require_initialized()
        for endpoint in self.settings.endpoints:
            last_modified = None
            if self.settings.check_last_modified:
                last_modified = self._probe_last_modified(endpoint.url)
            yield self.make_document(
                endpoint.url,
                endpoint.url,
                title=endpoint.name,
                last_modified=last_modified or utc_now(),
                content_type=endpoint.content_type,
                metadata={
                    "endpoint_name": endpoint.name,
                    "endpoint_type": endpoint.type,
                    "tags": list(endpoint.tags),
                    "visibility": endpoint.visibility.value if endpoint.visibility else None,
                    **endpoint.metadata,
                },
            )

        self.last_poll_time = utc_now()
        self.save_time_cursor(LAST_POLL_CURSOR, self.last_poll_time)

    def _probe_last_modified(self, url: str):
        """HEAD probe. Best effort: any failure just means "unknown"."""
        try:
            response = self.http_client.head(url)
        except TransportError as e:
            self.log.warning(f"HEAD {url} failed: {e}", extra={"stage": "discover"})
            return None
        if not response.ok:
            self.log.debug(f"HEAD {url} returned {response.status_code}")
            return None
        return parse_datetime(response.header("last-modified"))

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def conditional_headers(self, url: str) -> Dict[str, str]:
        """Validators observed on the last delivered fetch of ``url``."""
        with self._validators_lock:
            seen = dict(self._validators.get(url, {}))
        headers = {}
        if seen.get("last_modified"):
            parsed = parse_datetime(seen["last_modified"])
            headers["If-Modified-Since"] = format_http_date(parsed) if parsed else seen["last_modified"]
        if seen.get("etag"):
            headers["If-None-Match"] = seen["etag"]
        return headers

    def extract(self, document: Document) -> Optional[ExtractedContent]:
        self._require_initialized()
        endpoint = self._endpoints.get(document.url)
        expected_type = endpoint.content_type if endpoint else (document.content_type or "text/html")

        headers = {"Accept": ACCEPT_HEADERS.get(_media_type(expected_type), "*/*")}
        headers.update(self.conditional_headers(document.url))

        try:
            response = self.http_client.get(document.url, headers=headers)
        except TransportError as e:
            raise ExtractionError(
                f"Failed to fetch {document.url}: {e}",
                source_id=self.source_id,
                document_id=document.id,
            ) from e

        if response.not_modified:
            self.log.info(f"Not modified: {document.url}", extra={"stage": "extract"})
            return None
        if response.status_code == 404:
            self.log.warning(f"Endpoint not found: {document.url}", extra={"stage": "extract"})
            return None
        if not response.ok:
            raise ExtractionError(
                f"GET {document.url} returned HTTP {response.status_code}",
                source_id=self.source_id,
                document_id=document.id,
            )

        kept_headers = {k: response.headers[k] for k in KEPT_RESPONSE_HEADERS if k in response.headers}
        validators = {}
        if response.header("last-modified"):
            validators["last_modified"] = response.header("last-modified")
        if response.header("etag"):
            validators["etag"] = response.header("etag")
        if validators:
            with self._validators_lock:
                self._pending_validators[document.id] = {"url": document.url, **validators}

        content = response.text
        return ExtractedContent(
            id=document.id,
            content=content,
            content_hash=content_hash(content),
            extraction_method="http-fetch",
            metadata={
                **document.metadata,
                "url": document.url,
                "final_url": response.final_url or document.url,
                "status_code": response.status_code,
                "content_type": response.content_type or expected_type,
                "headers": kept_headers,
                "fallback_title": document.title,
            },
        )

    def on_document_delivered(self, document: TransformedDocument) -> None:
        """Commit the validators of a delivered fetch so the next poll can be conditional."""
        with self._validators_lock:
            pending = self._pending_validators.pop(document.id, None)
            if pending is None:
                return
            url = pending.pop("url")
            self._validators[url] = pending
            snapshot = dict(self._validators)
        self.cursor_store.set(self.source_id, VALIDATORS_CURSOR, snapshot)

    # -------------------------------------------------------------------------
    # Transformation
    # -------------------------------------------------------------------------

    def transform(self, extracted: Optional[ExtractedContent]) -> Optional[TransformedDocument]:
        if extracted is None:
            return None
        media_type = _media_type(extracted.metadata.get("content_type"))
        fallback_title = extracted.metadata.get("fallback_title") or extracted.metadata.get("url", "")
        title = fallback_title

        try:
            if "html" in media_type:
                title = html_parser.get_title(extracted.content) or fallback_title
                content = html_parser.get_text(extracted.content)
            elif "json" in media_type:
                content = self._pretty_json(extracted.content)
            elif media_type.startswith("text/"):
                content = clean_text(extracted.content)
            else:
                content = extracted.content

            metadata = self.base_metadata(extracted, content, content_type=media_type or None)
            metadata.pop("fallback_title", None)
            return TransformedDocument(
                id=extracted.id,
                title=collapse_whitespace(title) or extracted.id,
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

    def _pretty_json(self, raw: str) -> str:
        try:
            return json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
        except ValueError:
            self.log.warning("Response declared JSON but did not parse; keeping raw body")
            return raw

    def _cleanup(self) -> None:
        with self._validators_lock:
            self._pending_validators.clear()
