"""
Shared pytest fixtures for the ingestion engine test suite.

Provides source config builders, an in-memory HTTP client and a recording
sleep so handlers can be exercised without network access or real delays.
"""

from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from pydantic import BaseModel

from src.ingestion.errors import ExtractionError
from src.ingestion.factory import SourceHandlerFactory
from src.ingestion.handlers import BaseSourceHandler
from src.ingestion.normalization.text import content_hash
from src.ingestion.transport.http import HttpResponse, TransportError
from src.ingestion.types import ExtractedContent, TransformedDocument

Route = Union[HttpResponse, Exception, Callable[..., HttpResponse]]


class FakeHttpClient:
    """
    Stand-in for HttpClient that serves canned responses by URL.

    Unknown URLs get a 404. Routes may be a response, an exception to raise,
    or a callable ``(method, url, headers, params) -> HttpResponse``.
    """

    def __init__(self, routes: Optional[Dict[str, Route]] = None):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []
        self.auth = None
        self.closed = False

    def add(self, url: str, text: str = "", status_code: int = 200, headers: Optional[Dict[str, str]] = None):
        self.routes[url] = HttpResponse(url=url, status_code=status_code, headers=headers or {}, text=text)

    def configure_authentication(self, auth) -> None:
        self.auth = auth

    def request(self, method: str, url: str, *, headers=None, params=None) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "params": params})
        route = self.routes.get(url)
        if route is None:
            return HttpResponse(url=url, status_code=404)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(method, url, headers or {}, params)
        return route

    def get(self, url: str, *, headers=None, params=None) -> HttpResponse:
        return self.request("GET", url, headers=headers, params=params)

    def head(self, url: str, *, headers=None) -> HttpResponse:
        return self.request("HEAD", url, headers=headers)

    def urls(self, method: str = "GET") -> List[str]:
        return [c["url"] for c in self.calls if c["method"] == method]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_http():
    """Return an empty FakeHttpClient; add routes with ``fake_http.add``."""
    return FakeHttpClient()


@pytest.fixture
def transport_error():
    """Return a function that builds a TransportError for a URL."""

    def _make(url: str) -> TransportError:
        return TransportError(f"GET {url} failed: connection refused", url=url)

    return _make


@pytest.fixture
def recorded_sleep():
    """
    Return a sleep function that records requested delays instead of sleeping.

    The recorded delays are available as ``recorded_sleep.calls``.
    """

    calls: List[float] = []

    def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def make_source_config():
    """
    Return a function that creates source config mappings with sensible defaults.

    Example:
        cfg = make_source_config("static", config={"base_path": "/tmp/docs"})
    """

    def _make(source_type: str = "static", source_id: str = "test-source", **kwargs) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": source_id, "type": source_type, "config": {}}
        data.update(kwargs)
        return data

    return _make


@pytest.fixture
def docs_tree(tmp_path):
    """
    Create a small documentation tree.

    Layout:
        docs/a.md          markdown with an H1
        docs/b.bin         binary file
        docs/guide/c.txt   plain text
        docs/.hidden/x.md  ignored (dot directory)
    """
    root = tmp_path / "docs"
    (root / "guide").mkdir(parents=True)
    (root / ".hidden").mkdir()
    (root / "a.md").write_text("# Alpha Guide\n\nSome   alpha content.\n", encoding="utf-8")
    (root / "b.bin").write_bytes(b"\x00\x01\x02binary")
    (root / "guide" / "c.txt").write_text("Plain text file.\n", encoding="utf-8")
    (root / ".hidden" / "x.md").write_text("# Hidden\n", encoding="utf-8")
    return root


class ListSettings(BaseModel):
    items: List[str] = []
    fail_extract: List[str] = []
    unchanged: List[str] = []
    fail_initialize: bool = False
    fail_discover: bool = False


class ListSourceHandler(BaseSourceHandler):
    """In-memory handler: one document per configured item name."""

    settings_model = ListSettings

    def __init__(self, config, **kwargs):
        super().__init__(config, **kwargs)
        self.delivered: List[str] = []
        self.cursor_updates: List[Any] = []
        self.cleanup_calls = 0

    def _initialize(self) -> None:
        if self.settings.fail_initialize:
            raise RuntimeError("source unreachable")

    def discover(self):
        self._require_initialized()
        if self.settings.fail_discover:
            raise RuntimeError("listing failed")
        for item in self.settings.items:
            yield self.make_document(item, f"memory://{item}", title=item)

    def extract(self, document):
        if document.title in self.settings.fail_extract:
            raise ExtractionError(
                f"cannot read {document.title}", source_id=self.source_id, document_id=document.id
            )
        if document.title in self.settings.unchanged:
            return None
        content = f"content of {document.title}"
        return ExtractedContent(
            id=document.id,
            content=content,
            content_hash=content_hash(content),
            extraction_method="memory",
            metadata={"title": document.title},
        )

    def transform(self, extracted):
        if extracted is None:
            return None
        return TransformedDocument(
            id=extracted.id,
            title=extracted.metadata["title"],
            content=extracted.content,
            content_hash=extracted.content_hash,
            metadata=self.base_metadata(extracted, extracted.content),
        )

    def update_cursor(self, timestamp=None) -> None:
        self.cursor_updates.append(timestamp)

    def on_document_delivered(self, document) -> None:
        self.delivered.append(document.title)

    def _cleanup(self) -> None:
        self.cleanup_calls += 1


@pytest.fixture
def list_factory():
    """A SourceHandlerFactory that also knows the in-memory ``list`` source type."""
    factory = SourceHandlerFactory()
    factory.register_handler("list", ListSourceHandler)
    return factory


@pytest.fixture
def list_source():
    """
    Return a function that creates ``list`` source configs.

    Example:
        cfg = list_source("numbers", items=["one", "two"], fail_extract=["two"])
    """

    def _make(source_id: str = "numbers", enabled: bool = True, **config) -> Dict[str, Any]:
        return {"id": source_id, "type": "list", "enabled": enabled, "config": config}

    return _make
