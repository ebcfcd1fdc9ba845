"""
Base Source Handler.

Abstract base class defining the contract every source handler honours.
Implements the Strategy pattern: the engine and registry drive any handler
through the same lifecycle regardless of where its documents come from.

    initialize -> discover -> extract -> transform -> ... -> cleanup
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional, Type

from pydantic import BaseModel, ValidationError

from src.configs.settings import get_settings
from src.ingestion.cursors import CursorStore, InMemoryCursorStore
from src.ingestion.errors import (
    ConfigurationError,
    IngestionError,
    InitializationError,
    format_validation_error,
)
from src.ingestion.monitoring.logging import with_context
from src.ingestion.normalization.text import (
    count_words,
    document_id,
    ensure_utc,
    parse_datetime,
)
from src.ingestion.runtime.cancellation import CancellationToken
from src.ingestion.transport.http import HttpClient, HttpClientOptions
from src.ingestion.types import (
    Document,
    ExtractedContent,
    SourceConfig,
    TransformedDocument,
    Visibility,
    utc_now,
)


class BaseSourceHandler(ABC):
    """
    Abstract base class for source handlers.

    A handler owns everything needed to talk to one source: its HTTP client,
    cursors, visited-URL sets, browser. Collaborators may be injected as
    keyword arguments (``http_client``, ``cursor_store``, ``sleep``); anything
    not injected is created on demand and released in ``cleanup()``.

    Subclasses must implement:
        - discover(): Lazily list documents without fetching bodies
        - extract(): Fetch one document's full content
        - transform(): Normalize extracted content (no I/O)
    and set ``settings_model`` to the pydantic model of their ``config`` block.
    """

    settings_model: Type[BaseModel]
    default_visibility: Visibility = Visibility.EXTERNAL

    def __init__(
        self,
        config: SourceConfig,
        *,
        http_client: Optional[HttpClient] = None,
        cursor_store: Optional[CursorStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ):
        """
        Initialize the handler. No I/O happens here.

        Args:
            config: SourceConfig of the source this handler serves
            http_client: Shared or fake HTTP client; created lazily if omitted
            cursor_store: Where incremental-fetch state is kept
            sleep: Sleep function used by rate limiting
        """
        self.config = config
        self.logger = logging.getLogger(f"handler.{config.id}")
        self.log = with_context(self.logger, source_id=config.id)
        self.cursor_store = cursor_store or InMemoryCursorStore()
        self.cancel_token = CancellationToken()
        self.settings: Optional[BaseModel] = None
        self.options = kwargs

        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._sleep = sleep

        self._initialized = False
        self._cleaned_up = False
        self._lifecycle_lock = threading.Lock()

    @property
    def source_id(self) -> str:
        """Get the source identifier."""
        return self.config.id

    @property
    def source_type(self) -> str:
        """Get the source type tag."""
        return self.config.type

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def validate_config(self, config: Optional[SourceConfig] = None) -> BaseModel:
        """
        Validate a source configuration against this handler's settings model.

        Args:
            config: Config to check; defaults to the handler's own config

        Returns:
            The parsed settings

        Raises:
            ConfigurationError: Naming every missing or invalid field
        """
        cfg = config or self.config
        try:
            return self.settings_model.model_validate(cfg.config)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration for source '{cfg.id}' ({cfg.type}): "
                f"{format_validation_error(e)}",
                source_id=cfg.id,
            ) from e

    def initialize(self) -> None:
        """
        Acquire resources and verify the source is reachable.

        Calling it again after success is a no-op.

        Raises:
            ConfigurationError: If the configuration is invalid
            InitializationError: If the source cannot be set up
        """
        with self._lifecycle_lock:
            if self._initialized:
                return
            if self._cleaned_up:
                raise InitializationError(
                    f"Handler for '{self.source_id}' was cleaned up and cannot be reused",
                    source_id=self.source_id,
                )

            self.settings = self.validate_config()
            try:
                self._initialize()
            except IngestionError:
                raise
            except Exception as e:
                raise InitializationError(
                    f"Failed to initialize source '{self.source_id}': {e}",
                    source_id=self.source_id,
                ) from e

            self._initialized = True
            self.log.info(f"Initialized {self.source_type} handler", extra={"stage": "initialize"})

    def _initialize(self) -> None:
        """Handler-specific setup. Runs once, after settings are validated."""

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InitializationError(
                f"Handler for '{self.source_id}' used before initialize()",
                source_id=self.source_id,
            )

    def cleanup(self) -> None:
        """
        Release resources. Idempotent and best effort; never raises.
        """
        with self._lifecycle_lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
            self._initialized = False

        try:
            self._cleanup()
        except Exception as e:
            self.log.warning(f"Cleanup failed: {e}", extra={"stage": "cleanup"})

        if self._http_client is not None and self._owns_http_client:
            self._http_client.close()
            self._http_client = None

    def _cleanup(self) -> None:
        """Handler-specific teardown."""

    # =========================================================================
    # PIPELINE
    # =========================================================================

    @abstractmethod
    def discover(self) -> Iterator[Document]:
        """
        Lazily yield the documents currently available at the source.

        An empty or unreachable source yields nothing rather than raising.
        """

    @abstractmethod
    def extract(self, document: Document) -> Optional[ExtractedContent]:
        """
        Fetch the full content of a discovered document.

        Returns:
            ExtractedContent, or None when the document is unchanged or gone

        Raises:
            ExtractionError: If fetching or reading fails
        """

    @abstractmethod
    def transform(self, extracted: Optional[ExtractedContent]) -> Optional[TransformedDocument]:
        """
        Normalize extracted content. Pure: no I/O.

        Returns:
            TransformedDocument, or None for None/filtered input

        Raises:
            TransformError: If normalization fails
        """

    # =========================================================================
    # HOOKS
    # =========================================================================

    def update_cursor(self, timestamp: Optional[datetime] = None) -> None:
        """Advance the incremental cursor. Handlers without a cursor ignore it."""

    def on_document_delivered(self, document: TransformedDocument) -> None:
        """Called by the engine once a document made it through the whole pipeline."""

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def reset_cancellation(self) -> None:
        self.cancel_token.reset()

    # =========================================================================
    # HELPERS
    # =========================================================================

    @property
    def http_client(self) -> HttpClient:
        if self._http_client is None:
            self._http_client = HttpClient(options=self._http_client_options(), sleep=self._sleep)
            self._owns_http_client = True
        return self._http_client

    def _http_client_options(self) -> HttpClientOptions:
        timeout = getattr(self.settings, "timeout_seconds", None)
        headers = getattr(self.settings, "headers", None) or {}
        user_agent = getattr(self.settings, "user_agent", None)
        return HttpClientOptions.from_settings(
            get_settings(),
            timeout_s=timeout,
            user_agent=user_agent,
            headers=dict(headers),
        )

    def make_document(self, identifier: str, url: str, **fields: Any) -> Document:
        """Build a Document whose id is derived from ``identifier``."""
        return Document(
            id=document_id(identifier),
            source_id=self.source_id,
            source_type=self.source_type,
            url=url,
            **fields,
        )

    def visibility(self, override: Optional[str] = None) -> str:
        if override:
            return Visibility(override).value
        if self.config.visibility:
            return self.config.visibility.value
        return self.default_visibility.value

    def base_metadata(self, extracted: ExtractedContent, content: str, **extra: Any) -> Dict[str, Any]:
        """Metadata common to every transformed document."""
        metadata = dict(extracted.metadata)
        metadata.update(
            {
                "source_id": self.source_id,
                "source_type": self.source_type,
                "extraction_method": extracted.extraction_method,
                "extracted_at": extracted.extracted_at.isoformat(),
                "word_count": count_words(content),
                "character_count": len(content),
                "visibility": self.visibility(extracted.metadata.get("visibility")),
            }
        )
        metadata.update(extra)
        return metadata

    def load_time_cursor(
        self, key: str, configured: Optional[datetime], default_age: timedelta
    ) -> datetime:
        """Cursor value from the store, else from config, else ``now - default_age``."""
        stored = parse_datetime(self.cursor_store.get(self.source_id, key))
        if stored is not None:
            return stored
        if configured is not None:
            return ensure_utc(configured)
        return utc_now() - default_age

    def save_time_cursor(self, key: str, value: datetime) -> None:
        self.cursor_store.set(self.source_id, key, ensure_utc(value).isoformat())

    def __enter__(self) -> "BaseSourceHandler":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
