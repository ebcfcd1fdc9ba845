"""
Ingestion Engine.

Facade over configured sources. Runs each discovered document through
extract -> transform, isolating failures per document and per source.

Per-document states:

    discovered -> extracted -> transformed -> delivered
                \-> unchanged   \-> filtered
    (any step) -> failed

There is no retry transition inside the engine. ``retry_failed`` lets a
caller re-run failed documents from ``discovered`` using the configured
retry options.

Usage:
    from src.ingestion.engine import IngestionEngine

    with IngestionEngine() as engine:
        engine.add_source({"id": "docs", "type": "static", "config": {"base_path": "./docs"}})
        result = engine.process_all_documents("docs")
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from src.ingestion.cursors import CursorStore, InMemoryCursorStore
from src.ingestion.errors import (
    ConfigurationError,
    DiscoveryError,
    ExtractionError,
    IngestionError,
    TransformError,
)
from src.ingestion.events import EventBus, IngestionEvent, Listener
from src.ingestion.factory import SourceHandlerFactory
from src.ingestion.handlers import BaseSourceHandler
from src.ingestion.registry import RegistrationResult, SourceHandlerRegistry
from src.ingestion.runtime.resilience import RetryPolicy, call_with_retry
from src.ingestion.types import (
    Document,
    DocumentState,
    SourceConfig,
    SourceType,
    TransformedDocument,
    utc_now,
)

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    """Status of a batch run."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


@dataclass
class EngineOptions:
    """Engine-wide execution options."""

    max_concurrent_sources: int = 1
    max_concurrent_documents: int = 1
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "EngineOptions":
        return cls(
            max_concurrent_sources=settings.MAX_CONCURRENT_SOURCES,
            max_concurrent_documents=settings.MAX_CONCURRENT_DOCUMENTS,
            retry_attempts=settings.RETRY_ATTEMPTS,
            retry_delay_seconds=settings.RETRY_DELAY_SECONDS,
        )


@dataclass
class FailedDocument:
    document: Optional[Document]
    error: str
    error_type: str
    stage: str


@dataclass
class FilteredDocument:
    document: Document
    reason: Optional[str] = None


@dataclass
class ProcessingOutcome:
    state: DocumentState
    document: Document
    transformed: Optional[TransformedDocument] = None
    reason: Optional[str] = None


@dataclass
class BatchResult:
    """Result of processing every discovered document of one source."""

    source_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    discovered: int = 0
    processed: List[TransformedDocument] = field(default_factory=list)
    failed: List[FailedDocument] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    filtered: List[FilteredDocument] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        """Calculate batch duration."""
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def success_rate(self) -> float:
        """Percentage of attempted documents that did not fail."""
        attempted = len(self.processed) + len(self.failed) + len(self.unchanged) + len(self.filtered)
        if attempted == 0:
            return 0.0
        return (attempted - len(self.failed)) / attempted * 100

    @property
    def status(self) -> BatchStatus:
        if self.error is not None:
            return BatchStatus.FAILED
        if self.failed and not (self.processed or self.unchanged or self.filtered):
            return BatchStatus.FAILED
        if self.failed or self.cancelled:
            return BatchStatus.PARTIAL_SUCCESS
        return BatchStatus.SUCCESS

    def record(self, outcome: ProcessingOutcome) -> None:
        if outcome.state == DocumentState.DELIVERED:
            self.processed.append(outcome.transformed)
        elif outcome.state == DocumentState.UNCHANGED:
            self.unchanged.append(outcome.document.id)
        elif outcome.state == DocumentState.FILTERED:
            self.filtered.append(FilteredDocument(document=outcome.document, reason=outcome.reason))

    def to_summary(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status.value,
            "discovered": self.discovered,
            "processed": len(self.processed),
            "failed": len(self.failed),
            "unchanged": len(self.unchanged),
            "filtered": len(self.filtered),
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error,
            "failures": [
                {
                    "document_id": f.document.id if f.document else None,
                    "url": f.document.url if f.document else None,
                    "stage": f.stage,
                    "error": f.error,
                }
                for f in self.failed
            ],
        }


def _failure_stage(error: BaseException) -> str:
    if isinstance(error, ExtractionError):
        return "extract"
    if isinstance(error, TransformError):
        return "transform"
    return "process"


class IngestionEngine:
    """
    Coordinates sources, their handlers and document processing.

    Responsibilities:
    - Validate and manage source configurations
    - Delegate handler lifecycle to the registry
    - Run discover/extract/transform with failure isolation
    - Publish lifecycle events and keep batch statistics
    """

    def __init__(
        self,
        options: Optional[EngineOptions] = None,
        *,
        factory: Optional[SourceHandlerFactory] = None,
        cursor_store: Optional[CursorStore] = None,
        events: Optional[EventBus] = None,
        handler_dependencies: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the engine.

        Args:
            options: Concurrency and retry options
            factory: Handler factory; defaults to the built-in source types
            cursor_store: Cursor persistence shared by all handlers
            events: Event bus; listeners may also be added with ``on``
            handler_dependencies: Extra keyword arguments for every handler
            sleep: Sleep function used between caller-driven retries
        """
        self.options = options or EngineOptions()
        self.events = events or EventBus("engine")
        self.cursor_store = cursor_store or InMemoryCursorStore()
        dependencies = {"cursor_store": self.cursor_store}
        dependencies.update(handler_dependencies or {})
        self.registry = SourceHandlerRegistry(
            factory or SourceHandlerFactory(),
            events=self.events,
            handler_dependencies=dependencies,
        )
        self._sleep = sleep
        self._sources: Dict[str, SourceConfig] = {}
        self._lock = threading.RLock()
        self._history: List[BatchResult] = []
        self._totals = {"batches": 0, "processed": 0, "failed": 0, "unchanged": 0, "filtered": 0}
        self._shut_down = False

    @property
    def factory(self) -> SourceHandlerFactory:
        return self.registry.factory

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on(self, event: Union[IngestionEvent, str], listener: Listener) -> None:
        self.events.on(event, listener)

    def off(self, event: Union[IngestionEvent, str], listener: Listener) -> bool:
        return self.events.off(event, listener)

    # =========================================================================
    # SOURCE MANAGEMENT
    # =========================================================================

    def initialize(self, sources: Optional[List[Any]] = None) -> List[RegistrationResult]:
        """
        Register an initial set of sources; failures are reported, not raised.
        """
        results = []
        for config in sources or []:
            source_id = config.get("id") if isinstance(config, dict) else getattr(config, "id", None)
            try:
                self.add_source(config)
                results.append(RegistrationResult(success=True, source_id=source_id, handler=self.registry.get_handler(source_id)))
            except IngestionError as e:
                results.append(RegistrationResult(success=False, source_id=source_id, error=str(e)))
        logger.info(
            f"Engine initialized with {len(self._sources)} sources "
            f"({sum(1 for r in results if not r.success)} failed)"
        )
        return results

    def validate_source_config(self, config: Union[SourceConfig, Dict[str, Any]]) -> SourceConfig:
        """
        Check the engine-level requirements of a source config.

        Raises:
            ConfigurationError: Missing id/type/config, unregistered type, or a
                static source without a string ``base_path``
        """
        config = SourceConfig.from_dict(config)
        if not self.factory.has_handler(config.type):
            raise ConfigurationError(
                f"Unknown source type '{config.type}' for source '{config.id}'",
                source_id=config.id,
            )
        if config.type == SourceType.STATIC.value:
            base_path = config.config.get("base_path", config.config.get("basePath"))
            if not isinstance(base_path, str) or not base_path:
                raise ConfigurationError(
                    f"Static source '{config.id}' requires config.base_path (string)",
                    source_id=config.id,
                )
        return config

    def add_source(self, config: Union[SourceConfig, Dict[str, Any]]) -> SourceConfig:
        """
        Validate a source and register its handler.

        Raises:
            ConfigurationError: Invalid config or duplicate id
            InitializationError: The handler could not be initialized
        """
        try:
            config = self.validate_source_config(config)
            with self._lock:
                if config.id in self._sources:
                    raise ConfigurationError(
                        f"Source '{config.id}' already exists", source_id=config.id
                    )
            self.registry.register_handler(config)
        except IngestionError as e:
            logger.error(f"Failed to add source: {e}", extra={"source_id": e.source_id, "stage": "add_source"})
            self.events.emit(IngestionEvent.ERROR, source_id=e.source_id, stage="add_source", error=str(e))
            raise

        with self._lock:
            self._sources[config.id] = config
        self.events.emit(IngestionEvent.SOURCE_ADDED, source_id=config.id, source_type=config.type)
        return config

    def remove_source(self, source_id: str) -> bool:
        with self._lock:
            config = self._sources.pop(source_id, None)
        if config is None:
            return False
        self.registry.unregister_handler(source_id)
        self.events.emit(IngestionEvent.SOURCE_REMOVED, source_id=source_id)
        return True

    def update_source(self, source_id: str, config: Union[SourceConfig, Dict[str, Any]]) -> SourceConfig:
        """
        Replace a source: remove, then add with the new config.

        If the add fails the source stays removed; the error is raised and
        the caller may retry ``add_source``.
        """
        new_config = self.validate_source_config(config)
        if new_config.id != source_id:
            raise ConfigurationError(
                f"Cannot change source id from '{source_id}' to '{new_config.id}'",
                source_id=source_id,
            )
        if source_id not in self._sources:
            raise KeyError(f"Unknown source '{source_id}'")

        self.remove_source(source_id)
        try:
            self.add_source(new_config)
        except IngestionError:
            logger.error(
                f"Source '{source_id}' was removed but could not be re-added; it is now absent",
                extra={"source_id": source_id, "stage": "update_source"},
            )
            raise
        self.events.emit(IngestionEvent.SOURCE_UPDATED, source_id=source_id)
        return new_config

    def update_sources(self, configs: List[Any]) -> Dict[str, Any]:
        """
        Reconcile the configured sources with ``configs``.

        Sources missing from ``configs`` are removed, changed ones updated and
        new ones added. Individual failures are reported, not raised.
        """
        summary: Dict[str, Any] = {"added": [], "updated": [], "removed": [], "unchanged": [], "failed": []}
        desired: Dict[str, Any] = {}
        for raw in configs:
            try:
                cfg = SourceConfig.from_dict(raw)
            except ConfigurationError as e:
                summary["failed"].append({"source_id": e.source_id, "error": str(e)})
                continue
            desired[cfg.id] = cfg

        for source_id in list(self._sources):
            if source_id not in desired:
                self.remove_source(source_id)
                summary["removed"].append(source_id)

        for source_id, cfg in desired.items():
            try:
                current = self._sources.get(source_id)
                if current is None:
                    self.add_source(cfg)
                    summary["added"].append(source_id)
                elif current != cfg:
                    self.update_source(source_id, cfg)
                    summary["updated"].append(source_id)
                else:
                    summary["unchanged"].append(source_id)
            except (IngestionError, KeyError) as e:
                summary["failed"].append({"source_id": source_id, "error": str(e)})
        return summary

    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        with self._lock:
            return self._sources.get(source_id)

    def get_sources(self) -> List[SourceConfig]:
        with self._lock:
            return list(self._sources.values())

    def get_active_sources(self) -> List[SourceConfig]:
        return [c for c in self.get_sources() if self.registry.is_handler_enabled(c.id)]

    def enable_source(self, source_id: str) -> None:
        self.registry.enable_handler(source_id)

    def disable_source(self, source_id: str) -> None:
        self.registry.disable_handler(source_id)

    def _handler(self, source_id: str) -> BaseSourceHandler:
        handler = self.registry.get_handler(source_id)
        if handler is None:
            raise KeyError(f"Unknown source '{source_id}'")
        return handler

    # =========================================================================
    # PROCESSING
    # =========================================================================

    def discover_documents(self, source_id: str) -> List[Document]:
        """
        Run discovery for one source.

        Raises:
            KeyError: Unknown source
            DiscoveryError: Discovery failed
        """
        handler = self._handler(source_id)
        self.events.emit(IngestionEvent.DISCOVERY_STARTED, source_id=source_id)
        try:
            documents = list(handler.discover())
        except Exception as e:
            logger.error(
                f"Discovery failed: {e}",
                exc_info=True,
                extra={"source_id": source_id, "stage": "discover"},
            )
            self.events.emit(IngestionEvent.DISCOVERY_FAILED, source_id=source_id, error=str(e))
            if isinstance(e, DiscoveryError):
                raise
            raise DiscoveryError(f"Discovery failed for '{source_id}': {e}", source_id=source_id) from e

        self.events.emit(IngestionEvent.DISCOVERY_COMPLETED, source_id=source_id, document_count=len(documents))
        return documents

    def process_document(self, source_id: str, document: Document) -> Optional[TransformedDocument]:
        """
        Extract and transform one document.

        Returns:
            The transformed document stamped with ``source_id`` and
            ``processed_at``; None when unchanged or filtered

        Raises:
            ExtractionError / TransformError: Propagated to the caller
        """
        return self._run_pipeline(self._handler(source_id), document).transformed

    def _run_pipeline(self, handler: BaseSourceHandler, document: Document) -> ProcessingOutcome:
        source_id = handler.source_id
        self.events.emit(IngestionEvent.DOCUMENT_PROCESSING_STARTED, source_id=source_id, document_id=document.id)
        stage = "extract"
        try:
            try:
                extracted = handler.extract(document)
            except IngestionError:
                raise
            except Exception as e:
                raise ExtractionError(
                    f"Unexpected extraction failure for {document.url}: {e}",
                    source_id=source_id,
                    document_id=document.id,
                ) from e

            if extracted is None:
                outcome = ProcessingOutcome(DocumentState.UNCHANGED, document)
            elif extracted.filtered:
                outcome = ProcessingOutcome(DocumentState.FILTERED, document, reason=extracted.filter_reason)
            else:
                stage = "transform"
                try:
                    transformed = handler.transform(extracted)
                except IngestionError:
                    raise
                except Exception as e:
                    raise TransformError(
                        f"Unexpected transform failure for {document.id}: {e}",
                        source_id=source_id,
                        document_id=document.id,
                    ) from e

                if transformed is None:
                    outcome = ProcessingOutcome(DocumentState.FILTERED, document, reason="transform produced no document")
                else:
                    metadata = dict(transformed.metadata)
                    metadata["source_id"] = source_id
                    metadata["processed_at"] = utc_now().isoformat()
                    transformed = transformed.model_copy(update={"metadata": metadata})
                    stage = "deliver"
                    handler.on_document_delivered(transformed)
                    outcome = ProcessingOutcome(DocumentState.DELIVERED, document, transformed=transformed)
        except Exception as e:
            logger.error(
                f"Processing {document.url} failed at {stage}: {e}",
                extra={
                    "source_id": source_id,
                    "document_id": document.id,
                    "stage": stage,
                    "payload": {"url": document.url, "error_type": type(e).__name__},
                },
            )
            self.events.emit(
                IngestionEvent.DOCUMENT_PROCESSING_FAILED,
                source_id=source_id,
                document_id=document.id,
                stage=stage,
                error=str(e),
            )
            raise

        self.events.emit(
            IngestionEvent.DOCUMENT_PROCESSING_COMPLETED,
            source_id=source_id,
            document_id=document.id,
            state=outcome.state,
        )
        return outcome

    def _process_isolated(self, handler: BaseSourceHandler, document: Document):
        """Run the pipeline; return the outcome or a FailedDocument, never raise."""
        if handler.cancel_token.cancelled:
            return None
        try:
            return self._run_pipeline(handler, document)
        except Exception as e:
            return FailedDocument(
                document=document,
                error=str(e),
                error_type=type(e).__name__,
                stage=_failure_stage(e),
            )

    def _process_many(self, handler: BaseSourceHandler, documents: List[Document], result: BatchResult) -> None:
        if self.options.max_concurrent_documents > 1 and len(documents) > 1:
            with ThreadPoolExecutor(
                max_workers=self.options.max_concurrent_documents,
                thread_name_prefix=f"ingest-{handler.source_id}",
            ) as pool:
                outcomes = list(pool.map(lambda d: self._process_isolated(handler, d), documents))
        else:
            outcomes = []
            for document in documents:
                outcome = self._process_isolated(handler, document)
                outcomes.append(outcome)
                if outcome is None:
                    break

        for outcome in outcomes:
            if outcome is None:
                result.cancelled = True
            elif isinstance(outcome, FailedDocument):
                result.failed.append(outcome)
            else:
                result.record(outcome)

    def process_all_documents(self, source_id: str) -> BatchResult:
        """
        Discover and process every document of a source.

        Per-document failures are collected in the result and never abort the
        batch. A discovery failure raises.
        """
        handler = self._handler(source_id)
        handler.reset_cancellation()
        result = BatchResult(source_id=source_id, started_at=utc_now())
        self.events.emit(IngestionEvent.BATCH_PROCESSING_STARTED, source_id=source_id)

        documents = self.discover_documents(source_id)
        result.discovered = len(documents)
        self._process_many(handler, documents, result)
        result.ended_at = utc_now()

        self._record(result)
        logger.info(
            f"Batch finished: {len(result.processed)} processed, {len(result.failed)} failed, "
            f"{len(result.unchanged)} unchanged, {len(result.filtered)} filtered "
            f"in {result.duration_seconds:.2f}s",
            extra={"source_id": source_id, "stage": "batch", "payload": result.to_summary()},
        )
        self.events.emit(
            IngestionEvent.BATCH_PROCESSING_COMPLETED,
            source_id=source_id,
            processed=len(result.processed),
            failed=len(result.failed),
            duration_seconds=result.duration_seconds,
        )
        return result

    def process_source(self, source_id: str) -> BatchResult:
        """Like ``process_all_documents`` but a failing source yields a degenerate result."""
        started = utc_now()
        try:
            return self.process_all_documents(source_id)
        except Exception as e:
            logger.error(
                f"Source failed: {e}",
                extra={"source_id": source_id, "stage": "batch"},
            )
            self.events.emit(IngestionEvent.ERROR, source_id=source_id, stage="batch", error=str(e))
            result = BatchResult(source_id=source_id, started_at=started, ended_at=utc_now(), error=str(e))
            self._record(result)
            return result

    def process_all_sources(self) -> List[BatchResult]:
        """Process every enabled source; a failing source yields a degenerate result."""
        source_ids = [c.id for c in self.get_active_sources()]
        if self.options.max_concurrent_sources > 1 and len(source_ids) > 1:
            with ThreadPoolExecutor(
                max_workers=self.options.max_concurrent_sources,
                thread_name_prefix="ingest-source",
            ) as pool:
                return list(pool.map(self.process_source, source_ids))
        return [self.process_source(sid) for sid in source_ids]

    def retry_failed(self, batch: BatchResult) -> BatchResult:
        """
        Re-run the failed documents of a batch from ``discovered``.

        Each document gets up to ``retry_attempts`` attempts with
        ``retry_delay_seconds`` between them.
        """
        handler = self._handler(batch.source_id)
        policy = RetryPolicy(
            max_retries=max(0, self.options.retry_attempts - 1),
            backoff_mode="fixed",
            base_delay_s=self.options.retry_delay_seconds,
        )
        result = BatchResult(source_id=batch.source_id, started_at=utc_now())
        for failure in batch.failed:
            if failure.document is None:
                continue
            result.discovered += 1
            document = failure.document
            try:
                outcome = call_with_retry(
                    lambda: self._run_pipeline(handler, document),
                    policy,
                    retry_on=(IngestionError,),
                    sleep=self._sleep,
                    description=f"processing {document.url}",
                )
            except Exception as e:
                result.failed.append(
                    FailedDocument(document=document, error=str(e), error_type=type(e).__name__, stage=_failure_stage(e))
                )
                continue
            result.record(outcome)
        result.ended_at = utc_now()
        self._record(result)
        return result

    # =========================================================================
    # CURSORS, CANCELLATION, SHUTDOWN
    # =========================================================================

    def advance_cursor(self, source_id: str, timestamp: Optional[datetime] = None) -> None:
        """Move a source's incremental cursor forward. Never done automatically."""
        self._handler(source_id).update_cursor(timestamp)

    def cancel(self, source_id: Optional[str] = None) -> None:
        """Request in-flight discovery and batches to stop early."""
        if source_id is None:
            self.registry.cancel_all()
        else:
            self._handler(source_id).cancel()

    def shutdown(self) -> None:
        """Clean up every handler. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self.registry.cleanup()
        with self._lock:
            self._sources.clear()
        logger.info("Engine shut down")

    def __enter__(self) -> "IngestionEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def _record(self, result: BatchResult) -> None:
        with self._lock:
            self._history.append(result)
            self._totals["batches"] += 1
            self._totals["processed"] += len(result.processed)
            self._totals["failed"] += len(result.failed)
            self._totals["unchanged"] += len(result.unchanged)
            self._totals["filtered"] += len(result.filtered)

    def get_batch_history(self, source_id: Optional[str] = None, limit: int = 10) -> List[BatchResult]:
        with self._lock:
            results = list(self._history)
        if source_id:
            results = [r for r in results if r.source_id == source_id]
        return results[-limit:]

    def get_statistics(self) -> Dict[str, Any]:
        sources = self.get_sources()
        by_type: Dict[str, int] = {}
        for config in sources:
            by_type[config.type] = by_type.get(config.type, 0) + 1
        with self._lock:
            totals = dict(self._totals)
        return {
            "total_sources": len(sources),
            "active_sources": len(self.get_active_sources()),
            "sources_by_type": by_type,
            "registry": self.registry.get_stats(),
            "documents": totals,
        }
