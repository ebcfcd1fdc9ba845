"""
Handler Registry.

Owns the live handler instances, one per source id, and the set of handlers
that take part in discovery.

Responsibilities:
- Register handlers atomically (validate, create, initialize, then store)
- Enable/disable handlers without destroying them
- Run discovery across enabled handlers with per-handler failure isolation
- Dispose handlers on unregister and shutdown
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from src.ingestion.errors import ConfigurationError, IngestionError
from src.ingestion.events import EventBus, RegistryEvent
from src.ingestion.factory import SourceHandlerFactory
from src.ingestion.handlers import BaseSourceHandler
from src.ingestion.types import Document, SourceConfig

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    success: bool
    source_id: Optional[str]
    handler: Optional[BaseSourceHandler] = None
    error: Optional[str] = None


@dataclass
class DiscoveryResult:
    source_id: str
    success: bool
    documents: List[Document] = field(default_factory=list)
    error: Optional[str] = None


class SourceHandlerRegistry:
    """
    Registry of initialized source handlers keyed by source id.

    Map and enabled-set mutations are serialized by a lock. Handler
    initialization runs outside the lock; a pending-id set rejects a second
    registration of the same id while the first is still initializing.
    """

    def __init__(
        self,
        factory: Optional[SourceHandlerFactory] = None,
        *,
        events: Optional[EventBus] = None,
        handler_dependencies: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the registry.

        Args:
            factory: Factory used to build handlers
            events: Bus for registry lifecycle events
            handler_dependencies: Keyword arguments passed to every handler
                (e.g. a shared cursor_store)
        """
        self.factory = factory or SourceHandlerFactory()
        self.events = events or EventBus("registry")
        self.handler_dependencies = dict(handler_dependencies or {})

        self._handlers: Dict[str, BaseSourceHandler] = {}
        self._enabled: set = set()
        self._pending: set = set()
        self._lock = threading.RLock()
        self._stats = {
            "registered": 0,
            "unregistered": 0,
            "discovered_documents": 0,
            "discovery_failures": 0,
        }

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register_handler(self, config: Union[SourceConfig, Dict[str, Any]]) -> BaseSourceHandler:
        """
        Validate, create and initialize a handler, then store it.

        Nothing is stored if any step fails.

        Raises:
            ConfigurationError: Duplicate id, unknown type or invalid config
            InitializationError: If the handler could not be initialized
        """
        config = SourceConfig.from_dict(config)
        with self._lock:
            if config.id in self._handlers or config.id in self._pending:
                raise ConfigurationError(
                    f"Handler for source '{config.id}' is already registered",
                    source_id=config.id,
                )
            self._pending.add(config.id)

        handler = None
        try:
            self.factory.validate_config(config)
            handler = self.factory.create_handler(config, **self.handler_dependencies)
            handler.initialize()
        except Exception as e:
            with self._lock:
                self._pending.discard(config.id)
            if handler is not None:
                handler.cleanup()
            logger.error(
                f"Failed to register handler for '{config.id}': {e}",
                extra={"source_id": config.id, "stage": "register"},
            )
            raise

        with self._lock:
            self._pending.discard(config.id)
            self._handlers[config.id] = handler
            if config.enabled:
                self._enabled.add(config.id)
            self._stats["registered"] += 1

        logger.info(
            f"Registered {config.type} handler '{config.id}'",
            extra={"source_id": config.id, "stage": "register"},
        )
        self.events.emit(RegistryEvent.HANDLER_REGISTERED, source_id=config.id, source_type=config.type)
        return handler

    def register_handlers(self, configs: Iterable[Any]) -> List[RegistrationResult]:
        """Register several handlers; failures are reported per config."""
        results = []
        for config in configs:
            source_id = config.get("id") if isinstance(config, dict) else getattr(config, "id", None)
            try:
                handler = self.register_handler(config)
                results.append(RegistrationResult(success=True, source_id=source_id, handler=handler))
            except IngestionError as e:
                results.append(RegistrationResult(success=False, source_id=source_id, error=str(e)))
        return results

    def unregister_handler(self, source_id: str) -> bool:
        """
        Clean up and remove a handler.

        Returns:
            False if no handler was registered under ``source_id``
        """
        with self._lock:
            handler = self._handlers.pop(source_id, None)
            self._enabled.discard(source_id)
            if handler is None:
                return False
            self._stats["unregistered"] += 1

        handler.cleanup()
        logger.info(f"Unregistered handler '{source_id}'", extra={"source_id": source_id})
        self.events.emit(RegistryEvent.HANDLER_UNREGISTERED, source_id=source_id)
        return True

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get_handler(self, source_id: str) -> Optional[BaseSourceHandler]:
        with self._lock:
            return self._handlers.get(source_id)

    def get_all_handlers(self) -> Dict[str, BaseSourceHandler]:
        with self._lock:
            return dict(self._handlers)

    def get_enabled_handlers(self) -> Dict[str, BaseSourceHandler]:
        with self._lock:
            return {sid: h for sid, h in self._handlers.items() if sid in self._enabled}

    def get_handlers_by_type(self, source_type: str) -> Dict[str, BaseSourceHandler]:
        with self._lock:
            return {sid: h for sid, h in self._handlers.items() if h.source_type == source_type}

    def has_handler(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._handlers

    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __len__(self) -> int:
        return self.handler_count()

    def __contains__(self, source_id: str) -> bool:
        return self.has_handler(source_id)

    # =========================================================================
    # ENABLE / DISABLE
    # =========================================================================

    def enable_handler(self, source_id: str) -> None:
        with self._lock:
            if source_id not in self._handlers:
                raise KeyError(f"No handler registered for source '{source_id}'")
            self._enabled.add(source_id)
        self.events.emit(RegistryEvent.HANDLER_ENABLED, source_id=source_id)

    def disable_handler(self, source_id: str) -> None:
        with self._lock:
            if source_id not in self._handlers:
                raise KeyError(f"No handler registered for source '{source_id}'")
            self._enabled.discard(source_id)
        self.events.emit(RegistryEvent.HANDLER_DISABLED, source_id=source_id)

    def is_handler_enabled(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._enabled

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def discover_all(self) -> List[DiscoveryResult]:
        """
        Run discovery on every enabled handler.

        A failing handler is logged and reported; it never aborts the others.
        """
        results = []
        for source_id, handler in self.get_enabled_handlers().items():
            try:
                documents = list(handler.discover())
            except Exception as e:
                logger.error(
                    f"Discovery failed for '{source_id}': {e}",
                    exc_info=True,
                    extra={"source_id": source_id, "stage": "discover"},
                )
                with self._lock:
                    self._stats["discovery_failures"] += 1
                results.append(DiscoveryResult(source_id=source_id, success=False, error=str(e)))
                continue

            with self._lock:
                self._stats["discovered_documents"] += len(documents)
            results.append(DiscoveryResult(source_id=source_id, success=True, documents=documents))
        return results

    @staticmethod
    def all_documents(results: Iterable[DiscoveryResult]) -> List[Document]:
        """Union of documents from successful discoveries."""
        return [doc for r in results if r.success for doc in r.documents]

    # =========================================================================
    # TEARDOWN & STATS
    # =========================================================================

    def cancel_all(self) -> None:
        for handler in self.get_all_handlers().values():
            handler.cancel()

    def cleanup(self) -> None:
        """Dispose every handler. Best effort."""
        with self._lock:
            handlers = list(self._handlers.items())
            self._handlers.clear()
            self._enabled.clear()

        for source_id, handler in handlers:
            try:
                handler.cleanup()
            except Exception as e:
                logger.warning(f"Cleanup of '{source_id}' failed: {e}", extra={"source_id": source_id})
        logger.info(f"Registry cleaned up ({len(handlers)} handlers)")
        self.events.emit(RegistryEvent.REGISTRY_CLEANUP, handler_count=len(handlers))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_type: Dict[str, int] = {}
            for handler in self._handlers.values():
                by_type[handler.source_type] = by_type.get(handler.source_type, 0) + 1
            return {
                "total_handlers": len(self._handlers),
                "active_handlers": len(self._enabled),
                "handlers_by_type": by_type,
                **self._stats,
            }
