"""
Handler factory for config-driven handler creation.

Maps a source type tag to a handler class and builds uninitialized handler
instances from SourceConfig entries.

Usage:
    from src.ingestion.factory import SourceHandlerFactory

    factory = SourceHandlerFactory()
    handler = factory.create_handler(config)
    handler.initialize()

Custom types can be registered on a factory instance, or globally with the
``register_source_handler`` decorator so every new factory knows them:

    @register_source_handler("wiki")
    class WikiSourceHandler(BaseSourceHandler):
        ...
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from src.ingestion.errors import ConfigurationError
from src.ingestion.handlers import (
    BaseSourceHandler,
    DynamicConsistentSourceHandler,
    DynamicUnstructuredSourceHandler,
    SemiStaticSourceHandler,
    StaticSourceHandler,
)
from src.ingestion.types import SourceConfig, SourceType, normalize_type_tag

logger = logging.getLogger(__name__)

HandlerClass = Type[BaseSourceHandler]

# Types every new factory starts with
HANDLER_REGISTRY: Dict[str, HandlerClass] = {
    SourceType.STATIC.value: StaticSourceHandler,
    SourceType.SEMI_STATIC.value: SemiStaticSourceHandler,
    SourceType.DYNAMIC_CONSISTENT.value: DynamicConsistentSourceHandler,
    SourceType.DYNAMIC_UNSTRUCTURED.value: DynamicUnstructuredSourceHandler,
}


def register_source_handler(source_type: Union[str, SourceType]):
    """
    Decorator to register a handler class for all factories created afterwards.

    Usage:
        @register_source_handler("wiki")
        class WikiSourceHandler(BaseSourceHandler): ...
    """

    def decorator(cls: HandlerClass) -> HandlerClass:
        HANDLER_REGISTRY[normalize_type_tag(source_type)] = cls
        return cls

    return decorator


@dataclass
class ConfigValidationResult:
    valid: bool
    config: Any
    error: Optional[str] = None


class SourceHandlerFactory:
    """
    Factory for creating source handlers from SourceConfig entries.
    """

    def __init__(self, handlers: Optional[Dict[str, HandlerClass]] = None):
        """
        Initialize the factory.

        Args:
            handlers: Type map to start from. Defaults to the global registry.
        """
        source = HANDLER_REGISTRY if handlers is None else handlers
        self._handlers: Dict[str, HandlerClass] = {
            normalize_type_tag(k): v for k, v in source.items()
        }

    def register_handler(
        self, source_type: Union[str, SourceType], handler_class: HandlerClass, override: bool = False
    ) -> None:
        """
        Register a handler class for a source type.

        Raises:
            ConfigurationError: If the type is taken and override is False,
                or handler_class is not a BaseSourceHandler subclass
        """
        key = normalize_type_tag(source_type)
        if not (isinstance(handler_class, type) and issubclass(handler_class, BaseSourceHandler)):
            raise ConfigurationError(
                f"Handler for '{key}' must be a BaseSourceHandler subclass, got {handler_class!r}"
            )
        if key in self._handlers and not override:
            raise ConfigurationError(
                f"Handler for source type '{key}' is already registered "
                f"({self._handlers[key].__name__}); pass override=True to replace it"
            )
        self._handlers[key] = handler_class
        logger.debug(f"Registered handler {handler_class.__name__} for '{key}'")

    def unregister_handler(self, source_type: Union[str, SourceType]) -> bool:
        return self._handlers.pop(normalize_type_tag(source_type), None) is not None

    def has_handler(self, source_type: Union[str, SourceType]) -> bool:
        return normalize_type_tag(source_type) in self._handlers

    def registered_types(self) -> List[str]:
        return sorted(self._handlers)

    def get_handler_class(self, source_type: Union[str, SourceType]) -> Optional[HandlerClass]:
        return self._handlers.get(normalize_type_tag(source_type))

    def create_handler(self, config: Union[SourceConfig, Dict[str, Any]], **dependencies: Any) -> BaseSourceHandler:
        """
        Create an uninitialized handler for a source.

        Args:
            config: SourceConfig (or mapping) of the source
            **dependencies: Injected collaborators (http_client, cursor_store, ...)

        Returns:
            Handler instance; call initialize() before use

        Raises:
            ConfigurationError: If the source type is not registered
        """
        config = SourceConfig.from_dict(config)
        handler_class = self._handlers.get(config.type)
        if handler_class is None:
            raise ConfigurationError(
                f"No handler registered for source type '{config.type}' "
                f"(source '{config.id}'). Registered types: {', '.join(self.registered_types())}",
                source_id=config.id,
            )
        return handler_class(config, **dependencies)

    def validate_config(self, config: Union[SourceConfig, Dict[str, Any]]) -> Any:
        """
        Validate a source config by delegating to its handler type.

        Returns:
            The parsed handler settings

        Raises:
            ConfigurationError: Naming the unknown type or invalid fields
        """
        config = SourceConfig.from_dict(config)
        handler = self.create_handler(config)
        return handler.validate_config(config)

    def validate_configs(self, configs: Iterable[Any]) -> List[ConfigValidationResult]:
        """Validate several configs; one result per input, never raises."""
        results = []
        for config in configs:
            try:
                self.validate_config(config)
                results.append(ConfigValidationResult(valid=True, config=config))
            except ConfigurationError as e:
                results.append(ConfigValidationResult(valid=False, config=config, error=str(e)))
        return results

    def create_handlers(self, configs: Iterable[Any], **dependencies: Any) -> List[BaseSourceHandler]:
        return [self.create_handler(c, **dependencies) for c in configs]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "registered_types": len(self._handlers),
            "types": {k: v.__name__ for k, v in sorted(self._handlers.items())},
        }

    def reset(self) -> None:
        """Restore the global default type map."""
        self._handlers = dict(HANDLER_REGISTRY)
