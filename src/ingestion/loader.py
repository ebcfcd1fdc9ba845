"""
Build an IngestionEngine from settings and a YAML sources file.

File layout::

    engine:                 # optional, overrides settings
      max_concurrent_sources: 2
    sources:
      - id: handbook
        type: static
        config: {base_path: ./docs}
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from src.configs.config import Config
from src.configs.settings import Settings, get_settings
from src.ingestion.cursors import CursorStore, InMemoryCursorStore, JsonFileCursorStore
from src.ingestion.engine import EngineOptions, IngestionEngine
from src.ingestion.errors import ConfigurationError
from src.ingestion.registry import RegistrationResult

logger = logging.getLogger(__name__)


def cursor_store_from_settings(settings: Optional[Settings] = None) -> CursorStore:
    """JSON-file store when CURSOR_STORE_PATH is set, in-memory otherwise."""
    settings = settings or get_settings()
    if settings.CURSOR_STORE_PATH:
        return JsonFileCursorStore(settings.CURSOR_STORE_PATH)
    return InMemoryCursorStore()


def engine_options(settings: Optional[Settings] = None, overrides: Optional[Dict[str, Any]] = None) -> EngineOptions:
    options = EngineOptions.from_settings(settings or get_settings())
    for key, value in (overrides or {}).items():
        if not hasattr(options, key):
            raise ConfigurationError(f"Unknown engine option '{key}'")
        setattr(options, key, value)
    return options


def read_sources_file(path: Optional[Union[str, Path]] = None) -> Tuple[List[Any], Dict[str, Any]]:
    """
    Read the sources file.

    Returns:
        (source configs, engine option overrides)

    Raises:
        FileNotFoundError: The file does not exist
        ConfigurationError: The file does not have the expected shape
    """
    data = Config.load_sources_config(Path(path) if path else None)
    if not isinstance(data, dict):
        raise ConfigurationError("Sources file must contain a mapping at the top level")

    sources = data.get("sources") or []
    if not isinstance(sources, list):
        raise ConfigurationError("'sources' must be a list")
    overrides = data.get("engine") or {}
    if not isinstance(overrides, dict):
        raise ConfigurationError("'engine' must be a mapping")
    return sources, overrides


def load_engine_from_config(
    path: Optional[Union[str, Path]] = None,
    *,
    settings: Optional[Settings] = None,
    **engine_kwargs: Any,
) -> Tuple[IngestionEngine, List[RegistrationResult]]:
    """
    Create an engine and register every source of the sources file.

    Sources that fail validation or initialization are reported in the
    returned results; the others are registered.
    """
    settings = settings or get_settings()
    sources, overrides = read_sources_file(path)
    engine_kwargs.setdefault("cursor_store", cursor_store_from_settings(settings))
    engine = IngestionEngine(engine_options(settings, overrides), **engine_kwargs)
    results = engine.initialize(sources)
    for result in results:
        if not result.success:
            logger.warning(f"Source '{result.source_id}' not loaded: {result.error}")
    return engine, results
