"""
Cursor persistence.

Handlers keep incremental-fetch state (last sync time, HTTP validators) in a
``CursorStore``. The default in-memory store forgets everything on restart;
``JsonFileCursorStore`` survives restarts.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class CursorStore(ABC):
    """Key/value store scoped by source id."""

    @abstractmethod
    def get(self, source_id: str, key: str) -> Optional[Any]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, source_id: str, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    def clear(self, source_id: Optional[str] = None) -> None:
        """Forget one source's cursors, or all of them."""


class InMemoryCursorStore(CursorStore):
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(source_id, {}).get(key)

    def set(self, source_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(source_id, {})[key] = value

    def clear(self, source_id: Optional[str] = None) -> None:
        with self._lock:
            if source_id is None:
                self._data.clear()
            else:
                self._data.pop(source_id, None)


class JsonFileCursorStore(CursorStore):
    """
    Cursor store backed by a single JSON file.

    Writes go through a temporary file and an atomic rename so a crash never
    leaves a truncated file behind.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable cursor file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True, default=str)
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, source_id: str, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(source_id, {}).get(key)

    def set(self, source_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(source_id, {})[key] = value
            self._flush()

    def clear(self, source_id: Optional[str] = None) -> None:
        with self._lock:
            if source_id is None:
                self._data.clear()
            else:
                self._data.pop(source_id, None)
            self._flush()
