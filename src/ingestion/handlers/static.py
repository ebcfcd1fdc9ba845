"""
Static source handler.

Walks a local directory tree. Documents are files; ids are derived from the
absolute path, so repeated discovery of an unchanged tree yields the same ids.
"""

import mimetypes
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import Field, field_validator

from src.ingestion.errors import ExtractionError, InitializationError, TransformError
from src.ingestion.handlers.base import BaseSourceHandler
from src.ingestion.normalization.text import clean_text, content_hash
from src.ingestion.types import (
    CamelModel,
    Document,
    ExtractedContent,
    TransformedDocument,
    Visibility,
)

DEFAULT_FILE_TYPES = ["txt", "md", "pdf", "docx", "html", "json", "csv"]
DEFAULT_IGNORED_DIRS = ["node_modules", "dist", "build", "__pycache__"]
BINARY_EXTENSIONS = frozenset(
    {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png", ".gif", ".zip", ".tar", ".gz"}
)

_MARKDOWN_H1 = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_HTML_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


class StaticSettings(CamelModel):
    base_path: str
    recursive: bool = True
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    file_types: List[str] = Field(default_factory=lambda: list(DEFAULT_FILE_TYPES))
    ignored_dirs: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORED_DIRS))

    @field_validator("base_path")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("base_path must not be empty")
        return v

    @field_validator("file_types")
    @classmethod
    def _dotted(cls, v: List[str]) -> List[str]:
        return ["." + t.lower().lstrip(".") for t in v if t.strip()]

    @field_validator("include_patterns")
    @classmethod
    def _drop_match_all(cls, v: List[str]) -> List[str]:
        return [p for p in v if p not in ("**/*", "*", "**")]


class StaticSourceHandler(BaseSourceHandler):
    """Handler for local file trees."""

    settings_model = StaticSettings
    default_visibility = Visibility.INTERNAL

    def _initialize(self) -> None:
        self.base_path = Path(self.settings.base_path).expanduser().resolve()
        if not self.base_path.is_dir():
            raise InitializationError(
                f"Base path '{self.base_path}' does not exist or is not a directory",
                source_id=self.source_id,
            )
        if not os.access(self.base_path, os.R_OK | os.X_OK):
            raise InitializationError(
                f"Base path '{self.base_path}' is not readable",
                source_id=self.source_id,
            )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def discover(self) -> Iterator[Document]:
        self._require_initialized()
        count = 0
        for path in self._walk(self.base_path):
            if not self._should_include(path):
                continue
            try:
                stat = path.stat()
            except OSError as e:
                self.log.warning(f"Skipping unreadable file {path}: {e}", extra={"stage": "discover"})
                continue

            relative = path.relative_to(self.base_path).as_posix()
            content_type, _ = mimetypes.guess_type(path.name)
            count += 1
            yield self.make_document(
                str(path),
                str(path),
                title=path.name,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                content_type=content_type or "application/octet-stream",
                metadata={
                    "relative_path": relative,
                    "directory": str(path.parent),
                    "extension": path.suffix.lower(),
                    "size": stat.st_size,
                },
            )
        self.log.info(f"Discovered {count} files under {self.base_path}", extra={"stage": "discover"})

    def _walk(self, directory: Path) -> Iterator[Path]:
        """Yield files in sorted order, skipping hidden and ignored directories."""
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            self.log.warning(f"Cannot list {directory}: {e}", extra={"stage": "discover"})
            return

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if (
                        self.settings.recursive
                        and not entry.name.startswith(".")
                        and entry.name not in self.settings.ignored_dirs
                    ):
                        yield from self._walk(Path(entry.path))
                elif entry.is_file():
                    yield Path(entry.path)
            except OSError as e:
                self.log.warning(f"Skipping {entry.path}: {e}", extra={"stage": "discover"})

    def _should_include(self, path: Path) -> bool:
        if path.suffix.lower() not in self.settings.file_types:
            return False
        relative = path.relative_to(self.base_path).as_posix()
        if self.settings.include_patterns and not any(
            p in relative for p in self.settings.include_patterns
        ):
            return False
        if any(p in relative for p in self.settings.exclude_patterns):
            return False
        return True

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def extract(self, document: Document) -> Optional[ExtractedContent]:
        self._require_initialized()
        path = Path(document.url)
        extension = path.suffix.lower()

        if extension in BINARY_EXTENSIONS:
            content = f"[Binary file: {path.name}]"
            encoding = "binary"
        else:
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                self.log.warning(f"File disappeared before extraction: {path}", extra={"stage": "extract"})
                return None
            except OSError as e:
                raise ExtractionError(
                    f"Failed to read {path}: {e}",
                    source_id=self.source_id,
                    document_id=document.id,
                ) from e
            encoding = "utf-8"

        return ExtractedContent(
            id=document.id,
            content=content,
            content_hash=content_hash(content),
            extraction_method="filesystem",
            metadata={
                **document.metadata,
                "file_path": str(path),
                "file_name": path.name,
                "content_type": document.content_type,
                "last_modified": document.last_modified.isoformat() if document.last_modified else None,
                "encoding": encoding,
            },
        )

    # -------------------------------------------------------------------------
    # Transformation
    # -------------------------------------------------------------------------

    def transform(self, extracted: Optional[ExtractedContent]) -> Optional[TransformedDocument]:
        if extracted is None:
            return None
        try:
            content = clean_text(extracted.content)
            title = self._title(extracted.content, extracted.metadata.get("file_name", ""))
            return TransformedDocument(
                id=extracted.id,
                title=title,
                content=content,
                content_hash=content_hash(content),
                metadata=self.base_metadata(extracted, content),
            )
        except Exception as e:
            raise TransformError(
                f"Failed to transform {extracted.id}: {e}",
                source_id=self.source_id,
                document_id=extracted.id,
            ) from e

    @staticmethod
    def _title(raw: str, file_name: str) -> str:
        """Markdown H1, else HTML <title>, else the file name without extension."""
        m = _MARKDOWN_H1.search(raw)
        if m:
            return m.group(1).strip()
        m = _HTML_TITLE.search(raw)
        if m and m.group(1).strip():
            return " ".join(m.group(1).split())
        return Path(file_name).stem or file_name
