"""
Error taxonomy for the ingestion engine.

Every error carries the source id (and document id where known) so that
structured log entries and batch results can point at the failing unit.
"""

from typing import Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_snake


class IngestionError(Exception):
    """Base class for all ingestion failures."""

    def __init__(
        self,
        message: str,
        *,
        source_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source_id = source_id
        self.document_id = document_id

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "source_id": self.source_id,
            "document_id": self.document_id,
        }


class ConfigurationError(IngestionError, ValueError):
    """Invalid or incomplete source configuration."""


class InitializationError(IngestionError, RuntimeError):
    """A source could not be reached or set up at startup."""


class DiscoveryError(IngestionError):
    """Listing documents of a source failed."""


class ExtractionError(IngestionError):
    """Fetching or reading a document body failed."""


class TransformError(IngestionError):
    """Normalizing an extracted document failed."""


def format_validation_error(exc: ValidationError) -> str:
    """
    Render a pydantic ValidationError as ``field.path: message; ...``.

    Field paths are reported in snake_case, whichever key style the input used.

    Args:
        exc: The validation error raised by a settings model.

    Returns:
        A single-line summary naming every invalid field.
    """
    parts = []
    for err in exc.errors():
        location = ".".join(
            to_snake(p) if isinstance(p, str) else str(p) for p in err.get("loc", ())
        ) or "<root>"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)
