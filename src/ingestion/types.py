"""
Core data model of the ingestion engine.

A document moves through three artifacts:

    Document (discovered) -> ExtractedContent -> TransformedDocument

``SourceConfig`` describes one configured source; it is immutable once
registered and replaced wholesale on update.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.ingestion.errors import ConfigurationError, format_validation_error


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SourceType(str, Enum):
    """Built-in source categories."""

    STATIC = "static"
    SEMI_STATIC = "semi_static"
    DYNAMIC_CONSISTENT = "dynamic_consistent"
    DYNAMIC_UNSTRUCTURED = "dynamic_unstructured"


class Visibility(str, Enum):
    """Visibility suggestion stamped onto transformed documents."""

    INTERNAL = "internal"
    EXTERNAL = "external"
    RESTRICTED = "restricted"


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"


class DocumentState(str, Enum):
    """Per-document pipeline state."""

    DISCOVERED = "discovered"
    EXTRACTED = "extracted"
    TRANSFORMED = "transformed"
    DELIVERED = "delivered"
    UNCHANGED = "unchanged"
    FILTERED = "filtered"
    FAILED = "failed"


def normalize_type_tag(value: Any) -> Any:
    """Accept ``semi-static`` as well as ``semi_static`` style tags."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_")
    return value


class CamelModel(BaseModel):
    """Base for config models: accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# SOURCE CONFIGURATION
# =============================================================================


class AuthenticationConfig(CamelModel):
    """Credentials applied once to a source's HTTP client."""

    type: AuthType
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    key: Optional[str] = None
    header_name: str = "X-API-Key"

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return normalize_type_tag(v)

    @model_validator(mode="after")
    def _check_credentials(self) -> "AuthenticationConfig":
        if self.type == AuthType.BEARER and not self.token:
            raise ValueError("bearer authentication requires 'token'")
        if self.type == AuthType.BASIC and not (self.username and self.password):
            raise ValueError("basic authentication requires 'username' and 'password'")
        if self.type == AuthType.API_KEY and not self.key:
            raise ValueError("api_key authentication requires 'key'")
        return self


class SourceConfig(CamelModel):
    """
    Configuration of one source.

    ``type`` is a free-form tag so that custom handler types registered in
    the factory can be configured the same way as the built-in ones.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    config: Dict[str, Any]
    name: Optional[str] = None
    enabled: bool = True
    visibility: Optional[Visibility] = None
    authentication: Optional[AuthenticationConfig] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _check_id(cls, v: str) -> str:
        v = v.strip()
        if not v or any(ch.isspace() for ch in v):
            raise ValueError("source id must be non-empty and contain no whitespace")
        return v

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return normalize_type_tag(v)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_dict(cls, data: Any) -> "SourceConfig":
        """
        Build a SourceConfig from a plain mapping.

        Args:
            data: Mapping with at least ``id``, ``type`` and ``config``.

        Returns:
            The validated SourceConfig.

        Raises:
            ConfigurationError: If required fields are missing or invalid.
        """
        if isinstance(data, SourceConfig):
            return data
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Source configuration must be a mapping, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid source configuration: {format_validation_error(e)}",
                source_id=data.get("id") if isinstance(data.get("id"), str) else None,
            ) from e


# =============================================================================
# DOCUMENT ARTIFACTS
# =============================================================================


class Document(BaseModel):
    """A discovered document. No body has been fetched yet (except inline feed content)."""

    id: str
    source_id: str
    source_type: str
    url: str
    title: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    content: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExtractedContent(BaseModel):
    """Full body of a document, ready to be transformed."""

    id: str
    content: str
    content_hash: str
    extracted_at: datetime = Field(default_factory=utc_now)
    extraction_method: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    filtered: bool = False
    filter_reason: Optional[str] = None


class TransformedDocument(BaseModel):
    """Normalized document handed downstream."""

    id: str
    title: str
    content: str
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def visibility(self) -> Optional[str]:
        return self.metadata.get("visibility")
