"""Text normalization, hashing and date parsing primitives."""

from __future__ import annotations

import hashlib
import html as html_lib
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

_WS = re.compile(r"\s+")
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_MANY_NEWLINES = re.compile(r"\n{3,}")
_TAG = re.compile(r"<[^>]+>")
_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_WORD = re.compile(r"\S+")


def document_id(identifier: str) -> str:
    """Stable document id: MD5 of the canonical path or URL (not a security hash)."""
    return hashlib.md5(identifier.encode("utf-8"), usedforsecurity=False).hexdigest()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def collapse_whitespace(s: str | None) -> str:
    return _WS.sub(" ", (s or "").strip())


def clean_text(s: str | None) -> str:
    """
    Normalize a plain-text body while keeping paragraph structure.

    CRLF becomes LF, trailing spaces/tabs are removed per line, runs of three
    or more newlines shrink to a blank line, and the result is trimmed.
    """
    text = (s or "").replace("\r\n", "\n").replace("\r", "\n")
    text = _TRAILING_WS.sub("", text)
    text = _MANY_NEWLINES.sub("\n\n", text)
    return text.strip()


def looks_like_html(s: str | None) -> bool:
    return bool(s) and bool(_TAG.search(s))


def strip_html(s: str | None) -> str:
    """Drop script/style blocks and tags, decode entities, collapse whitespace."""
    text = _SCRIPT_STYLE.sub(" ", s or "")
    text = _TAG.sub(" ", text)
    return collapse_whitespace(html_lib.unescape(text))


def count_words(s: str | None) -> int:
    return len(_WORD.findall(s or ""))


def ensure_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse RFC 822 (feeds, HTTP headers) or ISO 8601 timestamps.

    Returns a timezone-aware UTC datetime, or None when unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    text = str(value).strip()
    try:
        return ensure_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        pass
    try:
        iso = text[:-1] + "+00:00" if text.endswith("Z") else text
        return ensure_utc(datetime.fromisoformat(iso))
    except ValueError:
        return None


def format_http_date(dt: datetime) -> str:
    """Format as an RFC 7231 IMF-fixdate for conditional request headers."""
    dt = ensure_utc(dt)
    return dt.strftime("%a, %d %b %Y %H:%M:%S GMT")
