"""
Rule-based content checks for crawled pages.

Two independent decisions:
- content filters: keep/drop a page (min words, required keywords, excluded substrings)
- review heuristics: keep the page but flag it for a human (length, error-page markers)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from pydantic import Field

from src.ingestion.normalization.text import count_words
from src.ingestion.types import CamelModel

REVIEW_PATTERNS: dict[str, str] = {
    "error_page": r"\b(error|404|not found)\b",
    "access_denied": r"\b(access denied|forbidden)\b",
    "javascript_required": r"\bjavascript (is )?required\b",
}


class ContentFilterConfig(CamelModel):
    min_word_count: int = Field(default=0, ge=0)
    required_keywords: list[str] = Field(default_factory=list)
    excluded_patterns: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class FilterDecision:
    keep: bool
    reason: str | None = None


def apply_content_filters(text: str, config: ContentFilterConfig | None) -> FilterDecision:
    """
    Decide whether extracted text is worth keeping.

    Keyword and substring matching is case-insensitive. The first failing
    rule wins and its reason is returned.
    """
    if config is None:
        return FilterDecision(keep=True)

    words = count_words(text)
    if config.min_word_count and words < config.min_word_count:
        return FilterDecision(
            keep=False,
            reason=f"word count {words} below minimum {config.min_word_count}",
        )

    lowered = (text or "").lower()
    if config.required_keywords:
        if not any(k.lower() in lowered for k in config.required_keywords):
            return FilterDecision(
                keep=False,
                reason="none of the required keywords found: " + ", ".join(config.required_keywords),
            )

    for pattern in config.excluded_patterns:
        if pattern and pattern.lower() in lowered:
            return FilterDecision(keep=False, reason=f"contains excluded pattern '{pattern}'")

    return FilterDecision(keep=True)


@dataclass
class ReviewAssessment:
    requires_review: bool
    reasons: list[str] = field(default_factory=list)


def assess_review(text: str, *, min_length: int = 100, max_length: int = 50000) -> ReviewAssessment:
    """Flag suspiciously short/long content and pages that look like error or block pages."""
    reasons: list[str] = []
    length = len(text or "")
    if length < min_length:
        reasons.append("too_short")
    if length > max_length:
        reasons.append("too_long")
    for code, pattern in REVIEW_PATTERNS.items():
        if re.search(pattern, text or "", flags=re.IGNORECASE):
            reasons.append(code)
    return ReviewAssessment(requires_review=bool(reasons), reasons=reasons)
