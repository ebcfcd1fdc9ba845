"""URL canonicalization for stable ids and dedupe."""

from __future__ import annotations

from typing import Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_PARAMS: tuple[str, ...] = (
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "gclid", "fbclid", "mc_cid", "mc_eid",
)


def canonicalize_url(
    url: str,
    *,
    allow_fragments: bool = False,
    drop_tracking_params: bool = True,
    tracking_params: Sequence[str] = TRACKING_PARAMS,
) -> str:
    """
    Normalize URLs for dedupe:
    - lowercase scheme+host
    - remove default ports
    - remove fragments (optional)
    - optionally drop tracking params (utm, gclid, etc.)
    - sort query params for stability
    """
    url = (url or "").strip()
    if not url:
        return url

    try:
        parts = urlparse(url)
    except ValueError:
        return url

    scheme = (parts.scheme or "http").lower()
    netloc = parts.netloc.lower()

    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    if netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]

    path = parts.path or "/"
    query_pairs = parse_qsl(parts.query, keep_blank_values=True)

    if drop_tracking_params and tracking_params:
        drop = {p.lower() for p in tracking_params}
        query_pairs = [(k, v) for (k, v) in query_pairs if k.lower() not in drop]

    query_pairs.sort(key=lambda kv: (kv[0], kv[1]))
    query = urlencode(query_pairs, doseq=True)

    fragment = parts.fragment if allow_fragments else ""

    return urlunparse((scheme, netloc, path, parts.params, query, fragment))


def hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_http_url(url: str) -> bool:
    try:
        return urlparse(url).scheme in ("http", "https")
    except ValueError:
        return False
