"""HTML parsing helpers.

Includes:
- BeautifulSoup-based helpers: visible text, title, CSS selection, links, feed links
- trafilatura extraction (HTML -> main article text)

This module does not enforce a schema. It just provides primitives.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin

import trafilatura
from bs4 import BeautifulSoup

from src.ingestion.normalization.text import collapse_whitespace
from src.ingestion.normalization.urls import canonicalize_url, is_http_url

logger = logging.getLogger(__name__)

FEED_LINK_MARKERS = ("rss", "atom", "xml")
NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]
PAGE_CHROME_TAGS = ["nav", "header", "footer", "aside"]


def soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def get_title(html: str) -> str | None:
    doc = soup(html)
    if doc.title and doc.title.string:
        title = collapse_whitespace(doc.title.string)
        return title or None
    return None


def get_text(html: str, *, drop_page_chrome: bool = False) -> str:
    """Visible text with script/style removed; optionally drop nav/header/footer."""
    doc = soup(html)
    tags = NON_CONTENT_TAGS + (PAGE_CHROME_TAGS if drop_page_chrome else [])
    for t in doc(tags):
        t.decompose()
    return collapse_whitespace(doc.get_text(" ", strip=True))


def select_text(html: str, selector: str) -> str:
    """Text of all elements matching a CSS selector, joined."""
    nodes = soup(html).select(selector)
    return collapse_whitespace(" ".join(n.get_text(" ", strip=True) for n in nodes))


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute, canonical http(s) links in document order, without duplicates."""
    seen: set[str] = set()
    out: list[str] = []
    for a in soup(html).find_all("a", href=True):
        href = str(a["href"]).strip()
        if not href or href.startswith(("#", "mailto:", "javascript:", "tel:")):
            continue
        url = canonicalize_url(urljoin(base_url, href))
        if not is_http_url(url) or url in seen:
            continue
        seen.add(url)
        out.append(url)
    return out


def extract_feed_links(html: str, base_url: str) -> list[dict[str, str]]:
    """``<link rel="alternate" type="application/rss+xml" href=...>`` style feed declarations."""
    out: list[dict[str, str]] = []
    seen: set[str] = set()
    for link in soup(html).find_all("link", href=True):
        link_type = str(link.get("type") or "").lower()
        if not any(t in link_type for t in FEED_LINK_MARKERS):
            continue
        url = urljoin(base_url, str(link["href"]).strip())
        if url in seen:
            continue
        seen.add(url)
        out.append(
            {
                "url": url,
                "type": link_type,
                "title": collapse_whitespace(str(link.get("title") or "")),
            }
        )
    return out


def extract_main_text(html: str, *, url: str | None = None) -> str:
    """
    Main article text via trafilatura, falling back to visible page text.

    Returns an empty string for empty input.
    """
    if not html:
        return ""
    try:
        text = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=False,
        )
    except Exception as e:
        logger.debug(f"trafilatura failed for {url}: {e}")
        text = None
    if text:
        return text.strip()
    return get_text(html, drop_page_chrome=True)
