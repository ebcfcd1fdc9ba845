"""
Sitemap parsers.

``LxmlSitemapParser`` reads ``<urlset>`` and ``<sitemapindex>`` documents in
any namespace, with entity resolution and network access disabled.
``RegexSitemapParser`` is the compatibility implementation.
"""

from __future__ import annotations

import html
import logging
import re

from lxml import etree

from src.ingestion.parsers.base import SitemapDocument, SitemapEntry, SitemapParser
from src.ingestion.normalization.text import parse_datetime

logger = logging.getLogger(__name__)


def _float_or_none(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _entry(loc: str | None, lastmod: str | None, priority: str | None, changefreq: str | None) -> SitemapEntry | None:
    loc = (loc or "").strip()
    if not loc:
        return None
    return SitemapEntry(
        loc=loc,
        lastmod=parse_datetime(lastmod.strip()) if lastmod else None,
        priority=_float_or_none(priority.strip() if priority else None),
        changefreq=changefreq.strip() if changefreq else None,
    )


def _child_texts(el) -> dict[str, str]:
    """Child element text keyed by local name, namespace ignored."""
    out: dict[str, str] = {}
    for child in el:
        if not isinstance(child.tag, str):
            continue
        out.setdefault(etree.QName(child).localname, child.text or "")
    return out


class LxmlSitemapParser(SitemapParser):
    name = "lxml"

    def parse(self, text: str | bytes) -> SitemapDocument:
        data = text.encode("utf-8") if isinstance(text, str) else text
        parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
        try:
            root = etree.fromstring(data, parser=parser)
        except etree.XMLSyntaxError as e:
            logger.warning(f"Malformed sitemap XML: {e}")
            return SitemapDocument()

        doc = SitemapDocument()
        for el in root.iter("{*}url"):
            fields = _child_texts(el)
            entry = _entry(
                fields.get("loc"),
                fields.get("lastmod"),
                fields.get("priority"),
                fields.get("changefreq"),
            )
            if entry is None:
                logger.warning("Skipping sitemap <url> without <loc>")
                continue
            doc.urls.append(entry)

        for el in root.iter("{*}sitemap"):
            fields = _child_texts(el)
            entry = _entry(fields.get("loc"), fields.get("lastmod"), None, None)
            if entry is not None:
                doc.sitemaps.append(entry)
        return doc


_BLOCK_RE = re.compile(r"<(url|sitemap)\b[^>]*>(.*?)</\1>", re.IGNORECASE | re.DOTALL)


def _field(block: str, name: str) -> str | None:
    m = re.search(rf"<{name}>(.*?)</{name}>", block, re.IGNORECASE | re.DOTALL)
    return html.unescape(m.group(1).strip()) if m else None


class RegexSitemapParser(SitemapParser):
    name = "regex"

    def parse(self, text: str | bytes) -> SitemapDocument:
        content = text.decode("utf-8", errors="replace") if isinstance(text, bytes) else (text or "")
        doc = SitemapDocument()
        for m in _BLOCK_RE.finditer(content):
            kind, block = m.group(1).lower(), m.group(2)
            entry = _entry(
                _field(block, "loc"),
                _field(block, "lastmod"),
                _field(block, "priority"),
                _field(block, "changefreq"),
            )
            if entry is None:
                continue
            (doc.urls if kind == "url" else doc.sitemaps).append(entry)
        return doc


SITEMAP_PARSERS = {
    LxmlSitemapParser.name: LxmlSitemapParser,
    RegexSitemapParser.name: RegexSitemapParser,
}


def get_sitemap_parser(name: str = "lxml") -> SitemapParser:
    try:
        return SITEMAP_PARSERS[name]()
    except KeyError:
        raise ValueError(
            f"Unknown sitemap parser '{name}'. Available: {', '.join(SITEMAP_PARSERS)}"
        ) from None
