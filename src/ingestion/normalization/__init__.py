"""
Normalization helpers shared by the source handlers.

This package provides:
- text: whitespace/line-ending cleanup, HTML stripping, ids, hashes, dates
- urls: canonical URLs for stable ids and dedupe
- quality: content filters and manual-review heuristics
"""
