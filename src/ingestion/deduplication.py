"""
Module for document deduplication strategies.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional

from src.ingestion.normalization.urls import canonicalize_url
from src.ingestion.types import Document


class DeduplicationStrategy(str, Enum):
    URL = "url"
    ID = "id"
    COMPOSITE = "composite"


class DocumentDeduplicator(ABC):
    """
    Abstract base for deduplication strategies
    """

    @abstractmethod
    def key(self, document: Document) -> Optional[str]:
        """
        Identity key of a document, or None when it has none
        """

    def deduplicate(self, documents: Iterable[Document]) -> List[Document]:
        """
        Drop documents whose key was already seen.

        Returns:
            List of unique documents (first occurrence kept)
        """
        seen = set()
        unique = []
        for document in documents:
            key = self.key(document)
            if key is not None and key in seen:
                continue
            if key is not None:
                seen.add(key)
            unique.append(document)
        return unique


class UrlDeduplicator(DocumentDeduplicator):
    """
    Match by canonical URL (scheme/host case, default ports, tracking params, fragments)
    """

    def key(self, document: Document) -> Optional[str]:
        if not document.url:
            return None
        return canonicalize_url(document.url)


class IdDeduplicator(DocumentDeduplicator):
    """
    Match by document id
    """

    def key(self, document: Document) -> Optional[str]:
        return document.id or None


class CompositeDeduplicator(DocumentDeduplicator):
    """
    A document is a duplicate if any strategy has already seen it
    """

    def __init__(self, strategies: Optional[List[DocumentDeduplicator]] = None):
        self.strategies = strategies or [UrlDeduplicator(), IdDeduplicator()]

    def key(self, document: Document) -> Optional[str]:
        return self.strategies[0].key(document)

    def deduplicate(self, documents: Iterable[Document]) -> List[Document]:
        seen = [set() for _ in self.strategies]
        unique = []
        for document in documents:
            keys = [s.key(document) for s in self.strategies]
            if any(k is not None and k in seen[i] for i, k in enumerate(keys)):
                continue
            for i, k in enumerate(keys):
                if k is not None:
                    seen[i].add(k)
            unique.append(document)
        return unique


def get_deduplicator(strategy: DeduplicationStrategy) -> DocumentDeduplicator:
    """
    Factory function to get a deduplicator by strategy.

    Args:
        strategy: The deduplication strategy to use

    Returns:
        An instance of the appropriate deduplicator
    """
    deduplicators = {
        DeduplicationStrategy.URL: UrlDeduplicator,
        DeduplicationStrategy.ID: IdDeduplicator,
        DeduplicationStrategy.COMPOSITE: CompositeDeduplicator,
    }
    return deduplicators[DeduplicationStrategy(strategy)]()
