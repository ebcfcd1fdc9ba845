"""
Source handlers.

One handler per source category; all share the BaseSourceHandler contract.
"""

from src.ingestion.handlers.base import BaseSourceHandler
from src.ingestion.handlers.dynamic_consistent import DynamicConsistentSourceHandler
from src.ingestion.handlers.dynamic_unstructured import DynamicUnstructuredSourceHandler
from src.ingestion.handlers.semi_static import SemiStaticSourceHandler
from src.ingestion.handlers.static import StaticSourceHandler

__all__ = [
    "BaseSourceHandler",
    "StaticSourceHandler",
    "SemiStaticSourceHandler",
    "DynamicConsistentSourceHandler",
    "DynamicUnstructuredSourceHandler",
]
