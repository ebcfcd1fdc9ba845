"""
Source Ingestion Engine.

Discovers, extracts and transforms documents from configured sources.

Key Components:
- IngestionEngine: Facade that manages sources and runs document batches
- SourceHandlerRegistry: Owns initialized handlers, one per source
- SourceHandlerFactory: Maps source types to handler classes
- Handlers: static, semi_static, dynamic_consistent, dynamic_unstructured
"""
