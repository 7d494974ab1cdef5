"""Indexer: entity extraction, embeddings and the incremental indexing controller."""

from knowledge_graph.indexer.controller import IndexingController, IndexingResult, IndexingStatus
from knowledge_graph.indexer.embeddings import EmbeddingPipeline, EmbeddingProvider, build_provider
from knowledge_graph.indexer.extractor import EntityExtractor

__all__ = [
    "EmbeddingPipeline",
    "EmbeddingProvider",
    "EntityExtractor",
    "IndexingController",
    "IndexingResult",
    "IndexingStatus",
    "build_provider",
]
