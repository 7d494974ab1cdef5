"""
Custom exception hierarchy for the knowledge graph.

All errors inherit from KnowledgeGraphError so they can be caught
uniformly by the caller (orchestration layer, API surface, tests).

Per-file parse problems are *not* exceptions: the extractor returns a
ParseFailure value instead so that one bad file never aborts a batch.
"""


class KnowledgeGraphError(Exception):
    """Base exception for all knowledge-graph errors."""

    def __init__(self, message: str, component: str = "unknown"):
        self.component = component
        self.message = message
        super().__init__(f"[{component}] {message}")


class IndexerError(KnowledgeGraphError):
    """Errors raised while indexing a repository."""

    def __init__(self, message: str):
        super().__init__(message, component="indexer")


class ProviderFailure(IndexerError):
    """Embedding provider call failed after all retries (or non-retryable)."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class IndexingCancelled(IndexerError):
    """The indexing run was cancelled between file units."""
    pass


class StoreFailure(KnowledgeGraphError):
    """Graph store write conflict or connectivity failure."""

    def __init__(self, message: str):
        super().__init__(message, component="graph_store")


class DatabaseConnectionError(StoreFailure):
    """Failed to connect to Neo4j."""
    pass


class QueryFailure(KnowledgeGraphError):
    """Malformed query/predicate or store unavailable during a query."""

    def __init__(self, message: str):
        super().__init__(message, component="graph_query")
