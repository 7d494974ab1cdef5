from knowledge_graph.graph_store.base import (
    DEPENDS_ON,
    GraphStore,
    Neighbor,
    NodePredicate,
    normalized_cosine,
    resolve_relation_types,
)
from knowledge_graph.graph_store.config import GraphStoreSettings, StoreBackend, build_store
from knowledge_graph.graph_store.memory_store import InMemoryGraphStore
from knowledge_graph.graph_store.neo4j_store import Neo4jGraphStore

__all__ = [
    "DEPENDS_ON",
    "GraphStore",
    "GraphStoreSettings",
    "InMemoryGraphStore",
    "Neighbor",
    "Neo4jGraphStore",
    "NodePredicate",
    "StoreBackend",
    "build_store",
    "normalized_cosine",
    "resolve_relation_types",
]
