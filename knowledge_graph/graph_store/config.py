"""Graph store configuration and backend selection."""

from enum import Enum

from knowledge_graph.graph_store.base import GraphStore
from knowledge_graph.graph_store.memory_store import InMemoryGraphStore
from knowledge_graph.graph_store.neo4j_store import Neo4jGraphStore
from knowledge_graph.shared.database import Neo4jHandler
from knowledge_graph.shared.config import BaseAppSettings


class StoreBackend(str, Enum):
    NEO4J = "neo4j"
    MEMORY = "memory"


class GraphStoreSettings(BaseAppSettings):
    """Settings for the graph store."""

    component_name: str = "graph_store"
    backend: StoreBackend = StoreBackend.NEO4J
    embedding_dimension: int = 1024

    # Empty values fall back to NEO4J_URI / NEO4J_USERNAME / NEO4J_PASSWORD
    neo4j_uri: str = ""
    neo4j_username: str = ""
    neo4j_password: str = ""
    neo4j_database: str = ""

    class Config(BaseAppSettings.Config):
        env_prefix = "GRAPH_STORE_"


def build_store(settings: GraphStoreSettings | None = None) -> GraphStore:
    """Create the store selected by ``settings.backend`` (not yet connected)."""
    settings = settings or GraphStoreSettings()
    if settings.backend == StoreBackend.MEMORY:
        return InMemoryGraphStore()

    handler = Neo4jHandler(
        uri=settings.neo4j_uri or None,
        username=settings.neo4j_username or None,
        password=settings.neo4j_password or None,
        database=settings.neo4j_database or None,
    )
    return Neo4jGraphStore(handler, embedding_dimension=settings.embedding_dimension)
