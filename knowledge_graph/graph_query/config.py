"""Query engine and traversal configuration."""

from knowledge_graph.shared.config import BaseAppSettings


class QuerySettings(BaseAppSettings):
    """Settings for hybrid search and graph traversal."""

    component_name: str = "graph_query"
    max_results: int = 50
    default_limit: int = 10
    min_similarity: float = 0.7
    min_exact_results: int = 1
    max_traversal_depth: int = 3
    expand_relations: list[str] = ["DEPENDS_ON"]

    # Widening after negative feedback or a repeated search
    feedback_similarity_relaxation: float = 0.1
    similarity_floor: float = 0.5

    class Config(BaseAppSettings.Config):
        env_prefix = "QUERY_"
