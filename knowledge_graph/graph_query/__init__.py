from knowledge_graph.graph_query.config import QuerySettings
from knowledge_graph.graph_query.context import QueryContext
from knowledge_graph.graph_query.hybrid_search import HybridSearchEngine
from knowledge_graph.graph_query.models import (
    ImpactReport,
    MatchType,
    RankedResults,
    RiskLevel,
    SearchMode,
    SearchResult,
    SearchStatus,
)
from knowledge_graph.graph_query.traversal import GraphTraversalService

__all__ = [
    "GraphTraversalService",
    "HybridSearchEngine",
    "ImpactReport",
    "MatchType",
    "QueryContext",
    "QuerySettings",
    "RankedResults",
    "RiskLevel",
    "SearchMode",
    "SearchResult",
    "SearchStatus",
]
