"""
Shared models: graph data model and request/response schemas.
"""

from .graph import (
    Direction,
    Edge,
    IndexState,
    Node,
    NodeKind,
    RelationType,
    Repository,
    SearchMode,
    TypeKind,
    make_node_id,
    make_repository_id,
    normalize_repository_url,
)

__all__ = [
    "Direction",
    "Edge",
    "IndexState",
    "Node",
    "NodeKind",
    "RelationType",
    "Repository",
    "SearchMode",
    "TypeKind",
    "make_node_id",
    "make_repository_id",
    "normalize_repository_url",
]
