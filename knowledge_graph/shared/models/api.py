"""
Request / response models for the outer surface (API handlers, agent
tools). Validation of caller input happens here, before any store access.
"""

from pydantic import BaseModel, Field, field_validator

from knowledge_graph.shared.models.graph import Direction, Node, SearchMode


class IndexRequest(BaseModel):
    repository_ref: str = Field(min_length=1, description="Repository URL or local path")
    branch: str | None = Field(default=None, description="Branch to index (default: main)")
    force_reindex: bool = False

    @field_validator("repository_ref")
    @classmethod
    def _strip_ref(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("repository_ref must not be blank")
        return value


class IndexResponse(BaseModel):
    repository_id: str
    status: str
    commit: str | None = None
    entities_created: int = 0
    relationships_created: int = 0
    embeddings_generated: int = 0
    files_processed: int = 0
    files_failed: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    mode: SearchMode = SearchMode.HYBRID
    repository_ids: list[str] | None = None
    limit: int = Field(default=10, ge=1, le=50)
    min_similarity: float = Field(default=0.7, ge=0.0, le=1.0)
    include_source: bool = False
    expand: bool = False

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


class NodeSummary(BaseModel):
    id: str
    kind: str
    name: str
    fully_qualified_name: str
    package_name: str | None = None
    file_path: str | None = None
    description: str | None = None
    signature: str | None = None
    source_code: str | None = None

    @classmethod
    def from_node(cls, node: Node, include_source: bool = False) -> "NodeSummary":
        return cls(
            id=node.id,
            kind=node.kind.value,
            name=node.name,
            fully_qualified_name=node.fully_qualified_name,
            package_name=node.package_name,
            file_path=node.file_path,
            description=node.description,
            signature=node.signature,
            source_code=node.source_code if include_source else None,
        )


class SearchHit(NodeSummary):
    match_type: str
    similarity_score: float
    related: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    mode: SearchMode
    status: str
    message: str | None = None
    widened: bool = False
    results: list[SearchHit] = Field(default_factory=list)

    @classmethod
    def from_ranked(cls, ranked) -> "SearchResponse":
        hits = [
            SearchHit(
                **NodeSummary.from_node(r.node, ranked.include_source).model_dump(),
                match_type=r.match_type.value,
                similarity_score=round(r.similarity_score, 4),
                related=r.related,
            )
            for r in ranked.results
        ]
        return cls(
            query=ranked.query,
            mode=ranked.mode,
            status=ranked.status.value,
            message=ranked.message,
            widened=ranked.widened,
            results=hits,
        )


class TraversalRequest(BaseModel):
    node_id: str = Field(min_length=1)
    relation_types: list[str] = Field(min_length=1)
    direction: Direction = Direction.OUT
    max_depth: int = Field(default=2, ge=1)


class TraversalResponse(BaseModel):
    node_id: str
    nodes: list[NodeSummary] = Field(default_factory=list)

    @classmethod
    def from_nodes(cls, node_id: str, nodes: list[Node]) -> "TraversalResponse":
        return cls(node_id=node_id, nodes=[NodeSummary.from_node(n) for n in nodes])
