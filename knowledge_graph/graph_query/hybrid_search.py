"""
Hybrid Query Engine

Exact name / FQN lookup first, then fuzzy substring matching, then vector
similarity to fill what is left, fused into one ranked list.

Ranking:
    - groups in the order EXACT, FUZZY, SEMANTIC
    - within a group: score descending, then name ascending
    - a node appears once, under its highest-precedence match
"""

import itertools
import logging
import re

from pydantic import ValidationError

from knowledge_graph.graph_query.config import QuerySettings
from knowledge_graph.graph_query.context import QueryContext
from knowledge_graph.graph_query.models import (
    MATCH_PRECEDENCE,
    MatchType,
    RankedResults,
    SearchMode,
    SearchResult,
    SearchStatus,
)
from knowledge_graph.graph_store import GraphStore, NodePredicate, resolve_relation_types
from knowledge_graph.indexer.embeddings import EmbeddingPipeline
from knowledge_graph.shared.exceptions import ProviderFailure, QueryFailure, StoreFailure
from knowledge_graph.shared.models import Direction, Node
from knowledge_graph.shared.models.api import SearchRequest
from knowledge_graph.shared.observability import record_event, trace_function

logger = logging.getLogger("knowledge-graph.graph_query.hybrid_search")

SEARCH_TOOL = "search"

# Field weights for fuzzy matches
FUZZY_WEIGHTS = {
    "name": 0.9,
    "fully_qualified_name": 0.8,
    "description": 0.6,
    "file_path": 0.5,
}

_FIELD_VALUES = {
    "name": lambda n: n.name,
    "fully_qualified_name": lambda n: n.fully_qualified_name,
    "description": lambda n: n.description,
    "file_path": lambda n: n.file_path,
}

_SEPARATORS = re.compile(r"[\s_\-]+")


def fuzzy_score(node: Node, needle: str) -> float:
    """Best weighted coverage of ``needle`` over the node's text fields.

    ``weight * max(0.5, len(needle) / len(field))`` for every field that
    contains the needle; 0.0 when none does. Missing fields never match.
    """
    needle = needle.lower()
    best = 0.0
    for field_name, weight in FUZZY_WEIGHTS.items():
        value = _FIELD_VALUES[field_name](node)
        if not value:
            continue
        lowered = value.lower()
        if needle not in lowered:
            continue
        coverage = len(needle) / len(lowered)
        best = max(best, weight * max(0.5, min(1.0, coverage)))
    return best


def _rank(results: list[SearchResult]) -> list[SearchResult]:
    return sorted(
        results,
        key=lambda r: (MATCH_PRECEDENCE[r.match_type], -r.similarity_score, r.node.name, r.node.fully_qualified_name),
    )


class HybridSearchEngine:
    """Exact → fuzzy → semantic retrieval over a GraphStore."""

    def __init__(
        self,
        store: GraphStore,
        pipeline: EmbeddingPipeline | None = None,
        settings: QuerySettings | None = None,
    ):
        self._store = store
        self._pipeline = pipeline
        self._settings = settings or QuerySettings()

    @trace_function(name="hybrid_search")
    async def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        repository_ids: list[str] | None = None,
        limit: int | None = None,
        min_similarity: float | None = None,
        include_source: bool = False,
        expand: bool = False,
        expand_relations: list[str] | None = None,
        context: QueryContext | None = None,
    ) -> RankedResults:
        """
        Search the graph.

        Args:
            query: Name, FQN or natural-language description.
            mode: EXACT, SEMANTIC or HYBRID.
            repository_ids: Scope; None searches every repository.
            limit: Maximum results (1-50).
            min_similarity: Cut-off for semantic scores (0-1).
            include_source: Carry source code in the results.
            expand: Attach related FQNs (depth 1) to every result.
            expand_relations: Relation types used for expansion.
            context: Request-scoped context (feedback, repeated searches).

        Raises:
            QueryFailure: invalid request, store or provider failure.
        """
        try:
            request = SearchRequest(
                query=query,
                mode=mode,
                repository_ids=repository_ids,
                limit=self._settings.default_limit if limit is None else limit,
                min_similarity=self._settings.min_similarity if min_similarity is None else min_similarity,
                include_source=include_source,
                expand=expand,
            )
        except ValidationError as e:
            raise QueryFailure(f"Invalid search request: {e.errors()[0]['msg']}") from e

        widened = False
        if context is not None:
            arguments = {
                "query": request.query,
                "mode": request.mode.value,
                "repository_ids": request.repository_ids,
            }
            if context.has_negative_feedback() or context.has_repeated(SEARCH_TOOL, arguments):
                request = self._widen(request)
                widened = True
                logger.info("Widening search for %r (feedback or repeated search)", request.query)

        try:
            ranked = await self._search(request, expand_relations)
        except (StoreFailure, ProviderFailure) as e:
            raise QueryFailure(f"Search failed: {e.message}") from e
        ranked.widened = widened

        if context is not None:
            context.record_execution(SEARCH_TOOL, arguments, ranked.fqns())
        record_event("search_complete", {
            "mode": request.mode.value, "results": len(ranked), "status": ranked.status.value,
        })
        return ranked

    def _widen(self, request: SearchRequest) -> SearchRequest:
        settings = self._settings
        return request.model_copy(update={
            "limit": min(request.limit * 2, settings.max_results),
            "include_source": True,
            "min_similarity": min(
                request.min_similarity,
                max(
                    settings.similarity_floor,
                    request.min_similarity - settings.feedback_similarity_relaxation,
                ),
            ),
        })

    async def _search(self, request: SearchRequest, expand_relations: list[str] | None) -> RankedResults:
        ranked = RankedResults(query=request.query, mode=request.mode, include_source=request.include_source)

        if request.repository_ids and not await self._scope_has_entities(request.repository_ids):
            ranked.status = SearchStatus.NO_RESULTS
            ranked.message = (
                f"No indexed entities in repositories {request.repository_ids}; "
                "index them before searching"
            )
            return ranked

        limit = request.limit
        results: list[SearchResult] = []
        seen: set[str] = set()

        def _take(batch: list[SearchResult]) -> None:
            for result in _rank(batch):
                if len(results) >= limit:
                    return
                if result.node.id not in seen:
                    seen.add(result.node.id)
                    results.append(result)

        if request.mode in (SearchMode.EXACT, SearchMode.HYBRID):
            _take(await self._exact(request))

        if request.mode == SearchMode.HYBRID and len(results) < self._settings.min_exact_results:
            _take(await self._fuzzy(request, seen))
            if len(results) < limit:
                if self._pipeline is None:
                    logger.debug("No embedding pipeline configured, skipping semantic fill")
                else:
                    _take(await self._semantic(request, seen, limit - len(results)))

        if request.mode == SearchMode.SEMANTIC:
            if self._pipeline is None:
                raise QueryFailure("Semantic search requires an embedding pipeline")
            _take(await self._semantic(request, seen, limit))

        ranked.results = _rank(results)
        if request.expand and ranked.results:
            await self._expand(ranked.results, expand_relations or self._settings.expand_relations)

        if not ranked.results:
            ranked.status = SearchStatus.NO_RESULTS
            ranked.message = f"No entities match {request.query!r}"
        logger.info(
            "Search %r (%s): %d results", request.query, request.mode.value, len(ranked.results),
        )
        return ranked

    async def _scope_has_entities(self, repository_ids: list[str]) -> bool:
        for repository_id in repository_ids:
            if await self._store.count_nodes(repository_id) > 0:
                return True
        return False

    # ─── Strategies ────────────────────────────────────────

    async def _exact(self, request: SearchRequest) -> list[SearchResult]:
        nodes = await self._store.query(NodePredicate(
            repository_ids=request.repository_ids,
            name_or_fqn_equals=request.query,
            limit=request.limit,
        ))
        return [SearchResult(node, MatchType.EXACT, 1.0) for node in nodes]

    async def _fuzzy(self, request: SearchRequest, seen: set[str]) -> list[SearchResult]:
        needles = [request.query]
        compact = _SEPARATORS.sub("", request.query)
        if compact and compact.lower() != request.query.lower():
            needles.append(compact)

        # The store limit applies per field, never across fields.
        scored: dict[str, SearchResult] = {}
        for needle, field_name in itertools.product(needles, FUZZY_WEIGHTS):
            nodes = await self._store.query(NodePredicate(
                repository_ids=request.repository_ids,
                contains=needle,
                contains_fields=(field_name,),
                limit=self._settings.max_results,
            ))
            for node in nodes:
                if node.id in seen:
                    continue
                score = fuzzy_score(node, needle)
                if score <= 0.0:
                    continue
                current = scored.get(node.id)
                if current is None or score > current.similarity_score:
                    scored[node.id] = SearchResult(node, MatchType.FUZZY, score)
        return list(scored.values())

    async def _semantic(self, request: SearchRequest, seen: set[str], wanted: int) -> list[SearchResult]:
        if wanted <= 0:
            return []
        embedding = await self._pipeline.embed_query(request.query)
        hits = await self._store.vector_query(
            embedding, k=wanted + len(seen), repository_ids=request.repository_ids,
        )
        return [
            SearchResult(node, MatchType.SEMANTIC, score)
            for node, score in hits
            if score >= request.min_similarity and node.id not in seen
        ]

    async def _expand(self, results: list[SearchResult], relation_names: list[str]) -> None:
        relations = resolve_relation_types(relation_names)
        neighbors = await self._store.neighbors(
            [r.node.id for r in results], relations, Direction.OUT,
        )
        related: dict[str, set[str]] = {}
        for neighbor in neighbors:
            related.setdefault(neighbor.origin_id, set()).add(neighbor.node.fully_qualified_name)
        for result in results:
            result.related = sorted(related.get(result.node.id, ()))
