"""
In-memory Graph Store

A flat arena of nodes keyed by id with adjacency and name indexes. Used
for tests and local development; behaves like the Neo4j backend for every
operation of the GraphStore contract, including normalized cosine scores
and NULL-safe text matching.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace

import numpy as np

from knowledge_graph.graph_store.base import (
    RESOLVABLE_KINDS,
    GraphStore,
    Neighbor,
    NodePredicate,
    placeholder_matches,
)
from knowledge_graph.shared.models import Direction, Edge, Node, NodeKind, RelationType, Repository

logger = logging.getLogger("knowledge-graph.graph_store.memory")

_FIELD_GETTERS = {
    "name": lambda n: n.name,
    "fully_qualified_name": lambda n: n.fully_qualified_name,
    "description": lambda n: n.description,
    "file_path": lambda n: n.file_path,
    "signature": lambda n: n.signature,
}


class InMemoryGraphStore(GraphStore):
    """Process-local store guarded by a single asyncio.Lock."""

    def __init__(self):
        self._nodes: dict[str, Node] = {}
        self._out: dict[str, set[tuple[RelationType, str]]] = defaultdict(set)
        self._in: dict[str, set[tuple[RelationType, str]]] = defaultdict(set)
        self._by_name: dict[str, set[str]] = defaultdict(set)
        self._by_fqn: dict[str, set[str]] = defaultdict(set)
        self._repositories: dict[str, Repository] = {}
        self._lock = asyncio.Lock()
        self.indexes_ensured = False

    # ─── Writes ────────────────────────────────────────────

    async def upsert_nodes(self, nodes: list[Node]) -> int:
        written = 0
        async with self._lock:
            for node in nodes:
                existing = self._nodes.get(node.id)
                if existing is not None and node.unresolved and not existing.unresolved:
                    continue
                if existing is not None:
                    self._unindex(existing)
                self._nodes[node.id] = node
                self._by_name[node.name.lower()].add(node.id)
                self._by_fqn[node.fully_qualified_name.lower()].add(node.id)
                written += 1
        return written

    async def upsert_edges(self, edges: list[Edge]) -> int:
        present = 0
        async with self._lock:
            for edge in edges:
                if edge.source_id not in self._nodes or edge.target_id not in self._nodes:
                    logger.debug("Dropping edge with unknown endpoint: %s", edge.key)
                    continue
                self._out[edge.source_id].add((edge.type, edge.target_id))
                self._in[edge.target_id].add((edge.type, edge.source_id))
                present += 1
        return present

    async def ensure_indexes(self) -> None:
        # name and adjacency indexes are maintained on every write
        self.indexes_ensured = True

    async def resolve_placeholders(self, repository_id: str) -> int:
        resolved = 0
        async with self._lock:
            placeholders = [
                n for n in self._nodes.values()
                if n.repository_id == repository_id and n.unresolved and n.kind in RESOLVABLE_KINDS
            ]
            for placeholder in placeholders:
                candidates = [
                    self._nodes[i] for i in self._by_name.get(placeholder.name.lower(), ())
                    if self._nodes[i].repository_id == repository_id
                    and not self._nodes[i].unresolved
                    and self._nodes[i].kind == placeholder.kind
                    and self._nodes[i].name == placeholder.name
                    and placeholder_matches(
                        placeholder.fully_qualified_name, self._nodes[i].fully_qualified_name,
                    )
                ]
                if len(candidates) != 1:
                    continue
                target = candidates[0]
                for rel, source in list(self._in.get(placeholder.id, ())):
                    self._out[source].discard((rel, placeholder.id))
                    if source != target.id:
                        self._out[source].add((rel, target.id))
                        self._in[target.id].add((rel, source))
                self._remove(placeholder.id)
                resolved += 1
        if resolved:
            logger.info("Resolved %d placeholder nodes in %s", resolved, repository_id)
        return resolved

    async def delete_repository(self, repository_id: str) -> int:
        async with self._lock:
            ids = [i for i, n in self._nodes.items() if n.repository_id == repository_id]
            for node_id in ids:
                self._remove(node_id)
            self._repositories.pop(repository_id, None)
        return len(ids)

    def _unindex(self, node: Node) -> None:
        self._by_name[node.name.lower()].discard(node.id)
        self._by_fqn[node.fully_qualified_name.lower()].discard(node.id)

    def _remove(self, node_id: str) -> None:
        node = self._nodes.pop(node_id)
        self._unindex(node)
        for rel, target in self._out.pop(node_id, set()):
            self._in[target].discard((rel, node_id))
        for rel, source in self._in.pop(node_id, set()):
            self._out[source].discard((rel, node_id))

    # ─── Reads ─────────────────────────────────────────────

    async def query(self, predicate: NodePredicate) -> list[Node]:
        predicate.validate()
        equals = predicate.equals_lower
        contains = predicate.contains_lower
        role = predicate.role_lower
        kinds = set(predicate.kinds) if predicate.kinds else None
        repos = set(predicate.repository_ids) if predicate.repository_ids else None

        async with self._lock:
            if equals is not None:
                candidate_ids = self._by_name.get(equals, set()) | self._by_fqn.get(equals, set())
                candidates = [self._nodes[i] for i in candidate_ids]
            else:
                candidates = list(self._nodes.values())

            matches = []
            for node in candidates:
                if kinds is not None and node.kind not in kinds:
                    continue
                if repos is not None and node.repository_id not in repos:
                    continue
                if node.unresolved and not predicate.include_unresolved:
                    continue
                if contains is not None and not self._contains(node, contains, predicate.contains_fields):
                    continue
                if role is not None and not self._has_role(node, role):
                    continue
                matches.append(node)

        matches.sort(key=lambda n: (n.name, n.fully_qualified_name))
        return matches[: predicate.limit]

    @staticmethod
    def _has_role(node: Node, role: str) -> bool:
        return any(
            value is not None and value.lower() == role
            for value in (node.business_capability, node.domain)
        )

    @staticmethod
    def _contains(node: Node, needle: str, fields) -> bool:
        for field_name in fields:
            value = _FIELD_GETTERS[field_name](node)
            if value is not None and needle in value.lower():
                return True
        return False

    async def vector_query(
        self,
        embedding: list[float],
        k: int,
        repository_ids: list[str] | None = None,
        kinds: list[NodeKind] | None = None,
    ) -> list[tuple[Node, float]]:
        if k < 1:
            return []
        query = np.asarray(embedding, dtype=float)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []
        repos = set(repository_ids) if repository_ids else None
        kind_set = set(kinds) if kinds else None

        async with self._lock:
            scoped = [
                n for n in self._nodes.values()
                if n.embedding is not None
                and len(n.embedding) == len(query)
                and (repos is None or n.repository_id in repos)
                and (kind_set is None or n.kind in kind_set)
            ]
        if not scoped:
            return []

        matrix = np.asarray([n.embedding for n in scoped], dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * query_norm
        zero = norms == 0.0
        norms[zero] = 1.0
        scores = np.clip((1.0 + (matrix @ query) / norms) / 2.0, 0.0, 1.0)
        # Same convention as normalized_cosine: a zero vector matches nothing
        scores[zero] = 0.0
        order = np.argsort(-scores, kind="stable")[:k]
        return [(scoped[i], float(scores[i])) for i in order]

    async def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    async def get_nodes(self, node_ids: list[str]) -> list[Node]:
        return [self._nodes[i] for i in node_ids if i in self._nodes]

    async def neighbors(
        self,
        node_ids: list[str],
        relation_types: list[RelationType],
        direction: Direction = Direction.OUT,
    ) -> list[Neighbor]:
        wanted = set(relation_types)
        result: list[Neighbor] = []
        async with self._lock:
            for origin in node_ids:
                hops: list[tuple[RelationType, str]] = []
                if direction in (Direction.OUT, Direction.BOTH):
                    hops.extend(self._out.get(origin, ()))
                if direction in (Direction.IN, Direction.BOTH):
                    hops.extend(self._in.get(origin, ()))
                for rel, other in sorted(hops, key=lambda h: (h[0].value, h[1])):
                    if rel in wanted and other in self._nodes:
                        result.append(Neighbor(origin, rel, self._nodes[other]))
        return result

    async def count_nodes(self, repository_id: str | None = None) -> int:
        return sum(
            1 for n in self._nodes.values()
            if repository_id is None or n.repository_id == repository_id
        )

    async def count_edges(self, repository_id: str | None = None) -> int:
        return sum(
            len(targets) for source, targets in self._out.items()
            if source in self._nodes
            and (repository_id is None or self._nodes[source].repository_id == repository_id)
        )

    # ─── Repository records ────────────────────────────────

    async def get_repository(self, repository_id: str) -> Repository | None:
        repository = self._repositories.get(repository_id)
        return replace(repository) if repository else None

    async def save_repository(self, repository: Repository) -> None:
        self._repositories[repository.id] = replace(repository)
