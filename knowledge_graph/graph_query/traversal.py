"""
Graph Traversal Service

Breadth-first, depth-limited walks over typed relationships. The visited
set is keyed by node id, so cycles (mutual calls, circular dependencies)
terminate and every node is reported once, at its shallowest depth.
"""

import logging

from knowledge_graph.graph_query.config import QuerySettings
from knowledge_graph.graph_query.models import ImpactReport
from knowledge_graph.graph_store import DEPENDS_ON, GraphStore, NodePredicate, resolve_relation_types
from knowledge_graph.shared.exceptions import QueryFailure, StoreFailure
from knowledge_graph.shared.models import Direction, Node, NodeKind, RelationType
from knowledge_graph.shared.models.api import TraversalRequest, TraversalResponse
from knowledge_graph.shared.observability import trace_function

logger = logging.getLogger("knowledge-graph.graph_query.traversal")

HIERARCHY_RELATIONS = [RelationType.EXTENDS, RelationType.IMPLEMENTS]
IMPACT_RELATIONS = [
    RelationType.CALLS,
    RelationType.USES,
    RelationType.EXTENDS,
    RelationType.IMPLEMENTS,
]
# A dependent with more direct dependents than this is on a critical path
CRITICAL_PATH_THRESHOLD = 3


def _parse_direction(direction: Direction | str) -> Direction:
    if isinstance(direction, Direction):
        return direction
    try:
        return Direction(str(direction).strip().upper())
    except ValueError:
        raise QueryFailure(
            f"Invalid direction: {direction!r}. Valid: {[d.value for d in Direction]}"
        ) from None


class GraphTraversalService:
    """Multi-hop expansion, dependency, caller, hierarchy and impact queries."""

    def __init__(self, store: GraphStore, settings: QuerySettings | None = None):
        self._store = store
        self._settings = settings or QuerySettings()

    @property
    def max_depth(self) -> int:
        return self._settings.max_traversal_depth

    def clamp_depth(self, depth: int | None) -> int:
        if depth is None:
            return 1
        return max(1, min(int(depth), self.max_depth))

    async def resolve(self, name_or_id: str, repository_ids: list[str] | None = None) -> Node | None:
        """Start node by id, then exact FQN, then exact (case-insensitive) name."""
        if not name_or_id or not name_or_id.strip():
            raise QueryFailure("A node id or name is required")
        try:
            node = await self._store.get_node(name_or_id)
            if node is not None and (not repository_ids or node.repository_id in repository_ids):
                return node
            candidates = await self._store.query(NodePredicate(
                repository_ids=repository_ids, name_or_fqn_equals=name_or_id, limit=50,
            ))
        except StoreFailure as e:
            raise QueryFailure(f"Cannot resolve {name_or_id!r}: {e.message}") from e
        if not candidates:
            return None
        for candidate in candidates:
            if candidate.fully_qualified_name == name_or_id:
                return candidate
        return candidates[0]

    @trace_function(name="graph_traversal.expand")
    async def expand(
        self,
        node_id: str,
        relation_types: list[str | RelationType],
        direction: Direction | str = Direction.OUT,
        max_depth: int = 1,
    ) -> list[Node]:
        """
        Nodes reachable from ``node_id`` within ``max_depth`` hops.

        ``max_depth`` is clamped to ``[1, max_traversal_depth]``. The start
        node is excluded. Results are ordered by depth, then name.

        Raises:
            QueryFailure: no or unknown relation types, unknown start node,
                or the store failed.
        """
        relations = resolve_relation_types(relation_types)
        walk = await self._walk([node_id], relations, _parse_direction(direction), self.clamp_depth(max_depth))
        return [node for node, _ in walk]

    async def traverse(self, request: TraversalRequest) -> TraversalResponse:
        """``expand`` for a validated API request."""
        nodes = await self.expand(
            request.node_id, request.relation_types, request.direction, request.max_depth,
        )
        return TraversalResponse.from_nodes(request.node_id, nodes)

    async def _walk(
        self,
        start_ids: list[str],
        relations: list[RelationType],
        direction: Direction,
        depth: int,
        exclude: set[str] | None = None,
    ) -> list[tuple[Node, int]]:
        try:
            if not await self._store.get_nodes(start_ids[:1]):
                raise QueryFailure(f"Unknown node: {start_ids[0]!r}")
            visited = set(start_ids) | (exclude or set())
            frontier = list(start_ids)
            found: list[tuple[Node, int]] = []
            for level in range(1, depth + 1):
                if not frontier:
                    break
                layer: dict[str, Node] = {}
                for neighbor in await self._store.neighbors(frontier, relations, direction):
                    node = neighbor.node
                    if node.id in visited:
                        continue
                    visited.add(node.id)
                    layer[node.id] = node
                ordered = sorted(layer.values(), key=lambda n: (n.name, n.fully_qualified_name))
                found.extend((node, level) for node in ordered)
                frontier = [node.id for node in ordered]
        except StoreFailure as e:
            raise QueryFailure(f"Traversal failed: {e.message}") from e
        logger.debug(
            "Walk from %s along %s (%s, depth %d): %d nodes",
            start_ids, [r.value for r in relations], direction.value, depth, len(found),
        )
        return found

    async def _methods_of(self, node: Node) -> list[str]:
        if node.kind != NodeKind.TYPE:
            return []
        try:
            neighbors = await self._store.neighbors([node.id], [RelationType.HAS_METHOD], Direction.OUT)
        except StoreFailure as e:
            raise QueryFailure(f"Traversal failed: {e.message}") from e
        return [n.node.id for n in neighbors]

    async def _require(self, node_id: str) -> Node:
        try:
            node = await self._store.get_node(node_id)
        except StoreFailure as e:
            raise QueryFailure(f"Traversal failed: {e.message}") from e
        if node is None:
            raise QueryFailure(f"Unknown node: {node_id!r}")
        return node

    # ─── Convenience walks ─────────────────────────────────

    async def dependencies_of(self, node_id: str, max_depth: int = 1) -> list[Node]:
        """What ``node_id`` uses, calls, extends or implements."""
        return await self.expand(node_id, [DEPENDS_ON], Direction.OUT, max_depth)

    async def callers_of(self, node_id: str, max_depth: int = 1) -> list[Node]:
        """Methods calling ``node_id``; for a type, callers of any of its methods."""
        node = await self._require(node_id)
        method_ids = await self._methods_of(node)
        start_ids = method_ids or [node.id]
        walk = await self._walk(
            start_ids, [RelationType.CALLS], Direction.IN, self.clamp_depth(max_depth),
            exclude={node.id},
        )
        return [n for n, _ in walk]

    async def hierarchy_of(self, node_id: str, max_depth: int = 1) -> list[Node]:
        """Supertypes and subtypes of ``node_id``."""
        return await self.expand(node_id, HIERARCHY_RELATIONS, Direction.BOTH, max_depth)

    @trace_function(name="graph_traversal.shortest_path")
    async def shortest_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[str | RelationType] | None = None,
        direction: Direction | str = Direction.OUT,
        max_depth: int | None = None,
    ) -> list[Node]:
        """
        Fewest-hop path from ``start_id`` to ``end_id``, both ends included.

        Follows DEPENDS_ON edges unless ``relation_types`` says otherwise.
        Returns an empty list when no path exists within ``max_depth`` hops.
        Among equally short paths the one through lexically smaller node
        names wins.
        """
        relations = resolve_relation_types(relation_types or [DEPENDS_ON])
        walk_direction = _parse_direction(direction)
        depth = self.clamp_depth(max_depth or self.max_depth)
        start = await self._require(start_id)
        end = await self._require(end_id)
        if start.id == end.id:
            return [start]

        parents: dict[str, Node | None] = {start.id: None}
        nodes: dict[str, Node] = {start.id: start}
        frontier = [start.id]
        try:
            for _ in range(depth):
                if not frontier:
                    break
                hops = await self._store.neighbors(frontier, relations, walk_direction)
                hops.sort(key=lambda h: (h.node.name, h.node.fully_qualified_name))
                next_frontier = []
                for hop in hops:
                    if hop.node.id in parents:
                        continue
                    parents[hop.node.id] = nodes[hop.origin_id]
                    nodes[hop.node.id] = hop.node
                    next_frontier.append(hop.node.id)
                if end.id in parents:
                    break
                frontier = next_frontier
        except StoreFailure as e:
            raise QueryFailure(f"Path search failed: {e.message}") from e

        if end.id not in parents:
            logger.debug("No path from %s to %s within %d hops", start_id, end_id, depth)
            return []
        path = []
        current: Node | None = end
        while current is not None:
            path.append(current)
            current = parents[current.id]
        path.reverse()
        return path

    async def find_by_role(
        self, role: str, repository_ids: list[str] | None = None, limit: int | None = None,
    ) -> list[Node]:
        """Declarations whose business capability or domain equals ``role``
        (case-insensitive), e.g. ``"Data model"`` or ``"persistence"``."""
        if not role or not role.strip():
            raise QueryFailure("A role is required")
        try:
            return await self._store.query(NodePredicate(
                repository_ids=repository_ids,
                role=role,
                limit=limit or self._settings.max_results,
            ))
        except StoreFailure as e:
            raise QueryFailure(f"Role lookup failed: {e.message}") from e

    @trace_function(name="graph_traversal.impact_of")
    async def impact_of(self, node_id: str, max_depth: int | None = None) -> ImpactReport:
        """
        Change impact of ``node_id``: its dependencies, its dependents and a
        risk level derived from the number of transitive dependents.
        """
        node = await self._require(node_id)
        depth = self.clamp_depth(max_depth or self.max_depth)
        dependencies = resolve_relation_types([DEPENDS_ON])

        outgoing = await self._walk([node.id], dependencies, Direction.OUT, depth)
        # Callers of a type's methods depend on the type too
        start_ids = [node.id] + await self._methods_of(node)
        incoming = await self._walk(start_ids, IMPACT_RELATIONS, Direction.IN, depth)

        direct_dependents = [n for n, level in incoming if level == 1]
        transitive_dependents = [n for n, _ in incoming]

        critical: list[str] = []
        if transitive_dependents:
            try:
                hops = await self._store.neighbors(
                    [n.id for n in transitive_dependents], IMPACT_RELATIONS, Direction.IN,
                )
            except StoreFailure as e:
                raise QueryFailure(f"Impact analysis failed: {e.message}") from e
            fan_in: dict[str, set[str]] = {}
            for hop in hops:
                fan_in.setdefault(hop.origin_id, set()).add(hop.node.id)
            critical = [
                n.fully_qualified_name for n in transitive_dependents
                if len(fan_in.get(n.id, ())) > CRITICAL_PATH_THRESHOLD
            ]

        report = ImpactReport(
            node=node,
            direct_dependencies=[n.fully_qualified_name for n, level in outgoing if level == 1],
            transitive_dependencies=[n.fully_qualified_name for n, _ in outgoing],
            direct_dependents=[n.fully_qualified_name for n in direct_dependents],
            transitive_dependents=[n.fully_qualified_name for n in transitive_dependents],
            critical_paths=critical,
            impact_score=ImpactReport.score(len(direct_dependents), len(transitive_dependents)),
            risk_level=ImpactReport.risk_for(len(transitive_dependents)),
        )
        logger.info(
            "Impact of %s: %d direct / %d transitive dependents, risk %s",
            node.fully_qualified_name, len(report.direct_dependents),
            len(report.transitive_dependents), report.risk_level.value,
        )
        return report
