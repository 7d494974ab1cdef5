"""
Graph Store contract

Every backend (Neo4j, in-memory) implements ``GraphStore``. The query layer
and the indexing controller only talk to this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from knowledge_graph.shared.exceptions import QueryFailure
from knowledge_graph.shared.models import Direction, Edge, Node, NodeKind, RelationType, Repository

# Text fields a predicate may run substring matches against
SEARCHABLE_FIELDS = ("name", "fully_qualified_name", "description", "file_path", "signature")
DEFAULT_CONTAINS_FIELDS = ("name", "fully_qualified_name", "description", "file_path")

DEPENDS_ON = "DEPENDS_ON"
DEPENDS_ON_TYPES = (
    RelationType.USES,
    RelationType.CALLS,
    RelationType.EXTENDS,
    RelationType.IMPLEMENTS,
)

# Placeholders of these kinds can be merged into a real declaration
RESOLVABLE_KINDS = (NodeKind.TYPE, NodeKind.METHOD)


def resolve_relation_types(relation_types) -> list[RelationType]:
    """Validate relation type names and expand the DEPENDS_ON alias.

    Raises:
        QueryFailure: empty input or an unknown relation type.
    """
    if not relation_types:
        raise QueryFailure("At least one relation type is required")
    resolved: list[RelationType] = []
    for raw in relation_types:
        name = raw.value if isinstance(raw, RelationType) else str(raw).strip().upper()
        if name == DEPENDS_ON:
            candidates = list(DEPENDS_ON_TYPES)
        else:
            try:
                candidates = [RelationType(name)]
            except ValueError:
                valid = sorted([r.value for r in RelationType] + [DEPENDS_ON])
                raise QueryFailure(f"Invalid relationship type: {raw!r}. Valid: {valid}") from None
        for rel in candidates:
            if rel not in resolved:
                resolved.append(rel)
    return resolved


def placeholder_matches(placeholder_fqn: str, declared_fqn: str) -> bool:
    """Whether a placeholder (already known to share the declaration's simple
    name) may be merged into it: the placeholder FQN is a suffix of the
    declared one (``User`` / ``models.User``) or both live under the same
    top-level package (re-exports such as ``app.User`` for ``app.models.User``)."""
    if declared_fqn == placeholder_fqn or declared_fqn.endswith("." + placeholder_fqn):
        return True
    if "." not in placeholder_fqn:
        return False
    return placeholder_fqn.split(".")[0] == declared_fqn.split(".")[0]


def normalized_cosine(a, b) -> float:
    """Cosine similarity mapped to [0, 1] as ``(1 + cos) / 2``."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    cosine = float(np.dot(va, vb) / denom)
    return max(0.0, min(1.0, (1.0 + cosine) / 2.0))


@dataclass
class NodePredicate:
    """
    Filter for ``GraphStore.query``.

    All conditions are ANDed. ``name_or_fqn_equals`` is a case-insensitive
    equality on name or fully-qualified name; ``contains`` is a
    case-insensitive substring match on any of ``contains_fields``; ``role``
    is a case-insensitive equality on business capability or domain. A node
    missing one of those properties simply does not match on it.
    """

    kinds: list[NodeKind] | None = None
    repository_ids: list[str] | None = None
    name_or_fqn_equals: str | None = None
    contains: str | None = None
    contains_fields: tuple[str, ...] = DEFAULT_CONTAINS_FIELDS
    role: str | None = None
    include_unresolved: bool = False
    limit: int = 50

    def validate(self) -> "NodePredicate":
        if self.limit < 1:
            raise QueryFailure(f"Predicate limit must be >= 1, got {self.limit}")
        unknown = [f for f in self.contains_fields if f not in SEARCHABLE_FIELDS]
        if unknown:
            raise QueryFailure(f"Unknown predicate field(s): {unknown}. Valid: {list(SEARCHABLE_FIELDS)}")
        if self.contains is not None and not self.contains.strip():
            raise QueryFailure("Predicate 'contains' must not be blank")
        if self.contains is not None and not self.contains_fields:
            raise QueryFailure("Predicate 'contains' needs at least one field")
        if self.name_or_fqn_equals is not None and not self.name_or_fqn_equals.strip():
            raise QueryFailure("Predicate 'name_or_fqn_equals' must not be blank")
        if self.role is not None and not self.role.strip():
            raise QueryFailure("Predicate 'role' must not be blank")
        if (
            self.name_or_fqn_equals is None
            and self.contains is None
            and self.role is None
            and not self.kinds
            and not self.repository_ids
        ):
            raise QueryFailure("Predicate has nothing to match on")
        return self

    @property
    def equals_lower(self) -> str | None:
        return self.name_or_fqn_equals.strip().lower() if self.name_or_fqn_equals else None

    @property
    def contains_lower(self) -> str | None:
        return self.contains.strip().lower() if self.contains else None

    @property
    def role_lower(self) -> str | None:
        return self.role.strip().lower() if self.role else None


@dataclass
class Neighbor:
    """One hop: ``origin_id`` reached ``node`` through ``relation``."""

    origin_id: str
    relation: RelationType
    node: Node


class GraphStore(ABC):
    """Persistence and lookup of nodes, edges and repository records."""

    # ─── Writes ────────────────────────────────────────────

    @abstractmethod
    async def upsert_nodes(self, nodes: list[Node]) -> int:
        """Insert or update nodes by id. A placeholder never overwrites a
        real declaration. Returns the number of nodes written."""

    @abstractmethod
    async def upsert_edges(self, edges: list[Edge]) -> int:
        """Insert edges idempotently (keyed by source, type, target).
        Edges whose endpoints are unknown are dropped. Returns the number
        of edges present after the call."""

    @abstractmethod
    async def ensure_indexes(self) -> None:
        """Create lookup, uniqueness and vector indexes if missing."""

    @abstractmethod
    async def resolve_placeholders(self, repository_id: str) -> int:
        """Merge placeholder nodes into matching declarations. Returns the
        number of placeholders resolved."""

    @abstractmethod
    async def delete_repository(self, repository_id: str) -> int:
        """Remove every node of a repository and its record."""

    # ─── Reads ─────────────────────────────────────────────

    @abstractmethod
    async def query(self, predicate: NodePredicate) -> list[Node]:
        """Nodes matching ``predicate``, ordered by name.

        Raises:
            QueryFailure: malformed predicate.
        """

    @abstractmethod
    async def vector_query(
        self,
        embedding: list[float],
        k: int,
        repository_ids: list[str] | None = None,
        kinds: list[NodeKind] | None = None,
    ) -> list[tuple[Node, float]]:
        """Top-k nodes by normalized cosine, scoped to ``repository_ids``
        before scoring. Nodes without an embedding are never returned."""

    @abstractmethod
    async def get_node(self, node_id: str) -> Node | None:
        ...

    @abstractmethod
    async def get_nodes(self, node_ids: list[str]) -> list[Node]:
        ...

    @abstractmethod
    async def neighbors(
        self,
        node_ids: list[str],
        relation_types: list[RelationType],
        direction: Direction = Direction.OUT,
    ) -> list[Neighbor]:
        """One-hop neighbours of every id in ``node_ids``."""

    @abstractmethod
    async def count_nodes(self, repository_id: str | None = None) -> int:
        ...

    @abstractmethod
    async def count_edges(self, repository_id: str | None = None) -> int:
        ...

    # ─── Repository records ────────────────────────────────

    @abstractmethod
    async def get_repository(self, repository_id: str) -> Repository | None:
        ...

    @abstractmethod
    async def save_repository(self, repository: Repository) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
