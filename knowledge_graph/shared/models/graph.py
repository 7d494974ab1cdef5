"""
Graph Data Model

Nodes, edges and repository records shared by the extractor, the
embedding pipeline, every graph store backend and the query layer.

Nodes and edges reference each other only through string ids, so cyclic
structures (mutual calls, circular type dependencies) are plain data.
"""

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    TYPE = "Type"
    METHOD = "Method"
    FIELD = "Field"
    ANNOTATION = "Annotation"


class TypeKind(str, Enum):
    CLASS = "CLASS"
    INTERFACE = "INTERFACE"
    ENUM = "ENUM"
    DATA = "DATA"
    EXCEPTION = "EXCEPTION"


class RelationType(str, Enum):
    EXTENDS = "EXTENDS"
    IMPLEMENTS = "IMPLEMENTS"
    HAS_METHOD = "HAS_METHOD"
    HAS_FIELD = "HAS_FIELD"
    CALLS = "CALLS"
    USES = "USES"
    ANNOTATED_BY = "ANNOTATED_BY"
    THROWS = "THROWS"


class Direction(str, Enum):
    OUT = "OUT"
    IN = "IN"
    BOTH = "BOTH"


class SearchMode(str, Enum):
    EXACT = "EXACT"
    SEMANTIC = "SEMANTIC"
    HYBRID = "HYBRID"


class IndexState(str, Enum):
    NOT_INDEXED = "NOT_INDEXED"
    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


def _short_hash(content: str, length: int = 24) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]


def make_node_id(repository_id: str, kind: NodeKind | str, fully_qualified_name: str) -> str:
    """Deterministic node id: same repository + kind + FQN always yields the same id."""
    kind_value = kind.value if isinstance(kind, NodeKind) else str(kind)
    return _short_hash(f"{repository_id}:{kind_value}:{fully_qualified_name}")


def normalize_repository_url(url: str) -> str:
    """
    Normalize a repository URL or path for comparison.

    Trailing slashes and a ``.git`` suffix are dropped, Windows separators
    become ``/`` and the result is lower-cased, so
    ``https://github.com/Org/Repo.git/`` and ``https://github.com/org/repo``
    identify the same repository.
    """
    if not url:
        return ""
    normalized = url.strip().replace("\\", "/")
    normalized = normalized.rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    return normalized.lower()


def make_repository_id(url: str, branch: str | None = None) -> str:
    """Repository id keyed by normalized URL + branch (default ``main``)."""
    return _short_hash(f"{normalize_repository_url(url)}@{branch or 'main'}", length=16)


# ─── Nodes ──────────────────────────────────────────────────


@dataclass
class Node:
    """A code entity: a type, method, field or annotation."""

    id: str
    kind: NodeKind
    name: str
    fully_qualified_name: str
    repository_id: str
    package_name: str | None = None
    file_path: str | None = None
    source_code: str | None = None
    description: str | None = None
    embedding: list[float] | None = None
    domain: str | None = None
    business_capability: str | None = None
    type_kind: TypeKind | None = None
    signature: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    unresolved: bool = False

    def __post_init__(self) -> None:
        if self.embedding is not None and len(self.embedding) == 0:
            raise ValueError(
                f"Node {self.fully_qualified_name} has a zero-length embedding; "
                "use None for 'no embedding'"
            )

    @classmethod
    def create(
        cls,
        kind: NodeKind,
        name: str,
        fully_qualified_name: str,
        repository_id: str,
        **attributes: Any,
    ) -> "Node":
        """Build a node whose id is derived from repository, kind and FQN."""
        return cls(
            id=make_node_id(repository_id, kind, fully_qualified_name),
            kind=kind,
            name=name,
            fully_qualified_name=fully_qualified_name,
            repository_id=repository_id,
            **attributes,
        )

    @classmethod
    def placeholder(
        cls, kind: NodeKind, fully_qualified_name: str, repository_id: str,
    ) -> "Node":
        """A referenced-but-not-declared entity (e.g. a type imported from elsewhere)."""
        name = fully_qualified_name.rsplit(".", 1)[-1]
        package = fully_qualified_name.rsplit(".", 1)[0] if "." in fully_qualified_name else None
        return cls.create(
            kind, name, fully_qualified_name, repository_id,
            package_name=package, unresolved=True,
        )

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    def with_embedding(self, embedding: list[float] | None) -> "Node":
        """Return a copy carrying ``embedding`` (validated by __post_init__)."""
        return replace(self, embedding=list(embedding) if embedding is not None else None)

    # ─── Property mapping (graph store wire format) ────────

    def to_properties(self) -> dict[str, Any]:
        """Flatten into store properties. ``None`` values are dropped so a
        missing attribute stays missing instead of becoming an empty string."""
        props = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "nameLower": self.name.lower(),
            "fullyQualifiedName": self.fully_qualified_name,
            "fqnLower": self.fully_qualified_name.lower(),
            "repositoryId": self.repository_id,
            "packageName": self.package_name,
            "filePath": self.file_path,
            "sourceCode": self.source_code,
            "description": self.description,
            "domain": self.domain,
            "businessCapability": self.business_capability,
            "typeKind": self.type_kind.value if self.type_kind else None,
            "signature": self.signature,
            "lineStart": self.line_start,
            "lineEnd": self.line_end,
            "unresolved": self.unresolved,
        }
        return {k: v for k, v in props.items() if v is not None}

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> "Node":
        embedding = props.get("embedding")
        type_kind = props.get("typeKind")
        return cls(
            id=props["id"],
            kind=NodeKind(props["kind"]),
            name=props["name"],
            fully_qualified_name=props["fullyQualifiedName"],
            repository_id=props["repositoryId"],
            package_name=props.get("packageName"),
            file_path=props.get("filePath"),
            source_code=props.get("sourceCode"),
            description=props.get("description"),
            embedding=list(embedding) if embedding else None,
            domain=props.get("domain"),
            business_capability=props.get("businessCapability"),
            type_kind=TypeKind(type_kind) if type_kind else None,
            signature=props.get("signature"),
            line_start=props.get("lineStart"),
            line_end=props.get("lineEnd"),
            unresolved=bool(props.get("unresolved", False)),
        )


# ─── Edges ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Edge:
    """Directed, typed relationship between two node ids."""

    source_id: str
    target_id: str
    type: RelationType

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_id, self.type.value, self.target_id)


# ─── Repository ─────────────────────────────────────────────


@dataclass
class Repository:
    """An indexed source tree and its commit fingerprint."""

    id: str
    url: str
    branch: str = "main"
    last_indexed_commit: str | None = None
    last_indexed_at: datetime | None = None
    state: IndexState = IndexState.NOT_INDEXED
    last_error: str | None = None

    @classmethod
    def for_url(cls, url: str, branch: str | None = None) -> "Repository":
        branch = branch or "main"
        return cls(id=make_repository_id(url, branch), url=url, branch=branch)

    def to_properties(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "normalizedUrl": normalize_repository_url(self.url),
            "branch": self.branch,
            "lastIndexedCommit": self.last_indexed_commit,
            "lastIndexedAt": self.last_indexed_at.isoformat() if self.last_indexed_at else None,
            "state": self.state.value,
            "lastError": self.last_error,
        }

    @classmethod
    def from_properties(cls, props: dict[str, Any]) -> "Repository":
        indexed_at = props.get("lastIndexedAt")
        return cls(
            id=props["id"],
            url=props["url"],
            branch=props.get("branch") or "main",
            last_indexed_commit=props.get("lastIndexedCommit"),
            last_indexed_at=datetime.fromisoformat(indexed_at) if indexed_at else None,
            state=IndexState(props.get("state") or IndexState.NOT_INDEXED.value),
            last_error=props.get("lastError"),
        )


