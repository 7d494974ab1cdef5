"""
Extraction Models

Data classes produced by the entity extractor and consumed by the
indexing controller.
"""

from dataclasses import dataclass, field

from knowledge_graph.shared.models import Edge, Node, NodeKind


@dataclass
class ParseFailure:
    """A file that could not be extracted. Reported, never raised."""

    file_path: str
    cause: str
    line: int | None = None

    def __str__(self) -> str:
        where = f"{self.file_path}:{self.line}" if self.line else self.file_path
        return f"{where}: {self.cause}"


@dataclass
class ExtractionResult:
    """Nodes and edges extracted from one source file."""

    file_path: str
    module_name: str
    content_hash: str
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    @property
    def declared_nodes(self) -> list[Node]:
        return [n for n in self.nodes if not n.unresolved]

    def count(self, kind: NodeKind) -> int:
        return sum(1 for n in self.declared_nodes if n.kind == kind)


@dataclass
class MemberSummary:
    """Short member description fed to the description generator."""

    name: str
    signature: str
    decorators: list[str] = field(default_factory=list)


@dataclass
class EntityProfile:
    """
    Everything the description generator needs to know about one entity.

    Built by the extractor while the AST is still available, so the
    enriched synopsis can mention members, supertypes and behaviour that
    are not visible from the node's own properties.
    """

    kind: NodeKind
    name: str
    fully_qualified_name: str
    package_name: str | None
    file_path: str
    docstring: str | None = None
    decorators: list[str] = field(default_factory=list)
    bases: list[str] = field(default_factory=list)
    members: list[MemberSummary] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    calls: list[str] = field(default_factory=list)
    signature: str | None = None
    parent_name: str | None = None
    source: str = ""
    type_kind: str | None = None


def path_to_module(file_path: str) -> str:
    """
    Convert a file path to a Python module name.
    e.g., 'app/routing.py' -> 'app.routing'
         'app\\__init__.py' -> 'app'

    Handles both forward slashes and backslashes (Windows).
    """
    path = file_path[:-3] if file_path.endswith(".py") else file_path
    path = path.replace("/__init__", "").replace("\\__init__", "")
    if path == "__init__":
        return ""
    return path.replace("/", ".").replace("\\", ".").strip(".")
