"""
Entity Extractor

Deterministic extraction of typed graph nodes and edges from one Python
source file. No cross-file state: names declared elsewhere are resolved
through the file's import table and emitted as placeholder nodes that the
graph store later merges with the real declaration.

Relationships are extracted from the whole class body at parse time, so a
type that is only referenced deep inside a method (a local variable, a
constructor call, an ``except`` clause) still produces a USES edge from the
enclosing type. This is what keeps dependencies intact where fixed-size
text chunking would split them apart.
"""

import ast
import builtins
import hashlib
import logging
import textwrap
from dataclasses import dataclass, field

from knowledge_graph.indexer.descriptions import (
    DescriptionGenerator,
    decorator_roles,
    infer_domain,
    infer_type_purpose,
)
from knowledge_graph.indexer.models import (
    EntityProfile,
    ExtractionResult,
    MemberSummary,
    ParseFailure,
    path_to_module,
)
from knowledge_graph.shared.models import Edge, Node, NodeKind, RelationType, TypeKind

logger = logging.getLogger("knowledge-graph.indexer.extractor")

BUILTIN_NAMES = frozenset(dir(builtins))

TYPING_NAMES = frozenset({
    "Any", "Optional", "Union", "List", "Dict", "Set", "FrozenSet", "Tuple",
    "Callable", "Iterable", "Iterator", "Generator", "AsyncIterator",
    "AsyncIterable", "AsyncGenerator", "Awaitable", "Coroutine", "Sequence",
    "MutableSequence", "Mapping", "MutableMapping", "Type", "Literal",
    "ClassVar", "Final", "Annotated", "TypeVar", "Generic", "Self",
    "NoReturn", "Never", "ParamSpec", "Concatenate", "TypeAlias", "DefaultDict",
    "OrderedDict", "Counter", "Deque", "IO", "TextIO", "BinaryIO", "Pattern",
    "Match", "Hashable", "Sized", "Collection", "Container",
})

# Imported from these modules, a name is a typing construct, not a dependency
TYPING_MODULES = ("typing", "typing_extensions", "collections.abc", "builtins", "__future__")

INTERFACE_BASES = frozenset({"Protocol", "ABC"})
ENUM_BASES = frozenset({"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag"})
DATA_BASES = frozenset({"BaseModel", "TypedDict", "NamedTuple", "BaseSettings"})
DATA_DECORATORS = frozenset({"dataclass", "attrs", "define", "frozen", "s"})
EXCEPTION_BASES = frozenset({"Exception", "BaseException"})
# Bases that classify a type but are not worth an edge
MARKER_BASES = frozenset({"object", "Protocol", "ABC", "Generic", "ABCMeta"})


def _is_builtin_exception(name: str) -> bool:
    obj = getattr(builtins, name, None)
    return isinstance(obj, type) and issubclass(obj, BaseException)


def _dotted_name(node: ast.AST) -> str | None:
    """``a.b.C`` for Name/Attribute chains, None for anything else."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        value = _dotted_name(node.value)
        return f"{value}.{node.attr}" if value else None
    return None


def _call_to_name(node: ast.expr) -> str | None:
    """Readable name for a Call's func (used in descriptions only)."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        value_name = _call_to_name(node.value)
        if value_name:
            return f"{value_name}.{node.attr}"
        return node.attr
    return None


def _compute_hash(content: str) -> str:
    """SHA-256 of the normalized content, used for change detection."""
    return hashlib.sha256(content.strip().encode("utf-8")).hexdigest()[:16]


# ─── Per-file symbol table ────────────────────────────────


@dataclass
class _ClassInfo:
    node: ast.ClassDef
    local_name: str
    fqn: str
    methods: dict[str, ast.FunctionDef | ast.AsyncFunctionDef] = field(default_factory=dict)
    type_kind: TypeKind = TypeKind.CLASS
    base_names: list[str] = field(default_factory=list)
    decorator_names: list[str] = field(default_factory=list)


class _FileScope:
    """Import table plus the classes and functions declared in one module."""

    def __init__(self, module_name: str, is_package: bool):
        self.module_name = module_name
        self.is_package = is_package
        self.root_package = module_name.split(".")[0] if module_name else ""
        self.imports: dict[str, str] = {}
        self.relative_imports: set[str] = set()
        self.relative_targets: set[str] = set()
        self.classes: dict[str, _ClassInfo] = {}
        self.functions: dict[str, str] = {}

    def qualify(self, local_name: str) -> str:
        return f"{self.module_name}.{local_name}" if self.module_name else local_name

    # ─── Imports ───────────────────────────────────────────

    def collect_imports(self, tree: ast.Module) -> None:
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.asname:
                        self.imports[alias.asname] = alias.name
                    else:
                        head = alias.name.split(".")[0]
                        self.imports[head] = head
            elif isinstance(node, ast.ImportFrom):
                level = node.level or 0
                base = node.module or ""
                if level:
                    base = self._resolve_relative_import(base, level)
                for alias in node.names:
                    if alias.name == "*":
                        continue
                    local = alias.asname or alias.name
                    self.imports[local] = f"{base}.{alias.name}" if base else alias.name
                    if level:
                        self.relative_imports.add(local)
                        self.relative_targets.add(self.imports[local])

    def _resolve_relative_import(self, target: str, level: int) -> str:
        """
        Resolve a relative import to an absolute module path.

        For __init__.py files the module IS the package, so level=1 stays
        at the same level; for regular files level=1 is the parent package.
        """
        parts = self.module_name.split(".") if self.module_name else []
        strip = level - 1 if self.is_package else level
        base_parts = parts[: len(parts) - strip] if strip > 0 else parts
        if strip > len(parts):
            base_parts = []
        if target:
            return ".".join(base_parts + [target])
        return ".".join(base_parts)

    # ─── Resolution ────────────────────────────────────────

    def resolve(self, dotted: str) -> str | None:
        """Fully-qualified name for a dotted name as written, or None."""
        if dotted in self.classes:
            return self.classes[dotted].fqn
        if dotted in self.functions:
            return self.functions[dotted]
        head, _, rest = dotted.partition(".")
        if head in self.imports:
            base = self.imports[head]
            return f"{base}.{rest}" if rest else base
        if rest and head in self.classes:
            return f"{self.classes[head].fqn}.{rest}"
        return None

    def resolve_type(self, dotted: str) -> str | None:
        """Fully-qualified type name, or None for builtins, typing
        constructs, functions and names that do not look like types."""
        if dotted in self.classes:
            return self.classes[dotted].fqn
        last = dotted.rsplit(".", 1)[-1]
        if dotted in BUILTIN_NAMES or dotted in ("self", "cls"):
            return None
        fqn = self.resolve(dotted)
        if fqn is None:
            if dotted in TYPING_NAMES:
                return None
            # Unknown capitalized name (star import, global): keep it as written
            return dotted if last[:1].isupper() else None
        if fqn.startswith(TYPING_MODULES) or fqn in self.functions.values():
            return None
        if self.local_class_fqn(fqn):
            return fqn
        return fqn if last[:1].isupper() else None

    def local_class_fqn(self, fqn: str) -> _ClassInfo | None:
        for info in self.classes.values():
            if info.fqn == fqn:
                return info
        return None

    def is_internal(self, fqn: str, written_head: str | None = None) -> bool:
        """True when ``fqn`` belongs to this repository (same root package or
        reached through a relative import, by name as written or by FQN)."""
        if written_head and written_head in self.relative_imports:
            return True
        if any(fqn == t or fqn.startswith(t + ".") for t in self.relative_targets):
            return True
        return bool(self.root_package) and fqn.split(".")[0] == self.root_package


# ─── Body analysis ────────────────────────────────────────


@dataclass
class _BodyFacts:
    uses: set[str] = field(default_factory=set)
    calls: set[str] = field(default_factory=set)
    call_names: set[str] = field(default_factory=set)
    throws: set[str] = field(default_factory=set)
    local_types: dict[str, str] = field(default_factory=dict)


def _iter_body(func: ast.AST):
    """Every node inside a function body. Nested functions and lambdas are
    attributed to the enclosing function; nested classes are not."""
    worklist = list(getattr(func, "body", []))
    while worklist:
        child = worklist.pop()
        yield child
        if isinstance(child, ast.ClassDef):
            continue
        worklist.extend(ast.iter_child_nodes(child))


class EntityExtractor:
    """
    Extracts Type / Method / Field / Annotation nodes and their edges.

    ``extract`` never raises for bad input: a file that cannot be parsed
    comes back as a ParseFailure so the caller's batch keeps going.
    """

    def __init__(
        self,
        description_generator: DescriptionGenerator | None = None,
        max_source_chars: int = 50_000,
    ):
        self._describer = description_generator or DescriptionGenerator()
        self._max_source_chars = max_source_chars

    def extract(
        self,
        source_text: str,
        file_path: str,
        repository_id: str,
    ) -> ExtractionResult | ParseFailure:
        """
        Parse one file into nodes and edges.

        Args:
            source_text: Python source code.
            file_path: Path relative to the repository root (used for FQNs).
            repository_id: Owning repository (part of every node id).

        Returns:
            ExtractionResult on success, ParseFailure otherwise.
        """
        try:
            tree = ast.parse(source_text, filename=file_path)
        except SyntaxError as e:
            logger.warning("Syntax error in %s: %s", file_path, e)
            return ParseFailure(file_path, f"SyntaxError: {e.msg}", e.lineno)
        except (ValueError, RecursionError, MemoryError) as e:
            logger.warning("Cannot parse %s: %s", file_path, e)
            return ParseFailure(file_path, f"{type(e).__name__}: {e}")

        try:
            return _FileExtraction(
                tree, source_text, file_path, repository_id,
                self._describer, self._max_source_chars,
            ).run()
        except Exception as e:
            logger.error("Extraction failed for %s: %s", file_path, e, exc_info=True)
            return ParseFailure(file_path, f"{type(e).__name__}: {e}")


class _FileExtraction:
    """State for extracting a single parsed module."""

    def __init__(
        self,
        tree: ast.Module,
        source: str,
        file_path: str,
        repository_id: str,
        describer: DescriptionGenerator,
        max_source_chars: int,
    ):
        self.tree = tree
        self.source = source
        self.source_lines = source.splitlines()
        self.file_path = file_path
        self.repository_id = repository_id
        self.describer = describer
        self.max_source_chars = max_source_chars
        self.scope = _FileScope(path_to_module(file_path), file_path.endswith("__init__.py"))
        self.nodes: dict[str, Node] = {}
        self.placeholders: dict[str, Node] = {}
        self.edges: dict[tuple[str, str, str], Edge] = {}

    # ─── Driver ────────────────────────────────────────────

    def run(self) -> ExtractionResult:
        self.scope.collect_imports(self.tree)
        self._declare(self.tree.body, prefix="")

        for info in self.scope.classes.values():
            self._extract_class(info)

        for stmt in self.tree.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self._extract_method(stmt, owner=None)

        placeholders = [p for pid, p in self.placeholders.items() if pid not in self.nodes]
        return ExtractionResult(
            file_path=self.file_path,
            module_name=self.scope.module_name,
            content_hash=_compute_hash(self.source),
            nodes=list(self.nodes.values()) + placeholders,
            edges=list(self.edges.values()),
        )

    def _declare(self, body: list[ast.stmt], prefix: str) -> None:
        """First pass: register every class (nested included) and module function."""
        for stmt in body:
            if isinstance(stmt, ast.ClassDef):
                local = f"{prefix}{stmt.name}"
                info = _ClassInfo(node=stmt, local_name=local, fqn=self.scope.qualify(local))
                info.base_names = [n for n in (_dotted_name(b) for b in stmt.bases) if n]
                info.decorator_names = [self._decorator_name(d) for d in stmt.decorator_list]
                for item in stmt.body:
                    if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                        info.methods[item.name] = item
                self.scope.classes[local] = info
                self._declare(stmt.body, prefix=f"{local}.")
            elif not prefix and isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self.scope.functions[stmt.name] = self.scope.qualify(stmt.name)

        if not prefix:
            for info in self.scope.classes.values():
                info.type_kind = self._classify(info)

    def _classify(self, info: _ClassInfo) -> TypeKind:
        bases = {b.rsplit(".", 1)[-1] for b in info.base_names}
        decorators = {d.rsplit(".", 1)[-1] for d in info.decorator_names}
        metaclass = next(
            (_dotted_name(k.value) for k in info.node.keywords if k.arg == "metaclass"), None,
        )
        if bases & ENUM_BASES:
            return TypeKind.ENUM
        if bases & EXCEPTION_BASES or any(b.endswith(("Error", "Exception")) for b in bases):
            return TypeKind.EXCEPTION
        if bases & INTERFACE_BASES or (metaclass or "").endswith("ABCMeta"):
            return TypeKind.INTERFACE
        if bases & DATA_BASES or decorators & DATA_DECORATORS:
            return TypeKind.DATA
        for base in info.base_names:
            parent = self.scope.classes.get(base)
            if parent is not None and parent is not info and parent.type_kind == TypeKind.EXCEPTION:
                return TypeKind.EXCEPTION
        return TypeKind.CLASS

    # ─── Node / edge helpers ───────────────────────────────

    def _add_node(self, node: Node) -> Node:
        self.nodes[node.id] = node
        return node

    def _ref(self, kind: NodeKind, fqn: str) -> str:
        """Id of a referenced entity, registering a placeholder when needed."""
        placeholder = Node.placeholder(kind, fqn, self.repository_id)
        if placeholder.id not in self.nodes:
            self.placeholders.setdefault(placeholder.id, placeholder)
        return placeholder.id

    def _edge(self, source_id: str, target_id: str, rel: RelationType) -> None:
        if source_id == target_id and rel == RelationType.USES:
            return
        edge = Edge(source_id, target_id, rel)
        self.edges.setdefault(edge.key, edge)

    def _source_of(self, node: ast.AST) -> str:
        """Source of a node including its decorator lines, dedented."""
        decorator_list = getattr(node, "decorator_list", [])
        start = (decorator_list[0].lineno if decorator_list else node.lineno) - 1
        end = getattr(node, "end_lineno", None) or node.lineno
        text = textwrap.dedent("\n".join(self.source_lines[start:end]))
        if len(text) > self.max_source_chars:
            return text[: self.max_source_chars]
        return text

    def _decorator_name(self, node: ast.expr) -> str:
        target = node.func if isinstance(node, ast.Call) else node
        return _dotted_name(target) or ast.unparse(target)

    def _annotation_ids(self, decorator_names: list[str]) -> list[str]:
        ids = []
        for name in decorator_names:
            fqn = self.scope.resolve(name) or name
            ann = Node.create(
                NodeKind.ANNOTATION, name, fqn, self.repository_id,
                package_name=fqn.rsplit(".", 1)[0] if "." in fqn else None,
            )
            profile = EntityProfile(
                kind=NodeKind.ANNOTATION, name=name, fully_qualified_name=fqn,
                package_name=ann.package_name, file_path=self.file_path,
            )
            ann.description = self.describer.describe(profile)
            roles = decorator_roles([name])
            ann.business_capability = roles[0] if roles else None
            self._add_node(ann)
            ids.append(ann.id)
        return ids

    def _type_refs(self, expr: ast.AST | None) -> list[str]:
        """Type FQNs referenced by an annotation expression."""
        if expr is None:
            return []
        if isinstance(expr, ast.Constant) and isinstance(expr.value, str):
            try:
                parsed = ast.parse(expr.value, mode="eval").body
            except SyntaxError:
                return []
            return self._type_refs(parsed)
        if isinstance(expr, (ast.Name, ast.Attribute)):
            dotted = _dotted_name(expr)
            fqn = self.scope.resolve_type(dotted) if dotted else None
            return [fqn] if fqn else []
        if isinstance(expr, ast.Subscript):
            return self._type_refs(expr.value) + self._type_refs(expr.slice)
        if isinstance(expr, (ast.Tuple, ast.List)):
            refs: list[str] = []
            for elt in expr.elts:
                refs.extend(self._type_refs(elt))
            return refs
        if isinstance(expr, ast.BinOp):
            return self._type_refs(expr.left) + self._type_refs(expr.right)
        return []

    def _primary_type(self, expr: ast.AST | None) -> str | None:
        """The type a value annotated with ``expr`` has: ``T`` for ``T``,
        ``Optional[T]`` and ``T | None``; None for containers of T."""
        if isinstance(expr, ast.Constant) and isinstance(expr.value, str):
            try:
                expr = ast.parse(expr.value, mode="eval").body
            except SyntaxError:
                return None
        if isinstance(expr, ast.Subscript):
            outer = _dotted_name(expr.value) or ""
            if outer.rsplit(".", 1)[-1] == "Optional":
                return self._primary_type(expr.slice)
            refs = self._type_refs(expr.value)
            return refs[0] if refs else None
        if isinstance(expr, ast.BinOp) and isinstance(expr.op, ast.BitOr):
            return self._primary_type(expr.left) or self._primary_type(expr.right)
        if isinstance(expr, (ast.Name, ast.Attribute)):
            refs = self._type_refs(expr)
            return refs[0] if refs else None
        return None

    def _constructed_type(self, value: ast.AST | None) -> str | None:
        """Type FQN when ``value`` is ``SomeType(...)``."""
        if isinstance(value, ast.Await):
            value = value.value
        if isinstance(value, ast.Call):
            dotted = _dotted_name(value.func)
            if dotted:
                return self.scope.resolve_type(dotted)
        return None

    # ─── Classes ───────────────────────────────────────────

    def _extract_class(self, info: _ClassInfo) -> None:
        cls = info.node
        self_types = self._collect_self_types(info)
        field_nodes = self._extract_fields(info, self_types)

        type_uses: set[str] = set()
        members: list[MemberSummary] = []
        method_ids: list[str] = []
        for method in info.methods.values():
            method_node, facts = self._extract_method(method, owner=info, self_types=self_types)
            method_ids.append(method_node.id)
            type_uses |= facts.uses
            members.append(MemberSummary(
                name=method.name,
                signature=method_node.signature or method.name,
                decorators=[self._decorator_name(d) for d in method.decorator_list],
            ))
        for fqn in self_types.values():
            if fqn:
                type_uses.add(fqn)
        for item in cls.body:
            if isinstance(item, ast.AnnAssign):
                type_uses.update(self._type_refs(item.annotation))

        package = self.scope.module_name or None
        bases_written = [b for b in info.base_names if b.rsplit(".", 1)[-1] not in MARKER_BASES]
        base_fqns: list[tuple[str, TypeKind | None]] = []
        for base in bases_written:
            local = self.scope.classes.get(base)
            fqn = local.fqn if local else (self.scope.resolve(base) or base)
            base_fqns.append((fqn, local.type_kind if local else None))

        dependencies = sorted(
            {u.rsplit(".", 1)[-1] for u in type_uses if u != info.fqn}
        )
        profile = EntityProfile(
            kind=NodeKind.TYPE,
            name=cls.name,
            fully_qualified_name=info.fqn,
            package_name=package,
            file_path=self.file_path,
            docstring=ast.get_docstring(cls),
            decorators=info.decorator_names,
            bases=bases_written,
            members=[MemberSummary(f.name, f.signature or f.name) for f in field_nodes] + members,
            dependencies=dependencies,
            source=self._source_of(cls),
            type_kind=info.type_kind.value,
        )
        type_node = self._add_node(Node.create(
            NodeKind.TYPE, cls.name, info.fqn, self.repository_id,
            package_name=package,
            file_path=self.file_path,
            source_code=profile.source,
            description=self.describer.describe(profile),
            domain=infer_domain(package),
            business_capability=infer_type_purpose(profile),
            type_kind=info.type_kind,
            line_start=cls.lineno,
            line_end=cls.end_lineno or cls.lineno,
        ))

        for method_id in method_ids:
            self._edge(type_node.id, method_id, RelationType.HAS_METHOD)
        for field_node in field_nodes:
            self._edge(type_node.id, field_node.id, RelationType.HAS_FIELD)
        for ann_id in self._annotation_ids(info.decorator_names):
            self._edge(type_node.id, ann_id, RelationType.ANNOTATED_BY)
        for base_fqn, base_kind in base_fqns:
            rel = RelationType.IMPLEMENTS if base_kind == TypeKind.INTERFACE else RelationType.EXTENDS
            self._edge(type_node.id, self._ref(NodeKind.TYPE, base_fqn), rel)
        for used in sorted(type_uses):
            if used != info.fqn:
                self._edge(type_node.id, self._ref(NodeKind.TYPE, used), RelationType.USES)

    def _collect_self_types(self, info: _ClassInfo) -> dict[str, str | None]:
        """
        Instance and class attributes with their type when it can be inferred:
        class-level annotations, ``self.x: T``, ``self.x = T(...)`` and
        ``self.x = param`` where the parameter is annotated.
        """
        attrs: dict[str, str | None] = {}
        for item in info.node.body:
            if isinstance(item, ast.AnnAssign) and isinstance(item.target, ast.Name):
                attrs[item.target.id] = self._primary_type(item.annotation)
            elif isinstance(item, ast.Assign):
                for target in item.targets:
                    if isinstance(target, ast.Name):
                        attrs.setdefault(target.id, self._constructed_type(item.value))

        for method in info.methods.values():
            params = self._param_types(method)
            for node in _iter_body(method):
                targets: list[ast.expr] = []
                annotation = None
                value = None
                if isinstance(node, ast.Assign):
                    targets, value = node.targets, node.value
                elif isinstance(node, ast.AnnAssign):
                    targets, annotation, value = [node.target], node.annotation, node.value
                for target in targets:
                    if not (
                        isinstance(target, ast.Attribute)
                        and isinstance(target.value, ast.Name)
                        and target.value.id == "self"
                    ):
                        continue
                    inferred = None
                    if annotation is not None:
                        inferred = self._primary_type(annotation)
                    if inferred is None:
                        inferred = self._constructed_type(value)
                    if inferred is None and isinstance(value, ast.Name):
                        inferred = params.get(value.id)
                    if attrs.get(target.attr) is None:
                        attrs[target.attr] = inferred
        return attrs

    def _extract_fields(self, info: _ClassInfo, self_types: dict[str, str | None]) -> list[Node]:
        declarations: dict[str, str] = {}
        lines: dict[str, int] = {}
        for item in info.node.body:
            if isinstance(item, ast.AnnAssign) and isinstance(item.target, ast.Name):
                declarations[item.target.id] = ast.unparse(item).strip()
                lines[item.target.id] = item.lineno
            elif isinstance(item, ast.Assign):
                for target in item.targets:
                    if isinstance(target, ast.Name):
                        declarations.setdefault(target.id, ast.unparse(item).strip())
                        lines.setdefault(target.id, item.lineno)
        for method in info.methods.values():
            for node in _iter_body(method):
                if isinstance(node, (ast.Assign, ast.AnnAssign)):
                    targets = node.targets if isinstance(node, ast.Assign) else [node.target]
                    for target in targets:
                        if (
                            isinstance(target, ast.Attribute)
                            and isinstance(target.value, ast.Name)
                            and target.value.id == "self"
                            and target.attr not in declarations
                        ):
                            declarations[target.attr] = ast.unparse(node).strip()
                            lines[target.attr] = node.lineno

        fields = []
        for name, declaration in declarations.items():
            if name.startswith("__") and name.endswith("__"):
                continue
            fqn = f"{info.fqn}.{name}"
            field_type = self_types.get(name)
            profile = EntityProfile(
                kind=NodeKind.FIELD, name=name, fully_qualified_name=fqn,
                package_name=self.scope.module_name or None, file_path=self.file_path,
                signature=declaration, parent_name=info.fqn,
                dependencies=[field_type] if field_type else [],
            )
            node = self._add_node(Node.create(
                NodeKind.FIELD, name, fqn, self.repository_id,
                package_name=self.scope.module_name or None,
                file_path=self.file_path,
                source_code=declaration,
                description=self.describer.describe(profile),
                domain=infer_domain(self.scope.module_name),
                signature=declaration,
                line_start=lines.get(name),
                line_end=lines.get(name),
            ))
            if field_type:
                self._edge(node.id, self._ref(NodeKind.TYPE, field_type), RelationType.USES)
            fields.append(node)
        return fields

    # ─── Methods ───────────────────────────────────────────

    def _param_types(self, func: ast.FunctionDef | ast.AsyncFunctionDef) -> dict[str, str]:
        args = func.args
        types: dict[str, str] = {}
        for arg in list(args.posonlyargs) + list(args.args) + list(args.kwonlyargs):
            primary = self._primary_type(arg.annotation)
            if primary:
                types[arg.arg] = primary
        return types

    @staticmethod
    def _signature(func: ast.FunctionDef | ast.AsyncFunctionDef) -> str:
        prefix = "async def" if isinstance(func, ast.AsyncFunctionDef) else "def"
        signature = f"{prefix} {func.name}({ast.unparse(func.args)})"
        if func.returns is not None:
            signature += f" -> {ast.unparse(func.returns)}"
        return signature

    def _extract_method(
        self,
        func: ast.FunctionDef | ast.AsyncFunctionDef,
        owner: _ClassInfo | None,
        self_types: dict[str, str | None] | None = None,
    ) -> tuple[Node, _BodyFacts]:
        parent_fqn = owner.fqn if owner else self.scope.module_name
        fqn = f"{parent_fqn}.{func.name}" if parent_fqn else func.name
        facts = self._analyze_body(func, owner, self_types or {})
        decorator_names = [self._decorator_name(d) for d in func.decorator_list]
        signature = self._signature(func)
        package = self.scope.module_name or None

        profile = EntityProfile(
            kind=NodeKind.METHOD,
            name=func.name,
            fully_qualified_name=fqn,
            package_name=package,
            file_path=self.file_path,
            docstring=ast.get_docstring(func),
            decorators=decorator_names,
            dependencies=sorted({u.rsplit(".", 1)[-1] for u in facts.uses}),
            calls=sorted(facts.call_names),
            signature=signature,
            parent_name=owner.fqn if owner else None,
            source=self._source_of(func),
        )
        roles = decorator_roles(decorator_names)
        method_node = self._add_node(Node.create(
            NodeKind.METHOD, func.name, fqn, self.repository_id,
            package_name=package,
            file_path=self.file_path,
            source_code=profile.source,
            description=self.describer.describe(profile),
            domain=infer_domain(package),
            business_capability=roles[0] if roles else None,
            signature=signature,
            line_start=func.lineno,
            line_end=func.end_lineno or func.lineno,
        ))

        for ann_id in self._annotation_ids(decorator_names):
            self._edge(method_node.id, ann_id, RelationType.ANNOTATED_BY)
        for used in sorted(facts.uses):
            if owner is None or used != owner.fqn:
                self._edge(method_node.id, self._ref(NodeKind.TYPE, used), RelationType.USES)
        for callee in sorted(facts.calls):
            if callee != fqn:
                self._edge(method_node.id, self._ref(NodeKind.METHOD, callee), RelationType.CALLS)
            else:
                # direct recursion
                self._edge(method_node.id, method_node.id, RelationType.CALLS)
        for thrown in sorted(facts.throws):
            self._edge(method_node.id, self._ref(NodeKind.TYPE, thrown), RelationType.THROWS)
        return method_node, facts

    def _analyze_body(
        self,
        func: ast.FunctionDef | ast.AsyncFunctionDef,
        owner: _ClassInfo | None,
        self_types: dict[str, str | None],
    ) -> _BodyFacts:
        facts = _BodyFacts()

        # Signature annotations
        all_args = list(func.args.posonlyargs) + list(func.args.args) + list(func.args.kwonlyargs)
        for extra in (func.args.vararg, func.args.kwarg):
            if extra is not None:
                all_args.append(extra)
        for arg in all_args:
            facts.uses.update(self._type_refs(arg.annotation))
            primary = self._primary_type(arg.annotation)
            if primary:
                facts.local_types[arg.arg] = primary
        facts.uses.update(self._type_refs(func.returns))

        # Pass 1: local variable types
        for node in _iter_body(func):
            if isinstance(node, ast.AnnAssign):
                facts.uses.update(self._type_refs(node.annotation))
                primary = self._primary_type(node.annotation)
                if primary and isinstance(node.target, ast.Name):
                    facts.local_types[node.target.id] = primary
            elif isinstance(node, ast.Assign):
                constructed = self._constructed_type(node.value)
                if constructed:
                    for target in node.targets:
                        if isinstance(target, ast.Name):
                            facts.local_types[target.id] = constructed
            elif isinstance(node, (ast.With, ast.AsyncWith)):
                for item in node.items:
                    constructed = self._constructed_type(item.context_expr)
                    if constructed and isinstance(item.optional_vars, ast.Name):
                        facts.local_types[item.optional_vars.id] = constructed

        # Pass 2: calls, constructions, raises, handlers
        for node in _iter_body(func):
            if isinstance(node, ast.Call):
                self._analyze_call(node, owner, self_types, facts)
            elif isinstance(node, ast.Raise) and node.exc is not None:
                exc = node.exc.func if isinstance(node.exc, ast.Call) else node.exc
                dotted = _dotted_name(exc)
                if dotted:
                    thrown = self.scope.resolve_type(dotted)
                    if thrown is None and _is_builtin_exception(dotted):
                        thrown = dotted
                    if thrown:
                        facts.throws.add(thrown)
            elif isinstance(node, ast.ExceptHandler) and node.type is not None:
                facts.uses.update(self._type_refs(node.type))
        return facts

    def _analyze_call(
        self,
        call: ast.Call,
        owner: _ClassInfo | None,
        self_types: dict[str, str | None],
        facts: _BodyFacts,
    ) -> None:
        func = call.func
        name = _call_to_name(func)
        if name:
            facts.call_names.add(name)

        if isinstance(func, ast.Name):
            if func.id in ("isinstance", "issubclass") and len(call.args) == 2:
                facts.uses.update(self._type_refs(call.args[1]))
                return
            constructed = self.scope.resolve_type(func.id)
            if constructed:
                facts.uses.add(constructed)
                return
            if func.id in self.scope.functions:
                facts.calls.add(self.scope.functions[func.id])
                return
            target = self.scope.resolve(func.id)
            if target and self.scope.is_internal(target, written_head=func.id):
                facts.calls.add(target)
            return

        if not isinstance(func, ast.Attribute):
            return
        receiver, method_name = func.value, func.attr

        # self.method() / cls.method()
        if isinstance(receiver, ast.Name) and receiver.id in ("self", "cls") and owner:
            if method_name in owner.methods:
                facts.calls.add(f"{owner.fqn}.{method_name}")
            else:
                inherited = self._single_base(owner)
                if inherited:
                    facts.calls.add(f"{inherited}.{method_name}")
            return

        # super().method()
        if isinstance(receiver, ast.Call) and _dotted_name(receiver.func) == "super" and owner:
            inherited = self._single_base(owner)
            if inherited:
                facts.calls.add(f"{inherited}.{method_name}")
            return

        # self.attr.method()
        if (
            isinstance(receiver, ast.Attribute)
            and isinstance(receiver.value, ast.Name)
            and receiver.value.id == "self"
        ):
            attr_type = self_types.get(receiver.attr)
            if attr_type:
                facts.uses.add(attr_type)
                self._add_typed_call(attr_type, method_name, facts)
            return

        # local.method() where the local's type is known
        if isinstance(receiver, ast.Name) and receiver.id in facts.local_types:
            self._add_typed_call(facts.local_types[receiver.id], method_name, facts)
            return

        # Klass.method() / module.function()
        dotted = _dotted_name(func)
        if not dotted:
            return
        receiver_dotted = dotted.rsplit(".", 1)[0]
        receiver_type = self.scope.resolve_type(receiver_dotted)
        if receiver_type:
            facts.uses.add(receiver_type)
            self._add_typed_call(receiver_type, method_name, facts)
            return
        target = self.scope.resolve(dotted)
        head = dotted.split(".")[0]
        if target and self.scope.is_internal(target, written_head=head):
            facts.calls.add(target)

    def _add_typed_call(self, type_fqn: str, method_name: str, facts: _BodyFacts) -> None:
        local = self.scope.local_class_fqn(type_fqn)
        if local is not None:
            if method_name in local.methods:
                facts.calls.add(f"{type_fqn}.{method_name}")
            return
        if self.scope.is_internal(type_fqn):
            facts.calls.add(f"{type_fqn}.{method_name}")

    def _single_base(self, owner: _ClassInfo) -> str | None:
        bases = [b for b in owner.base_names if b.rsplit(".", 1)[-1] not in MARKER_BASES]
        if len(bases) != 1:
            return None
        local = self.scope.classes.get(bases[0])
        if local is not None:
            return local.fqn
        resolved = self.scope.resolve(bases[0])
        if resolved and self.scope.is_internal(resolved, written_head=bases[0].split(".")[0]):
            return resolved
        return None
