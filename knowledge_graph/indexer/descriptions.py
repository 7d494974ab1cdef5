"""
Description Generator

Builds the enriched textual synopsis stored on every node and used as the
embedding input. The synopsis describes intent (role, purpose, members,
behaviour) rather than repeating raw tokens, so vector search retrieves by
what a piece of code does.

All inference here is heuristic and deterministic: decorators, base
classes, name suffixes, package segments and simple source-pattern checks.
"""

import logging
import re

from knowledge_graph.indexer.models import EntityProfile
from knowledge_graph.shared.models import NodeKind

logger = logging.getLogger("knowledge-graph.indexer.descriptions")

MAX_KEY_MEMBERS = 10
MAX_DEPENDENCIES = 10
MAX_CALLS = 10
DOCSTRING_SUMMARY_CHARS = 300

# Decorator name (last dotted segment) → semantic role
DECORATOR_ROLES: dict[str, str] = {
    "get": "REST Endpoint (GET)",
    "post": "REST Endpoint (POST)",
    "put": "REST Endpoint (PUT)",
    "patch": "REST Endpoint (PATCH)",
    "delete": "REST Endpoint (DELETE)",
    "route": "REST Endpoint",
    "api_route": "REST Endpoint",
    "websocket": "WebSocket Endpoint",
    "dataclass": "Data Model",
    "property": "Property Accessor",
    "cached_property": "Cached Property",
    "staticmethod": "Static Helper",
    "classmethod": "Factory / Class Method",
    "abstractmethod": "Abstract Contract",
    "lru_cache": "Cached",
    "cache": "Cached",
    "fixture": "Test Fixture",
    "task": "Background Task",
    "shared_task": "Background Task",
    "validator": "Validation",
    "field_validator": "Validation",
    "model_validator": "Validation",
    "root_validator": "Validation",
    "contextmanager": "Context Manager",
    "asynccontextmanager": "Context Manager",
    "command": "CLI Command",
    "tool": "Agent Tool",
    "observe": "Traced Operation",
    "retry": "Retried Operation",
    "transactional": "Transactional Operation",
}

# Base class (last dotted segment) → purpose
BASE_PURPOSES: dict[str, str] = {
    "BaseModel": "Data Model (pydantic schema)",
    "BaseSettings": "Configuration settings",
    "Enum": "Enumeration of constants",
    "IntEnum": "Enumeration of constants",
    "StrEnum": "Enumeration of constants",
    "Exception": "Custom exception",
    "Protocol": "Interface / protocol contract",
    "ABC": "Abstract base class",
    "TypedDict": "Typed dictionary schema",
    "NamedTuple": "Immutable record",
    "APIRouter": "REST Controller",
    "TestCase": "Test suite",
    "Thread": "Background worker thread",
}

# Class-name suffix → purpose (checked in order)
NAME_SUFFIX_PURPOSES: list[tuple[tuple[str, ...], str]] = [
    (("controller", "router", "view", "views", "endpoint", "resource"), "REST Controller handling HTTP requests"),
    (("service", "serviceimpl", "manager"), "Service providing business logic"),
    (("repository", "repo", "dao", "store"), "Repository for data access and persistence"),
    (("config", "configuration", "settings"), "Application configuration"),
    (("dto", "request", "response", "schema"), "Data transfer object"),
    (("entity", "model", "record"), "Domain model or data entity"),
    (("exception", "error"), "Custom exception"),
    (("util", "utils", "helper", "helpers"), "Utility or helper"),
    (("client", "gateway", "adapter"), "Client for an external system"),
    (("handler", "listener", "consumer"), "Event or message handler"),
    (("factory", "builder"), "Factory that builds objects"),
    (("parser", "extractor", "reader"), "Parser or extractor"),
    (("test", "tests"), "Test suite"),
]

# Package segment → domain tag
DOMAIN_SEGMENTS: dict[str, str] = {
    "api": "api",
    "routes": "api",
    "controllers": "api",
    "views": "api",
    "service": "service",
    "services": "service",
    "repository": "persistence",
    "repositories": "persistence",
    "dao": "persistence",
    "db": "persistence",
    "database": "persistence",
    "models": "model",
    "model": "model",
    "entities": "model",
    "schemas": "model",
    "config": "configuration",
    "settings": "configuration",
    "auth": "security",
    "security": "security",
    "utils": "utility",
    "util": "utility",
    "helpers": "utility",
    "tests": "test",
    "test": "test",
    "cli": "cli",
    "parsers": "parsing",
    "parser": "parsing",
    "search": "search",
    "indexer": "indexing",
    "agents": "agents",
}

# Method-name prefix → verb phrase
METHOD_PREFIX_VERBS: list[tuple[str, str]] = [
    ("get", "Retrieves"),
    ("fetch", "Fetches"),
    ("find", "Finds"),
    ("search", "Searches for"),
    ("list", "Lists"),
    ("load", "Loads"),
    ("create", "Creates"),
    ("add", "Adds"),
    ("update", "Updates"),
    ("delete", "Deletes"),
    ("remove", "Removes"),
    ("save", "Saves"),
    ("build", "Builds"),
    ("parse", "Parses"),
    ("validate", "Validates"),
    ("handle", "Handles"),
    ("process", "Processes"),
    ("run", "Runs"),
    ("execute", "Executes"),
    ("send", "Sends"),
    ("to", "Converts to"),
    ("from", "Builds from"),
]

# Behaviour flag → source patterns
BEHAVIOUR_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("has error handling", re.compile(r"\btry\s*:|\bexcept\b|\braise\b")),
    ("database operation", re.compile(
        r"\b(session|cursor|conn|connection|db|tx)\.(execute|query|add|commit|rollback|run|fetch\w*)\b"
        r"|\bSELECT\b|\bINSERT\b|\bUPDATE\b|\bMATCH\s*\(|\bMERGE\s*\(",
    )),
    ("external API call", re.compile(
        r"\b(requests|httpx|aiohttp|urllib\.request|urlopen)\b|\bclient\.(get|post|put|delete|request)\(",
    )),
    ("file I/O", re.compile(r"\bopen\(|\.read_text\(|\.write_text\(|\bPath\(")),
    ("asynchronous", re.compile(r"\bawait\b|\basync\s+(def|with|for)\b")),
    ("logging", re.compile(r"\b(logger|logging|log)\.(debug|info|warning|error|exception|critical)\(")),
    ("concurrency", re.compile(r"\b(asyncio\.gather|Semaphore|ThreadPoolExecutor|Lock\(|threading\.)")),
]


def _last_segment(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def _split_words(name: str) -> str:
    """'getUserName' / 'get_user_name' → 'get user name'."""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", name)
    return " ".join(part for part in re.split(r"[_\s]+", spaced) if part).lower()


def docstring_summary(docstring: str | None) -> str | None:
    """First paragraph of a docstring, collapsed onto one line."""
    if not docstring:
        return None
    first = docstring.strip().split("\n\n", 1)[0]
    summary = " ".join(first.split())
    if len(summary) > DOCSTRING_SUMMARY_CHARS:
        summary = summary[: DOCSTRING_SUMMARY_CHARS - 3].rstrip() + "..."
    return summary or None


def infer_domain(package_name: str | None) -> str | None:
    """Classify a package into a coarse domain tag (deepest matching segment wins)."""
    if not package_name:
        return None
    for segment in reversed(package_name.lower().split(".")):
        if segment in DOMAIN_SEGMENTS:
            return DOMAIN_SEGMENTS[segment]
    return None


def decorator_roles(decorators: list[str]) -> list[str]:
    roles: list[str] = []
    for dec in decorators:
        role = DECORATOR_ROLES.get(_last_segment(dec))
        if role and role not in roles:
            roles.append(role)
    return roles


def behaviour_flags(source: str) -> list[str]:
    """Cheap source-pattern checks summarising what the code does."""
    if not source:
        return []
    return [flag for flag, pattern in BEHAVIOUR_PATTERNS if pattern.search(source)]


def infer_type_purpose(profile: EntityProfile) -> str:
    """Purpose of a type from decorators, then bases, then name, then package."""
    roles = decorator_roles(profile.decorators)
    if roles:
        return roles[0]

    for base in profile.bases:
        purpose = BASE_PURPOSES.get(_last_segment(base))
        if purpose:
            return purpose
        if _last_segment(base).endswith(("Error", "Exception")):
            return "Custom exception"

    lowered = profile.name.lower()
    for suffixes, purpose in NAME_SUFFIX_PURPOSES:
        if lowered.endswith(suffixes):
            return purpose

    domain = infer_domain(profile.package_name)
    if domain:
        return f"{domain.capitalize()} component"

    return f"Python {(profile.type_kind or 'class').lower()}"


def infer_method_purpose(profile: EntityProfile) -> str:
    """Purpose of a method from decorators, then its name."""
    roles = decorator_roles(profile.decorators)
    if roles:
        return roles[0]

    name = profile.name.lstrip("_")
    if profile.name == "__init__":
        return "Initializes the instance"
    if profile.name.startswith("__") and profile.name.endswith("__"):
        return f"Implements the {profile.name} protocol"

    lowered = name.lower()
    if lowered.startswith(("is_", "has_", "can_", "should_")) or re.match(r"^(is|has|can)[A-Z]", name):
        return "Checks a condition"
    for prefix, verb in METHOD_PREFIX_VERBS:
        if lowered.startswith(prefix) and (len(name) == len(prefix) or not name[len(prefix)].islower()):
            rest = _split_words(name[len(prefix):]) or "data"
            return f"{verb} {rest}"

    return f"Performs {_split_words(name)}"


class DescriptionGenerator:
    """
    Generates enriched descriptions for extracted entities.

    The output is a small, line-oriented synopsis::

        Type: OrderService
        Purpose: Service providing business logic
        Package: shop.services
        Domain: service
        Kind: CLASS
        Annotations: dataclass (Data Model)
        Extends: BaseService
        Key Members:
          - place_order(self, order: Order) -> Receipt
        Dependencies: OrderRepository, PaymentClient
        Behaviour: has error handling, database operation
    """

    def __init__(self, max_members: int = MAX_KEY_MEMBERS):
        self._max_members = max_members

    def describe(self, profile: EntityProfile) -> str:
        if profile.kind == NodeKind.TYPE:
            text = self._describe_type(profile)
        elif profile.kind == NodeKind.METHOD:
            text = self._describe_method(profile)
        elif profile.kind == NodeKind.FIELD:
            text = self._describe_field(profile)
        else:
            text = self._describe_annotation(profile)
        logger.debug(
            "Generated %s description for %s (%d chars)",
            profile.kind.value, profile.fully_qualified_name, len(text),
        )
        return text

    # ─── Per-kind builders ─────────────────────────────────

    def _describe_type(self, p: EntityProfile) -> str:
        lines = [f"Type: {p.name}"]
        summary = docstring_summary(p.docstring)
        lines.append(f"Purpose: {summary or infer_type_purpose(p)}")
        if summary:
            lines.append(f"Role: {infer_type_purpose(p)}")
        lines.extend(self._package_lines(p))
        if p.type_kind:
            lines.append(f"Kind: {p.type_kind}")
        lines.extend(self._annotation_lines(p.decorators))
        if p.bases:
            lines.append(f"Extends: {', '.join(p.bases)}")
        if p.members:
            lines.append("Key Members:")
            for member in p.members[: self._max_members]:
                suffix = f" ({', '.join(member.decorators)})" if member.decorators else ""
                lines.append(f"  - {member.signature}{suffix}")
        if p.dependencies:
            lines.append(f"Dependencies: {', '.join(p.dependencies[:MAX_DEPENDENCIES])}")
        lines.extend(self._behaviour_lines(p.source))
        lines.append(f"Location: {p.file_path}")
        return "\n".join(lines)

    def _describe_method(self, p: EntityProfile) -> str:
        lines = [f"Method: {p.name}"]
        summary = docstring_summary(p.docstring)
        lines.append(f"Purpose: {summary or infer_method_purpose(p)}")
        if p.parent_name:
            lines.append(f"Declared In: {p.parent_name}")
        lines.extend(self._package_lines(p))
        if p.signature:
            lines.append(f"Signature: {p.signature}")
        lines.extend(self._annotation_lines(p.decorators))
        if p.dependencies:
            lines.append(f"Uses Types: {', '.join(p.dependencies[:MAX_DEPENDENCIES])}")
        if p.calls:
            lines.append(f"Calls: {', '.join(p.calls[:MAX_CALLS])}")
        lines.extend(self._behaviour_lines(p.source))
        return "\n".join(lines)

    def _describe_field(self, p: EntityProfile) -> str:
        lines = [f"Field: {p.name}"]
        if p.parent_name:
            lines.append(f"Declared In: {p.parent_name}")
        if p.signature:
            lines.append(f"Declaration: {p.signature}")
        if p.dependencies:
            lines.append(f"Type: {', '.join(p.dependencies)}")
        return "\n".join(lines)

    def _describe_annotation(self, p: EntityProfile) -> str:
        roles = decorator_roles([p.name])
        lines = [f"Annotation: {p.name}"]
        if roles:
            lines.append(f"Role: {roles[0]}")
        return "\n".join(lines)

    # ─── Shared line helpers ───────────────────────────────

    @staticmethod
    def _package_lines(p: EntityProfile) -> list[str]:
        lines = []
        if p.package_name:
            lines.append(f"Package: {p.package_name}")
            domain = infer_domain(p.package_name)
            if domain:
                lines.append(f"Domain: {domain}")
        return lines

    @staticmethod
    def _annotation_lines(decorators: list[str]) -> list[str]:
        if not decorators:
            return []
        rendered = []
        for dec in decorators:
            role = DECORATOR_ROLES.get(_last_segment(dec))
            rendered.append(f"{dec} ({role})" if role else dec)
        return [f"Annotations: {', '.join(rendered)}"]

    @staticmethod
    def _behaviour_lines(source: str) -> list[str]:
        flags = behaviour_flags(source)
        return [f"Behaviour: {', '.join(flags)}"] if flags else []
