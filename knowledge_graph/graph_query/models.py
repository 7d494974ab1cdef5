"""
Query Models

Result types returned by the hybrid search engine and the traversal
service.
"""

from dataclasses import dataclass, field
from enum import Enum

from knowledge_graph.shared.models import Node, SearchMode

__all__ = [
    "ImpactReport",
    "MatchType",
    "RankedResults",
    "RiskLevel",
    "SearchMode",
    "SearchResult",
    "SearchStatus",
]


class MatchType(str, Enum):
    EXACT = "EXACT"
    FUZZY = "FUZZY"
    SEMANTIC = "SEMANTIC"


# Group order in a ranked list
MATCH_PRECEDENCE = {MatchType.EXACT: 0, MatchType.FUZZY: 1, MatchType.SEMANTIC: 2}


class SearchStatus(str, Enum):
    OK = "OK"
    NO_RESULTS = "NO_RESULTS"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


RISK_RECOMMENDATIONS = {
    RiskLevel.CRITICAL: "High risk: changes will affect more than 20 entities. Consider splitting "
                        "this entity or deprecating it gradually.",
    RiskLevel.HIGH: "Moderate risk: thoroughly test all dependents. Consider a feature flag "
                    "for rollback.",
    RiskLevel.MEDIUM: "Manageable: standard testing should suffice. Monitor dependents.",
    RiskLevel.LOW: "Low risk: few dependents. Safe to modify with basic testing.",
}


@dataclass
class SearchResult:
    node: Node
    match_type: MatchType
    similarity_score: float
    related: list[str] = field(default_factory=list)


@dataclass
class RankedResults:
    """Search outcome: ordered results plus how they were obtained."""

    query: str
    mode: SearchMode
    results: list[SearchResult] = field(default_factory=list)
    status: SearchStatus = SearchStatus.OK
    message: str | None = None
    widened: bool = False
    include_source: bool = False

    def __len__(self) -> int:
        return len(self.results)

    def fqns(self) -> list[str]:
        return [r.node.fully_qualified_name for r in self.results]

    def by_match_type(self, match_type: MatchType) -> list[SearchResult]:
        return [r for r in self.results if r.match_type == match_type]


@dataclass
class ImpactReport:
    """Who is affected by a change to ``node`` and how risky that is."""

    node: Node
    direct_dependencies: list[str] = field(default_factory=list)
    transitive_dependencies: list[str] = field(default_factory=list)
    direct_dependents: list[str] = field(default_factory=list)
    transitive_dependents: list[str] = field(default_factory=list)
    critical_paths: list[str] = field(default_factory=list)
    impact_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW

    @staticmethod
    def score(direct_dependents: int, transitive_dependents: int) -> float:
        return min(10.0, direct_dependents * 2.0 + transitive_dependents * 0.5)

    @staticmethod
    def risk_for(transitive_dependents: int) -> RiskLevel:
        if transitive_dependents > 20:
            return RiskLevel.CRITICAL
        if transitive_dependents > 10:
            return RiskLevel.HIGH
        if transitive_dependents > 5:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @property
    def recommendation(self) -> str:
        return RISK_RECOMMENDATIONS[self.risk_level]

    def to_markdown(self) -> str:
        paths = "\n".join(f"- {p}" for p in self.critical_paths) or "None"
        return (
            f"# Impact Analysis: {self.node.fully_qualified_name}\n\n"
            f"## Risk Assessment\n"
            f"- **Risk Level**: {self.risk_level.value}\n"
            f"- **Impact Score**: {self.impact_score:.1f}/10\n\n"
            f"## Dependencies\n"
            f"- Direct: {len(self.direct_dependencies)}\n"
            f"- Transitive: {len(self.transitive_dependencies)}\n\n"
            f"## Dependents (who uses this?)\n"
            f"- Direct: {len(self.direct_dependents)}\n"
            f"- Transitive: {len(self.transitive_dependents)}\n\n"
            f"## Critical Paths\n{paths}\n\n"
            f"## Recommendation\n{self.recommendation}\n"
        )
