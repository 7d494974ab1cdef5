"""
Request-scoped query context.

Passed explicitly to the search engine by the caller (an agent, an API
handler) for the lifetime of one conversation turn. Nothing here is
global: two concurrent requests each carry their own context.
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

NEGATIVE_FEEDBACK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bwrong\b",
        r"\bincorrect\b",
        r"\bnot (what|the one|it|right|correct)\b",
        r"\bthat'?s not\b",
        r"\bnot helpful\b",
        r"\bdoesn'?t (help|work|answer)\b",
        r"\bno,",
        r"\btry again\b",
        r"\bstill (wrong|not)\b",
        r"\bmissing\b",
        r"\bnothing (found|relevant)\b",
    )
]


@dataclass
class ToolExecution:
    tool: str
    arguments: dict[str, Any]
    result: Any = None


@dataclass
class QueryContext:
    """Tool executions and recent user messages for one request."""

    request_id: str | None = None
    recent_messages: list[str] = field(default_factory=list)
    executions: list[ToolExecution] = field(default_factory=list)
    max_messages: int = 10

    def add_message(self, message: str) -> None:
        self.recent_messages.append(message)
        if len(self.recent_messages) > self.max_messages:
            del self.recent_messages[: -self.max_messages]

    def record_execution(self, tool: str, arguments: dict[str, Any], result: Any = None) -> None:
        self.executions.append(ToolExecution(tool, dict(arguments), result))

    def execution_count(self, tool: str) -> int:
        return sum(1 for e in self.executions if e.tool == tool)

    def last_result(self, tool: str) -> Any:
        for execution in reversed(self.executions):
            if execution.tool == tool:
                return execution.result
        return None

    def has_repeated(self, tool: str, arguments: dict[str, Any]) -> bool:
        """True when ``tool`` already ran with the same arguments."""
        return any(e.tool == tool and e.arguments == arguments for e in self.executions)

    def has_negative_feedback(self) -> bool:
        """Whether the most recent user message rejects the previous answer."""
        if not self.recent_messages:
            return False
        latest = self.recent_messages[-1]
        return any(p.search(latest) for p in NEGATIVE_FEEDBACK_PATTERNS)

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for execution in self.executions:
            counts[execution.tool] += 1
        return dict(counts)
