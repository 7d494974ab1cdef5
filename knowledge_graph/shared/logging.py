"""
Logging setup shared by every component.

Loggers are named ``knowledge-graph.<area>``. An indexing run logs through
a RunLogger so that every line of one run carries the same run id, even
when several repositories are indexed concurrently.
"""

import logging
import uuid

LOG_FORMAT = "%(asctime)s  %(name)-34s  %(levelname)-7s  %(message)s"


def setup_logging(component_name: str, level: str = "INFO") -> logging.Logger:
    """
    Configure the root handler once and return the component's logger.

    Args:
        component_name: Logger name, e.g. ``knowledge-graph.main``.
        level: Log level string ('INFO', 'DEBUG', ...). Unknown values fall
            back to INFO.
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    return logging.getLogger(component_name)


def generate_run_id() -> str:
    return uuid.uuid4().hex[:12]


class RunLogger(logging.LoggerAdapter):
    """Prefixes every message with ``[run_id]``."""

    def process(self, msg, kwargs):
        return f"[{self.extra['run_id']}] {msg}", kwargs


def run_logger(logger: logging.Logger, run_id: str | None = None) -> RunLogger:
    """Wrap ``logger`` for one run; a fresh id is generated when none is given."""
    return RunLogger(logger, {"run_id": run_id or generate_run_id()})
