import logging

from knowledge_graph.shared.logging import generate_run_id, run_logger


def test_run_logger_prefixes_messages(caplog):
    log = run_logger(logging.getLogger("knowledge-graph.test"), "abc123")
    with caplog.at_level(logging.INFO, logger="knowledge-graph.test"):
        log.info("Indexing %s", "shop")
    assert caplog.messages == ["[abc123] Indexing shop"]


def test_run_ids_are_unique():
    first = generate_run_id()
    assert len(first) == 12
    assert first != generate_run_id()
    assert run_logger(logging.getLogger("x")).extra["run_id"]
