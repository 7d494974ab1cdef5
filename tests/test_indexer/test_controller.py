"""
Tests for the incremental indexing controller against the in-memory
store: skip-if-unchanged, idempotent re-indexing, failure ratio, embedding
failure policies, cancellation and concurrent-request deduplication.
"""

import asyncio

from neo4j.exceptions import SessionExpired

from knowledge_graph.graph_store import InMemoryGraphStore, NodePredicate
from knowledge_graph.indexer import EmbeddingPipeline, IndexingController, IndexingStatus
from knowledge_graph.indexer.config import EmbeddingFailurePolicy, IndexerSettings
from knowledge_graph.indexer.controller import merge_extractions
from knowledge_graph.indexer.models import ExtractionResult
from knowledge_graph.shared.models import (
    Direction,
    IndexState,
    Node,
    NodeKind,
    RelationType,
    make_repository_id,
)

from tests.conftest import (
    INVALID_SOURCE,
    KeywordEmbeddingProvider,
    make_embedding_settings,
    no_sleep,
    write_files,
)


class BadRequest(Exception):
    status_code = 400


class FailingProvider(KeywordEmbeddingProvider):
    async def embed(self, texts):
        raise BadRequest("rejected")


class ExpiringSessionStore(InMemoryGraphStore):
    async def upsert_nodes(self, nodes):
        raise SessionExpired("session gone")


def _controller(store, provider=None, **embedding_overrides) -> IndexingController:
    pipeline = EmbeddingPipeline(
        provider or KeywordEmbeddingProvider(),
        make_embedding_settings(**embedding_overrides),
        sleep=no_sleep,
    )
    return IndexingController(store, pipeline, settings=IndexerSettings())


# ─── Happy path ──────────────────────────────────────────────


class TestIndexing:
    """A clean repository indexes fully and records its commit."""

    async def test_first_run(self, controller, store, sample_repo):
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.SUCCESS
        assert result.repository_id == make_repository_id(str(sample_repo))
        assert result.files_processed == 5
        assert result.files_failed == 0
        assert result.entities_created > 0
        assert result.relationships_created > 0
        assert result.embeddings_generated > 0
        assert result.commit.startswith("content:")
        assert result.errors == []

        repository = await store.get_repository(result.repository_id)
        assert repository.state == IndexState.INDEXED
        assert repository.last_indexed_commit == result.commit
        assert repository.last_indexed_at is not None
        assert store.indexes_ensured

    async def test_cross_file_references_resolve_to_declarations(self, indexed, store):
        invoices = await store.query(NodePredicate(
            name_or_fqn_equals="shop.models.Invoice", include_unresolved=True,
        ))
        assert len(invoices) == 1
        assert invoices[0].unresolved is False
        assert invoices[0].file_path == "shop/models.py"

        callers = await store.neighbors([invoices[0].id], [RelationType.USES], Direction.IN)
        assert "shop.services.PaymentService.pay" in {n.node.fully_qualified_name for n in callers}

    async def test_unchanged_commit_is_skipped(self, controller, provider, sample_repo, indexed):
        calls_before = len(provider.calls)
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.SKIPPED
        assert result.commit == indexed.commit
        assert len(provider.calls) == calls_before

    async def test_reindex_is_idempotent(self, controller, store, sample_repo, indexed):
        nodes_before = await store.count_nodes(indexed.repository_id)
        edges_before = await store.count_edges(indexed.repository_id)

        result = await controller.index_repository(str(sample_repo), force_reindex=True)

        assert result.status == IndexingStatus.SUCCESS
        assert await store.count_nodes(indexed.repository_id) == nodes_before
        assert await store.count_edges(indexed.repository_id) == edges_before

    async def test_changed_source_is_reindexed(self, controller, store, sample_repo, indexed):
        write_files(sample_repo, {
            "shop/refunds.py": (
                "from shop.services import PaymentService\n\n"
                "class RefundService:\n"
                "    def refund(self, service: PaymentService) -> None:\n"
                "        service.pay('r-1', 1.0, 'a@b.c')\n"
            ),
        })
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.SUCCESS
        assert result.commit != indexed.commit
        assert result.files_processed == 6
        fqns = {n.fully_qualified_name for n in store._nodes.values()}
        assert "shop.refunds.RefundService.refund" in fqns

    async def test_get_status(self, controller, sample_repo):
        repository_id = make_repository_id(str(sample_repo))
        assert await controller.get_status(repository_id) == IndexState.NOT_INDEXED
        await controller.index_repository(str(sample_repo))
        assert await controller.get_status(repository_id) == IndexState.INDEXED

    async def test_concurrent_requests_share_one_run(self, controller, provider, sample_repo):
        first, second = await asyncio.gather(
            controller.index_repository(str(sample_repo)),
            controller.index_repository(str(sample_repo)),
        )
        assert first is second
        assert first.status == IndexingStatus.SUCCESS

        embedded_texts = sum(len(batch) for batch in provider.calls)
        assert embedded_texts == first.embeddings_generated


# ─── Failures ────────────────────────────────────────────────


class TestFailures:
    """Runs that cannot complete leave the stored commit untouched."""

    async def test_parse_failures_within_ratio_are_partial(self, controller, store, sample_repo):
        write_files(sample_repo, {"shop/broken.py": INVALID_SOURCE})
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.PARTIAL
        assert result.files_failed == 1
        assert any("shop/broken.py" in e for e in result.errors)
        repository = await store.get_repository(result.repository_id)
        assert repository.last_indexed_commit == result.commit

    async def test_too_many_parse_failures_fail_the_run(self, controller, store, sample_repo):
        write_files(sample_repo, {
            "shop/broken.py": INVALID_SOURCE,
            "shop/broken_too.py": INVALID_SOURCE,
        })
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.FAILED
        assert result.files_failed == 2
        assert await store.count_nodes(result.repository_id) == 0
        repository = await store.get_repository(result.repository_id)
        assert repository.state == IndexState.FAILED
        assert repository.last_indexed_commit is None
        assert "files failed to parse" in repository.last_error

    async def test_undecodable_file_is_a_parse_failure(self, controller, sample_repo):
        (sample_repo / "shop" / "latin.py").write_bytes(b"name = '\xe9t\xe9'\n")
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.PARTIAL
        assert any("UnicodeDecodeError" in e for e in result.errors)

    async def test_provider_failure_aborts_without_writes(self, store, sample_repo):
        controller = _controller(store, FailingProvider())
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.FAILED
        assert await store.count_nodes(result.repository_id) == 0
        repository = await store.get_repository(result.repository_id)
        assert repository.state == IndexState.FAILED
        assert repository.last_indexed_commit is None

    async def test_provider_failure_with_skip_policy_is_partial(self, store, sample_repo):
        controller = _controller(store, FailingProvider(), failure_policy=EmbeddingFailurePolicy.SKIP)
        result = await controller.index_repository(str(sample_repo))

        assert result.status == IndexingStatus.PARTIAL
        assert result.embeddings_generated == 0
        assert await store.count_nodes(result.repository_id) > 0
        assert not any(n.has_embedding for n in store._nodes.values())

    async def test_missing_path_fails(self, controller, tmp_path):
        result = await controller.index_repository(str(tmp_path / "does-not-exist"))

        assert result.status == IndexingStatus.FAILED
        assert any("FileNotFoundError" in e for e in result.errors)

    async def test_failed_reindex_keeps_previous_commit(self, store, sample_repo, indexed):
        write_files(sample_repo, {"shop/extra.py": "class Extra:\n    pass\n"})
        result = await _controller(store, FailingProvider()).index_repository(str(sample_repo))

        assert result.status == IndexingStatus.FAILED
        repository = await store.get_repository(indexed.repository_id)
        assert repository.last_indexed_commit == indexed.commit

    async def test_unexpected_store_error_marks_repository_failed(self, sample_repo):
        store = ExpiringSessionStore()
        result = await _controller(store).index_repository(str(sample_repo))

        assert result.status == IndexingStatus.FAILED
        assert any("SessionExpired" in e for e in result.errors)
        repository = await store.get_repository(result.repository_id)
        assert repository.state == IndexState.FAILED
        assert "SessionExpired" in repository.last_error
        assert repository.last_indexed_commit is None


# ─── Cancellation ────────────────────────────────────────────


class TestCancellation:
    async def test_cancelled_before_extraction(self, controller, store, sample_repo):
        cancel = asyncio.Event()
        cancel.set()
        result = await controller.index_repository(str(sample_repo), cancel_event=cancel)

        assert result.status == IndexingStatus.CANCELLED
        assert await store.count_nodes(result.repository_id) == 0
        repository = await store.get_repository(result.repository_id)
        assert repository.state == IndexState.NOT_INDEXED
        assert repository.last_indexed_commit is None

    async def test_cancelled_rerun_keeps_indexed_state(self, controller, store, sample_repo, indexed):
        cancel = asyncio.Event()
        cancel.set()
        result = await controller.index_repository(
            str(sample_repo), force_reindex=True, cancel_event=cancel,
        )

        assert result.status == IndexingStatus.CANCELLED
        repository = await store.get_repository(indexed.repository_id)
        assert repository.state == IndexState.INDEXED
        assert repository.last_indexed_commit == indexed.commit


# ─── merge_extractions ───────────────────────────────────────


class TestMergeExtractions:
    def test_declaration_wins_over_placeholder(self):
        placeholder = Node.placeholder(NodeKind.TYPE, "shop.models.Invoice", "r")
        declared = Node.create(NodeKind.TYPE, "Invoice", "shop.models.Invoice", "r", file_path="shop/models.py")
        assert placeholder.id == declared.id

        nodes, _ = merge_extractions([
            ExtractionResult("shop/services.py", "shop.services", "h1", nodes=[placeholder]),
            ExtractionResult("shop/models.py", "shop.models", "h2", nodes=[declared]),
            ExtractionResult("shop/other.py", "shop.other", "h3", nodes=[placeholder]),
        ])
        assert nodes == [declared]
