"""
Unit tests for the embedding pipeline: text representation, batching,
validation, retries, failure policies and cancellation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from knowledge_graph.indexer.config import EmbeddingFailurePolicy
from knowledge_graph.indexer.embeddings import EmbeddingPipeline, EmbeddingProvider, represent
from knowledge_graph.shared.exceptions import IndexingCancelled, ProviderFailure
from knowledge_graph.shared.models import Node, NodeKind

from tests.conftest import KeywordEmbeddingProvider, make_embedding_settings, no_sleep


# ─── Fixtures ────────────────────────────────────────────────


def _node(kind: NodeKind, fqn: str, **attributes) -> Node:
    return Node.create(kind, fqn.rsplit(".", 1)[-1], fqn, "repo-1", **attributes)


@pytest.fixture
def nodes():
    return [
        _node(NodeKind.TYPE, "shop.PaymentService", description="Processes payment and invoice"),
        _node(NodeKind.METHOD, "shop.PaymentService.pay", signature="def pay(self, email)"),
        _node(NodeKind.FIELD, "shop.PaymentService.notifier"),
        _node(NodeKind.ANNOTATION, "dataclasses.dataclass"),
        Node.placeholder(NodeKind.TYPE, "shop.models.Invoice", "repo-1"),
        _node(NodeKind.TYPE, "shop.EmailNotifier", description="Sends notification email"),
    ]


class FlakyProvider(KeywordEmbeddingProvider):
    """Raises ``errors`` one by one before answering normally."""

    def __init__(self, errors):
        super().__init__()
        self.errors = list(errors)
        self.attempts = 0

    async def embed(self, texts):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return await super().embed(texts)


class WrongDimensionProvider(KeywordEmbeddingProvider):
    async def embed(self, texts):
        return [[1.0, 0.0] for _ in texts]


class ShortAnswerProvider(KeywordEmbeddingProvider):
    async def embed(self, texts):
        return [self.vector(t) for t in texts[:-1]]


class HangingProvider(KeywordEmbeddingProvider):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def embed(self, texts):
        self.started.set()
        await asyncio.sleep(3600)


class RateLimited(Exception):
    status_code = 429


class BadRequest(Exception):
    status_code = 400


# ─── represent ───────────────────────────────────────────────


class TestRepresent:
    """Text sent to the provider for a node."""

    def test_header_and_description(self):
        node = _node(
            NodeKind.TYPE, "shop.services.PaymentService",
            package_name="shop.services", file_path="shop/services.py",
            description="Purpose: Processes payments", signature="unused",
        )
        text = represent(node)
        assert text.splitlines()[:3] == [
            "Type: shop.services.PaymentService",
            "Package: shop.services",
            "File: shop/services.py",
        ]
        assert "Purpose: Processes payments" in text
        assert "unused" not in text

    def test_falls_back_to_signature_then_source(self):
        with_signature = _node(NodeKind.METHOD, "a.B.c", signature="def c(self)", source_code="body")
        assert represent(with_signature).endswith("Signature: def c(self)")

        with_source = _node(NodeKind.METHOD, "a.B.d", source_code="def d(self): pass")
        assert represent(with_source).endswith("def d(self): pass")

    def test_truncated(self):
        node = _node(NodeKind.TYPE, "a.Big", description="x" * 500)
        assert len(represent(node, max_chars=50)) == 50


# ─── embed_nodes ─────────────────────────────────────────────


class TestEmbedNodes:
    """Batching, selection and validation."""

    async def test_embeds_declared_types_and_methods_only(self, pipeline, nodes):
        result, report = await pipeline.embed_nodes(nodes)

        assert [n.id for n in result] == [n.id for n in nodes]
        embedded = {n.fully_qualified_name for n in result if n.has_embedding}
        assert embedded == {"shop.PaymentService", "shop.PaymentService.pay", "shop.EmailNotifier"}
        assert report.requested == 3
        assert report.embedded == 3
        assert report.skipped == 0
        assert all(len(n.embedding) == pipeline.dimension for n in result if n.has_embedding)

    async def test_input_nodes_are_not_mutated(self, pipeline, nodes):
        await pipeline.embed_nodes(nodes)
        assert not any(n.has_embedding for n in nodes)

    async def test_batches(self, provider, nodes):
        pipeline = EmbeddingPipeline(provider, make_embedding_settings(batch_size=2), sleep=no_sleep)
        await pipeline.embed_nodes(nodes)
        assert sorted(len(batch) for batch in provider.calls) == [1, 2]

    async def test_nothing_to_embed(self, pipeline, provider):
        field = _node(NodeKind.FIELD, "a.B.c")
        result, report = await pipeline.embed_nodes([field])
        assert result == [field]
        assert report.requested == 0
        assert provider.calls == []

    async def test_embed_kinds_setting(self, provider, nodes):
        settings = make_embedding_settings(embed_kinds=["Type", "Method", "Field"])
        pipeline = EmbeddingPipeline(provider, settings, sleep=no_sleep)
        _, report = await pipeline.embed_nodes(nodes)
        assert report.embedded == 4

    async def test_wrong_dimension_is_rejected(self, nodes):
        pipeline = EmbeddingPipeline(WrongDimensionProvider(), make_embedding_settings(), sleep=no_sleep)
        with pytest.raises(ProviderFailure, match="dimension"):
            await pipeline.embed_nodes(nodes)

    async def test_missing_vectors_are_rejected(self, nodes):
        pipeline = EmbeddingPipeline(ShortAnswerProvider(), make_embedding_settings(), sleep=no_sleep)
        with pytest.raises(ProviderFailure, match="expected"):
            await pipeline.embed_nodes(nodes)


# ─── Retries and failure policy ─────────────────────────────


class TestFailures:
    """Transient errors retry; final failures follow the configured policy."""

    async def test_transient_errors_are_retried(self, nodes):
        provider = FlakyProvider([RateLimited("slow down"), ConnectionError("reset")])
        sleep = AsyncMock()
        settings = make_embedding_settings(batch_size=10)
        pipeline = EmbeddingPipeline(provider, settings, sleep=sleep)

        _, report = await pipeline.embed_nodes(nodes)

        assert report.embedded == 3
        assert provider.attempts == 3
        assert sleep.await_count == 2

    async def test_non_transient_error_is_not_retried(self, nodes):
        provider = FlakyProvider([BadRequest("bad input")])
        pipeline = EmbeddingPipeline(provider, make_embedding_settings(batch_size=10), sleep=no_sleep)

        with pytest.raises(ProviderFailure) as exc_info:
            await pipeline.embed_nodes(nodes)
        assert exc_info.value.attempts == 1
        assert provider.attempts == 1

    async def test_exhausted_retries_abort(self, nodes):
        provider = FlakyProvider([RateLimited("no")] * 5)
        pipeline = EmbeddingPipeline(
            provider, make_embedding_settings(batch_size=10, max_attempts=3), sleep=no_sleep,
        )
        with pytest.raises(ProviderFailure) as exc_info:
            await pipeline.embed_nodes(nodes)
        assert exc_info.value.attempts == 3

    async def test_skip_policy_keeps_nodes_without_embeddings(self, nodes):
        provider = FlakyProvider([BadRequest("bad input")])
        settings = make_embedding_settings(batch_size=10, failure_policy=EmbeddingFailurePolicy.SKIP)
        pipeline = EmbeddingPipeline(provider, settings, sleep=no_sleep)

        result, report = await pipeline.embed_nodes(nodes)

        assert not any(n.has_embedding for n in result)
        assert report.skipped == 3
        assert report.embedded == 0
        assert len(report.errors) == 1
        assert "bad input" in report.errors[0]

    async def test_cancel_before_embedding(self, pipeline, provider, nodes):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(IndexingCancelled):
            await pipeline.embed_nodes(nodes, cancel_event=cancel)
        assert provider.calls == []

    async def test_cancel_during_provider_call(self, nodes):
        provider = HangingProvider()
        pipeline = EmbeddingPipeline(provider, make_embedding_settings(batch_size=10), sleep=no_sleep)
        cancel = asyncio.Event()

        async def _cancel_when_started():
            await provider.started.wait()
            cancel.set()

        canceller = asyncio.ensure_future(_cancel_when_started())
        with pytest.raises(IndexingCancelled):
            await asyncio.wait_for(pipeline.embed_nodes(nodes, cancel_event=cancel), timeout=5)
        await canceller


# ─── embed_query ─────────────────────────────────────────────


class TestEmbedQuery:
    async def test_query_vector(self, pipeline, provider):
        vector = await pipeline.embed_query("send email notification")
        assert vector == provider.vector("send email notification")

    async def test_query_failure(self):
        class Broken(EmbeddingProvider):
            dimension = 3

            async def embed(self, texts):
                raise BadRequest("nope")

        pipeline = EmbeddingPipeline(Broken(), make_embedding_settings(dimension=3), sleep=no_sleep)
        with pytest.raises(ProviderFailure, match="query embedding"):
            await pipeline.embed_query("anything")
