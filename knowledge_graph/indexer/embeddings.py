"""
Embedding Pipeline

Turns graph nodes into text representations and attaches provider vectors.

Batches are embedded concurrently (bounded), each call wrapped by the
RetryPolicy. Every vector coming back is validated against the provider's
dimension before it is allowed anywhere near the store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from langchain_core.embeddings import Embeddings

from knowledge_graph.indexer.config import (
    EmbeddingFailurePolicy,
    EmbeddingProviderKind,
    EmbeddingSettings,
)
from knowledge_graph.indexer.retry import ProviderResult, RetryPolicy
from knowledge_graph.shared.exceptions import IndexingCancelled, ProviderFailure
from knowledge_graph.shared.llms import get_fake_embeddings, get_openai_embeddings
from knowledge_graph.shared.models import Node, NodeKind
from knowledge_graph.shared.observability import record_event, trace_function

logger = logging.getLogger("knowledge-graph.indexer.embeddings")


# ─── Provider contract ────────────────────────────────────


class EmbeddingProvider(ABC):
    """Maps texts to fixed-dimension vectors."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


class LangChainEmbeddingProvider(EmbeddingProvider):
    """Adapter over any LangChain ``Embeddings`` implementation."""

    def __init__(self, embeddings: Embeddings, dimension: int):
        self._embeddings = embeddings
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await self._embeddings.aembed_documents(texts)


def build_provider(settings: EmbeddingSettings) -> EmbeddingProvider:
    """Provider selected by ``settings.provider``."""
    if settings.provider == EmbeddingProviderKind.FAKE:
        return LangChainEmbeddingProvider(get_fake_embeddings(settings.dimension), settings.dimension)
    return LangChainEmbeddingProvider(
        get_openai_embeddings(
            model_name=settings.model,
            dimensions=settings.dimension,
            timeout=settings.request_timeout_seconds,
        ),
        settings.dimension,
    )


def build_retry_policy(settings: EmbeddingSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.max_attempts,
        base_delay=settings.retry_base_delay,
        multiplier=settings.retry_multiplier,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_jitter,
    )


# ─── Text representation ──────────────────────────────────


def represent(node: Node, max_chars: int = 8000) -> str:
    """Build the text that gets embedded for a node.

    Header plus package, file and the enriched description, so similarity
    search finds nodes by meaning and not only by raw code. Source is only
    used when there is no description.
    """
    parts = [f"{node.kind.value}: {node.fully_qualified_name}"]
    if node.package_name:
        parts.append(f"Package: {node.package_name}")
    if node.file_path:
        parts.append(f"File: {node.file_path}")
    if node.description:
        parts.append(node.description)
    elif node.signature:
        parts.append(f"Signature: {node.signature}")
    elif node.source_code:
        parts.append(node.source_code)
    text = "\n".join(parts)
    return text[:max_chars]


# ─── Pipeline ─────────────────────────────────────────────


@dataclass
class EmbeddingReport:
    requested: int = 0
    embedded: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class EmbeddingPipeline:
    """Batched, retried, validated embedding of graph nodes and queries."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        settings: EmbeddingSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self._provider = provider
        self._settings = settings or EmbeddingSettings()
        self._retry = retry_policy or build_retry_policy(self._settings)
        self._sleep = sleep
        self._embed_kinds = {NodeKind(k) for k in self._settings.embed_kinds}

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def failure_policy(self) -> EmbeddingFailurePolicy:
        return self._settings.failure_policy

    def should_embed(self, node: Node) -> bool:
        return not node.unresolved and node.kind in self._embed_kinds

    @trace_function(name="embedding_pipeline.embed_nodes")
    async def embed_nodes(
        self,
        nodes: list[Node],
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[list[Node], EmbeddingReport]:
        """
        Attach embeddings to every embeddable node.

        Returns the nodes (in input order, copies where an embedding was
        attached) and a report. Under the ABORT policy the first batch that
        still fails after retries raises ProviderFailure; under SKIP its nodes
        come back without embeddings and the failure is listed in the report.

        Raises:
            ProviderFailure: a batch failed and the policy is ABORT.
            IndexingCancelled: ``cancel_event`` fired.
        """
        candidates = [i for i, n in enumerate(nodes) if self.should_embed(n)]
        report = EmbeddingReport(requested=len(candidates))
        if not candidates:
            return list(nodes), report

        size = self._settings.batch_size
        batches = [candidates[i : i + size] for i in range(0, len(candidates), size)]
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_batches)
        logger.info(
            "Embedding %d nodes in %d batches (dimension=%d)",
            len(candidates), len(batches), self.dimension,
        )

        async def _run(batch_no: int, indices: list[int]) -> tuple[list[int], list[list[float]] | None, str | None]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    raise IndexingCancelled("Indexing cancelled before embedding batch")
                texts = [represent(nodes[i], self._settings.max_text_chars) for i in indices]
                try:
                    vectors = await self._embed_batch(texts, f"embedding batch {batch_no}", cancel_event)
                except ProviderFailure as e:
                    if self.failure_policy == EmbeddingFailurePolicy.ABORT:
                        raise
                    return indices, None, e.message
                return indices, vectors, None

        tasks = [asyncio.ensure_future(_run(n, b)) for n, b in enumerate(batches)]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = list(nodes)
        for indices, vectors, error in outcomes:
            if vectors is None:
                report.skipped += len(indices)
                report.errors.append(error or "embedding batch failed")
                continue
            for i, vector in zip(indices, vectors):
                result[i] = nodes[i].with_embedding(vector)
                report.embedded += 1

        logger.info(
            "Embedding complete: %d embedded, %d skipped", report.embedded, report.skipped,
        )
        record_event("embedding_complete", {"embedded": report.embedded, "skipped": report.skipped})
        return result, report

    @trace_function(name="embedding_pipeline.embed_query")
    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query through the same retry boundary."""
        vectors = await self._embed_batch([text], "query embedding")
        return vectors[0]

    async def _embed_batch(
        self,
        texts: list[str],
        description: str,
        cancel_event: asyncio.Event | None = None,
    ) -> list[list[float]]:
        call = self._retry.run(
            lambda: self._provider.embed(texts),
            timeout=self._settings.request_timeout_seconds,
            description=description,
            sleep=self._sleep,
        )
        if cancel_event is None:
            result: ProviderResult = await call
        else:
            result = await self._race_cancel(call, cancel_event)

        if not result.ok:
            raise ProviderFailure(f"{description} failed: {result.error}", attempts=result.attempts)
        return self._validate(result.value, len(texts), description)

    @staticmethod
    async def _race_cancel(call: Awaitable[ProviderResult], cancel_event: asyncio.Event) -> ProviderResult:
        call_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()
        if call_task not in done:
            call_task.cancel()
            await asyncio.gather(call_task, return_exceptions=True)
            raise IndexingCancelled("Indexing cancelled during embedding")
        return call_task.result()

    def _validate(self, vectors, expected: int, description: str) -> list[list[float]]:
        if vectors is None or len(vectors) != expected:
            got = 0 if vectors is None else len(vectors)
            raise ProviderFailure(f"{description}: expected {expected} vectors, got {got}")
        dimension = self.dimension
        checked = []
        for vector in vectors:
            if not vector:
                raise ProviderFailure(f"{description}: provider returned an empty vector")
            if len(vector) != dimension:
                raise ProviderFailure(
                    f"{description}: vector dimension {len(vector)} != expected {dimension}"
                )
            checked.append([float(x) for x in vector])
        return checked
