"""
Incremental Indexing Controller

Runs the indexing pipeline for one repository:

    workspace → HEAD commit → skip if unchanged → discover files
    → extract (bounded worker pool) → failure-ratio policy → embed
    → upsert nodes and edges → ensure indexes → resolve placeholders
    → update the repository record

The stored commit only moves forward when the run succeeds (fully or
within the failure policy); anything else leaves it untouched so the next
run retries the same work.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from knowledge_graph.graph_store import GraphStore
from knowledge_graph.indexer.config import IndexerSettings
from knowledge_graph.indexer.descriptions import DescriptionGenerator
from knowledge_graph.indexer.embeddings import EmbeddingPipeline
from knowledge_graph.indexer.extractor import EntityExtractor
from knowledge_graph.indexer.models import ExtractionResult, ParseFailure
from knowledge_graph.indexer.repository import RepositoryWorkspace
from knowledge_graph.shared.exceptions import IndexerError, IndexingCancelled, KnowledgeGraphError
from knowledge_graph.shared.logging import RunLogger, run_logger
from knowledge_graph.shared.models import Edge, IndexState, Node, Repository, make_repository_id
from knowledge_graph.shared.models.api import IndexResponse
from knowledge_graph.shared.observability import record_event, trace_function

logger = logging.getLogger("knowledge-graph.indexer.controller")


class IndexingStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


@dataclass
class IndexingResult:
    repository_id: str
    status: IndexingStatus = IndexingStatus.FAILED
    commit: str | None = None
    entities_created: int = 0
    relationships_created: int = 0
    embeddings_generated: int = 0
    files_processed: int = 0
    files_failed: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def to_response(self) -> IndexResponse:
        return IndexResponse(
            repository_id=self.repository_id,
            status=self.status.value,
            commit=self.commit,
            entities_created=self.entities_created,
            relationships_created=self.relationships_created,
            embeddings_generated=self.embeddings_generated,
            files_processed=self.files_processed,
            files_failed=self.files_failed,
            duration_ms=self.duration_ms,
            errors=list(self.errors),
        )


def merge_extractions(results: list[ExtractionResult]) -> tuple[list[Node], list[Edge]]:
    """Combine per-file results: declarations win over placeholders and
    duplicate nodes / edges collapse by id / key."""
    nodes: dict[str, Node] = {}
    edges: dict[tuple[str, str, str], Edge] = {}
    for result in results:
        for node in result.nodes:
            current = nodes.get(node.id)
            if current is None or (current.unresolved and not node.unresolved):
                nodes[node.id] = node
        for edge in result.edges:
            edges.setdefault(edge.key, edge)
    return list(nodes.values()), list(edges.values())


class IndexingController:
    """Indexes repositories into a GraphStore, one run per repository at a time."""

    def __init__(
        self,
        store: GraphStore,
        pipeline: EmbeddingPipeline,
        extractor: EntityExtractor | None = None,
        settings: IndexerSettings | None = None,
        workspace_factory=RepositoryWorkspace,
    ):
        self._settings = settings or IndexerSettings()
        self._store = store
        self._pipeline = pipeline
        self._extractor = extractor or EntityExtractor(
            DescriptionGenerator(max_members=self._settings.max_key_members),
            max_source_chars=self._settings.max_source_chars,
        )
        self._workspace_factory = workspace_factory
        self._in_flight: dict[str, asyncio.Task] = {}

    async def get_status(self, repository_id: str) -> IndexState:
        """Stored indexing state, or INDEXING while a run is in flight."""
        if repository_id in self._in_flight:
            return IndexState.INDEXING
        repository = await self._store.get_repository(repository_id)
        return repository.state if repository else IndexState.NOT_INDEXED

    async def index_repository(
        self,
        repository_ref: str,
        branch: str | None = None,
        force_reindex: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> IndexingResult:
        """
        Index ``repository_ref`` (URL or local path) at ``branch``.

        A second request for a repository that is already being indexed
        waits for the running job and returns its result.
        """
        repository_id = make_repository_id(repository_ref, branch)
        running = self._in_flight.get(repository_id)
        if running is not None:
            logger.info("Indexing of %s already in progress, waiting for it", repository_ref)
            return await asyncio.shield(running)

        task = asyncio.ensure_future(
            self._run(repository_ref, branch, force_reindex, cancel_event)
        )
        self._in_flight[repository_id] = task

        def _release(done: asyncio.Task) -> None:
            if self._in_flight.get(repository_id) is done:
                del self._in_flight[repository_id]

        task.add_done_callback(_release)
        return await task

    # ─── Pipeline ──────────────────────────────────────────

    @trace_function(name="index_repository")
    async def _run(
        self,
        repository_ref: str,
        branch: str | None,
        force_reindex: bool,
        cancel_event: asyncio.Event | None,
    ) -> IndexingResult:
        log = run_logger(logger)
        started = time.monotonic()
        repository = Repository.for_url(repository_ref, branch)
        stored = await self._store.get_repository(repository.id)
        if stored is not None:
            repository = replace(stored, url=repository_ref, branch=repository.branch)
        previous_state = stored.state if stored else IndexState.NOT_INDEXED
        result = IndexingResult(repository_id=repository.id)
        log.info("Indexing %s (branch: %s)", repository_ref, repository.branch)

        try:
            async with self._workspace_factory(
                repository_ref, repository.branch, clone_dir=self._settings.clone_dir,
            ) as workspace:
                commit = await workspace.head_commit()
                result.commit = commit
                log.info("HEAD commit: %s", commit)

                if (
                    not force_reindex
                    and stored is not None
                    and stored.state == IndexState.INDEXED
                    and stored.last_indexed_commit == commit
                ):
                    log.info("%s is up to date at %s, skipping", repository_ref, commit)
                    result.status = IndexingStatus.SKIPPED
                    return result

                repository.state = IndexState.INDEXING
                await self._store.save_repository(repository)

                files = await workspace.discover_python_files()
                extractions, failures = await self._extract_all(
                    workspace, files, repository.id, cancel_event, log,
                )

            result.files_processed = len(files)
            result.files_failed = len(failures)
            result.errors.extend(str(f) for f in failures)
            if files and len(failures) / len(files) > self._settings.max_failure_ratio:
                raise IndexerError(
                    f"{len(failures)} of {len(files)} files failed to parse, above the "
                    f"allowed ratio {self._settings.max_failure_ratio:.0%}"
                )

            nodes, edges = merge_extractions(extractions)
            self._check_cancelled(cancel_event)

            nodes, report = await self._pipeline.embed_nodes(nodes, cancel_event)
            result.errors.extend(report.errors)
            self._check_cancelled(cancel_event)

            await self._store.upsert_nodes(nodes)
            result.relationships_created = await self._store.upsert_edges(edges)
            await self._store.ensure_indexes()
            resolved = await self._store.resolve_placeholders(repository.id)
            result.entities_created = sum(1 for n in nodes if not n.unresolved)
            result.embeddings_generated = report.embedded

            repository.last_indexed_commit = commit
            repository.last_indexed_at = datetime.now(timezone.utc)
            repository.state = IndexState.INDEXED
            repository.last_error = None
            await self._store.save_repository(repository)

            result.status = (
                IndexingStatus.PARTIAL if failures or report.skipped else IndexingStatus.SUCCESS
            )
            log.info(
                "Indexing %s: %d files (%d failed) | %d entities | %d relationships "
                "| %d embeddings | %d placeholders resolved",
                result.status.value, result.files_processed, result.files_failed,
                result.entities_created, result.relationships_created,
                result.embeddings_generated, resolved,
            )

        except IndexingCancelled as e:
            log.warning("Indexing of %s cancelled", repository_ref)
            result.status = IndexingStatus.CANCELLED
            result.errors.append(e.message)
            await self._restore_state(repository, previous_state)
        except asyncio.CancelledError:
            log.warning("Indexing task for %s was cancelled", repository_ref)
            await self._restore_state(repository, previous_state)
            raise
        except Exception as e:
            message = e.message if isinstance(e, KnowledgeGraphError) else f"{type(e).__name__}: {e}"
            log.error("Indexing of %s failed: %s", repository_ref, message, exc_info=True)
            result.status = IndexingStatus.FAILED
            result.errors.append(message)
            repository.state = IndexState.FAILED
            repository.last_error = message
            await self._save_quietly(repository)
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        record_event("indexing_complete", {
            "repository_id": result.repository_id,
            "status": result.status.value,
            "entities": result.entities_created,
        })
        return result

    async def _extract_all(
        self,
        workspace: RepositoryWorkspace,
        files: list[str],
        repository_id: str,
        cancel_event: asyncio.Event | None,
        log: RunLogger,
    ) -> tuple[list[ExtractionResult], list[ParseFailure]]:
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_files)
        done_count = {"n": 0}

        async def _process_one(file_path: str) -> ExtractionResult | ParseFailure:
            async with semaphore:
                self._check_cancelled(cancel_event)
                done_count["n"] += 1
                log.debug("[%d/%d] Extracting %s", done_count["n"], len(files), file_path)
                try:
                    source = await workspace.read_file(file_path)
                except (OSError, UnicodeDecodeError) as e:
                    log.warning("Cannot read %s: %s", file_path, e)
                    return ParseFailure(file_path, f"{type(e).__name__}: {e}")
                return await asyncio.to_thread(
                    self._extractor.extract, source, file_path, repository_id,
                )

        tasks = [asyncio.ensure_future(_process_one(fp)) for fp in files]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        extractions = [o for o in outcomes if isinstance(o, ExtractionResult)]
        failures = [o for o in outcomes if isinstance(o, ParseFailure)]
        for failure in failures:
            log.warning("Parse failure: %s", failure)
        return extractions, failures

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IndexingCancelled("Indexing cancelled")

    async def _restore_state(self, repository: Repository, previous_state: IndexState) -> None:
        if repository.state == IndexState.INDEXING:
            repository.state = previous_state
            await self._save_quietly(repository)

    async def _save_quietly(self, repository: Repository) -> None:
        """Persist the repository record on an error path without masking the
        original error if the store is down too."""
        try:
            await self._store.save_repository(repository)
        except KnowledgeGraphError as e:
            logger.error("Could not update repository record %s: %s", repository.id, e.message)
