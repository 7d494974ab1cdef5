"""
Entry point. Indexes one repository and runs a sample search.

Useful for bootstrapping the graph outside of any service.

Usage:
    python main.py [repository_url_or_path] [branch] [query]

Backends come from the environment (see .env): GRAPH_STORE_BACKEND,
EMBEDDING_PROVIDER, NEO4J_URI / NEO4J_USERNAME / NEO4J_PASSWORD, OPENAI_API_KEY.
"""

import asyncio
import sys

from knowledge_graph.graph_query import HybridSearchEngine
from knowledge_graph.graph_store import Neo4jGraphStore, build_store
from knowledge_graph.indexer import EmbeddingPipeline, IndexingController, build_provider
from knowledge_graph.indexer.config import EmbeddingSettings, IndexerSettings
from knowledge_graph.shared.logging import setup_logging
from knowledge_graph.shared.observability import init_langfuse, shutdown_langfuse

REPO_URL = "https://github.com/tiangolo/fastapi.git"
REPO_BRANCH = "master"
QUERY = "dependency injection"

logger = setup_logging("knowledge-graph.main", IndexerSettings().log_level)


async def main(repository_ref: str, branch: str, query: str) -> None:
    init_langfuse()
    embedding_settings = EmbeddingSettings()
    store = build_store()
    if isinstance(store, Neo4jGraphStore):
        await store.connect()
    try:
        pipeline = EmbeddingPipeline(build_provider(embedding_settings), embedding_settings)
        controller = IndexingController(store, pipeline)

        result = await controller.index_repository(repository_ref, branch)
        logger.info("Indexing result: %s", result.to_response().model_dump_json(indent=2))

        engine = HybridSearchEngine(store, pipeline)
        ranked = await engine.search(query, repository_ids=[result.repository_id])
        for hit in ranked.results:
            logger.info(
                "%-8s %.3f  %s", hit.match_type.value, hit.similarity_score,
                hit.node.fully_qualified_name,
            )
        if ranked.message:
            logger.info(ranked.message)
    finally:
        await store.close()
        shutdown_langfuse()


if __name__ == "__main__":
    args = sys.argv[1:]
    asyncio.run(main(
        args[0] if len(args) > 0 else REPO_URL,
        args[1] if len(args) > 1 else REPO_BRANCH,
        args[2] if len(args) > 2 else QUERY,
    ))
