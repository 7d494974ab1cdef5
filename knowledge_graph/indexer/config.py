"""Indexer and embedding configuration."""

import os
from enum import Enum

from knowledge_graph.shared.config import BaseAppSettings


class EmbeddingProviderKind(str, Enum):
    OPENAI = "openai"
    FAKE = "fake"


class EmbeddingFailurePolicy(str, Enum):
    """What a run does when a batch still fails after retries."""

    ABORT = "abort"  # fail the run, nothing written
    SKIP = "skip"  # store the nodes without embeddings, report errors


class IndexerSettings(BaseAppSettings):
    """Settings for the indexing controller."""

    component_name: str = "indexer"
    max_concurrent_files: int = 10
    max_failure_ratio: float = 0.2
    clone_dir: str | None = None
    max_source_chars: int = 50_000
    max_key_members: int = 10

    class Config(BaseAppSettings.Config):
        env_prefix = "INDEXER_"


class EmbeddingSettings(BaseAppSettings):
    """Settings for the embedding pipeline."""

    component_name: str = "embeddings"
    provider: EmbeddingProviderKind = EmbeddingProviderKind.OPENAI
    model: str = os.getenv("DEFAULT_EMBEDDING_MODEL", "text-embedding-3-large")
    dimension: int = int(os.getenv("DEFAULT_EMBEDDING_DIMENSION", "1024"))
    batch_size: int = 64
    max_concurrent_batches: int = 4
    request_timeout_seconds: float = 30.0
    max_text_chars: int = 8000
    embed_kinds: list[str] = ["Type", "Method"]
    failure_policy: EmbeddingFailurePolicy = EmbeddingFailurePolicy.ABORT

    # RetryPolicy
    max_attempts: int = 4
    retry_base_delay: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay: float = 20.0
    retry_jitter: float = 0.1

    class Config(BaseAppSettings.Config):
        env_prefix = "EMBEDDING_"
