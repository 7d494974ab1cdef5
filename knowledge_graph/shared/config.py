"""
Base configuration for the knowledge-graph components.

Each component (indexer, embeddings, graph store, query engine) subclasses
BaseAppSettings with its own env prefix, so ``INDEXER_MAX_FAILURE_RATIO``
and ``QUERY_MIN_SIMILARITY`` live side by side in one ``.env`` file.
"""

from pydantic_settings import BaseSettings


class BaseAppSettings(BaseSettings):
    component_name: str = "knowledge-graph"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
