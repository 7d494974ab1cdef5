import os

from dotenv import load_dotenv
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_openai import OpenAIEmbeddings

load_dotenv()


# ─── Embedding Model Factories ───────────────────────────


def get_openai_embeddings(
    model_name: str | None = None,
    dimensions: int | None = None,
    timeout: float | None = None,
) -> OpenAIEmbeddings:
    return OpenAIEmbeddings(
        model=model_name or os.getenv("DEFAULT_EMBEDDING_MODEL", "text-embedding-3-large"),
        api_key=os.getenv("OPENAI_API_KEY"),
        dimensions=dimensions,
        timeout=timeout,
        # retries are handled by RetryPolicy at the pipeline boundary
        max_retries=0,
    )


def get_fake_embeddings(dimensions: int) -> DeterministicFakeEmbedding:
    return DeterministicFakeEmbedding(size=dimensions)
