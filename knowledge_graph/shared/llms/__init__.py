from .models import (
    get_openai_embeddings,
    get_fake_embeddings,
)

__all__ = [
    "get_openai_embeddings",
    "get_fake_embeddings",
]
