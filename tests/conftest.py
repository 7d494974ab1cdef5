"""
Shared fixtures: a small sample repository, a deterministic keyword
embedding provider and an in-memory graph store.
"""

import textwrap

import pytest

from knowledge_graph.graph_store import InMemoryGraphStore
from knowledge_graph.indexer import EmbeddingPipeline, EmbeddingProvider, IndexingController
from knowledge_graph.indexer.config import EmbeddingSettings, IndexerSettings


# ─── Sample repository ───────────────────────────────────────


MODELS_SOURCE = '''\
"""Domain models for the shop."""
from dataclasses import dataclass
from enum import Enum


class OrderStatus(Enum):
    NEW = "new"
    PAID = "paid"


@dataclass
class Invoice:
    """An invoice issued for a paid order."""

    number: str
    amount: float
    email: str


class PaymentError(Exception):
    """Raised when a payment cannot be processed."""
'''

REPOSITORY_SOURCE = '''\
"""Persistence for invoices."""
from typing import Protocol

from shop.models import Invoice


class Repository(Protocol):
    def save(self, item) -> None: ...


class InvoiceRepository(Repository):
    """Stores invoices in the database."""

    def __init__(self):
        self._rows: dict[str, Invoice] = {}

    def save(self, invoice: Invoice) -> None:
        self._rows[invoice.number] = invoice

    def find(self, number: str) -> Invoice | None:
        return self._rows.get(number)
'''

SERVICES_SOURCE = '''\
"""Payment processing."""
import logging

from shop.models import Invoice, PaymentError
from shop.repository import InvoiceRepository

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Sends notification emails."""

    def send(self, address: str, message: str) -> None:
        logger.info("to %s: %s", address, message)


class PaymentService:
    """Processes payments and issues invoices."""

    def __init__(self, notifier: EmailNotifier):
        self.notifier = notifier

    def pay(self, number: str, amount: float, email: str) -> Invoice:
        if amount <= 0:
            raise PaymentError("amount must be positive")
        invoice = Invoice(number, amount, email)
        repository = InvoiceRepository()
        repository.save(invoice)
        self.notifier.send(email, "payment received")
        self._audit(number)
        return invoice

    def _audit(self, number: str) -> None:
        logger.info("paid %s", number)
'''

CYCLE_SOURCE = '''\
class Ping:
    def hit(self, other: "Pong") -> None:
        other.back(self)


class Pong:
    def back(self, other: Ping) -> None:
        other.hit(self)
'''

SAMPLE_FILES = {
    "shop/__init__.py": "",
    "shop/models.py": MODELS_SOURCE,
    "shop/repository.py": REPOSITORY_SOURCE,
    "shop/services.py": SERVICES_SOURCE,
    "shop/cycle.py": CYCLE_SOURCE,
}

INVALID_SOURCE = "def broken(:\n    pass\n"


def write_files(root, files: dict[str, str]) -> None:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content), encoding="utf-8")


@pytest.fixture
def sample_repo(tmp_path):
    """A local (non-git) checkout of the sample shop package."""
    root = tmp_path / "shop-repo"
    write_files(root, SAMPLE_FILES)
    return root


# ─── Embeddings ──────────────────────────────────────────────


VOCABULARY = (
    "payment", "invoice", "email", "notification", "order", "repository",
    "database", "cache", "token", "parse", "http", "user",
)


class KeywordEmbeddingProvider(EmbeddingProvider):
    """One dimension per vocabulary word, valued by its occurrence count.

    Texts sharing words end up close in cosine space; texts with no words
    in common score 0.5 after normalization.
    """

    def __init__(self, vocabulary=VOCABULARY):
        self.vocabulary = vocabulary
        self.calls: list[list[str]] = []

    @property
    def dimension(self) -> int:
        return len(self.vocabulary)

    def vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.vocabulary]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(text) for text in texts]


def make_embedding_settings(**overrides) -> EmbeddingSettings:
    values = dict(
        provider="fake",
        dimension=len(VOCABULARY),
        batch_size=4,
        max_concurrent_batches=2,
        request_timeout_seconds=0,
        max_attempts=3,
        retry_base_delay=0.0,
        retry_jitter=0.0,
    )
    values.update(overrides)
    return EmbeddingSettings(**values)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def embedding_settings():
    return make_embedding_settings()


@pytest.fixture
def pipeline(provider, embedding_settings):
    return EmbeddingPipeline(provider, embedding_settings, sleep=no_sleep)


# ─── Store / controller ──────────────────────────────────────


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def controller(store, pipeline):
    return IndexingController(store, pipeline, settings=IndexerSettings())


@pytest.fixture
async def indexed(controller, sample_repo):
    """The sample repository indexed into the in-memory store."""
    result = await controller.index_repository(str(sample_repo))
    assert result.status.value == "SUCCESS", result.errors
    return result
