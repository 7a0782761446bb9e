"""Pytest configuration and fixtures.

Ollama is replaced by deterministic substitutes: a bag-of-words embedder and
a scripted generator. SQLite, FAISS and uploaded files live in per-test
temporary directories.
"""
import hashlib
import os
import re
import tempfile

# Must be set before librarian.config is imported
os.environ.setdefault("LIBRARIAN_DATA_DIR", tempfile.mkdtemp(prefix="librarian-tests-"))

from typing import Callable, List, Optional, Sequence

import pytest

from librarian import db
from librarian.errors import GenerationError, ProviderError
from librarian.rag.store_faiss import FAISSVectorStore
from librarian.storage import LocalBlobStore

FAKE_DIMENSION = 1024

STOPWORDS = {"a", "an", "and", "by", "is", "of", "our", "the", "to", "what", "we"}

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


def _stem(word: str) -> str:
    for suffix in ("ing", "s", "e"):
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return word[: -len(suffix)]
    return word


def bag_of_words(text: str, dimension: int = FAKE_DIMENSION) -> List[float]:
    """Hash stemmed tokens into a fixed-width count vector."""
    vector = [0.0] * dimension
    for token in TOKEN_PATTERN.findall(text.lower()):
        if token in STOPWORDS:
            continue
        bucket = int(hashlib.md5(_stem(token).encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


class FakeEmbedder:
    """Deterministic stand-in for EmbeddingProvider."""

    def __init__(self, dimension: int = FAKE_DIMENSION):
        self.dimension = dimension
        self.fail = False
        self.calls = 0

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail:
            raise ProviderError("embedding provider unreachable")
        return [bag_of_words(text, self.dimension) for text in texts]

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed([text])
        return vectors[0]


class FakeGenerator:
    """Scripted stand-in for AnswerGenerator that records its prompts."""

    def __init__(self, reply: Optional[Callable[[str, str], str]] = None):
        self.reply = reply or (lambda system_prompt, query: f"Answer to: {query}")
        self.fail = False
        self.calls = []

    async def generate(self, system_prompt: str, user_query: str) -> str:
        self.calls.append((system_prompt, user_query))
        if self.fail:
            raise GenerationError("chat model unavailable")
        return self.reply(system_prompt, user_query)


class FakeOllamaClient:
    def __init__(self, models: Optional[List[str]] = None, reachable: bool = True):
        self.models = models or []
        self.reachable = reachable

    async def list_models(self) -> List[str]:
        if not self.reachable:
            raise ConnectionError("connection refused")
        return list(self.models)


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "librarian.sqlite")
    db.init_database()
    return db


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def vector_store(tmp_path):
    store = FAISSVectorStore(
        index_dir=tmp_path / "vectors",
        dimension=FAKE_DIMENSION,
        embedding_model="fake-bow",
    )
    store.init_or_load()
    return store


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "uploads")
