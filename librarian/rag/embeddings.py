"""Embedding provider adapter.

Turns document chunks and queries into fixed-width vectors through the
Ollama embed endpoint. Any failure is fatal for the enclosing operation:
callers either get one vector per input or a ProviderError.
"""
import asyncio
from typing import List, Optional, Sequence

import httpx
import structlog

from librarian import config
from librarian.errors import ProviderError
from librarian.llm_client import OllamaClient

logger = structlog.get_logger()


class EmbeddingProvider:
    """Stateless embedding capability backed by Ollama."""

    def __init__(
        self,
        client: Optional[OllamaClient] = None,
        model: str = None,
        dimension: int = None,
        batch_size: int = None,
        timeout: float = None,
    ):
        self.client = client or OllamaClient()
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.timeout = timeout or config.PROVIDER_TIMEOUT

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed a sequence of document texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, in input order

        Raises:
            ProviderError: On remote failure, timeout, count or width mismatch
        """
        texts = list(texts)
        if not texts:
            return []

        vectors: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            vectors.extend(await self._embed_batch(batch))

        logger.debug("texts_embedded", count=len(vectors), model=self.model)
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        vectors = await self._embed_batch([text])
        return vectors[0]

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        try:
            async with asyncio.timeout(self.timeout):
                response = await self.client.embed(batch, model=self.model)
        except asyncio.TimeoutError as e:
            logger.error("embedding_timeout", model=self.model, timeout=self.timeout)
            raise ProviderError(f"Embedding request timed out after {self.timeout}s") from e
        except (httpx.HTTPError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(
                "embedding_generation_failed",
                model=self.model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderError(f"Failed to generate embeddings: {e}") from e

        vectors = response.get("embeddings") if isinstance(response, dict) else None
        if not isinstance(vectors, list):
            raise ProviderError("Embedding reply has no list of vectors")

        if len(vectors) != len(batch):
            raise ProviderError(
                f"Embedding count mismatch: sent {len(batch)} texts, "
                f"received {len(vectors)} vectors"
            )

        for vector in vectors:
            if not isinstance(vector, list) or not all(
                isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector
            ):
                raise ProviderError("Embedding reply contains a non-numeric vector")
            if len(vector) != self.dimension:
                raise ProviderError(
                    f"Embedding dimension mismatch: expected {self.dimension}, "
                    f"got {len(vector)} from {self.model}"
                )

        return vectors
