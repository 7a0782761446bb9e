"""Conversation memory writer.

Re-indexes each answered exchange so later questions can retrieve it. Writes
run as detached tasks: the caller's response never waits on them and their
failures are only logged.
"""
import asyncio
import time
from typing import Optional, Set
import structlog

from librarian import config
from librarian.rag.chunker import SentenceChunker
from librarian.rag.embeddings import EmbeddingProvider
from librarian.rag.store_faiss import (
    FAISSVectorStore,
    IndexedItem,
    SOURCE_KIND_CONVERSATION,
)

logger = structlog.get_logger()


def conversation_source_id() -> str:
    """Synthetic, time-derived source id for a re-embedded exchange."""
    return f"conversation_{int(time.time() * 1000)}"


class MemoryWriter:
    """Best-effort writer of query/answer exchanges into the vector store."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: FAISSVectorStore,
        chunker: Optional[SentenceChunker] = None,
        enabled: bool = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.chunker = chunker or SentenceChunker()
        self.enabled = config.MEMORY_WRITES_ENABLED if enabled is None else enabled
        self._pending: Set[asyncio.Task] = set()

    def schedule(self, owner_id: str, query: str, answer: str) -> Optional[asyncio.Task]:
        """Dispatch a detached memory write. Returns the task, or None when disabled."""
        if not self.enabled:
            return None

        task = asyncio.create_task(self.write(owner_id, query, answer))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def write(self, owner_id: str, query: str, answer: str) -> int:
        """Chunk, embed and upsert one exchange.

        Returns:
            Number of items written (0 on failure)
        """
        source_id = conversation_source_id()
        try:
            chunks = self.chunker.chunk_text(f"Query: {query}\nAnswer: {answer}")
            if not chunks:
                return 0

            vectors = await self.embedder.embed(chunks)
            items = [
                IndexedItem(
                    id=f"{source_id}:{index}",
                    vector=vector,
                    text=text,
                    metadata={
                        "source_id": source_id,
                        "chunk_index": index,
                        "source_kind": SOURCE_KIND_CONVERSATION,
                    },
                )
                for index, (text, vector) in enumerate(zip(chunks, vectors))
            ]
            await self.vector_store.upsert(owner_id, items)

            logger.info(
                "conversation_embedded",
                source_id=source_id,
                chunk_count=len(items),
            )
            return len(items)

        except Exception as e:
            logger.warning(
                "conversation_embedding_failed",
                source_id=source_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for all outstanding writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
