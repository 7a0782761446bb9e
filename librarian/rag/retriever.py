"""Retriever for semantic search over an owner's indexed documents.

Handles:
- Query embedding generation
- Owner-scoped vector search with over-fetch
- Conversation-memory exclusion for document-only callers
- Relevance floor and final truncation
"""
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
import structlog

from librarian import config
from librarian.errors import ProviderError, RetrievalUnavailable
from librarian.rag.embeddings import EmbeddingProvider
from librarian.rag.store_faiss import FAISSVectorStore, SOURCE_KIND_CONVERSATION

logger = structlog.get_logger()


@dataclass
class RetrievalResult:
    """A single retrieved passage with metadata."""

    item_id: str
    text: str
    score: float
    source_id: str
    chunk_index: int = 0
    source_kind: str = "document_chunk"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_conversation(self) -> bool:
        return self.source_kind == SOURCE_KIND_CONVERSATION

    def to_source(self, preview_chars: int = 200) -> Dict[str, Any]:
        """Format for display as a citation."""
        preview = self.text
        if len(preview) > preview_chars:
            preview = preview[:preview_chars] + "..."
        return {
            "id": self.item_id,
            "source_id": self.source_id,
            "chunk_index": self.chunk_index,
            "score": round(self.score, 3),
            "text": preview,
        }


class Retriever:
    """Semantic retriever for RAG pipeline."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: FAISSVectorStore,
        top_k: int = None,
        max_results: int = None,
    ):
        """Initialize the retriever.

        Args:
            embedder: Embedding provider for queries
            vector_store: Owner-partitioned vector store
            top_k: Number of candidates fetched before filtering (default from config)
            max_results: Number of results kept after filtering (default from config)
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.max_results = max_results or config.RETRIEVAL_MAX_RESULTS

        logger.info(
            "retriever_initialized",
            top_k=self.top_k,
            max_results=self.max_results,
        )

    async def retrieve(
        self,
        owner_id: str,
        query: str,
        top_k: Optional[int] = None,
        min_score: float = None,
        documents_only: bool = False,
        max_results: Optional[int] = None,
    ) -> List[RetrievalResult]:
        """Retrieve relevant passages for a query.

        Args:
            owner_id: Owner whose documents to search
            query: User query text
            top_k: Candidates to fetch before filtering (overrides default)
            min_score: Relevance floor; results scoring below it are dropped
            documents_only: Exclude re-embedded conversation turns
            max_results: Results kept after filtering (overrides default)

        Returns:
            At most max_results RetrievalResult objects, best first. Empty when
            nothing clears the floor.

        Raises:
            RetrievalUnavailable: If the query cannot be embedded or searched
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = top_k or self.top_k
        max_results = max_results or self.max_results
        if min_score is None:
            min_score = config.CONVERSATION_MIN_SCORE

        logger.info(
            "retrieval_started",
            query_length=len(query),
            top_k=top_k,
            min_score=min_score,
            documents_only=documents_only,
        )

        try:
            query_embedding = await self.embedder.embed_query(query)
        except ProviderError as e:
            logger.error(
                "query_embedding_failed",
                error=str(e),
                query_preview=query[:100],
            )
            raise RetrievalUnavailable(f"Query embedding failed: {e}") from e

        try:
            matches = await self.vector_store.query(owner_id, query_embedding, top_k=top_k)
        except (RuntimeError, ValueError) as e:
            logger.error("vector_search_failed", error=str(e), error_type=type(e).__name__)
            raise RetrievalUnavailable(f"Vector search failed: {e}") from e

        if not matches:
            logger.info("no_results_found")
            return []

        results = []
        excluded = 0
        for match in matches:
            metadata = match.metadata
            result = RetrievalResult(
                item_id=match.id,
                text=metadata.get("original_text", ""),
                score=match.score,
                source_id=str(metadata.get("source_id", "")),
                chunk_index=int(metadata.get("chunk_index", 0)),
                source_kind=metadata.get("source_kind", "document_chunk"),
                metadata=metadata,
            )

            if documents_only and result.is_conversation:
                excluded += 1
                continue

            if result.score < min_score:
                continue

            results.append(result)

        # Matches arrive ranked; keep that order
        results = results[:max_results]

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            candidates=len(matches),
            conversation_excluded=excluded,
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results
