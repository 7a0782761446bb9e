"""Ingest pipeline for indexing uploaded documents.

Orchestrates:
- Blob download
- Text extraction
- Text chunking
- Embedding generation
- Vector and chunk-row storage
- Document status transitions (uploaded -> parsed -> embedded, or failed)
"""
from typing import Any, Callable, Dict, Optional, Set
import structlog

from librarian import db
from librarian.errors import DocumentBusyError
from librarian.rag.chunker import TextChunker
from librarian.rag.embeddings import EmbeddingProvider
from librarian.rag.extract import TextExtractor
from librarian.rag.store_faiss import FAISSVectorStore, IndexedItem, SOURCE_KIND_DOCUMENT
from librarian.storage import LocalBlobStore

logger = structlog.get_logger()


def chunk_item_id(document_id: str, chunk_index: int) -> str:
    """Deterministic vector item id for a document chunk."""
    return f"{document_id}:{chunk_index}"


class IngestPipeline:
    """Pipeline for ingesting uploaded documents into the RAG system."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: FAISSVectorStore,
        blob_store: LocalBlobStore,
        chunker: Optional[TextChunker] = None,
        extractor: Optional[TextExtractor] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedder: Embedding provider for chunk texts
            vector_store: Owner-partitioned vector store
            blob_store: Where uploaded files are kept
            chunker: Text chunker (default sizes from config)
            extractor: Text extractor for supported MIME types
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.blob_store = blob_store
        self.chunker = chunker or TextChunker()
        self.extractor = extractor or TextExtractor()

        self._active: Set[str] = set()

        logger.info(
            "ingest_pipeline_initialized",
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
        )

    def is_processing(self, document_id: str) -> bool:
        return document_id in self._active

    async def ingest_document(self, document_id: str, flush: bool = True) -> Dict[str, Any]:
        """Process one document end to end.

        Args:
            document_id: Document to process
            flush: Write the vector index to disk afterwards (batch callers
                flush once at the end instead)

        Returns:
            Dictionary with ingestion results

        Raises:
            DocumentBusyError: If the document is already being processed
            KeyError: If the document doesn't exist
            Exception: Any processing failure, after marking the document failed
        """
        if document_id in self._active:
            raise DocumentBusyError(f"Document {document_id} is already being processed")

        self._active.add(document_id)
        try:
            return await self._ingest(document_id, flush)
        finally:
            self._active.discard(document_id)

    async def _ingest(self, document_id: str, flush: bool) -> Dict[str, Any]:
        document = db.get_document(document_id)
        if document is None:
            raise KeyError(document_id)

        owner_id = document["owner_id"]
        logger.info(
            "ingesting_document",
            document_id=document_id,
            mime_type=document["mime_type"],
        )

        try:
            data = self.blob_store.read(document["storage_uri"])
            extracted = self.extractor.extract(data, document["mime_type"])
            db.update_document_status(document_id, "parsed")

            chunks = self.chunker.chunk_text(extracted.text)

            # Embed everything before touching the index
            embeddings = await self.embedder.embed([chunk.content for chunk in chunks])

            await self.vector_store.delete_by_owner(owner_id, source_id=document_id)

            items = [
                IndexedItem(
                    id=chunk_item_id(document_id, chunk.chunk_index),
                    vector=vector,
                    text=chunk.content,
                    metadata={
                        "source_id": document_id,
                        "chunk_index": chunk.chunk_index,
                        "source_kind": SOURCE_KIND_DOCUMENT,
                        "title": document.get("title"),
                    },
                )
                for chunk, vector in zip(chunks, embeddings)
            ]
            item_ids = await self.vector_store.upsert(owner_id, items)

            db.replace_chunks(
                document_id,
                [
                    (chunk.chunk_index, chunk.content, item_id)
                    for chunk, item_id in zip(chunks, item_ids)
                ],
            )
            db.update_document_status(document_id, "embedded", chunk_count=len(chunks))
            if flush:
                await self.vector_store.flush()

        except Exception as e:
            logger.error(
                "document_ingestion_failed",
                document_id=document_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                db.update_document_status(document_id, "failed", error=str(e)[:500])
            except Exception as status_error:
                logger.error(
                    "document_status_update_failed",
                    document_id=document_id,
                    error=str(status_error),
                )
            raise

        if not chunks:
            logger.warning("no_chunks_created", document_id=document_id)

        logger.info(
            "document_ingested",
            document_id=document_id,
            chunks_created=len(chunks),
        )

        return {
            "document_id": document_id,
            "chunks_created": len(chunks),
            "embeddings_generated": len(embeddings),
        }

    async def delete_document(self, owner_id: str, document_id: str) -> bool:
        """Remove a document's vectors, stored file and rows.

        Returns:
            True if deleted, False if not found

        Raises:
            DocumentBusyError: If the document is being processed
        """
        document = db.get_document(document_id, owner_id=owner_id)
        if document is None:
            return False
        if document_id in self._active:
            raise DocumentBusyError(f"Document {document_id} is being processed")

        removed = await self.vector_store.delete_by_owner(owner_id, source_id=document_id)
        self.blob_store.delete(document["storage_uri"])
        deleted = db.delete_document(owner_id, document_id)
        await self.vector_store.flush()

        logger.info("document_removed", document_id=document_id, vectors_removed=removed)
        return deleted

    async def ingest_all(
        self,
        owner_id: Optional[str] = None,
        progress_callback: Optional[Callable[[int, int, Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """Re-process every document, or every document of one owner.

        Args:
            owner_id: Restrict to one owner (default: all owners)
            progress_callback: Optional callback function(current, total, document)

        Returns:
            Dictionary with ingestion statistics
        """
        logger.info("starting_ingest_all", owner_scoped=owner_id is not None)

        documents = db.list_documents(owner_id)
        stats = {
            "documents_processed": 0,
            "documents_failed": 0,
            "documents_skipped": 0,
            "chunks_created": 0,
        }

        for idx, document in enumerate(documents, 1):
            if progress_callback:
                progress_callback(idx, len(documents), document)

            try:
                result = await self.ingest_document(document["id"], flush=False)
            except DocumentBusyError:
                stats["documents_skipped"] += 1
                continue
            except Exception as e:
                logger.error(
                    "document_reindex_failed",
                    document_id=document["id"],
                    error=str(e),
                )
                stats["documents_failed"] += 1
                # Continue with next document instead of failing entirely
                continue

            stats["documents_processed"] += 1
            stats["chunks_created"] += result["chunks_created"]

        await self.vector_store.flush()
        logger.info("ingest_all_completed", stats=stats)

        return stats
