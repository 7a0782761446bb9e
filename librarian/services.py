"""Construction of the long-lived service objects.

Provider clients, the vector store and the pipelines are built once and
shared by every request.
"""
from dataclasses import dataclass
from typing import Optional
import structlog

from librarian.llm_client import OllamaClient
from librarian.memory import ConversationManager, MemoryWriter
from librarian.pipeline import RAGPipeline
from librarian.rag.embeddings import EmbeddingProvider
from librarian.rag.generator import AnswerGenerator
from librarian.rag.ingest import IngestPipeline
from librarian.rag.retriever import Retriever
from librarian.rag.store_faiss import FAISSVectorStore
from librarian.storage import LocalBlobStore

logger = structlog.get_logger()


@dataclass
class Services:
    client: OllamaClient
    embedder: EmbeddingProvider
    generator: AnswerGenerator
    vector_store: FAISSVectorStore
    blob_store: LocalBlobStore
    conversations: ConversationManager
    memory_writer: MemoryWriter
    ingest: IngestPipeline
    pipeline: RAGPipeline


def build_services(
    client: Optional[OllamaClient] = None,
    embedder: Optional[EmbeddingProvider] = None,
    generator: Optional[AnswerGenerator] = None,
    vector_store: Optional[FAISSVectorStore] = None,
    blob_store: Optional[LocalBlobStore] = None,
    memory_writes: Optional[bool] = None,
) -> Services:
    """Wire every component, using config defaults for anything not given."""
    client = client or OllamaClient()
    embedder = embedder or EmbeddingProvider(client=client)
    generator = generator or AnswerGenerator(client=client)
    vector_store = vector_store or FAISSVectorStore()
    blob_store = blob_store or LocalBlobStore()

    memory_writer = MemoryWriter(embedder, vector_store, enabled=memory_writes)
    retriever = Retriever(embedder, vector_store)

    services = Services(
        client=client,
        embedder=embedder,
        generator=generator,
        vector_store=vector_store,
        blob_store=blob_store,
        conversations=ConversationManager(),
        memory_writer=memory_writer,
        ingest=IngestPipeline(embedder, vector_store, blob_store),
        pipeline=RAGPipeline(
            retriever=retriever,
            generator=generator,
            vector_store=vector_store,
            memory_writer=memory_writer,
        ),
    )

    logger.info("services_built", memory_writes=memory_writer.enabled)
    return services
