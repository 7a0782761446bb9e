"""Query orchestration for the Personal Librarian.

Runs one request through retrieval, prompt assembly and generation, applies
the fallback policy, records the result as a report and hands the exchange to
the memory writer. Only a failure that leaves no answer text at all becomes a
fallback; everything else degrades.
"""
import hashlib
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Sequence
import structlog

from librarian import config, db
from librarian.errors import GenerationError, PersistenceError, RetrievalUnavailable
from librarian.memory.manager import ConversationTurn
from librarian.memory.writer import MemoryWriter
from librarian.rag.context import ContextAssembler
from librarian.rag.generator import AnswerGenerator
from librarian.rag.retriever import RetrievalResult, Retriever
from librarian.rag.store_faiss import FAISSVectorStore, SOURCE_KIND_DOCUMENT

logger = structlog.get_logger()

NO_DOCUMENTS_RESPONSES = [
    "I don't have any of your documents yet. Upload a few files and I'll be able to give you answers based on them.",
    "Your library is empty so far. Once you upload some documents I can answer questions about them.",
    "There's nothing in your library to search yet. Add a document and ask me again.",
]

RETRIEVAL_UNAVAILABLE_RESPONSES = [
    "I can't reach your documents right now, so I can't give you a personalized answer. Please try again in a moment.",
    "Searching your library failed just now. Please try your question again shortly.",
    "Your documents are temporarily unavailable. Please ask again in a little while.",
]

GENERATION_FAILED_RESPONSES = [
    "I'm having trouble generating an answer right now. Please try again in a moment.",
    "The assistant is temporarily unavailable. Please try your question again shortly.",
    "Something went wrong while preparing your answer. Please try again.",
]


def choose_canned_response(responses: Sequence[str], owner_id: str, text: str) -> str:
    """Pick a canned response deterministically from the owner and input text."""
    digest = hashlib.sha256(f"{owner_id}{text}".encode("utf-8")).digest()
    return responses[int.from_bytes(digest[:8], "big") % len(responses)]


@dataclass
class QueryResponse:
    """Result of one chat query."""

    answer: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    is_fallback: bool = False
    report_id: Optional[str] = None
    context_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InsightResponse:
    insight: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    is_fallback: bool = False
    report_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RAGPipeline:
    """Retrieval-augmented answering for chat queries and insights."""

    def __init__(
        self,
        retriever: Retriever,
        generator: AnswerGenerator,
        vector_store: FAISSVectorStore,
        memory_writer: Optional[MemoryWriter] = None,
        assembler: Optional[ContextAssembler] = None,
        generate_without_context: bool = None,
    ):
        """Initialize the pipeline.

        Args:
            retriever: Owner-scoped semantic retriever
            generator: Chat-model answer generator
            vector_store: Used to tell whether the owner has any documents
            memory_writer: Re-indexes answered exchanges (None disables)
            assembler: Prompt builder (default budgets from config)
            generate_without_context: Answer without passages when retrieval
                is down instead of returning a canned reply
        """
        self.retriever = retriever
        self.generator = generator
        self.vector_store = vector_store
        self.memory_writer = memory_writer
        self.assembler = assembler or ContextAssembler()
        self.generate_without_context = (
            config.GENERATE_WITHOUT_CONTEXT
            if generate_without_context is None
            else generate_without_context
        )

    def _has_documents(self, owner_id: str) -> bool:
        return self.vector_store.count(owner_id, SOURCE_KIND_DOCUMENT) > 0

    async def process_query(
        self,
        owner_id: str,
        query: str,
        history: Optional[Sequence[ConversationTurn]] = None,
        include_history: bool = True,
    ) -> QueryResponse:
        """Answer a chat query from the owner's documents.

        Args:
            owner_id: Owner asking the question
            query: Question text
            history: Recent conversation turns, oldest first
            include_history: Add history to the prompt

        Returns:
            QueryResponse with a non-empty answer

        Raises:
            ValueError: If the query is blank
        """
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")

        log = logger.bind(query_preview=query[:100])
        log.info("query_stage", stage="start", history_turns=len(history or []))

        if not self._has_documents(owner_id):
            log.info("query_fallback", reason="no_documents")
            return QueryResponse(
                answer=choose_canned_response(NO_DOCUMENTS_RESPONSES, owner_id, query),
                is_fallback=True,
            )

        log.info("query_stage", stage="retrieving")
        degraded = False
        try:
            passages = await self.retriever.retrieve(owner_id, query)
        except RetrievalUnavailable as e:
            log.warning("retrieval_unavailable", error=str(e))
            if not self.generate_without_context:
                return QueryResponse(
                    answer=choose_canned_response(
                        RETRIEVAL_UNAVAILABLE_RESPONSES, owner_id, query
                    ),
                    is_fallback=True,
                )
            passages = []
            degraded = True

        log.info("query_stage", stage="generating", passages=len(passages))
        system_prompt = self.assembler.build_chat_prompt(
            passages, history=history, include_history=include_history
        )
        try:
            answer = await self.generator.generate(system_prompt, query)
        except GenerationError as e:
            log.error("generation_unavailable", error=str(e))
            return QueryResponse(
                answer=choose_canned_response(GENERATION_FAILED_RESPONSES, owner_id, query),
                is_fallback=True,
            )

        sources = [passage.to_source() for passage in passages]

        log.info("query_stage", stage="persisting")
        report_id = self._record_answer(owner_id, query, answer, passages)

        if self.memory_writer is not None:
            self.memory_writer.schedule(owner_id, query, answer)

        log.info(
            "query_stage",
            stage="done",
            is_fallback=degraded,
            sources=len(sources),
            answer_length=len(answer),
        )

        return QueryResponse(
            answer=answer,
            sources=sources,
            is_fallback=degraded,
            report_id=report_id,
            context_used=bool(passages),
        )

    def _record_answer(
        self,
        owner_id: str,
        query: str,
        answer: str,
        passages: Sequence[RetrievalResult],
    ) -> Optional[str]:
        """Store the answer as a report plus a prompt-history row. Failures are logged."""
        try:
            report = db.create_report(
                owner_id,
                title=f"Query: {query[:50]}...",
                content=answer,
                source_urls=_source_ids(passages),
            )
            db.create_prompt_history(owner_id, query, report_id=report["id"])
            return report["id"]
        except PersistenceError as e:
            logger.error("answer_persist_failed", error=str(e))
            return None

    async def generate_insight(self, owner_id: str, topic: str) -> InsightResponse:
        """Generate a document-grounded insight about a topic.

        Conversation memory is excluded and the stricter insight relevance
        floor applies. Insights are not written back to memory.
        """
        if not topic or not topic.strip():
            raise ValueError("Topic cannot be empty")

        log = logger.bind(topic_preview=topic[:100])
        log.info("insight_stage", stage="start")

        if not self._has_documents(owner_id):
            log.info("insight_fallback", reason="no_documents")
            return InsightResponse(
                insight=choose_canned_response(NO_DOCUMENTS_RESPONSES, owner_id, topic),
                is_fallback=True,
            )

        log.info("insight_stage", stage="retrieving")
        degraded = False
        try:
            passages = await self.retriever.retrieve(
                owner_id,
                topic,
                min_score=config.INSIGHT_MIN_SCORE,
                documents_only=True,
            )
        except RetrievalUnavailable as e:
            log.warning("retrieval_unavailable", error=str(e))
            if not self.generate_without_context:
                return InsightResponse(
                    insight=choose_canned_response(
                        RETRIEVAL_UNAVAILABLE_RESPONSES, owner_id, topic
                    ),
                    is_fallback=True,
                )
            passages = []
            degraded = True

        log.info("insight_stage", stage="generating", passages=len(passages))
        try:
            insight = await self.generator.generate(
                self.assembler.build_insight_prompt(topic, passages),
                f"Generate an insight about: {topic}",
            )
        except GenerationError as e:
            log.error("generation_unavailable", error=str(e))
            return InsightResponse(
                insight=choose_canned_response(GENERATION_FAILED_RESPONSES, owner_id, topic),
                is_fallback=True,
            )

        log.info("insight_stage", stage="persisting")
        report_id = None
        try:
            report = db.create_report(
                owner_id,
                title=f"Insight: {topic}",
                content=insight,
                source_urls=_source_ids(passages),
            )
            report_id = report["id"]
        except PersistenceError as e:
            log.error("insight_persist_failed", error=str(e))

        log.info("insight_stage", stage="done", is_fallback=degraded)

        return InsightResponse(
            insight=insight,
            sources=[passage.to_source() for passage in passages],
            is_fallback=degraded,
            report_id=report_id,
        )


def _source_ids(passages: Sequence[RetrievalResult]) -> List[str]:
    seen: List[str] = []
    for passage in passages:
        if passage.source_id and passage.source_id not in seen:
            seen.append(passage.source_id)
    return seen
