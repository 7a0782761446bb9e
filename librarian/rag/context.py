"""Prompt context assembly.

Merges retrieved passages and recent conversation turns into a single
bounded system prompt for the answer generator.
"""
from typing import List, Optional, Sequence
import structlog

from librarian import config
from librarian.memory.manager import ConversationTurn
from librarian.rag.retriever import RetrievalResult

logger = structlog.get_logger()

NO_CONTEXT_PLACEHOLDER = "No specific context found in the user's documents."

CHAT_PREAMBLE = """You are a Personal Librarian AI assistant. You help users by analyzing their personal documents and providing personalized insights."""

CHAT_INSTRUCTIONS = """Instructions:
- Use the provided context to give personalized, relevant answers
- If the context doesn't contain relevant information, say so and provide general guidance
- Be helpful, concise, and reference specific details from the user's documents when appropriate
- If you reference information from the context, mention that it's from their personal documents
- Always maintain a helpful and professional tone"""

INSIGHT_INSTRUCTIONS = """Instructions:
- Analyze the provided context and generate a unique insight
- If the context doesn't contain relevant information, say so and provide general guidance
- Be specific and mention that details come from the user's personal documents when you use them
- Keep the insight concise and actionable
- Maintain a professional and helpful tone"""


class ContextAssembler:
    """Builds system prompts from passages and conversation history."""

    def __init__(self, max_context_chars: int = None, history_turns: int = None):
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.history_turns = history_turns or config.HISTORY_TURNS

    def build_context_block(self, passages: Sequence[RetrievalResult]) -> str:
        """Join passage texts in ranked order, dropping whole passages past the budget.

        The top passage is always kept, cut to the budget if it overruns it alone.
        """
        parts: List[str] = []
        total = 0
        for passage in passages:
            text = passage.text.strip()
            if not text:
                continue
            added = len(text) + (2 if parts else 0)
            if not parts and added > self.max_context_chars:
                logger.debug("context_top_passage_truncated", length=len(text))
                parts.append(text[: self.max_context_chars])
                total = self.max_context_chars
                continue
            if total + added > self.max_context_chars:
                logger.debug(
                    "context_budget_reached",
                    kept=len(parts),
                    dropped=len(passages) - len(parts),
                )
                break
            parts.append(text)
            total += added
        return "\n\n".join(parts)

    def build_history_block(
        self, history: Optional[Sequence[ConversationTurn]], enabled: bool = True
    ) -> str:
        """Render the most recent turns as 'Role: content' lines, oldest first."""
        if not enabled or not history:
            return ""
        recent = list(history)[-self.history_turns:]
        return "\n".join(
            f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}"
            for turn in recent
        )

    def build_chat_prompt(
        self,
        passages: Sequence[RetrievalResult],
        history: Optional[Sequence[ConversationTurn]] = None,
        include_history: bool = True,
    ) -> str:
        context_block = self.build_context_block(passages)
        history_block = self.build_history_block(history, enabled=include_history)

        sections = [
            CHAT_PREAMBLE,
            "Context about the user (retrieved from their documents):\n"
            + (context_block or NO_CONTEXT_PLACEHOLDER),
        ]
        if history_block:
            sections.append(f"Recent conversation:\n{history_block}")
        sections.append(CHAT_INSTRUCTIONS)

        prompt = "\n\n".join(sections)

        logger.debug(
            "chat_prompt_built",
            prompt_length=len(prompt),
            has_document_context=bool(context_block),
            has_history_context=bool(history_block),
        )
        return prompt

    def build_insight_prompt(self, topic: str, passages: Sequence[RetrievalResult]) -> str:
        context_block = self.build_context_block(passages)
        return "\n\n".join([
            f'You are a Personal Librarian AI assistant. Generate a personalized insight about "{topic}" based on the user\'s documents.',
            "Context from the user's documents:\n" + (context_block or NO_CONTEXT_PLACEHOLDER),
            INSIGHT_INSTRUCTIONS,
        ])
