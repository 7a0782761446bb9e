"""Text chunking with overlap for RAG pipeline.

Document text goes through langchain's RecursiveCharacterTextSplitter
(character-based, no tokenizer): separators are tried coarsest-to-finest and
adjacent pieces are merged back up to the chunk size with a bounded overlap.
Chunks are then located in the source text to record their offsets.
"""
import re
from typing import List, Optional, Sequence
from dataclasses import dataclass
import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from librarian import config

logger = structlog.get_logger()

SENTENCE_PATTERN = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Recursive character text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
        separators: Optional[Sequence[str]] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)
            separators: Split points in priority order, coarsest first
        """
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        self.separators = list(separators or config.CHUNK_SEPARATORS)

        # Validate parameters
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {self.chunk_overlap}")

        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            separators=self.separators,
            length_function=len,
        )

        logger.info(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects (empty for blank text)
        """
        if not text or not text.strip():
            return []

        pieces = [piece for piece in self.splitter.split_text(text) if piece.strip()]

        chunks = []
        search_from = 0
        for chunk_index, content in enumerate(pieces):
            start = text.find(content, search_from)
            if start == -1:
                start = search_from
            chunks.append(
                TextChunk(
                    content=content,
                    char_start=start,
                    char_end=start + len(content),
                    chunk_index=chunk_index,
                )
            )
            search_from = start + 1

        if chunks:
            logger.info(
                "text_chunked",
                text_length=len(text),
                chunk_count=len(chunks),
                avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
            )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


class SentenceChunker:
    """Sentence-boundary chunker used for re-embedding conversation turns."""

    def __init__(self, chunk_size: int = None):
        self.chunk_size = chunk_size or config.CHUNK_SIZE

    def chunk_text(self, text: str) -> List[str]:
        """Accumulate sentences, flushing before a chunk would exceed chunk_size."""
        if not text or not text.strip():
            return []

        chunks: List[str] = []
        current = ""
        for match in SENTENCE_PATTERN.finditer(text):
            sentence = match.group(0).strip()
            if not sentence:
                continue
            if current and len(current) + 1 + len(sentence) > self.chunk_size:
                chunks.append(current)
                current = sentence
            else:
                current = f"{current} {sentence}" if current else sentence

        if current:
            chunks.append(current)

        return chunks
