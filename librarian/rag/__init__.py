"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction from uploaded documents
- Document chunking with overlap
- Embedding generation
- Owner-partitioned FAISS vector storage
- Semantic retrieval and prompt context assembly
- Answer generation
"""
