"""FAISS vector store for semantic search.

Handles:
- Per-owner namespaces (the single write path)
- A legacy global scope filtered by owner metadata (read as a migration shim)
- Idempotent upsert and deletion by item id
- Cosine ranking over L2-normalised vectors
- Index and metadata persistence
"""
import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import numpy as np
import faiss
import structlog

from librarian import config
from librarian.errors import RetrievalUnavailable

logger = structlog.get_logger()

NAMESPACE_SCOPE = "namespace"
GLOBAL_SCOPE = "global"
GLOBAL_SCOPE_KEY = "global"
NAMESPACE_PREFIX = "ns:"

SOURCE_KIND_DOCUMENT = "document_chunk"
SOURCE_KIND_CONVERSATION = "conversation_turn"

MANIFEST_NAME = "items.json"


@dataclass
class IndexedItem:
    """A vector plus the text and metadata it was computed from."""

    id: str
    vector: Sequence[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A single similarity search hit."""

    id: str
    score: float
    metadata: Dict[str, Any]
    sequence: int


class _ScopeIndex:
    """One isolated FAISS index with its item records."""

    def __init__(self, dimension: int, index: Optional[faiss.Index] = None):
        self.index = index if index is not None else faiss.IndexIDMap2(
            faiss.IndexFlatIP(dimension)
        )
        self.records: Dict[int, Dict[str, Any]] = {}
        self.ids: Dict[str, int] = {}

    def remove(self, faiss_ids: List[int]) -> int:
        if not faiss_ids:
            return 0
        self.index.remove_ids(np.array(faiss_ids, dtype=np.int64))
        for faiss_id in faiss_ids:
            record = self.records.pop(faiss_id)
            self.ids.pop(record["id"], None)
        return len(faiss_ids)


class FAISSVectorStore:
    """Owner-partitioned FAISS vector store with metadata."""

    def __init__(
        self,
        index_dir: Optional[Path] = None,
        dimension: int = None,
        embedding_model: str = None,
        persist: bool = True,
    ):
        """Initialize the FAISS vector store.

        Args:
            index_dir: Directory for index files and manifest (default: VECTOR_DIR)
            dimension: Embedding width every vector must have (default from config)
            embedding_model: Embedding model name recorded in the manifest
            persist: Write to disk when flushed
        """
        self.index_dir = Path(index_dir or config.VECTOR_DIR)
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.persist = persist

        self._scopes: Dict[str, _ScopeIndex] = {}
        self._next_id = 1
        self._dirty = False
        self._flush_lock = asyncio.Lock()

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            dimension=self.dimension,
            persist=self.persist,
        )

    @property
    def manifest_path(self) -> Path:
        return self.index_dir / MANIFEST_NAME

    def _scope_key(self, owner_id: str, scope: str) -> str:
        if scope == NAMESPACE_SCOPE:
            return NAMESPACE_PREFIX + owner_id
        if scope == GLOBAL_SCOPE:
            return GLOBAL_SCOPE_KEY
        raise ValueError(f"Unknown scope: {scope}")

    def _get_scope(self, key: str, create: bool = False) -> Optional[_ScopeIndex]:
        scope = self._scopes.get(key)
        if scope is None and create:
            scope = _ScopeIndex(self.dimension)
            self._scopes[key] = scope
        return scope

    def _as_matrix(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        matrix = np.array(vectors, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[1] != self.dimension:
            got = matrix.shape[1] if matrix.ndim == 2 else matrix.shape
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {got}"
            )
        faiss.normalize_L2(matrix)
        return matrix

    async def upsert(
        self,
        owner_id: str,
        items: Sequence[IndexedItem],
        scope: str = NAMESPACE_SCOPE,
    ) -> List[str]:
        """Insert or overwrite items for an owner.

        Args:
            owner_id: Owner every item belongs to
            items: Items to write; an existing item with the same id is replaced
            scope: NAMESPACE_SCOPE (default) or GLOBAL_SCOPE for legacy data

        Returns:
            The item ids written

        Raises:
            ValueError: On missing owner or vector dimension mismatch
        """
        if not owner_id:
            raise ValueError("owner_id is required")
        if not items:
            return []

        # A repeated id inside one batch keeps the last occurrence
        unique: Dict[str, IndexedItem] = {}
        for item in items:
            unique[item.id] = item
        batch = list(unique.values())

        matrix = self._as_matrix([item.vector for item in batch])
        target = self._get_scope(self._scope_key(owner_id, scope), create=True)

        replaced = [target.ids[item.id] for item in batch if item.id in target.ids]
        target.remove(replaced)

        faiss_ids = []
        for item in batch:
            faiss_id = self._next_id
            self._next_id += 1
            metadata = dict(item.metadata)
            metadata["owner_id"] = owner_id
            metadata["original_text"] = item.text
            metadata.setdefault("source_kind", SOURCE_KIND_DOCUMENT)
            metadata.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
            target.records[faiss_id] = {"id": item.id, "metadata": metadata}
            target.ids[item.id] = faiss_id
            faiss_ids.append(faiss_id)

        target.index.add_with_ids(matrix, np.array(faiss_ids, dtype=np.int64))

        logger.info(
            "vectors_upserted",
            scope=scope,
            count=len(batch),
            replaced=len(replaced),
            total_vectors=target.index.ntotal,
        )

        self._dirty = True
        return [item.id for item in batch]

    def _search_scope(
        self,
        scope: _ScopeIndex,
        query: np.ndarray,
        k: int,
        owner_id: Optional[str] = None,
    ) -> List[VectorMatch]:
        k = min(k, scope.index.ntotal)
        if k <= 0:
            return []

        scores, ids = scope.index.search(query, k)

        matches = []
        for score, faiss_id in zip(scores[0].tolist(), ids[0].tolist()):
            if faiss_id < 0:
                continue
            record = scope.records.get(faiss_id)
            if record is None:
                continue
            if owner_id is not None and record["metadata"].get("owner_id") != owner_id:
                continue
            matches.append(
                VectorMatch(
                    id=record["id"],
                    score=float(score),
                    metadata=record["metadata"],
                    sequence=faiss_id,
                )
            )
        return matches

    def _owner_ids_in_global(self, owner_id: str) -> List[int]:
        scope = self._scopes.get(GLOBAL_SCOPE_KEY)
        if scope is None:
            return []
        return [
            faiss_id
            for faiss_id, record in scope.records.items()
            if record["metadata"].get("owner_id") == owner_id
        ]

    async def query(
        self, owner_id: str, vector: Sequence[float], top_k: int = None
    ) -> List[VectorMatch]:
        """Search the owner's items across both scopes.

        The namespace is always searched. The global scope is searched only
        when it still holds items for this owner, filtered by owner metadata.

        Args:
            owner_id: Owner whose items to search
            vector: Query vector
            top_k: Maximum number of matches (default from config)

        Returns:
            Matches sorted by score descending, newest first on ties

        Raises:
            ValueError: If the query dimension is wrong
            RetrievalUnavailable: If the index cannot be searched
        """
        top_k = top_k or config.RETRIEVAL_TOP_K
        query_vector = self._as_matrix([vector])

        try:
            matches: List[VectorMatch] = []

            namespace = self._scopes.get(NAMESPACE_PREFIX + owner_id)
            if namespace is not None:
                matches.extend(self._search_scope(namespace, query_vector, top_k))

            legacy_count = len(self._owner_ids_in_global(owner_id))
            if legacy_count:
                global_scope = self._scopes[GLOBAL_SCOPE_KEY]
                # Exact flat index: search everything, then filter by owner
                matches.extend(
                    self._search_scope(
                        global_scope,
                        query_vector,
                        global_scope.index.ntotal,
                        owner_id=owner_id,
                    )[:top_k]
                )
        except Exception as e:
            logger.error(
                "vector_search_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RetrievalUnavailable(f"Vector search failed: {e}") from e

        best: Dict[str, VectorMatch] = {}
        for match in matches:
            current = best.get(match.id)
            if current is None or (match.score, match.sequence) > (current.score, current.sequence):
                best[match.id] = match

        ranked = sorted(best.values(), key=lambda m: (-m.score, -m.sequence))[:top_k]

        logger.info(
            "vector_search_completed",
            top_k=top_k,
            results_found=len(ranked),
            legacy_scope_searched=bool(legacy_count),
        )

        return ranked

    async def delete_by_owner(self, owner_id: str, source_id: Optional[str] = None) -> int:
        """Delete an owner's items, optionally only those of one source.

        Returns:
            Number of items removed across both scopes
        """
        removed = 0

        namespace = self._scopes.get(NAMESPACE_PREFIX + owner_id)
        if namespace is not None:
            if source_id is None:
                removed += len(namespace.records)
                del self._scopes[NAMESPACE_PREFIX + owner_id]
            else:
                removed += namespace.remove([
                    faiss_id
                    for faiss_id, record in namespace.records.items()
                    if record["metadata"].get("source_id") == source_id
                ])

        global_scope = self._scopes.get(GLOBAL_SCOPE_KEY)
        if global_scope is not None:
            removed += global_scope.remove([
                faiss_id
                for faiss_id in self._owner_ids_in_global(owner_id)
                if source_id is None
                or global_scope.records[faiss_id]["metadata"].get("source_id") == source_id
            ])

        logger.info(
            "vectors_deleted",
            source_id=source_id,
            removed=removed,
        )

        if removed:
            self._dirty = True
        return removed

    async def consolidate_owner(self, owner_id: str) -> int:
        """Move an owner's legacy global-scope items into their namespace.

        Returns:
            Number of items moved
        """
        legacy_ids = self._owner_ids_in_global(owner_id)
        if not legacy_ids:
            return 0

        global_scope = self._scopes[GLOBAL_SCOPE_KEY]
        items = []
        for faiss_id in legacy_ids:
            record = global_scope.records[faiss_id]
            metadata = dict(record["metadata"])
            items.append(
                IndexedItem(
                    id=record["id"],
                    vector=global_scope.index.reconstruct(faiss_id).tolist(),
                    text=metadata.get("original_text", ""),
                    metadata=metadata,
                )
            )

        await self.upsert(owner_id, items, scope=NAMESPACE_SCOPE)
        global_scope.remove(legacy_ids)
        self._dirty = True
        await self.flush()

        logger.info("owner_consolidated", moved=len(items))
        return len(items)

    def legacy_owners(self) -> List[str]:
        """Owners that still have items in the global scope."""
        scope = self._scopes.get(GLOBAL_SCOPE_KEY)
        if scope is None:
            return []
        return sorted({r["metadata"].get("owner_id") for r in scope.records.values()} - {None})

    def count(self, owner_id: str, source_kind: Optional[str] = None) -> int:
        """Count an owner's items across both scopes."""
        records = list(self._owner_records(owner_id))
        if source_kind is None:
            return len(records)
        return sum(1 for r in records if r["metadata"].get("source_kind") == source_kind)

    def _owner_records(self, owner_id: str):
        namespace = self._scopes.get(NAMESPACE_PREFIX + owner_id)
        if namespace is not None:
            yield from namespace.records.values()
        global_scope = self._scopes.get(GLOBAL_SCOPE_KEY)
        if global_scope is not None:
            for faiss_id in self._owner_ids_in_global(owner_id):
                yield global_scope.records[faiss_id]

    @property
    def is_dirty(self) -> bool:
        """True when in-memory changes haven't been written to disk."""
        return self._dirty

    def _snapshot(self):
        """Capture the manifest and serialized indexes on the calling thread."""
        scopes = []
        index_files = []
        for position, (key, scope) in enumerate(self._scopes.items()):
            file_name = f"scope_{position}_{_safe_name(key)}.index"
            try:
                index_files.append((file_name, faiss.serialize_index(scope.index)))
            except Exception as e:
                raise RuntimeError(f"Failed to save FAISS index: {e}") from e
            scopes.append({
                "key": key,
                "file": file_name,
                "records": {str(fid): rec for fid, rec in scope.records.items()},
            })

        manifest = {
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.dimension,
            "index_type": "IndexIDMap2(IndexFlatIP)",
            "next_id": self._next_id,
            "vector_count": sum(s.index.ntotal for s in self._scopes.values()),
            "scopes": scopes,
        }
        # Serialized now so changes made during the write can't leak into it
        return json.dumps(manifest, indent=2), index_files, manifest["vector_count"]

    def _write_snapshot(self, snapshot) -> None:
        manifest_json, index_files, vector_count = snapshot
        self.index_dir.mkdir(parents=True, exist_ok=True)

        for file_name, data in index_files:
            try:
                (self.index_dir / file_name).write_bytes(data.tobytes())
            except Exception as e:
                raise RuntimeError(f"Failed to save FAISS index: {e}") from e

        try:
            with open(self.manifest_path, "w") as f:
                f.write(manifest_json)
        except Exception as e:
            raise RuntimeError(f"Failed to save metadata: {e}") from e

        # Drop index files of scopes that no longer exist
        live = {file_name for file_name, _ in index_files}
        for stale in self.index_dir.glob("scope_*.index"):
            if stale.name not in live:
                stale.unlink()

        logger.debug(
            "faiss_index_saved",
            index_dir=str(self.index_dir),
            vector_count=vector_count,
        )

    async def flush(self) -> bool:
        """Write pending changes to disk off the event loop.

        Mutations only mark the store dirty; callers flush once per ingest batch
        and at shutdown.

        Returns:
            True if anything was written
        """
        if not self.persist or not self._dirty:
            return False

        async with self._flush_lock:
            if not self._dirty:
                return False
            snapshot = self._snapshot()
            self._dirty = False
            try:
                await asyncio.to_thread(self._write_snapshot, snapshot)
            except Exception:
                self._dirty = True
                raise
        return True

    def load(self) -> None:
        """Load all scopes from disk.

        Raises:
            FileNotFoundError: If the manifest doesn't exist
            ValueError: If the stored dimension differs from the configured one
            RuntimeError: If loading fails
        """
        if not self.manifest_path.exists():
            raise FileNotFoundError(f"Manifest not found: {self.manifest_path}")

        try:
            with open(self.manifest_path, "r") as f:
                manifest = json.load(f)
        except Exception as e:
            raise RuntimeError(f"Failed to load metadata: {e}") from e

        stored_model = manifest.get("embedding_model")
        stored_dim = manifest.get("embedding_dimension")

        if stored_dim != self.dimension:
            raise ValueError(
                f"Dimension mismatch: index was built with {stored_model} "
                f"(dim={stored_dim}), but current model {self.embedding_model} "
                f"has dim={self.dimension}. Please rebuild the index."
            )

        scopes: Dict[str, _ScopeIndex] = {}
        try:
            for entry in manifest.get("scopes", []):
                index = faiss.read_index(str(self.index_dir / entry["file"]))
                scope = _ScopeIndex(self.dimension, index=index)
                for fid, record in entry["records"].items():
                    scope.records[int(fid)] = record
                    scope.ids[record["id"]] = int(fid)
                scopes[entry["key"]] = scope
        except Exception as e:
            raise RuntimeError(f"Failed to load FAISS index: {e}") from e

        self._scopes = scopes
        self._next_id = manifest.get("next_id", 1)
        self._dirty = False

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            scope_count=len(self._scopes),
            vector_count=manifest.get("vector_count", 0),
            model=stored_model,
        )

    def init_or_load(self) -> None:
        """Load the store if a manifest exists, otherwise start empty."""
        if self.manifest_path.exists():
            logger.info("existing_index_detected", path=str(self.manifest_path))
            self.load()
        else:
            logger.info("no_index_found_initializing_new")
            self._scopes = {}
            self._next_id = 1
            self._dirty = False

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        global_scope = self._scopes.get(GLOBAL_SCOPE_KEY)
        return {
            "vector_count": sum(s.index.ntotal for s in self._scopes.values()),
            "namespace_count": sum(1 for k in self._scopes if k.startswith(NAMESPACE_PREFIX)),
            "global_vector_count": global_scope.index.ntotal if global_scope else 0,
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "index_exists_on_disk": self.manifest_path.exists(),
        }

    def get_owner_stats(self, owner_id: str) -> Dict[str, Any]:
        """Get item counts for one owner."""
        return {
            "vector_count": self.count(owner_id),
            "document_chunks": self.count(owner_id, SOURCE_KIND_DOCUMENT),
            "conversation_turns": self.count(owner_id, SOURCE_KIND_CONVERSATION),
            "legacy_global_items": len(self._owner_ids_in_global(owner_id)),
        }


def _safe_name(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", key)[:40]
