"""Database initialization and helpers for the Personal Librarian.

SQLite database for storing:
- Uploaded documents and their processing status
- Text chunks with the id of their vector-store item
- Generated reports (answers and insights)
- Prompt history linking prompts to reports

Every row belongs to exactly one owner; listings are newest first.
"""
import sqlite3
import json
import uuid
from typing import Optional, List, Dict, Any, Sequence, Tuple
from datetime import datetime, timezone
import structlog

from librarian import config
from librarian.errors import PersistenceError

logger = structlog.get_logger()

DB_PATH = config.DB_PATH

DOCUMENT_STATUSES = ("uploaded", "parsed", "embedded", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row and
        foreign keys enforced
    """
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_database() -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - documents: uploaded files and lifecycle status
    - chunks: document text fragments, cascaded with their document
    - reports: generated answers and insights
    - prompt_history: prompts with the report they produced
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT,
                storage_uri TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'uploaded',
                chunk_count INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                vector_item_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(document_id, chunk_index)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reports (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT,
                content TEXT NOT NULL,
                source_urls_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS prompt_history (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                prompt TEXT NOT NULL,
                report_id TEXT REFERENCES reports(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_owner
            ON documents(owner_id, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_reports_owner
            ON reports(owner_id, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_prompt_history_owner
            ON prompt_history(owner_id, created_at)
        """)

        conn.commit()
        logger.info("database_initialized", db_path=str(DB_PATH))

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise PersistenceError(f"Database initialization failed: {e}") from e
    finally:
        conn.close()


def _report_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    report = dict(row)
    raw = report.pop("source_urls_json")
    report["source_urls"] = json.loads(raw) if raw else []
    return report


# Documents


def create_document(
    owner_id: str,
    title: str,
    storage_uri: str,
    mime_type: str,
) -> Dict[str, Any]:
    """Insert a document in 'uploaded' status.

    Returns:
        The new document row as a dict
    """
    conn = get_connection()
    cursor = conn.cursor()
    document_id = str(uuid.uuid4())
    now = _now()

    try:
        cursor.execute("""
            INSERT INTO documents (
                id, owner_id, title, storage_uri, mime_type,
                status, chunk_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 'uploaded', 0, ?, ?)
        """, (document_id, owner_id, title, storage_uri, mime_type, now, now))

        conn.commit()
        cursor.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
        document = dict(cursor.fetchone())
        logger.info("document_created", document_id=document_id, mime_type=mime_type)
        return document

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("document_insert_failed", error=str(e))
        raise PersistenceError(f"Failed to create document: {e}") from e
    finally:
        conn.close()


def get_document(document_id: str, owner_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Get a document by id, optionally requiring a specific owner."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        if owner_id is None:
            cursor.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
        else:
            cursor.execute(
                "SELECT * FROM documents WHERE id = ? AND owner_id = ?",
                (document_id, owner_id),
            )
        row = cursor.fetchone()
        return dict(row) if row else None

    except sqlite3.Error as e:
        logger.error("document_retrieval_failed", error=str(e))
        raise PersistenceError(f"Failed to get document: {e}") from e
    finally:
        conn.close()


def list_documents(owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """List documents, newest first. All owners when owner_id is None."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        if owner_id is None:
            cursor.execute("SELECT * FROM documents ORDER BY created_at DESC, rowid DESC")
        else:
            cursor.execute(
                "SELECT * FROM documents WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC",
                (owner_id,),
            )
        return [dict(row) for row in cursor.fetchall()]

    except sqlite3.Error as e:
        logger.error("documents_list_failed", error=str(e))
        raise PersistenceError(f"Failed to list documents: {e}") from e
    finally:
        conn.close()


def update_document_status(
    document_id: str,
    status: str,
    chunk_count: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    """Move a document to a new lifecycle status."""
    if status not in DOCUMENT_STATUSES:
        raise ValueError(f"Invalid document status: {status}")

    conn = get_connection()
    cursor = conn.cursor()

    try:
        if chunk_count is None:
            cursor.execute(
                "UPDATE documents SET status = ?, error = ?, updated_at = ? WHERE id = ?",
                (status, error, _now(), document_id),
            )
        else:
            cursor.execute(
                """UPDATE documents
                   SET status = ?, chunk_count = ?, error = ?, updated_at = ?
                   WHERE id = ?""",
                (status, chunk_count, error, _now(), document_id),
            )
        conn.commit()
        logger.info("document_status_updated", document_id=document_id, status=status)

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("document_status_update_failed", error=str(e), document_id=document_id)
        raise PersistenceError(f"Failed to update document status: {e}") from e
    finally:
        conn.close()


def delete_document(owner_id: str, document_id: str) -> bool:
    """Delete a document; its chunks cascade.

    Returns:
        True if deleted, False if not found
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            "DELETE FROM documents WHERE id = ? AND owner_id = ?",
            (document_id, owner_id),
        )
        conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("document_deleted", document_id=document_id)
        return deleted

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("document_delete_failed", error=str(e), document_id=document_id)
        raise PersistenceError(f"Failed to delete document: {e}") from e
    finally:
        conn.close()


# Chunks


def replace_chunks(
    document_id: str,
    chunks: Sequence[Tuple[int, str, Optional[str]]],
) -> int:
    """Replace all chunk rows of a document in one transaction.

    Args:
        document_id: Owning document
        chunks: (chunk_index, content, vector_item_id) tuples

    Returns:
        Number of chunks inserted
    """
    conn = get_connection()
    cursor = conn.cursor()
    now = _now()

    try:
        cursor.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
        cursor.executemany("""
            INSERT INTO chunks (
                document_id, chunk_index, content, vector_item_id, created_at
            ) VALUES (?, ?, ?, ?, ?)
        """, [
            (document_id, index, content, vector_item_id, now)
            for index, content, vector_item_id in chunks
        ])
        conn.commit()
        return len(chunks)

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("chunk_insert_failed", error=str(e), document_id=document_id)
        raise PersistenceError(f"Failed to store chunks: {e}") from e
    finally:
        conn.close()


def get_chunks(document_id: str) -> List[Dict[str, Any]]:
    """Get a document's chunks in order."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            "SELECT * FROM chunks WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    except sqlite3.Error as e:
        logger.error("chunks_retrieval_failed", error=str(e))
        raise PersistenceError(f"Failed to get chunks: {e}") from e
    finally:
        conn.close()


# Reports


def create_report(
    owner_id: str,
    title: Optional[str],
    content: str,
    source_urls: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Insert a generated report.

    Returns:
        The new report as a dict
    """
    conn = get_connection()
    cursor = conn.cursor()
    report_id = str(uuid.uuid4())
    now = _now()

    try:
        cursor.execute("""
            INSERT INTO reports (
                id, owner_id, title, content, source_urls_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            report_id,
            owner_id,
            title,
            content,
            json.dumps(source_urls) if source_urls else None,
            now,
            now,
        ))
        conn.commit()
        cursor.execute("SELECT * FROM reports WHERE id = ?", (report_id,))
        report = _report_to_dict(cursor.fetchone())
        logger.info("report_created", report_id=report_id)
        return report

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("report_insert_failed", error=str(e))
        raise PersistenceError(f"Failed to create report: {e}") from e
    finally:
        conn.close()


def get_report(owner_id: str, report_id: str) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            "SELECT * FROM reports WHERE id = ? AND owner_id = ?",
            (report_id, owner_id),
        )
        row = cursor.fetchone()
        return _report_to_dict(row) if row else None

    except sqlite3.Error as e:
        logger.error("report_retrieval_failed", error=str(e))
        raise PersistenceError(f"Failed to get report: {e}") from e
    finally:
        conn.close()


def list_reports(owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """List an owner's reports, newest first."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            """SELECT * FROM reports WHERE owner_id = ?
               ORDER BY created_at DESC, rowid DESC LIMIT ?""",
            (owner_id, limit if limit is not None else -1),
        )
        return [_report_to_dict(row) for row in cursor.fetchall()]

    except sqlite3.Error as e:
        logger.error("reports_list_failed", error=str(e))
        raise PersistenceError(f"Failed to list reports: {e}") from e
    finally:
        conn.close()


def update_report(
    owner_id: str,
    report_id: str,
    title: Optional[str] = None,
    content: Optional[str] = None,
    source_urls: Optional[List[str]] = None,
) -> Optional[Dict[str, Any]]:
    """Overwrite the given fields of a report.

    Returns:
        The updated report, or None if not found
    """
    fields = {}
    if title is not None:
        fields["title"] = title
    if content is not None:
        fields["content"] = content
    if source_urls is not None:
        fields["source_urls_json"] = json.dumps(source_urls)

    if not fields:
        return get_report(owner_id, report_id)

    fields["updated_at"] = _now()
    assignments = ", ".join(f"{name} = ?" for name in fields)

    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            f"UPDATE reports SET {assignments} WHERE id = ? AND owner_id = ?",
            (*fields.values(), report_id, owner_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
        cursor.execute("SELECT * FROM reports WHERE id = ?", (report_id,))
        logger.info("report_updated", report_id=report_id)
        return _report_to_dict(cursor.fetchone())

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("report_update_failed", error=str(e), report_id=report_id)
        raise PersistenceError(f"Failed to update report: {e}") from e
    finally:
        conn.close()


def delete_report(owner_id: str, report_id: str) -> bool:
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            "DELETE FROM reports WHERE id = ? AND owner_id = ?",
            (report_id, owner_id),
        )
        conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("report_delete_failed", error=str(e), report_id=report_id)
        raise PersistenceError(f"Failed to delete report: {e}") from e
    finally:
        conn.close()


# Prompt history


def create_prompt_history(
    owner_id: str,
    prompt: str,
    report_id: Optional[str] = None,
) -> Dict[str, Any]:
    conn = get_connection()
    cursor = conn.cursor()
    entry_id = str(uuid.uuid4())

    try:
        cursor.execute("""
            INSERT INTO prompt_history (id, owner_id, prompt, report_id, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (entry_id, owner_id, prompt, report_id, _now()))
        conn.commit()
        cursor.execute("SELECT * FROM prompt_history WHERE id = ?", (entry_id,))
        return dict(cursor.fetchone())

    except sqlite3.Error as e:
        conn.rollback()
        logger.error("prompt_history_insert_failed", error=str(e))
        raise PersistenceError(f"Failed to create prompt history: {e}") from e
    finally:
        conn.close()


def list_prompt_history(owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """List an owner's prompts, newest first."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            """SELECT * FROM prompt_history WHERE owner_id = ?
               ORDER BY created_at DESC, rowid DESC LIMIT ?""",
            (owner_id, limit if limit is not None else -1),
        )
        return [dict(row) for row in cursor.fetchall()]

    except sqlite3.Error as e:
        logger.error("prompt_history_list_failed", error=str(e))
        raise PersistenceError(f"Failed to list prompt history: {e}") from e
    finally:
        conn.close()


# Initialize database on module import if it doesn't exist
if not DB_PATH.exists():
    init_database()
    logger.info("database_auto_initialized", db_path=str(DB_PATH))
