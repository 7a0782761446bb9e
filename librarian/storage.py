"""Owner-scoped blob storage for uploaded documents.

Files live under UPLOADS_DIR at ``<owner_id>/documents/<timestamp>-<name>``;
the relative path is the document's storage URI.
"""
import re
import time
from pathlib import Path
from typing import Optional
import structlog

from librarian import config

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    """Reduce a client-supplied filename to a safe basename."""
    name = Path(filename or "").name
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name[:120] or "document"


class LocalBlobStore:
    """Stores document bytes on the local filesystem."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or config.UPLOADS_DIR).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, storage_uri: str) -> Path:
        path = (self.root / storage_uri).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Storage path escapes the upload root: {storage_uri}")
        return path

    def save(self, owner_id: str, filename: str, data: bytes) -> str:
        """Write a file and return its storage URI."""
        owner_dir = safe_filename(owner_id)
        storage_uri = f"{owner_dir}/documents/{int(time.time() * 1000)}-{safe_filename(filename)}"
        path = self._resolve(storage_uri)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        logger.info("blob_saved", storage_uri=storage_uri, size=len(data))
        return storage_uri

    def read(self, storage_uri: str) -> bytes:
        """Read a stored file.

        Raises:
            FileNotFoundError: If nothing is stored at the URI
        """
        path = self._resolve(storage_uri)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {storage_uri}")
        return path.read_bytes()

    def delete(self, storage_uri: str) -> bool:
        path = self._resolve(storage_uri)
        if not path.exists():
            return False
        path.unlink()
        logger.info("blob_deleted", storage_uri=storage_uri)
        return True
