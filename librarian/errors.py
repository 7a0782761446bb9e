"""Exception taxonomy for the librarian pipeline.

Only conditions that prevent producing any answer text reach the caller as
failures. The orchestrator converts everything else into a degraded response.
"""


class LibrarianError(Exception):
    """Base class for all librarian errors."""


class ProviderError(LibrarianError):
    """An embedding or generation backend failed or returned bad data."""


class GenerationError(ProviderError):
    """The language model could not produce an answer."""


class RetrievalUnavailable(LibrarianError):
    """Similarity search could not run (embedding or index outage)."""


class PersistenceError(LibrarianError):
    """A report, prompt history, chunk or memory write failed."""


class UnsupportedDocumentType(LibrarianError):
    """No text extractor exists for the document's MIME type."""


class DocumentBusyError(LibrarianError):
    """The document is already being processed by another job."""
