"""Application configuration with sensible defaults."""
import os
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("LIBRARIAN_DATA_DIR", str(BASE_DIR / "data")))
UPLOADS_DIR = DATA_DIR / "uploads"
VECTOR_DIR = DATA_DIR / "vectors"

# Ensure data directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
UPLOADS_DIR.mkdir(exist_ok=True)
VECTOR_DIR.mkdir(exist_ok=True)

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1024"))  # mxbai-embed-large
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))   # per external call
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.7"))

# Chunking (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
CHUNK_SEPARATORS = ["\n\n", "\n", " ", ""]  # coarsest to finest

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "10"))          # over-fetch before filtering
RETRIEVAL_MAX_RESULTS = int(os.getenv("RETRIEVAL_MAX_RESULTS", "5"))
CONVERSATION_MIN_SCORE = float(os.getenv("CONVERSATION_MIN_SCORE", "0.2"))
INSIGHT_MIN_SCORE = float(os.getenv("INSIGHT_MIN_SCORE", "0.7"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "6000"))
HISTORY_TURNS = int(os.getenv("HISTORY_TURNS", "6"))               # 3 user/assistant exchanges

# Conversation memory
MAX_SESSION_TURNS = int(os.getenv("MAX_SESSION_TURNS", "200"))
MEMORY_WRITES_ENABLED = _env_bool("MEMORY_WRITES_ENABLED", "true")

# Fallback policy: try an empty-context answer when retrieval is down
GENERATE_WITHOUT_CONTEXT = _env_bool("GENERATE_WITHOUT_CONTEXT", "true")

# Uploads
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
ALLOWED_MIME_TYPES = ("application/pdf", "text/plain", "text/markdown")
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", "2000"))

# Database
DB_PATH = DATA_DIR / "librarian.sqlite"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
