#!/usr/bin/env python
"""Validate the Personal Librarian setup - dependencies, configuration and Ollama."""
import sys
import asyncio
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

async def main():
    print_section("Personal Librarian - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 11):
        print_success("Python version >= 3.11")
    else:
        print_error("Python version < 3.11 (required)")
        errors.append("Python version too old")

    in_venv = hasattr(sys, 'real_prefix') or (hasattr(sys, 'base_prefix') and sys.base_prefix != sys.prefix)
    if in_venv:
        print_success("Running in virtual environment")
    else:
        print_warning("Not running in virtual environment (recommended)")
        warnings.append("Not in venv")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("quart", "Quart web framework"),
        ("hypercorn", "Hypercorn ASGI server"),
        ("httpx", "HTTP client"),
        ("faiss", "FAISS vector store"),
        ("numpy", "Vector math"),
        ("pydantic", "Data validation"),
        ("yaml", "Markdown frontmatter"),
        ("pypdf", "PDF text extraction"),
        ("langchain_text_splitters", "Text splitters"),
        ("structlog", "Structured logging"),
        ("pytest", "Testing framework"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            print_error(f"{description:30} ({module_name}) - {e}")
            errors.append(f"Missing: {module_name}")

    # 3. Test configuration
    print_section("3. Configuration")

    try:
        sys.path.insert(0, str(Path(__file__).parent.parent))
        from librarian import config

        print_success(f"Config loaded successfully")
        print_info(f"  Chat model: {config.CHAT_MODEL}")
        print_info(f"  Embedding model: {config.EMBEDDING_MODEL} (dim={config.EMBEDDING_DIMENSION})")
        print_info(f"  Ollama URL: {config.OLLAMA_BASE_URL}")
        print_info(f"  Chunk size: {config.CHUNK_SIZE} chars")
        print_info(f"  Data directory: {config.DATA_DIR}")

        for label, path in (
            ("Data directory", config.DATA_DIR),
            ("Uploads directory", config.UPLOADS_DIR),
            ("Vector directory", config.VECTOR_DIR),
        ):
            if path.exists():
                print_success(f"{label} exists: {path}")
            else:
                print_error(f"{label} missing: {path}")
                errors.append(f"{label} missing")

    except Exception as e:
        print_error(f"Failed to load config: {e}")
        errors.append("Config loading failed")
        return errors, warnings

    # 4. Test Ollama connection
    print_section("4. Ollama Service")

    from librarian.llm_client import OllamaClient
    client = OllamaClient(timeout=5.0)

    try:
        models = set(await client.list_models())
        print_success(f"Ollama service running at {config.OLLAMA_BASE_URL}")
        print_info(f"Found {len(models)} models installed")

        for label, name in (("Chat", config.CHAT_MODEL), ("Embedding", config.EMBEDDING_MODEL)):
            if name in models:
                print_success(f"{label} model available: {name}")
            else:
                print_error(f"{label} model missing: {name}")
                print_info(f"  Run: ollama pull {name}")
                errors.append(f"Missing {label.lower()} model: {name}")

    except Exception as e:
        print_error(f"Cannot connect to Ollama service: {e}")
        print_info(f"  Make sure Ollama is running: ollama serve")
        errors.append("Ollama not running")

    # 5. Test the embedding endpoint with a simple request
    print_section("5. Embedding API Test")

    from librarian.errors import ProviderError
    from librarian.rag.embeddings import EmbeddingProvider

    try:
        vector = await EmbeddingProvider(client=OllamaClient()).embed_query("test")
        print_success(f"Embedding API working (dimension: {len(vector)})")
    except ProviderError as e:
        print_error(f"Embedding API test failed: {e}")
        print_info("  Check EMBEDDING_DIMENSION matches the embedding model")
        errors.append(f"Embedding test failed: {e}")

    # 6. Summary
    print_section("Summary")

    if not errors:
        print_success(f"All checks passed! ✨")
        print_info(f"  Start the server: hypercorn librarian.main:app --bind 0.0.0.0:5000")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()
    return errors, warnings

if __name__ == "__main__":
    errors, warnings = asyncio.run(main())
    sys.exit(1 if errors else 0)
