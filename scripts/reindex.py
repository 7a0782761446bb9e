#!/usr/bin/env python
"""Re-process uploaded documents into the vector index.

Usage:
    python scripts/reindex.py                    # Re-process every document
    python scripts/reindex.py --owner alice      # Only one owner's documents
    python scripts/reindex.py --consolidate      # Also move legacy global items into namespaces
    python scripts/reindex.py --verbose          # Show detailed progress
"""
import argparse
import asyncio
import sys
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from librarian import config, db
from librarian.services import build_services
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document: dict):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        title = document.get("title") or document["id"]
        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {title[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict, moved: int):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print(f"  Reindex Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents processed:  {stats['documents_processed']}")
        print(f"  ❌ Documents failed:     {stats['documents_failed']}")
        print(f"  ⏸️  Documents skipped:    {stats['documents_skipped']}")
        print(f"  📝 Chunks created:       {stats['chunks_created']}")
        print(f"  🔀 Legacy items moved:   {moved}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["documents_failed"] > 0:
            print(f"⚠️  Warning: {stats['documents_failed']} document(s) failed to index.")
            print(f"   They are marked 'failed'; check logs for details.\n")

        if stats["documents_processed"] > 0:
            print(f"✅ Index ready at: {config.VECTOR_DIR}")
            print(f"✅ Database at: {config.DB_PATH}\n")


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Re-process uploaded documents into the vector index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py                    # Re-process every document
  python scripts/reindex.py --owner alice      # Only one owner's documents
  python scripts/reindex.py --consolidate      # Also migrate legacy global items
        """,
    )

    parser.add_argument(
        "--owner",
        default=None,
        help="Only re-process documents of this owner",
    )

    parser.add_argument(
        "--consolidate",
        action="store_true",
        help="Move legacy global-scope items into each owner's namespace",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()

    progress = ProgressReporter(verbose=args.verbose)

    try:
        print("\n📋 Configuration:")
        print(f"   Data directory:   {config.DATA_DIR}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
        print(f"   Owner:            {args.owner or 'all'}")

        db.init_database()
        services = build_services(memory_writes=False)
        services.vector_store.init_or_load()

        progress.start("Reindexing Documents")

        def on_progress(current, total, document):
            progress.update(current, total, document)

        stats = await services.ingest.ingest_all(
            owner_id=args.owner,
            progress_callback=on_progress,
        )

        moved = 0
        if args.consolidate:
            owners = [args.owner] if args.owner else services.vector_store.legacy_owners()
            for owner_id in owners:
                moved += await services.vector_store.consolidate_owner(owner_id)

        progress.finish(stats, moved)

        if stats["documents_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Reindex cancelled by user.\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
