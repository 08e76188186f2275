"""
Reindex script for the StoreSage knowledge base.

This script:
1. Loads store content from the JSON export (or the configured scanner)
2. Chunks each source with its type's chunk settings
3. Embeds chunks through the provider chain
4. Atomically replaces each source's chunks in the vector store
5. Removes sources that no longer exist in the store

Usage:
    python reindex.py
    python reindex.py --type product --type faq
    python reindex.py --source product:42 --force
    python reindex.py --export /path/to/store_export.json
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from bootstrap import build_orchestrator
from logger import setup_logging
from models.content import SourceFilter, SourceType
from services.content_scanner import JsonExportScanner
from config import CONTENT_EXPORT_PATH, LOG_LEVEL

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild the store knowledge base index")
    parser.add_argument(
        "--type", dest="source_types", action="append", default=[],
        choices=[t.value for t in SourceType], help="Only reindex this source type (repeatable)",
    )
    parser.add_argument(
        "--source", dest="source_ids", action="append", default=[],
        help="Only reindex this source id, e.g. product:42 (repeatable)",
    )
    parser.add_argument("--force", action="store_true", help="Re-embed sources even when unchanged")
    parser.add_argument("--export", default=CONTENT_EXPORT_PATH, help="Path to the store JSON export")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    logger.info("=" * 60)
    logger.info("Starting StoreSage reindex")
    logger.info("=" * 60)

    logger.info("[1/3] Initializing services...")
    orchestrator = build_orchestrator(JsonExportScanner(args.export))
    logger.info(f"✓ Index currently holds {orchestrator.stats().get('chunks', 0)} chunks")

    source_filter = SourceFilter(
        source_types=frozenset(SourceType(t) for t in args.source_types),
        source_ids=frozenset(args.source_ids),
    )

    logger.info("[2/3] Indexing content...")
    result = await orchestrator.reindex(source_filter, force_rescan=args.force)

    logger.info("[3/3] Summary")
    logger.info("=" * 60)
    logger.info(f"Processed: {result.processed}")
    logger.info(f"Skipped (unchanged): {result.skipped}")
    logger.info(f"Removed: {result.deleted}")
    logger.info(f"Failed: {result.failed}")
    for source_id, reason in sorted(result.failures.items()):
        logger.info(f"  ✗ {source_id}: {reason}")
    logger.info(f"Duration: {result.duration_ms}ms")
    logger.info("=" * 60)

    return 1 if result.failed else 0


def main(argv=None):
    """Main reindex process."""
    setup_logging(LOG_LEVEL)
    args = parse_args(argv)
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.warning("Reindex interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Reindex failed: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
