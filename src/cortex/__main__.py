"""Command line entry point for the Cortex memory core.

This module provides the ``cortex`` command with:
- CLI argument parsing with settings-backed defaults
- One subcommand per memory operation (store, get, search, related, ...)
- JSON results on stdout, logging on stderr

Usage:
    python -m cortex [options] COMMAND [command options]

    Options:
        --sqlite-path PATH      SQLite database path
        --chroma-path PATH      ChromaDB storage path
        --no-vector-index       Use brute-force similarity instead of ChromaDB
        --ollama-host HOST      Ollama server host (default: http://localhost:11434)
        --ollama-model MODEL    Embedding model name (default: all-minilm)
        --log-level LEVEL       Logging level (default: WARNING)
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from cortex.config import CortexSettings
from cortex.memory.operations import MemoryService
from cortex.memory.search import format_results
from cortex.memory.types import ItemKind, ItemRef

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr so stdout carries only command output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    logger.debug(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments with configuration defaults.

    Configuration precedence:
        1. CLI arguments (highest priority)
        2. Environment variables (CORTEX_ prefix)
        3. Defaults (lowest priority)
    """
    settings = CortexSettings()

    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Persistent memory core: decay, importance, associations and hybrid search",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=str(settings.sqlite_path) if settings.sqlite_path else None,
        help="SQLite database path (default: ~/.cortex/cortex.db)",
    )
    parser.add_argument(
        "--chroma-path",
        type=str,
        default=str(settings.chroma_path) if settings.chroma_path else None,
        help="ChromaDB storage path (default: ~/.cortex/chroma_db)",
    )
    parser.add_argument(
        "--no-vector-index",
        action="store_true",
        default=not settings.vector_index_enabled,
        help="Skip ChromaDB and compare stored vectors directly",
    )
    parser.add_argument(
        "--ollama-host",
        type=str,
        default=settings.ollama_host,
        help="Ollama server host URL",
    )
    parser.add_argument(
        "--ollama-model",
        type=str,
        default=settings.ollama_model,
        help="Ollama embedding model name",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    store = commands.add_parser("store", help="Store an item")
    store.add_argument("kind", help="decision, error, learning, note, todo or session")
    store.add_argument("--fields", required=True, help="Item fields as a JSON object")
    store.add_argument("--session", help="Session id to record the item in")

    get = commands.add_parser("get", help="Read one item (counts as an access)")
    get.add_argument("kind")
    get.add_argument("id")

    search = commands.add_parser("search", help="Hybrid search across all items")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=settings.default_search_limit)
    search.add_argument("--no-vector", action="store_true", help="Full-text ranking only")
    search.add_argument("--text", action="store_true", help="Print a readable list instead of JSON")

    related = commands.add_parser("related", help="Spreading activation from files or items")
    related.add_argument("--file", action="append", default=[], help="File path seed")
    related.add_argument("--item", action="append", default=[], help="Item seed such as decision:3")

    maintain = commands.add_parser("maintain", help="Run one decay sweep")
    maintain.add_argument("--max-tables", type=int, default=settings.decay_max_tables)

    commands.add_parser("prune", help="Archive stale items")

    backfill = commands.add_parser("backfill", help="Embed items that have no vector")
    backfill.add_argument("--limit", type=int, default=300, help="Items per kind")
    backfill.add_argument("--force", action="store_true", help="Rebuild the vector index")

    session_start = commands.add_parser("session-start", help="Open a session")
    session_start.add_argument("--session-id")

    session_end = commands.add_parser("session-end", help="Close a session")
    session_end.add_argument("session_id")
    session_end.add_argument("--summary")
    session_end.add_argument("--key-changes")

    commands.add_parser("stats", help="Counts and strength distribution")

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> CortexSettings:
    """Settings with CLI overrides applied."""
    return CortexSettings(
        sqlite_path=Path(args.sqlite_path) if args.sqlite_path else None,
        chroma_path=Path(args.chroma_path) if args.chroma_path else None,
        vector_index_enabled=not args.no_vector_index,
        ollama_host=args.ollama_host,
        ollama_model=args.ollama_model,
        log_level=args.log_level,
    )


async def run_command(service: MemoryService, args: argparse.Namespace) -> Any:
    """Execute one subcommand and return a JSON-serializable result."""
    command = args.command

    if command == "store":
        try:
            fields = json.loads(args.fields)
        except json.JSONDecodeError as e:
            return {"success": False, "error": f"Invalid JSON fields: {e}"}
        result = await service.store_item(args.kind, fields, session_id=args.session)
        return result.to_dict()

    if command == "get":
        item = await service.get_item(args.kind, args.id)
        return item if item is not None else {"success": False, "error": "Not found"}

    if command == "search":
        results = await service.search(args.query, limit=args.limit, use_vector=not args.no_vector)
        if args.text:
            return format_results(results)
        return [result.to_dict() for result in results]

    if command == "related":
        seeds = [ItemRef.from_key(key) for key in args.item]
        activated = await service.related_to(files=args.file, seeds=seeds)
        return [item.to_dict() for item in activated]

    if command == "maintain":
        return {"next_index": service.run_maintenance(args.max_tables)}

    if command == "prune":
        return {"archived": service.prune()}

    if command == "backfill":
        result = await service.store.backfill_embeddings(args.limit, force=args.force)
        return vars(result)

    if command == "session-start":
        return await service.start_session(args.session_id)

    if command == "session-end":
        updated = await service.end_session(
            summary=args.summary, key_changes=args.key_changes, session_id=args.session_id
        )
        return {"success": updated}

    if command == "stats":
        return service.stats()

    raise ValueError(f"Unknown command: {command}")


async def _main(args: argparse.Namespace) -> Any:
    service = await MemoryService.create(build_settings(args))
    try:
        return await run_command(service, args)
    finally:
        await service.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the ``cortex`` command."""
    args = parse_arguments(argv)
    setup_logging(args.log_level)

    try:
        output = asyncio.run(_main(args))
    except ValueError as e:
        print(json.dumps({"success": False, "error": str(e)}))
        sys.exit(2)
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        sys.exit(1)

    if isinstance(output, str):
        print(output)
    else:
        print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
