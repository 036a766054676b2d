"""Cortex - persistent memory core for AI coding assistants.

This package stores decisions, errors, learnings, notes, open tasks and
session summaries, and keeps them relevant over time.

Main components:
- memory.decay: Ebbinghaus-style strength decay
- memory.importance: five-dimension importance scoring
- memory.associations / memory.activation: association graph and spreading activation
- memory.search: BM25 + vector hybrid search with Reciprocal Rank Fusion
- memory.operations: MemoryService facade
- storage.hybrid: coordinated SQLite + ChromaDB + Ollama storage layer
- config: Pydantic Settings for configuration management

Usage:
    cortex search "sqlite locking"
    python -m cortex stats
"""

__all__ = ["main"]
__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the cortex command."""
    from cortex.__main__ import main as _main
    _main()
