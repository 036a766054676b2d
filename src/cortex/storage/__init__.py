"""Storage layer for cortex."""

from cortex.storage.chromadb import ChromaStore, StorageError
from cortex.storage.hybrid import Capabilities, HybridStore, HybridStoreError
from cortex.storage.sqlite import SQLiteStore, SQLiteStoreError

__all__ = [
    "Capabilities",
    "ChromaStore",
    "StorageError",
    "HybridStore",
    "HybridStoreError",
    "SQLiteStore",
    "SQLiteStoreError",
]
