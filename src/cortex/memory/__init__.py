"""Memory module for cortex.

This module provides the item types and the per-kind registry. The engines
(decay, importance, associations, activation, search) and the
``MemoryService`` facade live in their own submodules and are imported
from there, since they depend on the storage layer.
"""

from cortex.memory.registry import REGISTRY, DecayConfig, ItemSpec, get_spec
from cortex.memory.types import (
    ActivatedItem,
    Association,
    DecayStats,
    DuplicateMatch,
    DuplicatePair,
    ItemKind,
    ItemRef,
    Neighbor,
    Relation,
    SearchResult,
    StoreResult,
)

__all__ = [
    "REGISTRY",
    "ActivatedItem",
    "Association",
    "DecayConfig",
    "DecayStats",
    "DuplicateMatch",
    "DuplicatePair",
    "ItemKind",
    "ItemRef",
    "ItemSpec",
    "Neighbor",
    "Relation",
    "SearchResult",
    "StoreResult",
    "get_spec",
]
