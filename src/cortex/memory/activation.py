"""Spreading activation over the association graph.

Seeds start at activation 1.0. Each hop passes on
``activation * edge_strength * 0.5``; contributions below 0.1 are dropped and
traversal stops after 3 hops. Only unvisited neighbours receive activation:
a node keeps the value of the first parent that reaches it and is expanded
once, so cycles terminate.
"""

import logging
from collections import deque
from typing import Optional, Sequence

from cortex.memory.associations import AssociationGraph
from cortex.memory.types import ActivatedItem, ItemKind, ItemRef
from cortex.storage.sqlite import SQLiteStore, SQLiteStoreError

logger = logging.getLogger(__name__)

DECAY_FACTOR = 0.5
MAX_HOPS = 3
ACTIVATION_THRESHOLD = 0.1

MAX_SEED_FILES = 5
SEEDS_PER_FILE = 3


def spreading_activation(
    graph: AssociationGraph,
    seeds: Sequence[ItemRef],
    max_hops: int = MAX_HOPS,
) -> list[ActivatedItem]:
    """Propagate relevance outward from seed items.

    Args:
        graph: Association graph to traverse
        seeds: Starting items (activation 1.0, excluded from the output)
        max_hops: Maximum edge distance from a seed

    Returns:
        Reached items sorted by activation, highest first
    """
    activation: dict[ItemRef, float] = {}
    visited: set[ItemRef] = set(seeds)
    queue: deque[tuple[ItemRef, float, int]] = deque(
        (seed, 1.0, 0) for seed in dict.fromkeys(seeds)
    )

    while queue:
        current, current_activation, hop = queue.popleft()
        if hop >= max_hops:
            continue

        try:
            neighbors = graph.get_neighbors(current)
        except SQLiteStoreError as e:
            logger.warning(f"Cannot expand {current.key}: {e}")
            continue

        # Parallel edges to the same node count once, at their strongest
        strongest: dict[ItemRef, float] = {}
        for neighbor in neighbors:
            if neighbor.strength > strongest.get(neighbor.ref, 0.0):
                strongest[neighbor.ref] = neighbor.strength

        for ref, strength in strongest.items():
            if ref in visited:
                continue
            propagated = current_activation * strength * DECAY_FACTOR
            if propagated < ACTIVATION_THRESHOLD:
                continue
            visited.add(ref)
            activation[ref] = propagated
            queue.append((ref, propagated, hop + 1))

    results = [
        ActivatedItem(ref=ref, activation=value)
        for ref, value in activation.items()
        if value >= ACTIVATION_THRESHOLD
    ]
    results.sort(key=lambda item: item.activation, reverse=True)
    return results


def file_seeds(store: SQLiteStore, files: Sequence[str]) -> list[ItemRef]:
    """Recent errors and decisions that reference any of the given files."""
    seeds: list[ItemRef] = []
    for file_path in list(files)[:MAX_SEED_FILES]:
        if not file_path:
            continue
        for kind in (ItemKind.ERROR, ItemKind.DECISION):
            try:
                seeds.extend(store.items_for_file(kind, file_path, SEEDS_PER_FILE))
            except SQLiteStoreError as e:
                logger.warning(f"Cannot seed from {kind.value} for {file_path}: {e}")
    return list(dict.fromkeys(seeds))


def activate_for_files(
    store: SQLiteStore,
    graph: AssociationGraph,
    files: Sequence[str],
    max_hops: Optional[int] = None,
) -> list[ActivatedItem]:
    """Spreading activation seeded by the items tied to a set of files."""
    seeds = file_seeds(store, files)
    if not seeds:
        return []
    return spreading_activation(graph, seeds, max_hops=max_hops or MAX_HOPS)
