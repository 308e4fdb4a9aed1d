"""
Score Map Cache.

Per-node, per-level storage for one propagation run: score maps, validity
status, displacement maps of deformable nodes, loss overlays, and backup
snapshots taken before destructive mutations. Tables are dense lists
indexed by node id; entries are filled lazily as nodes are visited.

Lifecycle:
    propagate -> mark_propagated -> (select / parse / mutate)* -> release

Backups are a working-copy / pristine-snapshot pair per node: `backup`
snapshots the working score, displacement and loss maps, `recover` copies
the snapshot back. A new propagation or `release` discards them.
"""

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Tuple

import numpy as np

from .errors import StaleCacheError

logger = logging.getLogger(__name__)

Maps = List[Optional[np.ndarray]]
# (scores, dx, dy, loss) copies of one node
Snapshot = Tuple[Maps, Optional[Maps], Optional[Maps], Optional[Maps]]


class ScoreMapCache:
    """
    Score maps of every grammar node over one feature pyramid.

    Args:
        num_nodes: Number of nodes in the grammar arena
        pyramid: The pyramid the maps are computed on
        owner: The engine that owns this cache
    """

    def __init__(self, num_nodes: int, pyramid, owner=None):
        self.num_nodes = num_nodes
        self.pyramid = pyramid
        self.num_levels = len(pyramid)
        self.owner = owner

        self._scores: List[Optional[Maps]] = [None] * num_nodes
        self._status: List[Optional[List[bool]]] = [None] * num_nodes
        self._deformation_x: List[Optional[Maps]] = [None] * num_nodes
        self._deformation_y: List[Optional[Maps]] = [None] * num_nodes
        self._loss: List[Optional[Maps]] = [None] * num_nodes
        self._backups: List[Optional[Maps]] = [None] * num_nodes

        self.propagated = False
        self.released = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mark_propagated(self):
        self.propagated = True

    def require_ready(self, owner=None):
        """Raise StaleCacheError unless the cache holds a finished propagation."""
        if self.released:
            raise StaleCacheError("Score map cache was released")
        if not self.propagated:
            raise StaleCacheError("Score map cache was never propagated")
        if owner is not None and self.owner is not owner:
            raise StaleCacheError("Score map cache belongs to another engine")

    def release(self):
        """Free every map. The cache cannot be used afterwards."""
        n = self.num_nodes
        self._scores = [None] * n
        self._status = [None] * n
        self._deformation_x = [None] * n
        self._deformation_y = [None] * n
        self._loss = [None] * n
        self._backups = [None] * n
        self.propagated = False
        self.released = True
        logger.debug("Released score map cache")

    # ------------------------------------------------------------------
    # Scores and status
    # ------------------------------------------------------------------

    def score_maps(self, node_id: int) -> Maps:
        maps = self._scores[node_id]
        if maps is None:
            raise StaleCacheError(f"Node {node_id} has no score maps")
        return maps

    def score_map(self, node_id: int, level: int) -> Optional[np.ndarray]:
        """Score map of a node at one level, None where the level is invalid."""
        return self.score_maps(node_id)[level]

    def set_score_maps(self, node_id: int, maps: Maps, status: List[bool]):
        self._scores[node_id] = maps
        self._status[node_id] = list(status)

    def status(self, node_id: int) -> List[bool]:
        status = self._status[node_id]
        if status is None:
            return [False] * self.num_levels
        return status

    def is_valid(self, node_id: int, level: int) -> bool:
        return 0 <= level < self.num_levels and self.status(node_id)[level]

    def valid_levels(self, node_id: int) -> List[int]:
        return [l for l, ok in enumerate(self.status(node_id)) if ok]

    # ------------------------------------------------------------------
    # Deformation (argmax displacement) maps
    # ------------------------------------------------------------------

    def set_displacements(self, node_id: int, level: int, dx: np.ndarray, dy: np.ndarray):
        if self._deformation_x[node_id] is None:
            self._deformation_x[node_id] = [None] * self.num_levels
            self._deformation_y[node_id] = [None] * self.num_levels
        self._deformation_x[node_id][level] = dx
        self._deformation_y[node_id][level] = dy

    def displacements(self, node_id: int, level: int) -> Tuple[np.ndarray, np.ndarray]:
        """(dx, dy) maps of a deformable node at its deformed child's level."""
        dx_maps = self._deformation_x[node_id]
        if dx_maps is None or dx_maps[level] is None:
            raise StaleCacheError(f"Node {node_id} has no displacement maps at level {level}")
        return dx_maps[level], self._deformation_y[node_id][level]

    # ------------------------------------------------------------------
    # Loss maps
    # ------------------------------------------------------------------

    def set_loss_maps(self, node_id: int, maps: Maps):
        self._loss[node_id] = maps

    def loss_maps(self, node_id: int) -> Optional[Maps]:
        return self._loss[node_id]

    def loss_at(self, node_id: int, level: int, row: int, col: int) -> float:
        maps = self._loss[node_id]
        if maps is None or maps[level] is None:
            return 0.0
        return float(maps[level][row, col])

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def _snapshot(self, node_id: int) -> Snapshot:
        """Copies of a node's score, displacement and loss maps."""
        return (
            _copy_maps(self.score_maps(node_id)),
            _copy_maps(self._deformation_x[node_id]),
            _copy_maps(self._deformation_y[node_id]),
            _copy_maps(self._loss[node_id]),
        )

    def _restore(self, node_id: int, snapshot: Snapshot):
        scores, dx, dy, loss = snapshot
        self._scores[node_id] = _copy_maps(scores)
        self._deformation_x[node_id] = _copy_maps(dx)
        self._deformation_y[node_id] = _copy_maps(dy)
        self._loss[node_id] = _copy_maps(loss)

    def backup(self, node_id: int):
        """Snapshot a node's maps, replacing any earlier snapshot."""
        self._backups[node_id] = self._snapshot(node_id)

    @property
    def backed_up(self) -> List[int]:
        return [i for i, b in enumerate(self._backups) if b is not None]

    def recover(self, node_ids: Optional[Iterable[int]] = None):
        """
        Restore score, displacement and loss maps from their snapshots.

        Snapshots are kept, so a mutation can be applied and recovered
        repeatedly against one backup.

        Raises:
            StaleCacheError: No snapshot was taken (for a requested node)
        """
        if node_ids is None:
            node_ids = self.backed_up
            if not node_ids:
                raise StaleCacheError("No score map backup to recover")
        for node_id in node_ids:
            backup = self._backups[node_id]
            if backup is None:
                raise StaleCacheError(f"Node {node_id} has no score map backup")
            self._restore(node_id, backup)

    def discard_backups(self, node_ids: Optional[Iterable[int]] = None):
        if node_ids is None:
            self._backups = [None] * self.num_nodes
            return
        for node_id in node_ids:
            self._backups[node_id] = None

    @contextmanager
    def mutation(self, node_ids: Iterable[int]) -> Iterator['ScoreMapCache']:
        """
        Scoped mutation rights over some nodes.

        The scope holds its own snapshot of the nodes, separate from the
        `backup` slots. On every exit path the nodes are restored from it
        and their backup slots are put back as they were on entry, so
        backups taken inside the block do not outlive it.
        """
        node_ids = list(node_ids)
        saved = {node_id: self._snapshot(node_id) for node_id in node_ids}
        slots = {node_id: self._backups[node_id] for node_id in node_ids}
        try:
            yield self
        finally:
            if not self.released:
                for node_id in node_ids:
                    self._restore(node_id, saved[node_id])
                    self._backups[node_id] = slots[node_id]


def _copy_maps(maps: Optional[Maps]) -> Optional[Maps]:
    if maps is None:
        return None
    return [None if m is None else m.copy() for m in maps]
