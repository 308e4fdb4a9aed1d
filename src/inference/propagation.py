"""
Score Propagation Engine.

Bottom-up dynamic program over the grammar: every node's score map at a
level is the rule-defined combination of its children's maps plus the
node's bias.

    Terminal       appearance response of the level features
    Switching      elementwise max over children valid at the level
    Compositional  sum of children sampled at fixed offsets
    Deformable     as compositional, with one child's map distance-transformed

All maps at a level share the level grid's shape; cells where a node's
receptive field does not fit are -inf.
"""

import logging
import time
from typing import Iterable, List, Tuple

import numpy as np

from grammar.nodes import AND_KINDS, NodeKind, Offset

from .cache import ScoreMapCache
from .distance_transform import dt2d
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

NEG_INF = -np.inf


def place_child(child_map: np.ndarray, shape: Tuple[int, int], offset: Offset) -> np.ndarray:
    """
    Sample a child's map at every parent cell.

    Parent cell (r, c) reads the child at offset.child_anchor(r, c);
    positions outside the child's grid read -inf.
    """
    rows, cols = shape
    scale = 1 << offset.ds
    child_rows = np.arange(rows) * scale + offset.dy
    child_cols = np.arange(cols) * scale + offset.dx

    ok_rows = (child_rows >= 0) & (child_rows < child_map.shape[0])
    ok_cols = (child_cols >= 0) & (child_cols < child_map.shape[1])

    placed = np.full(shape, NEG_INF)
    placed[np.ix_(ok_rows, ok_cols)] = child_map[np.ix_(child_rows[ok_rows], child_cols[ok_cols])]
    return placed


def fit_mask(shape: Tuple[int, int], size: Tuple[int, int]) -> np.ndarray:
    """True where a receptive field of `size` anchored at the cell fits the grid."""
    rows, cols = shape
    mask = np.zeros(shape, dtype=bool)
    mask[:max(rows - size[0] + 1, 0), :max(cols - size[1] + 1, 0)] = True
    return mask


class ScorePropagator:
    """
    Fills a ScoreMapCache for every node reachable from the grammar root.

    Args:
        grammar: The AND-OR grammar
    """

    def __init__(self, grammar):
        self.grammar = grammar

    def plan_levels(self, pyramid) -> List[List[bool]]:
        """
        Validity of every reachable node at every level, without scoring.

        Raises:
            ConfigurationError: A reachable node is valid at no level
        """
        num_levels = len(pyramid)
        status: List[List[bool]] = [[False] * num_levels for _ in range(len(self.grammar))]

        for node_id in self.grammar.bottom_up:
            node = self.grammar.node(node_id)
            size = self.grammar.receptive_field(node_id)
            for l in range(num_levels):
                rows, cols = pyramid.level_shape(l)
                if node.kind == NodeKind.SWITCHING:
                    status[node_id][l] = any(status[c][l] for c in node.children)
                    continue
                if size[0] > rows or size[1] > cols:
                    continue
                if node.kind == NodeKind.TERMINAL:
                    status[node_id][l] = True
                    continue
                status[node_id][l] = all(
                    0 <= l - offset.ds * pyramid.interval and status[child][l - offset.ds * pyramid.interval]
                    for child, offset in zip(node.children, node.offsets)
                )

            if not any(status[node_id]):
                raise ConfigurationError(
                    f"{node.kind.value} node {node_id} ({node.name}) with receptive field {size} "
                    f"cannot be evaluated at any level of {pyramid!r}"
                )

        return status

    def run(self, pyramid, cache: ScoreMapCache):
        """Compute every reachable node's score maps, children first."""
        start = time.time()
        status = self.plan_levels(pyramid)

        for node_id in self.grammar.bottom_up:
            self.compute_node(node_id, cache, status[node_id])

        logger.debug(
            "Propagated %d nodes over %d levels in %.3fs",
            len(self.grammar.bottom_up), len(pyramid), time.time() - start,
        )

    def recompute(self, cache: ScoreMapCache, node_ids: Iterable[int]):
        """Recompute some nodes from their children's current maps, in the given order."""
        for node_id in node_ids:
            self.compute_node(node_id, cache, cache.status(node_id))

    def compute_node(self, node_id: int, cache: ScoreMapCache, status: List[bool]):
        node = self.grammar.node(node_id)
        if node.kind == NodeKind.TERMINAL:
            maps = self._terminal(node, cache, status)
        elif node.kind == NodeKind.SWITCHING:
            maps = self._switching(node, cache, status)
        elif node.kind in AND_KINDS:
            maps = self._and(node, cache, status)
        else:
            raise ConfigurationError(f"Unknown node kind {node.kind}")
        cache.set_score_maps(node_id, maps, status)

    def _terminal(self, node, cache, status):
        pyramid = cache.pyramid
        maps = [None] * len(pyramid)
        for l, valid in enumerate(status):
            if not valid:
                continue
            response = node.appearance.respond(pyramid[l].features)
            score_map = np.full(pyramid.level_shape(l), NEG_INF)
            score_map[:response.shape[0], :response.shape[1]] = response + node.bias
            maps[l] = score_map
        return maps

    def _switching(self, node, cache, status):
        maps = [None] * cache.num_levels
        for l, valid in enumerate(status):
            if not valid:
                continue
            best = None
            for child in node.children:
                if not cache.is_valid(child, l):
                    continue
                child_map = cache.score_map(child, l)
                best = child_map.copy() if best is None else np.maximum(best, child_map)
            maps[l] = best + node.bias
        return maps

    def _and(self, node, cache, status):
        pyramid = cache.pyramid
        size = self.grammar.receptive_field(node.id)
        deformable = node.kind == NodeKind.DEFORMABLE

        maps = [None] * len(pyramid)
        for l, valid in enumerate(status):
            if not valid:
                continue
            shape = pyramid.level_shape(l)
            total = np.full(shape, node.bias, dtype=np.float64)

            for idx, (child, offset) in enumerate(zip(node.children, node.offsets)):
                child_level = l - offset.ds * pyramid.interval
                child_map = cache.score_map(child, child_level)
                if deformable and idx == node.deformable_index:
                    child_map, dx, dy = dt2d(child_map, node.deformation)
                    cache.set_displacements(node.id, child_level, dx, dy)
                total += place_child(child_map, shape, offset)

            total[~fit_mask(shape, size)] = NEG_INF
            maps[l] = total
        return maps
