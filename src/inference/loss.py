"""
Loss-Augmentation Layer.

Overlap of every object-node window with ground-truth boxes, and the two
destructive score-map mutations built on it for structured learning:

- output inhibition: windows that do not overlap a chosen box enough are
  set to -inf, restricting the search to that box (latent positives);
- loss adjustment (margin rescaling): windows that are not foreground for
  the chosen box gain a loss of 1, so the search prefers the most violating
  parse; windows that belong to another box are excluded.

Both mutate the object nodes' maps, optionally after taking a backup, and
then recompute the object nodes' ancestors.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import torch

from utils.box_ops import box_iou

from .cache import ScoreMapCache
from .propagation import fit_mask

logger = logging.getLogger(__name__)

NEG_INF = -np.inf


@dataclass
class OverlapMaps:
    """
    Window-to-box overlap grids.

    maps[i][level] is None where object node i does not fit the level,
    else a list with one [H, W] IoU grid per box.
    """
    node_ids: List[int]
    maps: List[List[Optional[List[np.ndarray]]]]
    valid_levels: List[bool]
    num_boxes: int

    def get(self, index: int, level: int, box_index: int) -> Optional[np.ndarray]:
        level_maps = self.maps[index][level]
        if level_maps is None:
            return None
        return level_maps[box_index]


@dataclass
class LossContext:
    """Loss adjustment to apply right after propagation."""
    boxes: Sequence[Sequence[float]]
    box_index: int = 0
    fg_overlap: float = 0.7
    bg_overlap: float = 0.5


def compute_overlap_maps(grammar, boxes, pyramid, overlap_threshold: float) -> OverlapMaps:
    """
    IoU of every object node's window at every cell with every box.

    Args:
        grammar: The AND-OR grammar
        boxes: [B, 4] ground-truth boxes in (x1, y1, x2, y2) format
        pyramid: The feature pyramid
        overlap_threshold: A level is valid if some window reaches this
            overlap with some box

    Returns:
        OverlapMaps
    """
    boxes = torch.as_tensor(np.asarray(boxes, dtype=np.float64)).reshape(-1, 4)
    num_boxes = boxes.shape[0]

    valid_levels = [False] * len(pyramid)
    maps = []
    for node_id in grammar.object_nodes:
        size = grammar.receptive_field(node_id)
        node_maps: List[Optional[List[np.ndarray]]] = []
        for l in range(len(pyramid)):
            rows, cols = pyramid.level_shape(l)
            if size[0] > rows or size[1] > cols or num_boxes == 0:
                node_maps.append(None)
                continue

            windows = pyramid.windows(l, size)  # [H * W, 4]
            overlap = box_iou(windows, boxes).numpy().reshape(rows, cols, num_boxes)
            overlap[~fit_mask((rows, cols), size)] = 0.0

            if (overlap >= overlap_threshold).any():
                valid_levels[l] = True
            node_maps.append([overlap[:, :, b].copy() for b in range(num_boxes)])
        maps.append(node_maps)

    logger.debug(
        "Overlap maps for %d boxes, %d object nodes, %d/%d levels valid",
        num_boxes, len(maps), sum(valid_levels), len(valid_levels),
    )

    return OverlapMaps(list(grammar.object_nodes), maps, valid_levels, num_boxes)


def _check(grammar, overlap_maps: OverlapMaps, box_index: int):
    if list(overlap_maps.node_ids) != list(grammar.object_nodes):
        raise ValueError("Overlap maps were computed for different object nodes")
    if not 0 <= box_index < overlap_maps.num_boxes:
        raise ValueError(f"Box index {box_index} out of range for {overlap_maps.num_boxes} boxes")


def inhibit_output(
    grammar,
    propagator,
    cache: ScoreMapCache,
    overlap_maps: OverlapMaps,
    box_index: int,
    overlap_threshold: float,
    backup: bool = True,
):
    """
    Set every object-node cell overlapping box `box_index` by less than
    the threshold to -inf, then recompute the ancestors.
    """
    _check(grammar, overlap_maps, box_index)
    ancestors = grammar.object_ancestors

    if backup:
        for node_id in list(grammar.object_nodes) + ancestors:
            cache.backup(node_id)

    for i, node_id in enumerate(overlap_maps.node_ids):
        for l in cache.valid_levels(node_id):
            score_map = cache.score_map(node_id, l)
            overlap = overlap_maps.get(i, l, box_index)
            if overlap is None:
                score_map[:] = NEG_INF
            else:
                score_map[overlap < overlap_threshold] = NEG_INF

    propagator.recompute(cache, ancestors)


def apply_loss_adjustment(
    grammar,
    propagator,
    cache: ScoreMapCache,
    overlap_maps: OverlapMaps,
    box_index: int,
    box_count: Optional[int],
    fg_overlap: float,
    bg_overlap: float,
    backup: bool = True,
):
    """
    Add the margin-rescaling loss of box `box_index` to the object nodes.

    loss = 1 where the overlap with the box is below fg_overlap, else 0;
    non-foreground cells overlapping any other box by at least bg_overlap
    are excluded with -inf. Repeated calls add to the existing overlay.
    """
    _check(grammar, overlap_maps, box_index)
    if box_count is None:
        box_count = overlap_maps.num_boxes
    elif box_count != overlap_maps.num_boxes:
        raise ValueError(f"box_count {box_count} does not match {overlap_maps.num_boxes} overlap boxes")

    ancestors = grammar.object_ancestors
    if backup:
        for node_id in list(grammar.object_nodes) + ancestors:
            cache.backup(node_id)

    for i, node_id in enumerate(overlap_maps.node_ids):
        existing = cache.loss_maps(node_id)
        loss_maps: List[Optional[np.ndarray]] = [None] * cache.num_levels
        for l in cache.valid_levels(node_id):
            score_map = cache.score_map(node_id, l)
            overlap = overlap_maps.get(i, l, box_index)
            if overlap is None:
                overlap = np.zeros(score_map.shape)

            background = overlap < fg_overlap
            loss = background.astype(np.float64)
            for other in range(box_count):
                if other == box_index:
                    continue
                other_overlap = overlap_maps.get(i, l, other)
                if other_overlap is not None:
                    loss[background & (other_overlap >= bg_overlap)] = NEG_INF

            score_map += loss
            # Overlays accumulate until recovered
            if existing is not None and existing[l] is not None:
                loss = existing[l] + loss
            loss_maps[l] = loss
        cache.set_loss_maps(node_id, loss_maps)

    propagator.recompute(cache, ancestors)
