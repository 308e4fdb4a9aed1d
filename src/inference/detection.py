"""
Detection Selector.

Scans the root's score maps across levels, keeps cells above a threshold,
orders them by score and optionally suppresses duplicates with greedy NMS
over their windows.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np
import torch

from grammar.nodes import NodeKind
from utils.nms import nms

from .cache import ScoreMapCache
from .parsing import best_child

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A root anchor to parse."""
    level: int
    row: int
    col: int
    score: float
    box: Tuple[float, float, float, float]
    node_id: int  # object node winning at the anchor

    @property
    def anchor(self) -> Tuple[int, int, int]:
        return self.level, self.row, self.col


@dataclass
class Selection:
    """
    Ordered candidates, plus every raw detection in extended mode.

    An empty selection means nothing scored above the threshold.
    """
    candidates: List[Candidate] = field(default_factory=list)
    detections: List[Candidate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self.candidates)

    def __getitem__(self, idx: int) -> Candidate:
        return self.candidates[idx]


def anchor_window(grammar, cache: ScoreMapCache, level: int, row: int, col: int):
    """
    Window of the object node that wins at a root anchor.

    Follows switching nodes down to the first non-switching node and uses
    its receptive field.

    Returns:
        Tuple of (box, node_id)
    """
    node_id = grammar.root
    while grammar.node(node_id).kind == NodeKind.SWITCHING:
        node_id = best_child(grammar, cache, node_id, level, row, col)
    box = cache.pyramid.window(level, row, col, grammar.receptive_field(node_id))
    return box, node_id


def collect_candidates(grammar, cache: ScoreMapCache, threshold: float) -> List[Candidate]:
    """
    Every root cell scoring above the threshold, best first.

    Equal scores keep level, then row-major cell order.
    """
    candidates = []
    for level in cache.valid_levels(grammar.root):
        score_map = cache.score_map(grammar.root, level)
        cols = score_map.shape[1]
        for flat in np.flatnonzero(score_map > threshold):
            row, col = divmod(int(flat), cols)
            box, node_id = anchor_window(grammar, cache, level, row, col)
            candidates.append(Candidate(level, row, col, float(score_map[row, col]), box, node_id))

    candidates.sort(key=lambda cand: -cand.score)
    return candidates


def best_candidate(grammar, cache: ScoreMapCache) -> Optional[Candidate]:
    """Highest-scoring finite root cell over all levels, None if there is none."""
    best = None
    for level in cache.valid_levels(grammar.root):
        score_map = cache.score_map(grammar.root, level)
        row, col = np.unravel_index(int(np.argmax(score_map)), score_map.shape)
        score = float(score_map[row, col])
        if np.isfinite(score) and (best is None or score > best[0]):
            best = (score, level, int(row), int(col))

    if best is None:
        return None
    score, level, row, col = best
    box, node_id = anchor_window(grammar, cache, level, row, col)
    return Candidate(level, row, col, score, box, node_id)


def select_candidates(
    grammar,
    cache: ScoreMapCache,
    threshold: float,
    max_detections: Optional[int] = None,
    suppress: bool = True,
    nms_overlap: float = 0.5,
    divided_by_union: bool = True,
    return_all: bool = False,
) -> Selection:
    """
    Select root anchors to parse.

    Args:
        grammar: The AND-OR grammar
        cache: A propagated cache
        threshold: Keep cells scoring strictly above this
        max_detections: Stop after this many candidates (None for no cap)
        suppress: Apply greedy NMS over candidate windows
        nms_overlap: Overlap above which a candidate is suppressed
        divided_by_union: IoU if True, intersection over smaller if False
        return_all: Also return every raw detection

    Returns:
        Selection
    """
    detections = collect_candidates(grammar, cache, threshold)

    if suppress and detections:
        boxes = torch.tensor([cand.box for cand in detections], dtype=torch.float64)
        scores = torch.tensor([cand.score for cand in detections], dtype=torch.float64)
        keep = nms(boxes, scores, nms_overlap, divided_by_union, max_keep=max_detections)
        candidates = [detections[i] for i in keep.tolist()]
    else:
        candidates = list(detections)

    if max_detections is not None:
        candidates = candidates[:max_detections]

    logger.debug(
        "Selected %d of %d detections above %.4f (suppress=%s)",
        len(candidates), len(detections), threshold, suppress,
    )

    return Selection(candidates, detections if return_all else [])
