"""
AOG Inference Engine.

Detection and parsing with an AND-OR grammar over a feature pyramid:

    propagate -> select_candidates -> parse (per candidate) -> release

with the loss-augmentation layer interleaved for structured learning
(inhibit / apply_loss, then recover).

One engine owns the caches it creates; caches are not shared across
engines or threads.
"""

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple, Union

from .cache import ScoreMapCache
from .config import InferenceConfig
from .detection import Candidate, Selection, best_candidate, select_candidates
from .loss import (
    LossContext,
    OverlapMaps,
    apply_loss_adjustment,
    compute_overlap_maps,
    inhibit_output,
)
from .parsing import Backtracker, ParseTree
from .propagation import ScorePropagator

if TYPE_CHECKING:
    from features.pyramid import FeaturePyramid
    from grammar.aog import Grammar

logger = logging.getLogger(__name__)

Anchor = Union[Candidate, Tuple[int, int, int]]


class InferenceEngine:
    """
    Inference with one AND-OR grammar.

    Args:
        grammar: The AND-OR grammar (validated on construction)
        config: Detection and parsing settings
    """

    def __init__(self, grammar: 'Grammar', config: Optional[InferenceConfig] = None):
        self.grammar = grammar
        self.config = config or InferenceConfig()

        self.propagator = ScorePropagator(grammar)
        self.backtracker = Backtracker(grammar, collect_features=self.config.collect_features)

    # ------------------------------------------------------------------
    # Caller contract
    # ------------------------------------------------------------------

    def propagate(
        self,
        pyramid: 'FeaturePyramid',
        loss_context: Optional[LossContext] = None,
    ) -> ScoreMapCache:
        """
        Compute score maps of every node reachable from the root.

        The maps are computed into a fresh cache, so a failure leaves any
        earlier cache untouched.

        Raises:
            ConfigurationError: The grammar cannot be evaluated on this pyramid
        """
        cache = ScoreMapCache(len(self.grammar), pyramid, owner=self)
        self.propagator.run(pyramid, cache)
        cache.mark_propagated()

        if loss_context is not None:
            overlap_maps = self.compute_overlap(loss_context.boxes, pyramid, loss_context.fg_overlap)
            self.apply_loss(
                cache,
                overlap_maps,
                loss_context.box_index,
                overlap_maps.num_boxes,
                loss_context.fg_overlap,
                loss_context.bg_overlap,
                backup=False,
            )

        return cache

    def select_candidates(
        self,
        cache: ScoreMapCache,
        threshold: Optional[float] = None,
        max_detections: Optional[int] = None,
        suppress: Optional[bool] = None,
    ) -> Selection:
        """Ordered root anchors above the threshold (settings default to the config)."""
        cache.require_ready(self)
        config = self.config
        if suppress is None:
            suppress = config.use_nms and not config.extended
        return select_candidates(
            self.grammar,
            cache,
            threshold=config.threshold if threshold is None else threshold,
            max_detections=config.max_detections if max_detections is None else max_detections,
            suppress=suppress,
            nms_overlap=config.nms_overlap,
            divided_by_union=config.nms_divided_by_union,
            return_all=config.extended,
        )

    def parse(self, cache: ScoreMapCache, anchor: Anchor, with_loss: bool = False) -> ParseTree:
        """Parse tree rooted at a candidate or a (level, row, col) anchor."""
        cache.require_ready(self)
        if isinstance(anchor, Candidate):
            anchor = anchor.anchor
        level, row, col = anchor
        return self.backtracker.parse(cache, level, row, col, with_loss=with_loss)

    def compute_overlap(self, boxes, pyramid: 'FeaturePyramid', overlap_threshold: float) -> OverlapMaps:
        return compute_overlap_maps(self.grammar, boxes, pyramid, overlap_threshold)

    def inhibit(
        self,
        cache: ScoreMapCache,
        overlap_maps: OverlapMaps,
        box_index: int,
        overlap_threshold: float,
        backup: bool = True,
    ):
        cache.require_ready(self)
        inhibit_output(
            self.grammar, self.propagator, cache, overlap_maps,
            box_index, overlap_threshold, backup=backup,
        )

    def apply_loss(
        self,
        cache: ScoreMapCache,
        overlap_maps: OverlapMaps,
        box_index: int,
        box_count: Optional[int] = None,
        fg_overlap: Optional[float] = None,
        bg_overlap: Optional[float] = None,
        backup: bool = True,
    ):
        cache.require_ready(self)
        apply_loss_adjustment(
            self.grammar, self.propagator, cache, overlap_maps,
            box_index,
            box_count,
            self.config.fg_overlap if fg_overlap is None else fg_overlap,
            self.config.bg_overlap if bg_overlap is None else bg_overlap,
            backup=backup,
        )

    def recover(self, cache: ScoreMapCache):
        """Restore the last backup of every backed-up node."""
        cache.require_ready(self)
        cache.recover()

    def release(self, cache: ScoreMapCache):
        cache.release()

    @contextmanager
    def scoped_mutation(self, cache: ScoreMapCache) -> Iterator[ScoreMapCache]:
        """
        Mutation rights over the object nodes and their ancestors.

        Inside the block, inhibit/apply_loss may run with backup=False;
        the maps are restored on every exit path.
        """
        cache.require_ready(self)
        with cache.mutation(list(self.grammar.object_nodes) + self.grammar.object_ancestors):
            yield cache

    # ------------------------------------------------------------------
    # Detection runs
    # ------------------------------------------------------------------

    def run_detection(
        self,
        pyramid: 'FeaturePyramid',
        threshold: Optional[float] = None,
        max_detections: Optional[int] = None,
    ) -> List[ParseTree]:
        """Detect and parse object instances; duplicates are suppressed."""
        trees, _ = self._detect(pyramid, threshold, max_detections, extended=False)
        return trees

    def run_detection_ext(
        self,
        pyramid: 'FeaturePyramid',
        threshold: Optional[float] = None,
        max_detections: Optional[int] = None,
    ) -> Tuple[List[ParseTree], List[Candidate]]:
        """
        Detect without suppression.

        Returns:
            Tuple of (parse trees of the top candidates, every raw detection)
        """
        return self._detect(pyramid, threshold, max_detections, extended=True)

    def _detect(self, pyramid, threshold, max_detections, extended):
        config = self.config
        start = time.time()
        cache = self.propagate(pyramid)
        try:
            selection = select_candidates(
                self.grammar,
                cache,
                threshold=config.threshold if threshold is None else threshold,
                max_detections=config.max_detections if max_detections is None else max_detections,
                suppress=config.use_nms and not extended,
                nms_overlap=config.nms_overlap,
                divided_by_union=config.nms_divided_by_union,
                return_all=extended,
            )
            trees = [self.parse(cache, cand) for cand in selection]
            detections = selection.detections
        finally:
            self.release(cache)

        logger.info("Detected %d instances in %.3fs", len(trees), time.time() - start)
        return trees, detections

    # ------------------------------------------------------------------
    # Structured learning helpers
    # ------------------------------------------------------------------

    def latent_positives(
        self,
        pyramid: 'FeaturePyramid',
        boxes: Sequence[Sequence[float]],
        overlap_threshold: Optional[float] = None,
    ) -> List[Optional[ParseTree]]:
        """
        Best parse overlapping each ground-truth box.

        For every box, windows overlapping it by less than the threshold
        are inhibited, the best remaining anchor is parsed, and the maps
        are recovered. None where no window qualifies.
        """
        overlap_threshold = self.config.fg_overlap if overlap_threshold is None else overlap_threshold
        cache = self.propagate(pyramid)
        try:
            overlap_maps = self.compute_overlap(boxes, pyramid, overlap_threshold)
            results = []
            for box_index in range(overlap_maps.num_boxes):
                with self.scoped_mutation(cache):
                    self.inhibit(cache, overlap_maps, box_index, overlap_threshold, backup=False)
                    results.append(self._best_parse(cache, with_loss=False))
        finally:
            self.release(cache)
        return results

    def loss_augmented_parses(
        self,
        pyramid: 'FeaturePyramid',
        boxes: Sequence[Sequence[float]],
        fg_overlap: Optional[float] = None,
        bg_overlap: Optional[float] = None,
    ) -> List[Optional[ParseTree]]:
        """
        Most violating parse for each ground-truth box under margin rescaling.

        Each tree carries its loss; `raw_score` is the unaugmented score.
        """
        fg_overlap = self.config.fg_overlap if fg_overlap is None else fg_overlap
        bg_overlap = self.config.bg_overlap if bg_overlap is None else bg_overlap
        cache = self.propagate(pyramid)
        try:
            overlap_maps = self.compute_overlap(boxes, pyramid, fg_overlap)
            results = []
            for box_index in range(overlap_maps.num_boxes):
                with self.scoped_mutation(cache):
                    self.apply_loss(
                        cache, overlap_maps, box_index, overlap_maps.num_boxes,
                        fg_overlap, bg_overlap, backup=False,
                    )
                    results.append(self._best_parse(cache, with_loss=True))
        finally:
            self.release(cache)
        return results

    def _best_parse(self, cache: ScoreMapCache, with_loss: bool) -> Optional[ParseTree]:
        candidate = best_candidate(self.grammar, cache)
        if candidate is None:
            return None
        return self.parse(cache, candidate, with_loss=with_loss)
