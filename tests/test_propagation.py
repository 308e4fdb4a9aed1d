"""
Tests for bottom-up score propagation and the score map cache.

Run with: python -m pytest tests/test_propagation.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from features.pyramid import FeaturePyramid
from grammar import (
    CompositionalNode,
    Deformation,
    DeformableNode,
    Grammar,
    LinearFilter,
    Offset,
    SwitchingNode,
    TerminalNode,
)
from inference.cache import ScoreMapCache
from inference.distance_transform import dt2d
from inference.engine import InferenceEngine
from inference.errors import ConfigurationError, StaleCacheError


def channel_filter(node_id, channel, dim=2, scale=1.0, bias=0.0):
    """1x1 terminal that reads one feature channel."""
    weights = np.zeros((1, 1, dim))
    weights[0, 0, channel] = scale
    return TerminalNode(node_id, LinearFilter(weights), bias=bias)


def two_channel_pyramid(rows=6, cols=5, seed=0):
    rng = np.random.default_rng(seed)
    features = rng.normal(size=(rows, cols, 2))
    return FeaturePyramid.from_arrays([features], cell_size=1), features


class TestTerminal:
    """Terminal score maps."""

    def test_response_with_negative_infinity_margin(self):
        rng = np.random.default_rng(0)
        features = rng.normal(size=(5, 6, 1))
        weights = rng.normal(size=(2, 3, 1))
        grammar = Grammar([TerminalNode(0, LinearFilter(weights), bias=0.25)], root=0)
        pyramid = FeaturePyramid.from_arrays([features])

        cache = InferenceEngine(grammar).propagate(pyramid)
        score_map = cache.score_map(0, 0)

        assert score_map.shape == (5, 6)
        assert np.allclose(score_map[:4, :4], LinearFilter(weights).respond(features) + 0.25)
        assert np.all(np.isneginf(score_map[4:, :]))
        assert np.all(np.isneginf(score_map[:, 4:]))

    def test_small_levels_are_invalid(self):
        grammar = Grammar([TerminalNode(0, LinearFilter(np.ones((3, 3, 1))))], root=0)
        pyramid = FeaturePyramid.from_arrays([np.zeros((6, 6)), np.zeros((3, 3)), np.zeros((2, 2))])

        cache = InferenceEngine(grammar).propagate(pyramid)

        assert cache.status(0) == [True, True, False]
        assert cache.score_map(0, 2) is None
        assert cache.valid_levels(0) == [0, 1]


class TestSwitching:
    """OR-nodes take the elementwise max of their children."""

    def test_elementwise_max(self):
        pyramid, features = two_channel_pyramid()
        nodes = [
            SwitchingNode(0, [1, 2], bias=0.5),
            channel_filter(1, 0),
            channel_filter(2, 1),
        ]
        cache = InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid)

        expected = np.maximum(features[:, :, 0], features[:, :, 1]) + 0.5
        assert np.allclose(cache.score_map(0, 0), expected)

    def test_level_valid_for_any_child(self):
        nodes = [
            SwitchingNode(0, [1, 2]),
            TerminalNode(1, LinearFilter(np.ones((1, 1, 1)))),
            TerminalNode(2, LinearFilter(np.ones((4, 4, 1)))),
        ]
        pyramid = FeaturePyramid.from_arrays([np.ones((4, 4)), np.ones((2, 2))])

        cache = InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid)

        assert cache.status(0) == [True, True]
        assert cache.status(2) == [True, False]
        assert np.allclose(cache.score_map(0, 1), 1.0)


class TestCompositional:
    """AND-nodes sum children at fixed offsets."""

    def test_additivity(self):
        pyramid, features = two_channel_pyramid(rows=6, cols=5)
        bias = 0.5
        nodes = [
            CompositionalNode(0, [1, 2], [Offset(0, 0), Offset(dx=1, dy=2)], bias=bias),
            channel_filter(1, 0),
            channel_filter(2, 1),
        ]
        grammar = Grammar(nodes, root=0)
        assert grammar.receptive_field(0) == (3, 2)

        score_map = InferenceEngine(grammar).propagate(pyramid).score_map(0, 0)

        for r in range(6):
            for c in range(5):
                if r <= 3 and c <= 3:
                    expected = features[r, c, 0] + features[r + 2, c + 1, 1] + bias
                    assert score_map[r, c] == pytest.approx(expected)
                else:
                    assert np.isneginf(score_map[r, c])

    def test_offset_outside_child_grid(self):
        """A negative offset leaves the first column without a child placement."""
        pyramid, features = two_channel_pyramid(rows=4, cols=4)
        nodes = [
            CompositionalNode(0, [1, 2], [Offset(0, 0), Offset(dx=-1, dy=0)]),
            channel_filter(1, 0),
            channel_filter(2, 1),
        ]
        score_map = InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid).score_map(0, 0)

        assert np.all(np.isneginf(score_map[:, 0]))
        assert np.allclose(score_map[:, 1:], features[:, 1:, 0] + features[:, :-1, 1])

    def test_finer_resolution_child(self):
        """A child with ds=1 is read one octave finer at twice the position."""
        rng = np.random.default_rng(4)
        fine = rng.normal(size=(8, 8, 1))
        coarse = rng.normal(size=(4, 4, 1))
        pyramid = FeaturePyramid.from_arrays([fine, coarse], interval=1)
        nodes = [
            CompositionalNode(0, [1, 2], [Offset(), Offset(dx=1, dy=0, ds=1)]),
            TerminalNode(1, LinearFilter(np.ones((1, 1, 1)))),
            TerminalNode(2, LinearFilter(np.ones((1, 1, 1)))),
        ]
        cache = InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid)

        assert cache.status(0) == [False, True]
        score_map = cache.score_map(0, 1)
        for r in range(4):
            for c in range(4):
                expected = coarse[r, c, 0] + fine[2 * r, 2 * c + 1, 0]
                assert score_map[r, c] == pytest.approx(expected)


class TestDeformable:
    """Deformable AND-nodes distance-transform one child."""

    def test_matches_distance_transform(self):
        pyramid, features = two_channel_pyramid(rows=7, cols=6, seed=5)
        deformation = Deformation(ax=0.5, bx=0.1, ay=0.25, by=-0.2)
        nodes = [
            DeformableNode(
                0, [1, 2], [Offset(0, 0), Offset(dx=1, dy=1)],
                deformation=deformation, deformable_index=1, bias=-1.0,
            ),
            channel_filter(1, 0),
            channel_filter(2, 1),
        ]
        cache = InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid)

        transformed, dx, dy = dt2d(features[:, :, 1], deformation)
        score_map = cache.score_map(0, 0)
        assert np.allclose(score_map[:5, :4], features[:5, :4, 0] + transformed[1:6, 1:5] - 1.0)
        assert np.all(np.isneginf(score_map[6:, :]))

        cached_dx, cached_dy = cache.displacements(0, 0)
        assert np.array_equal(cached_dx, dx)
        assert np.array_equal(cached_dy, dy)


class TestConfigurationErrors:
    """Grammars that cannot be evaluated are rejected before scoring."""

    def test_receptive_field_exceeds_every_level(self):
        grammar = Grammar([TerminalNode(0, LinearFilter(np.ones((5, 5, 1))))], root=0)
        pyramid = FeaturePyramid.from_arrays([np.zeros((4, 8)), np.zeros((2, 4))])

        with pytest.raises(ConfigurationError):
            InferenceEngine(grammar).propagate(pyramid)

    def test_resolution_step_below_finest_level(self):
        nodes = [
            CompositionalNode(0, [1], [Offset(ds=1)]),
            TerminalNode(1, LinearFilter(np.ones((1, 1, 1)))),
        ]
        pyramid = FeaturePyramid.from_arrays([np.zeros((4, 4))])

        with pytest.raises(ConfigurationError):
            InferenceEngine(Grammar(nodes, root=0)).propagate(pyramid)

    def test_failed_propagation_keeps_previous_cache(self):
        grammar = Grammar([TerminalNode(0, LinearFilter(np.ones((3, 3, 1))))], root=0)
        engine = InferenceEngine(grammar)
        cache = engine.propagate(FeaturePyramid.from_arrays([np.ones((5, 5))]))
        before = cache.score_map(0, 0).copy()

        with pytest.raises(ConfigurationError):
            engine.propagate(FeaturePyramid.from_arrays([np.ones((2, 2))]))

        assert np.array_equal(cache.score_map(0, 0), before)
        assert len(engine.select_candidates(cache, threshold=0.0)) > 0


class TestScoreMapCache:
    """Cache lifecycle."""

    def _cache(self):
        pyramid = FeaturePyramid.from_arrays([np.zeros((2, 2)), np.zeros((1, 1))])
        cache = ScoreMapCache(2, pyramid)
        cache.set_score_maps(0, [np.zeros((2, 2)), np.ones((1, 1))], [True, True])
        cache.mark_propagated()
        return cache

    def test_unpropagated_cache_is_stale(self):
        pyramid = FeaturePyramid.from_arrays([np.zeros((2, 2))])
        with pytest.raises(StaleCacheError, match="never propagated"):
            ScoreMapCache(1, pyramid).require_ready()

    def test_released_cache_is_stale(self):
        cache = self._cache()
        cache.release()

        with pytest.raises(StaleCacheError, match="released"):
            cache.require_ready()
        with pytest.raises(StaleCacheError):
            cache.score_maps(0)

    def test_backup_and_recover(self):
        cache = self._cache()
        cache.backup(0)
        cache.score_map(0, 0)[:] = -np.inf
        cache.set_loss_maps(0, [np.ones((2, 2)), None])

        cache.recover()

        assert np.array_equal(cache.score_map(0, 0), np.zeros((2, 2)))
        assert cache.loss_maps(0) is None
        assert cache.backed_up == [0]

    def test_backup_keeps_displacements(self):
        cache = self._cache()
        cache.set_displacements(0, 0, np.zeros((2, 2), dtype=int), np.zeros((2, 2), dtype=int))
        cache.backup(0)
        dx, dy = cache.displacements(0, 0)
        dx[:] = 3

        cache.recover()

        dx, dy = cache.displacements(0, 0)
        assert np.all(dx == 0) and np.all(dy == 0)

    def test_query_surface(self):
        # Scores are read per node; backups through backed_up
        cache = self._cache()
        assert cache.valid_levels(0) == [0, 1]
        for name in ("has_scores", "set_score_map", "clear_loss_maps", "has_backup"):
            assert not hasattr(cache, name)

    def test_recover_without_backup(self):
        cache = self._cache()
        with pytest.raises(StaleCacheError, match="backup"):
            cache.recover()
        with pytest.raises(StaleCacheError):
            cache.recover([1])

    def test_mutation_restores_on_error(self):
        cache = self._cache()

        with pytest.raises(KeyError):
            with cache.mutation([0]):
                cache.score_map(0, 1)[:] = 42.0
                raise KeyError("abort")

        assert np.array_equal(cache.score_map(0, 1), np.ones((1, 1)))
        assert cache.backed_up == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
