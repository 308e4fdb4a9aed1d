"""
Tests for the AND-OR grammar arena and the feature pyramid container.

Run with: python -m pytest tests/test_grammar.py -v
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
    build_grammar,
)
from inference.config import load_config
from inference.errors import ConfigurationError

TOY_GRAMMAR = Path(__file__).parent.parent / "configs" / "toy_grammar.yaml"


def terminal(node_id, h=1, w=1, dim=1):
    return TerminalNode(node_id, LinearFilter(np.ones((h, w, dim))))


class TestGrammarChecks:
    """Malformed grammars are rejected on construction."""

    def test_dangling_child(self):
        nodes = [SwitchingNode(0, [1, 5]), terminal(1)]
        with pytest.raises(ConfigurationError, match="missing child"):
            Grammar(nodes, root=0)

    def test_cycle(self):
        nodes = [
            SwitchingNode(0, [1]),
            CompositionalNode(1, [2], [Offset()]),
            SwitchingNode(2, [1, 3]),
            terminal(3),
        ]
        with pytest.raises(ConfigurationError, match="Cycle"):
            Grammar(nodes, root=0)

    def test_self_loop(self):
        with pytest.raises(ConfigurationError):
            Grammar([SwitchingNode(0, [0])], root=0)

    def test_ids_must_match_arena_index(self):
        with pytest.raises(ConfigurationError):
            Grammar([terminal(1)], root=0)

    def test_offsets_must_match_children(self):
        nodes = [CompositionalNode(0, [1, 2], [Offset()]), terminal(1), terminal(2)]
        with pytest.raises(ConfigurationError, match="offsets"):
            Grammar(nodes, root=0)

    def test_deformable_index_out_of_range(self):
        nodes = [DeformableNode(0, [1], [Offset()], deformable_index=1), terminal(1)]
        with pytest.raises(ConfigurationError, match="deformable index"):
            Grammar(nodes, root=0)

    def test_deformation_must_be_convex(self):
        nodes = [DeformableNode(0, [1], [Offset()], deformation=Deformation(ax=0.0)), terminal(1)]
        with pytest.raises(ConfigurationError, match="positive"):
            Grammar(nodes, root=0)

    def test_empty_or_node(self):
        with pytest.raises(ConfigurationError, match="no children"):
            Grammar([SwitchingNode(0, [])], root=0)


class TestGrammarStructure:
    """Traversal orders, receptive fields and object nodes."""

    def _diamond(self):
        #   0 (OR) -> 1 (AND), 2 (AND); both use 3, 1 also uses 4
        nodes = [
            SwitchingNode(0, [1, 2]),
            CompositionalNode(1, [3, 4], [Offset(0, 0), Offset(dx=2, dy=1)]),
            CompositionalNode(2, [3], [Offset(dx=1, dy=0)]),
            terminal(3, h=2, w=2),
            terminal(4, h=1, w=3),
        ]
        return Grammar(nodes, root=0)

    def test_bottom_up_order(self):
        grammar = self._diamond()
        position = {node_id: i for i, node_id in enumerate(grammar.bottom_up)}

        assert sorted(grammar.bottom_up) == [0, 1, 2, 3, 4]
        for node_id in grammar.bottom_up:
            for child in grammar.children(node_id):
                assert position[child] < position[node_id]
        assert grammar.bottom_up[-1] == 0

    def test_top_down_order(self):
        grammar = self._diamond()

        assert grammar.top_down == grammar.bottom_up[::-1]
        assert grammar.top_down[0] == 0
        position = {node_id: i for i, node_id in enumerate(grammar.top_down)}
        for node_id in grammar.top_down:
            for child in grammar.children(node_id):
                assert position[node_id] < position[child]

    def test_receptive_fields(self):
        grammar = self._diamond()

        assert grammar.receptive_field(3) == (2, 2)
        assert grammar.receptive_field(1) == (2, 5)  # child 4 ends at dx 2 + 3
        assert grammar.receptive_field(2) == (2, 3)
        assert grammar.receptive_field(0) == (2, 5)

    def test_receptive_field_of_finer_children(self):
        """A child one octave finer covers half as many parent cells."""
        nodes = [
            CompositionalNode(0, [1, 2], [Offset(), Offset(dx=2, dy=2, ds=1)]),
            terminal(1, h=3, w=3),
            terminal(2, h=4, w=6),
        ]
        grammar = Grammar(nodes, root=0)

        assert grammar.receptive_field(0) == (3, 4)

    def test_object_nodes_and_ancestors(self):
        grammar = self._diamond()

        assert grammar.object_nodes == [1, 2]
        assert grammar.object_ancestors == [0]
        assert grammar.ancestors_of([3]) == [1, 2, 0] or grammar.ancestors_of([3]) == [2, 1, 0]

    def test_non_switching_root_is_the_object_node(self):
        grammar = Grammar([terminal(0)], root=0)

        assert grammar.object_nodes == [0]
        assert grammar.object_ancestors == []

    def test_unreachable_nodes_are_skipped(self):
        nodes = [SwitchingNode(0, [1]), terminal(1), terminal(2)]
        grammar = Grammar(nodes, root=0)

        assert sorted(grammar.bottom_up) == [0, 1]
        assert len(grammar) == 3


class TestBuildGrammar:
    """Grammars described in YAML."""

    def test_toy_grammar(self):
        grammar = build_grammar(load_config(TOY_GRAMMAR))

        assert len(grammar) == 7
        assert grammar.node(grammar.root).name == "object"
        assert [grammar.node(i).name for i in grammar.object_nodes] == ["wide", "tall"]
        assert grammar.receptive_field(1) == (2, 4)
        assert grammar.receptive_field(2) == (4, 2)
        assert grammar.receptive_field(0) == (4, 4)

        part = grammar.node(5)
        assert part.children[part.deformable_index] == 6
        assert part.deformation.ax == pytest.approx(0.1)

    def test_unknown_child_name(self):
        config = {
            'root': 'a',
            'nodes': [{'name': 'a', 'type': 'switching', 'children': ['b']}],
        }
        with pytest.raises(ConfigurationError, match="Unknown node"):
            build_grammar(config)

    def test_duplicate_name(self):
        config = {
            'root': 'a',
            'nodes': [
                {'name': 'a', 'type': 'terminal', 'size': [1, 1]},
                {'name': 'a', 'type': 'terminal', 'size': [1, 1]},
            ],
        }
        with pytest.raises(ConfigurationError, match="Duplicate"):
            build_grammar(config)

    def test_terminal_weights(self):
        config = {
            'root': 't',
            'nodes': [{'name': 't', 'type': 'terminal', 'weights': [[[1.0], [2.0]]]}],
        }
        grammar = build_grammar(config)

        assert grammar.receptive_field(0) == (1, 2)


class TestAppearance:
    """Terminal appearance scoring."""

    def test_linear_filter_response(self):
        rng = np.random.default_rng(0)
        features = rng.normal(size=(6, 5, 3))
        weights = rng.normal(size=(2, 3, 3))

        response = LinearFilter(weights).respond(features)

        assert response.shape == (5, 3)
        expected = np.array([
            [np.sum(features[r:r + 2, c:c + 3] * weights) for c in range(3)]
            for r in range(5)
        ])
        assert np.allclose(response, expected)

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            LinearFilter(np.ones((1, 1, 2))).respond(np.ones((3, 3, 3)))


class TestFeaturePyramid:
    """Pyramid container and window geometry."""

    def test_default_scales(self):
        pyramid = FeaturePyramid.from_arrays([np.zeros((8, 8)), np.zeros((4, 4))], interval=1)

        assert pyramid[0].scale == 1.0
        assert pyramid[1].scale == 0.5
        assert pyramid.step(1) == 16.0
        assert pyramid.level_shape(1) == (4, 4)

    def test_window(self):
        pyramid = FeaturePyramid.from_arrays([np.zeros((8, 8))], cell_size=8, padding=(1, 2))

        assert pyramid.window(0, 1, 2, (3, 2)) == (0.0, 0.0, 16.0, 24.0)
        assert pyramid.windows(0, (3, 2))[1 * 8 + 2].tolist() == [0.0, 0.0, 16.0, 24.0]

    def test_save_load(self, tmp_path):
        rng = np.random.default_rng(0)
        pyramid = FeaturePyramid.from_arrays(
            [rng.normal(size=(6, 6, 2)), rng.normal(size=(3, 3, 2))],
            cell_size=4,
            padding=(1, 1),
            interval=2,
        )
        path = tmp_path / "pyramid.npz"
        pyramid.save(path)

        loaded = FeaturePyramid.load(path)

        assert len(loaded) == 2
        assert loaded.cell_size == 4
        assert loaded.padding == (1, 1)
        assert loaded.interval == 2
        assert np.array_equal(loaded[1].features, pyramid[1].features)
        assert loaded[1].scale == pytest.approx(pyramid[1].scale)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
