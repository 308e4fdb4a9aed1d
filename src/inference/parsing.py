"""
Parse trees and the top-down Parsing / Backtracking Engine.

Parsing replays the decisions of score propagation from a chosen root
anchor: the winning child of each switching node (recomputed by comparing
children's cached scores), the forced anchors of compositional children,
and the cached argmax displacement of deformed children. Grammar nodes are
visited once each, in the order the grammar precomputes, with every
instance of a node expanded on that visit.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from grammar.nodes import AND_KINDS, NodeKind

from .cache import ScoreMapCache


@dataclass
class ParseNode:
    """One instantiated grammar node in a parse tree."""
    node_id: int
    kind: NodeKind
    level: int
    row: int
    col: int
    score: float
    box: Tuple[float, float, float, float]
    loss: float = 0.0
    displacement: Optional[Tuple[int, int]] = None  # (dx, dy) of the deformed child
    deformation_features: Optional[Tuple[float, float, float, float]] = None
    features: Optional[np.ndarray] = None  # terminal feature patch
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)

    @property
    def anchor(self) -> Tuple[int, int, int]:
        return self.level, self.row, self.col

    def to_dict(self) -> Dict:
        record = {
            'node': self.node_id,
            'kind': self.kind.value,
            'level': self.level,
            'row': self.row,
            'col': self.col,
            'score': self.score,
            'loss': self.loss,
            'box': list(self.box),
            'children': list(self.children),
        }
        if self.displacement is not None:
            record['displacement'] = list(self.displacement)
        return record


class ParseTree:
    """
    A parse of one object instance.

    Records follow the grammar's top-down order, so parents precede their
    children; index 0 is the grammar root. Children are listed in the
    order their node declares them.
    `score` includes any loss augmentation; `raw_score` excludes it.
    """

    def __init__(self, nodes: Optional[List[ParseNode]] = None, object_index: int = 0):
        self.nodes: List[ParseNode] = nodes if nodes is not None else []
        self.object_index = object_index

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ParseNode]:
        return iter(self.nodes)

    def __getitem__(self, idx: int) -> ParseNode:
        return self.nodes[idx]

    @property
    def root(self) -> ParseNode:
        return self.nodes[0]

    @property
    def score(self) -> float:
        return self.root.score

    @property
    def loss(self) -> float:
        return float(sum(n.loss for n in self.nodes))

    @property
    def raw_score(self) -> float:
        return self.score - self.loss

    @property
    def object_node(self) -> ParseNode:
        return self.nodes[self.object_index]

    @property
    def box(self) -> Tuple[float, float, float, float]:
        return self.object_node.box

    @property
    def level(self) -> int:
        return self.root.level

    def children(self, idx: int) -> List[ParseNode]:
        return [self.nodes[c] for c in self.nodes[idx].children]

    def to_dict(self) -> Dict:
        return {
            'score': self.score,
            'loss': self.loss,
            'box': list(self.box),
            'nodes': [n.to_dict() for n in self.nodes],
        }

    def __repr__(self) -> str:
        return f"ParseTree(score={self.score:.4f}, loss={self.loss:.4f}, nodes={len(self.nodes)}, box={self.box})"


def best_child(grammar, cache: ScoreMapCache, node_id: int, level: int, row: int, col: int) -> int:
    """
    Child of a switching node that attains its score at a cell.

    Ties go to the first child in declared order.
    """
    children = grammar.node(node_id).children
    values = [
        cache.score_map(child, level)[row, col] if cache.is_valid(child, level) else -np.inf
        for child in children
    ]
    return children[int(np.argmax(values))]


class Backtracker:
    """
    Builds parse trees from a propagated cache.

    Args:
        grammar: The AND-OR grammar
        collect_features: Copy terminal feature patches into the tree
    """

    def __init__(self, grammar, collect_features: bool = False):
        self.grammar = grammar
        self.collect_features = collect_features

    def parse(
        self,
        cache: ScoreMapCache,
        level: int,
        row: int,
        col: int,
        with_loss: bool = False,
    ) -> ParseTree:
        """
        Parse the root anchored at (level, row, col).

        Raises:
            ValueError: The root scores -inf there (no valid parse)
        """
        grammar = self.grammar
        pyramid = cache.pyramid

        if not cache.is_valid(grammar.root, level):
            raise ValueError(f"Root is not valid at level {level}")
        if not np.isfinite(cache.score_map(grammar.root, level)[row, col]):
            raise ValueError(f"No valid parse at level {level}, cell ({row}, {col})")

        tree = ParseTree()
        object_nodes = set(grammar.object_nodes)
        object_index = None

        # Instances waiting per grammar node: (level, row, col, parent, slot)
        pending = {grammar.root: [(level, row, col, None, 0)]}
        for node_id in grammar.top_down:
            instances = pending.pop(node_id, None)
            if not instances:
                continue
            node = grammar.node(node_id)

            for l, r, c, parent, slot in instances:
                record = ParseNode(
                    node_id=node_id,
                    kind=node.kind,
                    level=l,
                    row=r,
                    col=c,
                    score=float(cache.score_map(node_id, l)[r, c]),
                    box=pyramid.window(l, r, c, grammar.receptive_field(node_id)),
                    loss=cache.loss_at(node_id, l, r, c) if with_loss else 0.0,
                    parent=parent,
                )
                idx = len(tree.nodes)
                tree.nodes.append(record)
                if parent is not None:
                    tree.nodes[parent].children[slot] = idx
                if object_index is None and node_id in object_nodes:
                    object_index = idx

                if node.kind == NodeKind.TERMINAL:
                    if self.collect_features:
                        h, w = node.size
                        record.features = pyramid[l].features[r:r + h, c:c + w].copy()

                elif node.kind == NodeKind.SWITCHING:
                    record.children = [None]
                    child = best_child(grammar, cache, node_id, l, r, c)
                    pending.setdefault(child, []).append((l, r, c, idx, 0))

                elif node.kind in AND_KINDS:
                    record.children = [None] * len(node.children)
                    for k, (child, offset) in enumerate(zip(node.children, node.offsets)):
                        child_level = l - offset.ds * pyramid.interval
                        child_row, child_col = offset.child_anchor(r, c)
                        if node.kind == NodeKind.DEFORMABLE and k == node.deformable_index:
                            dx_map, dy_map = cache.displacements(node_id, child_level)
                            dx = int(dx_map[child_row, child_col])
                            dy = int(dy_map[child_row, child_col])
                            child_row += dy - node.deformation.shift_y
                            child_col += dx - node.deformation.shift_x
                            record.displacement = (dx, dy)
                            record.deformation_features = node.deformation.features(dx, dy)
                        pending.setdefault(child, []).append((child_level, child_row, child_col, idx, k))

        tree.object_index = object_index if object_index is not None else 0
        return tree
