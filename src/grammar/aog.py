"""
AND-OR Grammar arena.

Holds the immutable node graph, checks it once on construction, and
precomputes everything inference reuses across runs:

    bottom_up     children before parents (score propagation)
    top_down      parents before children (parsing)
    object nodes  the root's children for an OR root, else the root itself
"""

import logging
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from inference.errors import ConfigurationError

from .appearance import LinearFilter
from .nodes import (
    AND_KINDS,
    CompositionalNode,
    Deformation,
    DeformableNode,
    Node,
    NodeKind,
    Offset,
    SwitchingNode,
    TerminalNode,
)

logger = logging.getLogger(__name__)


class Grammar:
    """
    AND-OR grammar over a node arena.

    Args:
        nodes: Nodes indexed by id (nodes[i].id == i)
        root: Id of the root node

    Raises:
        ConfigurationError: Dangling child, cycle, or malformed rule
    """

    def __init__(self, nodes: Sequence[Node], root: int):
        self.nodes: List[Node] = list(nodes)
        self.root = root

        self._check_rules()
        self.bottom_up: List[int] = self._topological_order()
        self.top_down: List[int] = self.bottom_up[::-1]
        self._sizes: Dict[int, Tuple[int, int]] = self._receptive_fields()

        root_node = self.nodes[root]
        if root_node.kind == NodeKind.SWITCHING:
            self.object_nodes: List[int] = list(root_node.children)
        else:
            self.object_nodes = [root]

        self._object_ancestors = self.ancestors_of(self.object_nodes)

        logger.debug(
            "Grammar with %d nodes (%d reachable), %d object nodes",
            len(self.nodes), len(self.bottom_up), len(self.object_nodes),
        )

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, node_id: int) -> Node:
        return self.nodes[node_id]

    def children(self, node_id: int) -> List[int]:
        return list(self.nodes[node_id].children)

    def receptive_field(self, node_id: int) -> Tuple[int, int]:
        """(height, width) in cells at the node's own level."""
        return self._sizes[node_id]

    @property
    def object_ancestors(self) -> List[int]:
        """Ancestors of the object nodes, children first."""
        return list(self._object_ancestors)

    def ancestors_of(self, node_ids: Iterable[int]) -> List[int]:
        """
        Strict ancestors of the given nodes, in bottom-up order.

        Every node returned depends (transitively) on at least one of the
        given nodes and is not itself one of them.
        """
        targets = set(node_ids)
        affected = set(targets)
        ancestors = []
        for node_id in self.bottom_up:
            if node_id in targets:
                continue
            if any(child in affected for child in self.nodes[node_id].children):
                affected.add(node_id)
                ancestors.append(node_id)
        return ancestors

    # ------------------------------------------------------------------
    # Construction-time checks
    # ------------------------------------------------------------------

    def _check_rules(self):
        n = len(self.nodes)
        if not 0 <= self.root < n:
            raise ConfigurationError(f"Root id {self.root} is not in the arena of {n} nodes")

        for i, node in enumerate(self.nodes):
            if node.id != i:
                raise ConfigurationError(f"Node at index {i} has id {node.id}")

            for child in node.children:
                if not 0 <= child < n:
                    raise ConfigurationError(f"Node {i} references missing child {child}")

            if node.kind != NodeKind.TERMINAL and not node.children:
                raise ConfigurationError(f"{node.kind.value} node {i} has no children")

            if node.kind in AND_KINDS:
                if len(node.offsets) != len(node.children):
                    raise ConfigurationError(
                        f"Node {i} has {len(node.children)} children but {len(node.offsets)} offsets"
                    )
                if any(offset.ds < 0 for offset in node.offsets):
                    raise ConfigurationError(f"Node {i} has a negative resolution step")

            if node.kind == NodeKind.DEFORMABLE:
                if not 0 <= node.deformable_index < len(node.children):
                    raise ConfigurationError(
                        f"Node {i} deformable index {node.deformable_index} is out of range"
                    )
                if node.deformation.ax <= 0 or node.deformation.ay <= 0:
                    raise ConfigurationError(
                        f"Node {i} quadratic deformation coefficients must be positive"
                    )

    def _topological_order(self) -> List[int]:
        """Post-order DFS from the root; detects cycles."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = [WHITE] * len(self.nodes)
        order = []

        color[self.root] = GREY
        stack = [(self.root, iter(self.nodes[self.root].children))]
        while stack:
            node_id, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == GREY:
                    raise ConfigurationError(f"Cycle through node {child}")
                if color[child] == WHITE:
                    color[child] = GREY
                    stack.append((child, iter(self.nodes[child].children)))
                    advanced = True
                    break
            if not advanced:
                color[node_id] = BLACK
                order.append(node_id)
                stack.pop()

        return order

    def _receptive_fields(self) -> Dict[int, Tuple[int, int]]:
        sizes = {}
        for node_id in self.bottom_up:
            node = self.nodes[node_id]
            if node.kind == NodeKind.TERMINAL:
                sizes[node_id] = tuple(node.size)
            elif node.kind == NodeKind.SWITCHING:
                sizes[node_id] = (
                    max(sizes[c][0] for c in node.children),
                    max(sizes[c][1] for c in node.children),
                )
            elif node.size is not None:
                sizes[node_id] = tuple(node.size)
            else:
                h, w = 1, 1
                for child, offset in zip(node.children, node.offsets):
                    scale = 1 << offset.ds
                    ch, cw = sizes[child]
                    h = max(h, -(-(offset.dy + ch) // scale))
                    w = max(w, -(-(offset.dx + cw) // scale))
                sizes[node_id] = (h, w)
        return sizes


def _parse_offset(value) -> Offset:
    if isinstance(value, dict):
        return Offset(**value)
    return Offset(*value)


def build_grammar(config: dict) -> Grammar:
    """
    Build a Grammar from a config dict.

    Nodes are listed in order and refer to each other by name; ids follow
    list order. Terminal weights are either a nested [h, w, D] list under
    `weights`, or a constant `fill` with `size` and `dim`.
    """
    entries = config['nodes']
    ids = {}
    for i, entry in enumerate(entries):
        name = entry.get('name', str(i))
        if name in ids:
            raise ConfigurationError(f"Duplicate node name {name!r}")
        ids[name] = i

    def resolve(name):
        if name not in ids:
            raise ConfigurationError(f"Unknown node {name!r}")
        return ids[name]

    nodes = []
    for i, entry in enumerate(entries):
        kind = NodeKind(entry['type'])
        name = entry.get('name', str(i))
        bias = float(entry.get('bias', 0.0))
        children = [resolve(c) for c in entry.get('children', [])]
        size = tuple(entry['size']) if 'size' in entry else None

        if kind == NodeKind.TERMINAL:
            if 'weights' in entry:
                weights = np.asarray(entry['weights'], dtype=np.float64)
            else:
                h, w = entry['size']
                weights = np.full((h, w, entry.get('dim', 1)), float(entry.get('fill', 0.0)))
            nodes.append(TerminalNode(i, LinearFilter(weights), bias=bias, name=name))
        elif kind == NodeKind.SWITCHING:
            nodes.append(SwitchingNode(i, children, bias=bias, name=name))
        else:
            offsets = [_parse_offset(o) for o in entry.get('offsets', [[0, 0]] * len(children))]
            if kind == NodeKind.COMPOSITIONAL:
                nodes.append(CompositionalNode(i, children, offsets, bias=bias, size=size, name=name))
            else:
                nodes.append(DeformableNode(
                    i, children, offsets,
                    deformation=Deformation(**entry.get('deformation', {})),
                    deformable_index=entry.get('deformable_index', 0),
                    bias=bias,
                    size=size,
                    name=name,
                ))

    return Grammar(nodes, resolve(config['root']))
