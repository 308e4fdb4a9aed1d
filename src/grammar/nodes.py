"""
AND-OR grammar node variants.

The grammar is an arena: each node carries a dense integer id equal to its
index in the arena, and refers to its children by id.

    Node := Terminal | Switching(OR) | Compositional(AND) | Deformable(AND)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

from .appearance import Appearance


class NodeKind(Enum):
    TERMINAL = "terminal"
    SWITCHING = "switching"          # OR: best child
    COMPOSITIONAL = "compositional"  # AND: children at fixed offsets
    DEFORMABLE = "deformable"        # AND: one child placed by distance transform


@dataclass(frozen=True)
class Offset:
    """
    Placement of a child relative to its parent's anchor.

    A child with resolution step `ds` lives `ds * interval` pyramid levels
    finer than the parent, and its anchor is
    (row * 2**ds + dy, col * 2**ds + dx).
    """
    dx: int = 0
    dy: int = 0
    ds: int = 0

    def child_anchor(self, row: int, col: int) -> Tuple[int, int]:
        scale = 1 << self.ds
        return row * scale + self.dy, col * scale + self.dx


@dataclass(frozen=True)
class Deformation:
    """
    Quadratic deformation cost a*d**2 + b*d along each axis.

    shift_x, shift_y re-center the displacement coordinates: output cell i
    compares against source position i - shift.
    """
    ax: float = 0.01
    bx: float = 0.0
    ay: float = 0.01
    by: float = 0.0
    shift_x: int = 0
    shift_y: int = 0

    def cost(self, dx: int, dy: int) -> float:
        return self.ax * dx * dx + self.bx * dx + self.ay * dy * dy + self.by * dy

    def features(self, dx: int, dy: int) -> Tuple[float, float, float, float]:
        """Deformation feature vector paired with (ax, bx, ay, by)."""
        return (float(dx * dx), float(dx), float(dy * dy), float(dy))


@dataclass
class TerminalNode:
    """Leaf scoring the pyramid with an appearance model."""
    id: int
    appearance: Appearance
    bias: float = 0.0
    name: Optional[str] = None

    kind = NodeKind.TERMINAL

    @property
    def children(self) -> List[int]:
        return []

    @property
    def size(self) -> Tuple[int, int]:
        return self.appearance.size


@dataclass
class SwitchingNode:
    """OR-node: takes the best of its children at each cell."""
    id: int
    children: List[int]
    bias: float = 0.0
    name: Optional[str] = None

    kind = NodeKind.SWITCHING


@dataclass
class CompositionalNode:
    """AND-node: sums its children at fixed offsets."""
    id: int
    children: List[int]
    offsets: List[Offset]
    bias: float = 0.0
    size: Optional[Tuple[int, int]] = None  # derived from children when None
    name: Optional[str] = None

    kind = NodeKind.COMPOSITIONAL


@dataclass
class DeformableNode:
    """AND-node whose child at `deformable_index` is placed by the distance transform."""
    id: int
    children: List[int]
    offsets: List[Offset]
    deformation: Deformation = field(default_factory=Deformation)
    deformable_index: int = 0
    bias: float = 0.0
    size: Optional[Tuple[int, int]] = None
    name: Optional[str] = None

    kind = NodeKind.DEFORMABLE


Node = Union[TerminalNode, SwitchingNode, CompositionalNode, DeformableNode]

AND_KINDS = (NodeKind.COMPOSITIONAL, NodeKind.DEFORMABLE)
