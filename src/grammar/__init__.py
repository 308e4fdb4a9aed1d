"""
AND-OR Grammar Module.
"""

from .nodes import (
    CompositionalNode,
    Deformation,
    DeformableNode,
    Node,
    NodeKind,
    Offset,
    SwitchingNode,
    TerminalNode,
)
from .appearance import Appearance, LinearFilter
from .aog import Grammar, build_grammar

__all__ = [
    'Appearance',
    'CompositionalNode',
    'Deformation',
    'DeformableNode',
    'Grammar',
    'LinearFilter',
    'Node',
    'NodeKind',
    'Offset',
    'SwitchingNode',
    'TerminalNode',
    'build_grammar',
]
