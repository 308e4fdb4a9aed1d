"""
AOG inference utilities.
"""

from .box_ops import (
    box_area,
    box_intersection,
    box_iou,
    box_ios,
    box_overlap,
    cell_windows,
)

from .nms import nms

__all__ = [
    # Box operations
    'box_area',
    'box_intersection',
    'box_iou',
    'box_ios',
    'box_overlap',
    'cell_windows',
    # NMS
    'nms',
]
