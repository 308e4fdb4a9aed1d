"""
Box Operations for AOG inference.

Window geometry and overlap measures used by detection selection and
loss-augmented inference. Boxes are (x1, y1, x2, y2) in image pixels.
"""

import torch


def box_area(boxes: torch.Tensor) -> torch.Tensor:
    """
    Compute area of boxes.

    Args:
        boxes: [..., 4] boxes in (x1, y1, x2, y2) format

    Returns:
        [...] area of each box
    """
    return (boxes[..., 2] - boxes[..., 0]).clamp(min=0) * (boxes[..., 3] - boxes[..., 1]).clamp(min=0)


def box_intersection(boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
    """
    Compute pairwise intersection areas.

    Args:
        boxes1: [N, 4] boxes in (x1, y1, x2, y2) format
        boxes2: [M, 4] boxes in (x1, y1, x2, y2) format

    Returns:
        [N, M] intersection matrix
    """
    lt = torch.max(boxes1[:, None, :2], boxes2[None, :, :2])  # [N, M, 2]
    rb = torch.min(boxes1[:, None, 2:], boxes2[None, :, 2:])  # [N, M, 2]

    wh = (rb - lt).clamp(min=0)  # [N, M, 2]
    return wh[:, :, 0] * wh[:, :, 1]


def box_iou(boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
    """
    Compute IoU between two sets of boxes.

    Args:
        boxes1: [N, 4] boxes in (x1, y1, x2, y2) format
        boxes2: [M, 4] boxes in (x1, y1, x2, y2) format

    Returns:
        [N, M] IoU matrix
    """
    area1 = box_area(boxes1)  # [N]
    area2 = box_area(boxes2)  # [M]

    inter = box_intersection(boxes1, boxes2)  # [N, M]

    # Union
    union = area1[:, None] + area2[None, :] - inter

    return inter / union.clamp(min=1e-6)


def box_ios(boxes1: torch.Tensor, boxes2: torch.Tensor) -> torch.Tensor:
    """
    Compute intersection over the smaller of the two areas.

    A window fully contained in a larger one scores 1 even when their
    IoU is small.

    Args:
        boxes1: [N, 4] boxes in (x1, y1, x2, y2) format
        boxes2: [M, 4] boxes in (x1, y1, x2, y2) format

    Returns:
        [N, M] overlap matrix
    """
    area1 = box_area(boxes1)  # [N]
    area2 = box_area(boxes2)  # [M]

    inter = box_intersection(boxes1, boxes2)  # [N, M]

    smaller = torch.min(area1[:, None], area2[None, :])

    return inter / smaller.clamp(min=1e-6)


def box_overlap(
    boxes1: torch.Tensor,
    boxes2: torch.Tensor,
    divided_by_union: bool = True,
) -> torch.Tensor:
    """Pairwise overlap, IoU or intersection over smaller."""
    if divided_by_union:
        return box_iou(boxes1, boxes2)
    return box_ios(boxes1, boxes2)


def cell_windows(
    rows: int,
    cols: int,
    size: tuple,
    step: float,
    padding: tuple = (0, 0),
) -> torch.Tensor:
    """
    Image-space windows for every anchor cell of a grid.

    Args:
        rows: Number of grid rows
        cols: Number of grid columns
        size: (height, width) of the window in cells
        step: Image pixels per cell at this grid's scale
        padding: (pad_y, pad_x) cells of padding around the grid

    Returns:
        [rows * cols, 4] boxes in (x1, y1, x2, y2) format, row-major
    """
    h, w = size
    pad_y, pad_x = padding

    ys = (torch.arange(rows, dtype=torch.float64) - pad_y) * step
    xs = (torch.arange(cols, dtype=torch.float64) - pad_x) * step

    y1, x1 = torch.meshgrid(ys, xs, indexing='ij')
    x2 = x1 + w * step
    y2 = y1 + h * step

    return torch.stack([x1, y1, x2, y2], dim=-1).reshape(-1, 4)
