"""
Non-Maximum Suppression (NMS) utilities for AOG detections.

Greedy NMS over candidate windows, with either IoU or
intersection-over-smaller as the overlap measure.
"""

from typing import Optional

import torch

from .box_ops import box_overlap


def nms(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    overlap_threshold: float = 0.5,
    divided_by_union: bool = True,
    max_keep: Optional[int] = None,
) -> torch.Tensor:
    """
    Greedy Non-Maximum Suppression.

    Candidates are visited by descending score; equal scores keep their
    input order. A candidate is kept if it overlaps no kept candidate by
    more than the threshold.

    Args:
        boxes: [N, 4] boxes in (x1, y1, x2, y2) format
        scores: [N] scores
        overlap_threshold: Overlap above which a candidate is suppressed
        divided_by_union: IoU if True, intersection over smaller if False
        max_keep: Stop once this many candidates are kept

    Returns:
        Indices of kept boxes, in visiting order
    """
    if boxes.shape[0] == 0:
        return torch.zeros((0,), dtype=torch.long)

    order = torch.argsort(-scores, stable=True)

    keep = []
    while len(order) > 0:
        idx = order[0].item()
        keep.append(idx)

        if len(order) == 1 or (max_keep is not None and len(keep) >= max_keep):
            break

        current_box = boxes[idx:idx+1]  # [1, 4]
        remaining_boxes = boxes[order[1:]]  # [M, 4]

        overlaps = box_overlap(current_box, remaining_boxes, divided_by_union).squeeze(0)  # [M]

        mask = overlaps <= overlap_threshold
        order = order[1:][mask]

    return torch.tensor(keep, dtype=torch.long)
