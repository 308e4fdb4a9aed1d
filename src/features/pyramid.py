"""
Feature pyramid container.

Levels are ordered finest to coarsest. Each level is a dense [H, W, D] grid
of feature cells that already includes its padding margin; `scale` is the
image resize factor of the level, so one cell covers cell_size / scale
image pixels.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from utils.box_ops import cell_windows


@dataclass
class PyramidLevel:
    """One scale of the pyramid."""
    features: np.ndarray  # [H, W, D]
    scale: float = 1.0

    def __post_init__(self):
        if self.features.ndim == 2:
            self.features = self.features[:, :, None]
        if self.features.ndim != 3:
            raise ValueError(f"Level features must be [H, W, D], got shape {self.features.shape}")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.features.shape[0], self.features.shape[1]


class FeaturePyramid:
    """
    Multi-scale feature pyramid.

    Args:
        levels: Levels, finest first
        cell_size: Image pixels per cell at scale 1
        padding: (pad_y, pad_x) cells of padding around every level
        interval: Levels per octave
    """

    def __init__(
        self,
        levels: Sequence[PyramidLevel],
        cell_size: int = 8,
        padding: Tuple[int, int] = (0, 0),
        interval: int = 1,
    ):
        if interval < 1:
            raise ValueError(f"interval must be at least 1, got {interval}")
        self.levels: List[PyramidLevel] = list(levels)
        self.cell_size = cell_size
        self.padding = tuple(padding)
        self.interval = interval

    def __len__(self) -> int:
        return len(self.levels)

    def __getitem__(self, level: int) -> PyramidLevel:
        return self.levels[level]

    @property
    def num_levels(self) -> int:
        return len(self.levels)

    def level_shape(self, level: int) -> Tuple[int, int]:
        return self.levels[level].shape

    def step(self, level: int) -> float:
        """Image pixels covered by one cell at this level."""
        return self.cell_size / self.levels[level].scale

    def windows(self, level: int, size: Tuple[int, int]) -> torch.Tensor:
        """[H * W, 4] image windows of a receptive field anchored at every cell."""
        rows, cols = self.level_shape(level)
        return cell_windows(rows, cols, size, self.step(level), self.padding)

    def window(self, level: int, row: int, col: int, size: Tuple[int, int]) -> Tuple[float, float, float, float]:
        """Image window (x1, y1, x2, y2) of a receptive field anchored at one cell."""
        step = self.step(level)
        pad_y, pad_x = self.padding
        x1 = (col - pad_x) * step
        y1 = (row - pad_y) * step
        return (x1, y1, x1 + size[1] * step, y1 + size[0] * step)

    @classmethod
    def from_arrays(
        cls,
        arrays: Sequence[np.ndarray],
        scales: Optional[Sequence[float]] = None,
        cell_size: int = 8,
        padding: Tuple[int, int] = (0, 0),
        interval: int = 1,
    ) -> 'FeaturePyramid':
        """Wrap precomputed level features; default scales halve every octave."""
        if scales is None:
            scales = [2.0 ** (-l / interval) for l in range(len(arrays))]
        levels = [PyramidLevel(np.asarray(a, dtype=np.float64), s) for a, s in zip(arrays, scales)]
        return cls(levels, cell_size=cell_size, padding=padding, interval=interval)

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'FeaturePyramid':
        """
        Load a pyramid saved with `save`.

        The archive holds `level_0` ... `level_{n-1}` feature arrays plus
        `scales`, `cell_size`, `padding` and `interval`.
        """
        with np.load(path) as data:
            num_levels = len([k for k in data.files if k.startswith('level_')])
            arrays = [data[f'level_{l}'] for l in range(num_levels)]
            scales = data['scales'].tolist() if 'scales' in data.files else None
            cell_size = int(data['cell_size']) if 'cell_size' in data.files else 8
            padding = tuple(int(p) for p in data['padding']) if 'padding' in data.files else (0, 0)
            interval = int(data['interval']) if 'interval' in data.files else 1
        return cls.from_arrays(arrays, scales, cell_size=cell_size, padding=padding, interval=interval)

    def save(self, path: Union[str, Path]):
        arrays = {f'level_{l}': level.features for l, level in enumerate(self.levels)}
        np.savez(
            path,
            scales=np.array([level.scale for level in self.levels]),
            cell_size=np.array(self.cell_size),
            padding=np.array(self.padding),
            interval=np.array(self.interval),
            **arrays,
        )

    def __repr__(self) -> str:
        shapes = [level.shape for level in self.levels]
        return f"FeaturePyramid(levels={shapes}, cell_size={self.cell_size}, padding={self.padding})"
