"""
Appearance models for terminal nodes.

A terminal scores every anchor cell of a pyramid level; the engine only
caches the result.
"""

from typing import Tuple

import numpy as np
import torch
import torch.nn.functional as F


class Appearance:
    """Interface of a terminal's appearance-scoring capability."""

    @property
    def size(self) -> Tuple[int, int]:
        """(height, width) of the receptive field in cells."""
        raise NotImplementedError

    def respond(self, features: np.ndarray) -> np.ndarray:
        """
        Score every anchor where the receptive field fits.

        Args:
            features: [H, W, D] level features

        Returns:
            [H - h + 1, W - w + 1] responses
        """
        raise NotImplementedError


class LinearFilter(Appearance):
    """
    Linear filter over feature cells (a HOG-style template).

    The response at (r, c) is the dot product of the filter with the
    features in the window whose top-left cell is (r, c).

    Args:
        weights: [h, w, D] filter weights
    """

    def __init__(self, weights: np.ndarray):
        weights = np.asarray(weights, dtype=np.float64)
        if weights.ndim == 2:
            weights = weights[:, :, None]
        if weights.ndim != 3:
            raise ValueError(f"Filter weights must be [h, w, D], got shape {weights.shape}")
        self.weights = weights

    @property
    def size(self) -> Tuple[int, int]:
        return self.weights.shape[0], self.weights.shape[1]

    @property
    def dim(self) -> int:
        return self.weights.shape[2]

    def respond(self, features: np.ndarray) -> np.ndarray:
        if features.ndim == 2:
            features = features[:, :, None]
        if features.shape[2] != self.dim:
            raise ValueError(
                f"Feature dimension {features.shape[2]} does not match filter dimension {self.dim}"
            )

        # [1, D, H, W] x [1, D, h, w] -> [1, 1, H-h+1, W-w+1]
        x = torch.from_numpy(np.ascontiguousarray(features.transpose(2, 0, 1), dtype=np.float64))
        w = torch.from_numpy(np.ascontiguousarray(self.weights.transpose(2, 0, 1)))

        with torch.no_grad():
            response = F.conv2d(x.unsqueeze(0), w.unsqueeze(0))

        return response[0, 0].numpy()

    def __repr__(self) -> str:
        h, w = self.size
        return f"LinearFilter(size=({h}, {w}), dim={self.dim})"
