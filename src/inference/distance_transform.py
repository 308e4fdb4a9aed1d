"""
Bounded generalized distance transform.

For a score line f and quadratic cost a*d**2 + b*d, computes for every
output index i (source position p = i - shift):

    out[i] = max_q  f[q] - (a * d**2 + b * d),   d = q - p

with the lower-envelope sweep of Felzenszwalb & Huttenlocher: one pass
builds the upper envelope of the parabolas rooted at each source, a
second pass reads it off. O(n) per line. Displacements are bounded by the
line itself: q always indexes an existing cell.

-inf sources never enter the envelope. A line with no finite source
yields -inf and zero displacement.
"""

from typing import Tuple

import numpy as np

from grammar.nodes import Deformation

NEG_INF = -np.inf


def dt1d(
    values: np.ndarray,
    a: float,
    b: float = 0.0,
    shift: int = 0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    1D distance transform of one line.

    Args:
        values: [n] source scores
        a: Quadratic coefficient, must be positive
        b: Linear coefficient
        shift: Output index i compares against source position i - shift

    Returns:
        Tuple of ([n] transformed scores, [n] argmax displacements d)
    """
    if a <= 0:
        raise ValueError(f"Quadratic coefficient must be positive, got {a}")

    values = np.asarray(values, dtype=np.float64)
    n = values.shape[0]
    out = np.full(n, NEG_INF)
    disp = np.zeros(n, dtype=np.int64)

    sources = np.flatnonzero(values > NEG_INF).tolist()
    if not sources:
        return out, disp

    f = values.tolist()

    def intersect(q1: int, q2: int) -> float:
        # position where sources q1 < q2 score equally; q2 wins beyond it
        return ((f[q1] - f[q2]) + a * (q2 * q2 - q1 * q1) + b * (q2 - q1)) / (2.0 * a * (q2 - q1))

    v = [sources[0]]
    z = [NEG_INF, np.inf]
    for q in sources[1:]:
        s = intersect(v[-1], q)
        while s <= z[len(v) - 1]:
            v.pop()
            z.pop()
            s = intersect(v[-1], q)
        v.append(q)
        z[-1] = s
        z.append(np.inf)

    k = 0
    for i in range(n):
        p = i - shift
        while z[k + 1] < p:
            k += 1
        q = v[k]
        d = q - p
        out[i] = f[q] - (a * d * d + b * d)
        disp[i] = d

    return out, disp


def dt2d(
    scores: np.ndarray,
    deformation: Deformation,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    2D distance transform: along rows with the x coefficients, then along
    columns with the y coefficients.

    The source cell chosen for output (r, c) is
    (r + dy[r, c] - shift_y, c + dx[r, c] - shift_x).

    Args:
        scores: [H, W] score map
        deformation: Cost coefficients and shifts

    Returns:
        Tuple of ([H, W] transformed scores, [H, W] dx, [H, W] dy)
    """
    rows, cols = scores.shape

    tmp = np.empty((rows, cols))
    ix = np.empty((rows, cols), dtype=np.int64)
    for r in range(rows):
        tmp[r], ix[r] = dt1d(scores[r], deformation.ax, deformation.bx, deformation.shift_x)

    out = np.empty((rows, cols))
    dy = np.empty((rows, cols), dtype=np.int64)
    for c in range(cols):
        out[:, c], dy[:, c] = dt1d(tmp[:, c], deformation.ay, deformation.by, deformation.shift_y)

    # Row of the first pass each output read from, then that row's x choice
    # (clipped where a whole column was -inf and dy carries no source)
    src_rows = np.clip(np.arange(rows)[:, None] + dy - deformation.shift_y, 0, rows - 1)
    dx = ix[src_rows, np.arange(cols)[None, :]]

    return out, dx, dy
