"""Small weighted sum accumulators used when building normal equations."""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike

_LANES = 4


def _as_vector(values: ArrayLike, size: int, name: str) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32).reshape(-1)
    if vec.shape != (size,):
        raise ValueError(f"{name} must have {size} elements, got {vec.size}")
    return vec


class AccumulatorXX:
    """Accumulates weighted outer products ``w * left @ right.T`` into a rows x cols matrix."""

    def __init__(self, rows: int, cols: int) -> None:
        if rows <= 0 or cols <= 0:
            raise ValueError("accumulator dimensions must be positive")
        self.rows = rows
        self.cols = cols
        self.A = np.zeros((rows, cols), dtype=np.float32)
        self.num = 0

    def initialize(self) -> None:
        """Reset the sum and the update count."""
        self.A.fill(0.0)
        self.num = 0

    def update(self, left: ArrayLike, right: ArrayLike, w: float) -> None:
        """Add ``w * left * right^T``."""
        lvec = _as_vector(left, self.rows, "left")
        rvec = _as_vector(right, self.cols, "right")
        self.A += np.float32(w) * np.outer(lvec, rvec)
        self.num += 1


class Accumulator11:
    """Scalar accumulator with four partial sums that are combined by :meth:`finish`."""

    def __init__(self) -> None:
        self.A = 0.0
        self.num = 0
        self._lanes = np.zeros(_LANES, dtype=np.float32)

    def initialize(self) -> None:
        """Reset the result, the partial sums and the update count."""
        self.A = 0.0
        self._lanes.fill(0.0)
        self.num = 0

    def finish(self) -> float:
        """Combine the partial sums into ``A`` and return it."""
        self.A = float(self._lanes.sum(dtype=np.float32))
        return self.A

    def update_single(self, val: float) -> None:
        """Add one value."""
        self._lanes[0] += np.float32(val)
        self.num += 1

    def update_sse(self, vals: ArrayLike) -> None:
        """Add four values at once, one to each partial sum."""
        self._lanes += _as_vector(vals, _LANES, "vals")
        self.num += _LANES


class AccumulatorX:
    """Accumulates (optionally weighted) vectors of a fixed size."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("accumulator size must be positive")
        self.size = size
        self.A = np.zeros(size, dtype=np.float32)
        self.num = 0

    def initialize(self) -> None:
        """Reset the sum and the update count."""
        self.A.fill(0.0)
        self.num = 0

    def update(self, left: ArrayLike, w: float) -> None:
        """Add ``w * left``."""
        self.A += np.float32(w) * _as_vector(left, self.size, "left")
        self.num += 1

    def update_no_weight(self, left: ArrayLike) -> None:
        """Add ``left`` unweighted."""
        self.A += _as_vector(left, self.size, "left")
        self.num += 1