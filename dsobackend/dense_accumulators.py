"""Accumulators for the upper triangle of J^T J, summed over four lanes."""

from __future__ import annotations

from typing import ClassVar

import numpy as np
from numpy.typing import ArrayLike

LANES = 4


def _check_lane(off: int) -> int:
    off = int(off)
    if not 0 <= off < LANES:
        raise ValueError(f"off must be in [0, {LANES}), got {off}")
    return off


class _LaneAccumulator:
    """Shared machinery: one row of four partial sums per upper-triangle entry."""

    DIM: ClassVar[int]

    def __init__(self) -> None:
        self._rows, self._cols = np.triu_indices(self.DIM)
        self.H = np.zeros((self.DIM, self.DIM), dtype=np.float32)
        self.num = 0
        self._lanes = np.zeros((self._rows.size, LANES), dtype=np.float32)

    def _clear(self) -> None:
        self.H.fill(0.0)
        self._lanes.fill(0.0)
        self.num = 0

    def _finish(self) -> np.ndarray:
        sums = self._lanes.sum(axis=1, dtype=np.float32)
        self.H.fill(0.0)
        self.H[self._rows, self._cols] = sums
        self.H[self._cols, self._rows] = sums
        return self.H

    def _lane_vectors(self, args: tuple[ArrayLike, ...]) -> np.ndarray:
        if len(args) != self.DIM:
            raise ValueError(f"expected {self.DIM} Jacobian vectors, got {len(args)}")
        vectors = []
        for arg in args:
            vec = np.asarray(arg, dtype=np.float32).reshape(-1)
            if vec.size != LANES:
                raise ValueError(f"each Jacobian vector must have {LANES} lanes")
            vectors.append(vec)
        return np.stack(vectors)

    def _scalars(self, args: tuple[float, ...]) -> np.ndarray:
        if len(args) != self.DIM:
            raise ValueError(f"expected {self.DIM} Jacobian values, got {len(args)}")
        return np.array(args, dtype=np.float32)

    def _add_sse(self, args: tuple[ArrayLike, ...]) -> None:
        j = self._lane_vectors(args)
        self._lanes += j[self._rows] * j[self._cols]
        self.num += LANES

    def _add_single(self, args: tuple[float, ...], off: int) -> None:
        lane = _check_lane(off)
        j = self._scalars(args)
        self._lanes[:, lane] += j[self._cols] * j[self._rows]
        self.num += 1


class Accumulator14(_LaneAccumulator):
    """Accumulates the 14x14 matrix J^T J from 14 Jacobian entries."""

    DIM = 14

    def initialize(self) -> None:
        """Clear ``H``, the partial sums and the update count."""
        self._clear()

    def finish(self) -> np.ndarray:
        """Sum the lanes into the symmetric matrix ``H`` and return it."""
        return self._finish()

    def update_sse(self, *args: ArrayLike) -> None:
        """Add the products of four Jacobian samples at once, one per lane."""
        self._add_sse(args)

    def update_single(self, *args: float, off: int = 0) -> None:
        """Add the products of one Jacobian sample into lane ``off``."""
        self._add_single(args, off)


class Accumulator9(_LaneAccumulator):
    """Accumulates the 9x9 matrix J^T J, optionally weighted, from 9 Jacobian entries."""

    DIM = 9

    def initialize(self) -> None:
        """Clear ``H``, the partial sums and the update count."""
        self._clear()

    def finish(self) -> np.ndarray:
        """Sum the lanes into the symmetric matrix ``H`` and return it."""
        return self._finish()

    def update_sse(self, *args: ArrayLike) -> None:
        """Add the products of four Jacobian samples at once, one per lane."""
        self._add_sse(args)

    def update_sse_weighted(self, *args: ArrayLike, w: ArrayLike) -> None:
        """Add weighted products of four Jacobian samples, one weight per lane."""
        j = self._lane_vectors(args)
        weights = np.asarray(w, dtype=np.float32).reshape(-1)
        if weights.size != LANES:
            raise ValueError(f"w must have {LANES} lanes")
        self._lanes += (j[self._rows] * weights) * j[self._cols]
        self.num += LANES

    def update_single(self, *args: float, off: int = 0) -> None:
        """Add the products of one Jacobian sample into lane ``off``."""
        self._add_single(args, off)

    def update_single_weighted(self, *args: float, w: float, off: int = 0) -> None:
        """Add the products of one Jacobian sample, scaled by ``w``, into lane ``off``."""
        lane = _check_lane(off)
        j = self._scalars(args)
        self._lanes[:, lane] += j[self._cols] * (j[self._rows] * np.float32(w))
        self.num += 1