"""Accumulator for the symmetric 17x17 block of one host/target frame pair."""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike

CAMERA_BLOCK = 8
POSE_BLOCK = 6
JACOBIAN_SIZE = CAMERA_BLOCK + POSE_BLOCK
AFFINE_RES_SIZE = 3
BLOCK_SIZE = JACOBIAN_SIZE + AFFINE_RES_SIZE


def _head(values: ArrayLike, size: int, name: str) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32).reshape(-1)
    if vec.size < size:
        raise ValueError(f"{name} needs at least {size} elements, got {vec.size}")
    return vec[:size]


def _stacked(camera: ArrayLike, pose: ArrayLike, prefix: str) -> np.ndarray:
    return np.concatenate(
        (
            _head(camera, CAMERA_BLOCK, f"{prefix}_c"),
            _head(pose, POSE_BLOCK, f"{prefix}_x"),
        )
    )


class AccumulatorApprox:
    """Sums the camera/pose, affine/residual and cross terms of point residuals.

    Rows and columns 0-7 are camera intrinsics, 8-13 the pose, 14-15 the
    affine brightness parameters and 16 the residual.  :meth:`finish`
    assembles the symmetric matrix ``H`` from the partial sums.
    """

    def __init__(self) -> None:
        self.H = np.zeros((BLOCK_SIZE, BLOCK_SIZE), dtype=np.float32)
        self.num = 0
        self._top_left = np.zeros((JACOBIAN_SIZE, JACOBIAN_SIZE), dtype=np.float32)
        self._top_right = np.zeros((JACOBIAN_SIZE, AFFINE_RES_SIZE), dtype=np.float32)
        self._bot_right = np.zeros(6, dtype=np.float32)

    def initialize(self) -> None:
        """Clear the partial sums and the update count."""
        self._top_left.fill(0.0)
        self._top_right.fill(0.0)
        self._bot_right.fill(0.0)
        self.num = 0

    def finish(self) -> np.ndarray:
        """Build ``H`` from the partial sums and return it."""
        h = self.H
        h.fill(0.0)
        upper = np.triu(self._top_left)
        h[:JACOBIAN_SIZE, :JACOBIAN_SIZE] = upper + np.triu(upper, 1).T
        h[:JACOBIAN_SIZE, JACOBIAN_SIZE:] = self._top_right
        h[JACOBIAN_SIZE:, :JACOBIAN_SIZE] = self._top_right.T

        a00, a01, a02, a11, a12, a22 = self._bot_right
        h[JACOBIAN_SIZE:, JACOBIAN_SIZE:] = np.array(
            [[a00, a01, a02], [a01, a11, a12], [a02, a12, a22]], dtype=np.float32
        )
        return h

    def update(
        self,
        x_c: ArrayLike,
        x_x: ArrayLike,
        y_c: ArrayLike,
        y_x: ArrayLike,
        a: float,
        b: float,
        c: float,
    ) -> None:
        """Add ``[x y] [[a, b], [b, c]] [x y]^T`` for the stacked camera/pose rows.

        Only the first 8 elements of the camera rows and the first 6 of the
        pose rows are used.
        """
        x = _stacked(x_c, x_x, "x")
        y = _stacked(y_c, y_x, "y")
        a32, b32, c32 = np.float32(a), np.float32(b), np.float32(c)
        xy = np.outer(x, y)
        self._top_left += a32 * np.outer(x, x) + c32 * np.outer(y, y) + b32 * (xy + xy.T)
        self.num += 1

    def update_top_right(
        self,
        x_c: ArrayLike,
        x_x: ArrayLike,
        y_c: ArrayLike,
        y_x: ArrayLike,
        tr00: float,
        tr10: float,
        tr01: float,
        tr11: float,
        tr02: float,
        tr12: float,
    ) -> None:
        """Add the cross terms between camera/pose rows and the affine/residual columns."""
        x = _stacked(x_c, x_x, "x")
        y = _stacked(y_c, y_x, "y")
        x_weights = np.array([tr00, tr01, tr02], dtype=np.float32)
        y_weights = np.array([tr10, tr11, tr12], dtype=np.float32)
        self._top_right += np.outer(x, x_weights) + np.outer(y, y_weights)

    def update_bot_right(
        self, a00: float, a01: float, a02: float, a11: float, a12: float, a22: float
    ) -> None:
        """Add to the upper triangle of the 3x3 affine/residual block."""
        self._bot_right += np.array([a00, a01, a02, a11, a12, a22], dtype=np.float32)