"""Selection of high-gradient pixels on a regular grid."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike

MIN_USE_GRAD_PIXSEL = 10.0


@dataclass
class PixelStatus:
    """Result of :func:`make_pixel_status`."""

    selected: np.ndarray
    num_good: int
    sparsity: int


def _as_gradients(grads: ArrayLike) -> np.ndarray:
    g = np.asarray(grads, dtype=np.float32)
    if g.ndim != 3 or g.shape[2] != 3:
        raise ValueError("grads must have shape (height, width, 3)")
    return g


def grid_max_selection(grads: ArrayLike, pot: int, th_fac: float) -> tuple[np.ndarray, int]:
    """Pick, in each pot x pot cell, the pixels with the strongest gradients.

    ``grads`` holds (intensity, dx, dy) per pixel.  In every cell the pixels
    with the largest ``|dx|``, ``|dy|``, ``|dx - dy|`` and ``|dx + dy|`` among
    those whose squared gradient exceeds the threshold are marked.  Returns
    the boolean map and the number of marked pixels.
    """
    g = _as_gradients(grads)
    pot = int(pot)
    if pot < 1:
        raise ValueError("pot must be at least 1")
    h, w, _ = g.shape
    selected = np.zeros((h, w), dtype=bool)

    th = np.float32(th_fac) * np.float32(MIN_USE_GRAD_PIXSEL) * np.float32(0.75)
    th_sq = th * th

    for y in range(1, h - pot, pot):
        for x in range(1, w - pot, pot):
            # Scan order within a cell is x-major, so transpose before flattening.
            cell = g[y : y + pot, x : x + pot].transpose(1, 0, 2).reshape(-1, 3)
            gx = cell[:, 1]
            gy = cell[:, 2]
            strong = gx * gx + gy * gy > th_sq
            for score in (np.abs(gx), np.abs(gy), np.abs(gx - gy), np.abs(gx + gy)):
                masked = np.where(strong, score, np.float32(0.0))
                best = int(np.argmax(masked))
                if masked[best] > 0:
                    dx, dy = divmod(best, pot)
                    selected[y + dy, x + dx] = True

    return selected, int(selected.sum())


def make_pixel_status(
    grads: ArrayLike,
    sparsity: int,
    desired_density: float,
    recs_left: int = 5,
    th_fac: float = 1.0,
) -> PixelStatus:
    """Select pixels, adapting the cell size until the count nears ``desired_density``.

    Returns the map, the number of selected pixels and the cell size to use
    next time.
    """
    if desired_density <= 0:
        raise ValueError("desired_density must be positive")
    sparsity = max(1, int(sparsity))
    th_fac = float(th_fac)

    while True:
        selected, num_good = grid_max_selection(grads, sparsity, th_fac)

        quotia = np.float32(num_good) / np.float32(desired_density)
        new_sparsity = max(1, int(np.float32(sparsity) * np.sqrt(quotia) + np.float32(0.7)))

        old_th_fac = th_fac
        if new_sparsity == 1 and sparsity == 1:
            th_fac = 0.5

        settled = abs(new_sparsity - sparsity) < 1 and th_fac == old_th_fac
        close_enough = quotia > 0.8 and 1.0 / float(quotia) > 0.8
        if settled or close_enough or recs_left == 0:
            return PixelStatus(selected, num_good, new_sparsity)

        sparsity = new_sparsity
        recs_left -= 1