"""Jacobian blocks of one point residual over its pattern pixels."""

from __future__ import annotations

from dataclasses import dataclass, field, fields

import numpy as np

MAX_RES_PER_POINT = 8
POSE_PARS = 6
CAMERA_PARS = 14

_SHAPES = {
    "res_f": (MAX_RES_PER_POINT,),
    "jpdxi": (2, POSE_PARS),
    "jpdc": (2, CAMERA_PARS),
    "jpdd": (2,),
    "jidx": (2, MAX_RES_PER_POINT),
    "jab_f": (2, MAX_RES_PER_POINT),
    "jidx2": (2, 2),
    "jab_jidx": (2, 2),
    "jab2": (2, 2),
}


def _zeros(name: str):
    return field(default_factory=lambda: np.zeros(_SHAPES[name], dtype=np.float32))


@dataclass
class RawResidualJacobian:
    """Residuals and Jacobians of one point's pattern.

    res_f: weighted residual per pattern pixel.
    jpdxi: d[x, y] / d[pose], two rows.
    jpdc: d[x, y] / d[camera intrinsics], two rows.
    jpdd: d[x, y] / d[inverse depth].
    jidx: d[residual] / d[x, y], two columns.
    jab_f: d[residual] / d[affine a, b], two columns.
    jidx2, jab_jidx, jab2: the products jidx^T jidx, jab^T jidx and jab^T jab.
    """

    res_f: np.ndarray = _zeros("res_f")
    jpdxi: np.ndarray = _zeros("jpdxi")
    jpdc: np.ndarray = _zeros("jpdc")
    jpdd: np.ndarray = _zeros("jpdd")
    jidx: np.ndarray = _zeros("jidx")
    jab_f: np.ndarray = _zeros("jab_f")
    jidx2: np.ndarray = _zeros("jidx2")
    jab_jidx: np.ndarray = _zeros("jab_jidx")
    jab2: np.ndarray = _zeros("jab2")

    def __post_init__(self) -> None:
        for name, shape in _SHAPES.items():
            value = np.array(getattr(self, name), dtype=np.float32)
            if value.size != int(np.prod(shape)):
                raise ValueError(f"{name} must have shape {shape}, got {value.shape}")
            setattr(self, name, value.reshape(shape))

    def describe(self) -> str:
        """Return every block, one line per row, in a readable form."""
        lines = []
        for f in fields(self):
            value = getattr(self, f.name)
            rows = value.reshape(1, -1) if value.ndim == 1 else value
            if value.ndim == 1 or f.name in ("jidx2", "jab_jidx", "jab2"):
                text = "; ".join(", ".join(f"{v:g}" for v in row) for row in rows)
                lines.append(f"{f.name} = [{text}]")
            else:
                for i, row in enumerate(rows):
                    lines.append(f"{f.name}[{i}] = [{', '.join(f'{v:g}' for v in row)}]")
        return "\n".join(lines) + "\n"