"""Projection of pattern points between frames and between the stereo cameras."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike

MIN_PIXEL = 1.1
BORDER = 3


@dataclass(frozen=True)
class StereoIntrinsics:
    """Pinhole intrinsics of the left and right cameras."""

    fx_l: float
    fy_l: float
    cx_l: float
    cy_l: float
    fx_r: float
    fy_r: float
    cx_r: float
    cy_r: float

    @property
    def fx_l_inv(self) -> float:
        return 1.0 / self.fx_l

    @property
    def fy_l_inv(self) -> float:
        return 1.0 / self.fy_l

    @classmethod
    def from_matrices(cls, left_k: ArrayLike, right_k: ArrayLike) -> StereoIntrinsics:
        """Build from two 3x3 camera matrices."""
        lk = np.asarray(left_k, dtype=float).reshape(3, 3)
        rk = np.asarray(right_k, dtype=float).reshape(3, 3)
        return cls(
            lk[0, 0], lk[1, 1], lk[0, 2], lk[1, 2],
            rk[0, 0], rk[1, 1], rk[0, 2], rk[1, 2],
        )


@dataclass(frozen=True)
class PixelProjection:
    """Projected pixel and whether it lies inside the usable image area."""

    ku: float
    kv: float
    inside: bool


@dataclass(frozen=True)
class ProjectedPoint:
    """Full result of :func:`project_point`."""

    drescale: float
    u: float
    v: float
    ku: float
    kv: float
    klip: np.ndarray
    new_idepth: float
    inside: bool


@dataclass(frozen=True)
class StereoProjection:
    """Result of :func:`project_point_lr`: the pixel and inverse depth in the right image."""

    u_r: float
    v_r: float
    idepth_r: float
    inside: bool


def _inside(ku: float, kv: float, width: int, height: int) -> bool:
    return bool(ku > MIN_PIXEL and kv > MIN_PIXEL and ku < width - BORDER and kv < height - BORDER)


def _vec3(values: ArrayLike) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float32).reshape(-1)
    if vec.size != 3:
        raise ValueError("expected a 3-vector")
    return vec


def _mat33(values: ArrayLike) -> np.ndarray:
    mat = np.asarray(values, dtype=np.float32)
    if mat.size != 9:
        raise ValueError("expected a 3x3 matrix")
    return mat.reshape(3, 3)


def derive_idepth(
    t: ArrayLike,
    u: float,
    v: float,
    dx_interp: float,
    dy_interp: float,
    drescale: float,
    scale_idepth: float,
) -> float:
    """Derivative of the residual with respect to the inverse depth."""
    tx, ty, tz = (float(x) for x in _vec3(t))
    return (
        dx_interp * drescale * (tx - tz * u) + dy_interp * drescale * (ty - tz * v)
    ) * scale_idepth


def project_point_krki(
    u_pt: float,
    v_pt: float,
    idepth: float,
    krki: ArrayLike,
    kt: ArrayLike,
    width: int,
    height: int,
) -> PixelProjection:
    """Project a pixel using the precomputed ``K R K^-1`` and ``K t``."""
    ptp = _mat33(krki) @ np.array([u_pt, v_pt, 1.0], dtype=np.float32) + _vec3(kt) * np.float32(idepth)
    with np.errstate(divide="ignore", invalid="ignore"):
        ku = float(ptp[0] / ptp[2])
        kv = float(ptp[1] / ptp[2])
    return PixelProjection(ku, kv, _inside(ku, kv, width, height))


def project_point(
    u_pt: float,
    v_pt: float,
    idepth: float,
    intrinsics: StereoIntrinsics,
    rotation: ArrayLike,
    translation: ArrayLike,
    left_to_right: bool,
    width: int,
    height: int,
) -> ProjectedPoint | None:
    """Project a left-image pixel through ``rotation``/``translation``.

    The result is expressed in the right camera's pixels if ``left_to_right``
    and in the left camera's otherwise.  Returns ``None`` when the point ends
    up behind the camera.
    """
    klip = np.array(
        [
            (u_pt - intrinsics.cx_l) * intrinsics.fx_l_inv,
            (v_pt - intrinsics.cy_l) * intrinsics.fy_l_inv,
            1.0,
        ],
        dtype=np.float32,
    )
    ptp = _mat33(rotation) @ klip + _vec3(translation) * np.float32(idepth)
    with np.errstate(divide="ignore", invalid="ignore"):
        drescale = np.float32(1.0) / ptp[2]
    if not drescale > 0:
        return None

    new_idepth = float(np.float32(idepth) * drescale)
    u = float(ptp[0] * drescale)
    v = float(ptp[1] * drescale)
    if left_to_right:
        ku = u * intrinsics.fx_r + intrinsics.cx_r
        kv = v * intrinsics.fy_r + intrinsics.cy_r
    else:
        ku = u * intrinsics.fx_l + intrinsics.cx_l
        kv = v * intrinsics.fy_l + intrinsics.cy_l
    return ProjectedPoint(
        float(drescale), u, v, ku, kv, klip, new_idepth, _inside(ku, kv, width, height)
    )


def project_point_lr(
    u_l: float,
    v_l: float,
    idepth_l: float,
    intrinsics: StereoIntrinsics,
    rotation: ArrayLike,
    translation: ArrayLike,
    width: int,
    height: int,
) -> StereoProjection | None:
    """Project a left-image pixel into the right image with the stereo extrinsics.

    Returns ``None`` when the point ends up behind the right camera.
    """
    result = project_point(
        u_l, v_l, idepth_l, intrinsics, rotation, translation, True, width, height
    )
    if result is None:
        return None
    return StereoProjection(result.ku, result.kv, result.new_idepth, result.inside)