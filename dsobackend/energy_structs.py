"""Residual, point and frame records of the windowed energy functional."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import numpy as np
from numpy.typing import ArrayLike

from dsobackend.raw_residual_jacobian import MAX_RES_PER_POINT, RawResidualJacobian

CIPARS = 8
CPARS = 14
FRAME_PARS = 8
IDEPTH_FIX_PRIOR = 50.0 * 50.0
SCALE_IDEPTH = 1.0


def _vector(values: ArrayLike, size: int, name: str) -> np.ndarray:
    vec = np.array(values, dtype=np.float32).reshape(-1)
    if vec.shape != (size,):
        raise ValueError(f"{name} must have {size} elements, got {vec.size}")
    return vec


def _matrix(values: ArrayLike, rows: int, cols: int, name: str) -> np.ndarray:
    mat = np.asarray(values, dtype=np.float32)
    if mat.size != rows * cols:
        raise ValueError(f"{name} must be a {rows}x{cols} matrix")
    return mat.reshape(rows, cols)


def _zeros(size: int):
    return field(default_factory=lambda: np.zeros(size, dtype=np.float32))


class EFPointStatus(IntEnum):
    """What the optimiser does with a point next."""

    GOOD = 0
    MARGINALIZE = 1
    DROP = 2


@dataclass
class PointState:
    """Depth state of a point that the energy terms read and write."""

    idepth: float = 0.0
    idepth_zero: float = 0.0
    has_depth_prior: bool = False
    idepth_hessian: float = 0.0
    max_rel_baseline: float = 0.0
    step: float = 0.0


@dataclass(eq=False)
class EFResidual:
    """Linearised residual between a point's host frame and one target frame.

    A residual whose host and target index are equal is a left/right stereo
    residual inside one frame.
    """

    data: Any = None
    point: EFPoint | None = None
    host: EFFrame | None = None
    target: EFFrame | None = None
    host_idx: int = 0
    target_idx: int = 0
    idx_in_all: int = 0
    jacobian: RawResidualJacobian = field(default_factory=RawResidualJacobian)
    res_to_zero_f: np.ndarray = _zeros(MAX_RES_PER_POINT)
    jp_jd_f: np.ndarray = _zeros(FRAME_PARS)
    jp_jd_ad_h: np.ndarray = _zeros(FRAME_PARS)
    jp_jd_ad_t: np.ndarray = _zeros(FRAME_PARS)
    is_linearized: bool = False
    is_active: bool = False

    def __post_init__(self) -> None:
        self.res_to_zero_f = _vector(self.res_to_zero_f, MAX_RES_PER_POINT, "res_to_zero_f")
        self.jp_jd_f = _vector(self.jp_jd_f, FRAME_PARS, "jp_jd_f")
        self.jp_jd_ad_h = _vector(self.jp_jd_ad_h, FRAME_PARS, "jp_jd_ad_h")
        self.jp_jd_ad_t = _vector(self.jp_jd_ad_t, FRAME_PARS, "jp_jd_ad_t")

    @property
    def left_to_right(self) -> bool:
        """True for a stereo residual within one frame."""
        return self.host_idx == self.target_idx

    def _pose_rows(self) -> tuple[np.ndarray, np.ndarray]:
        j = self.jacobian
        if self.left_to_right:
            return j.jpdc[0][CIPARS:CIPARS + 6], j.jpdc[1][CIPARS:CIPARS + 6]
        return j.jpdxi[0], j.jpdxi[1]

    def take_data_f(
        self, jacobian: RawResidualJacobian, ad_host: ArrayLike, ad_target: ArrayLike
    ) -> RawResidualJacobian:
        """Adopt ``jacobian`` and derive the pose/depth coupling terms.

        ``ad_host`` and ``ad_target`` are the 8x8 adjoints of this host/target
        pair.  Returns the Jacobian that was held before.
        """
        previous, self.jacobian = self.jacobian, jacobian
        j = self.jacobian
        ji_ji_jd = j.jidx2 @ j.jpdd
        jx, jy = self._pose_rows()
        pose = jx * ji_ji_jd[0] + jy * ji_ji_jd[1]
        affine = j.jab_jidx @ j.jpdd
        self.jp_jd_f = np.concatenate((pose, affine)).astype(np.float32)
        self.jp_jd_ad_h = _matrix(ad_host, FRAME_PARS, FRAME_PARS, "ad_host") @ self.jp_jd_f
        self.jp_jd_ad_t = _matrix(ad_target, FRAME_PARS, FRAME_PARS, "ad_target") @ self.jp_jd_f
        if np.isnan(self.jp_jd_ad_h.sum()) or np.isnan(self.jp_jd_ad_t.sum()):
            raise ValueError("adjoint-transformed pose/depth terms contain NaN")
        return previous

    def fix_linearization_f(self, ad_ht_delta: ArrayLike, c_delta: ArrayLike) -> None:
        """Freeze the residual at zero increment: ``res_to_zero = res - J * delta``.

        ``ad_ht_delta`` is the 8-vector frame increment of this host/target
        pair and ``c_delta`` the 14-vector camera increment.
        """
        if self.point is None:
            raise ValueError("residual has no point to read the depth increment from")
        j = self.jacobian
        dp = _vector(ad_ht_delta, FRAME_PARS, "ad_ht_delta")
        dc = _vector(c_delta, CPARS, "c_delta")
        dd = np.float32(self.point.delta_f)

        jp_dx = j.jpdd[0] * dd
        jp_dy = j.jpdd[1] * dd
        if self.left_to_right:
            jp_dx += j.jpdc[0] @ dc
            jp_dy += j.jpdc[1] @ dc
        else:
            jp_dx += j.jpdc[0][:4] @ dc[:4] + j.jpdxi[0] @ dp[:6]
            jp_dy += j.jpdc[1][:4] @ dc[:4] + j.jpdxi[1] @ dp[:6]

        change = j.jidx[0] * jp_dx + j.jidx[1] * jp_dy + j.jab_f[0] * dp[6] + j.jab_f[1] * dp[7]
        self.res_to_zero_f = (j.res_f - change).astype(np.float32)
        self.is_linearized = True


class EFPoint:
    """A point of the energy functional and its accumulated depth terms."""

    def __init__(
        self,
        ph: PointState,
        host: EFFrame | None = None,
        *,
        idepth_fix_prior: float = IDEPTH_FIX_PRIOR,
        scale_idepth: float = SCALE_IDEPTH,
        remove_pose_prior: bool = False,
    ) -> None:
        self.ph = ph
        self.host = host
        if ph.has_depth_prior and not remove_pose_prior:
            self.prior_f = float(np.float32(idepth_fix_prior * scale_idepth * scale_idepth))
        else:
            self.prior_f = 0.0
        self.delta_f = float(np.float32(ph.idepth - ph.idepth_zero))
        self.state_flag = EFPointStatus.GOOD
        self.idx_in_points = -1
        self.residuals_all: list[EFResidual] = []
        self.bd_sum_f = 0.0
        self.hdi_f = 0.0
        self.hdd_acc_lf = 0.0
        self.hcd_acc_lf = np.zeros(CPARS, dtype=np.float32)
        self.bd_acc_lf = 0.0
        self.hdd_acc_af = 0.0
        self.hcd_acc_af = np.zeros(CPARS, dtype=np.float32)
        self.bd_acc_af = 0.0

    def describe(self) -> str:
        """Return the point's terms and those of its residuals as text."""

        def vec(values: np.ndarray) -> str:
            return "[" + ", ".join(f"{v:g}" for v in values) + "]"

        lines = [
            f"prior_f = {self.prior_f:g}",
            f"delta_f = {self.delta_f:g}",
            f"bd_sum_f = {self.bd_sum_f:g}",
            f"hdi_f = {self.hdi_f:g}",
            f"hdd_acc_lf = {self.hdd_acc_lf:g}",
            f"hcd_acc_lf = {vec(self.hcd_acc_lf)}",
            f"bd_acc_lf = {self.bd_acc_lf:g}",
            f"hdd_acc_af = {self.hdd_acc_af:g}",
            f"hcd_acc_af = {vec(self.hcd_acc_af)}",
            f"bd_acc_af = {self.bd_acc_af:g}",
            "",
        ]
        for r in self.residuals_all:
            lines += [
                f"host_idx = {r.host_idx}",
                f"target_idx = {r.target_idx}",
                f"jp_jd_f = {vec(r.jp_jd_f)}",
                f"jp_jd_ad_h = {vec(r.jp_jd_ad_h)}",
                f"jp_jd_ad_t = {vec(r.jp_jd_ad_t)}",
                r.jacobian.describe().rstrip("\n"),
            ]
        return "\n".join(lines) + "\n"


@dataclass(eq=False)
class EFFrame:
    """A keyframe of the energy functional with its prior and increments."""

    key_frame_id: int
    prior: np.ndarray = field(default_factory=lambda: np.zeros(FRAME_PARS))
    delta: np.ndarray = field(default_factory=lambda: np.zeros(FRAME_PARS))
    delta_prior: np.ndarray = field(default_factory=lambda: np.zeros(FRAME_PARS))
    points: list[EFPoint] = field(default_factory=list)
    idx_in_frames: int = -1
    fh: Any = None
    ef: Any = None

    def __post_init__(self) -> None:
        if self.key_frame_id == -1:
            raise ValueError("frame has no keyframe id")
        for name in ("prior", "delta", "delta_prior"):
            value = np.array(getattr(self, name), dtype=np.float64).reshape(-1)
            if value.shape != (FRAME_PARS,):
                raise ValueError(f"{name} must have {FRAME_PARS} elements")
            setattr(self, name, value)