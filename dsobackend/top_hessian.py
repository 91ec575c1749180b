"""Accumulation of the frame/camera part of the Hessian from point residuals."""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from enum import IntEnum

import numpy as np
from numpy.typing import ArrayLike

from dsobackend.approx_accumulator import AccumulatorApprox
from dsobackend.energy_structs import CIPARS, CPARS, FRAME_PARS, EFFrame, EFPoint

NUM_THREADS = 6
_RES_COL = CIPARS + FRAME_PARS


class AccumulationMode(IntEnum):
    """Which residuals of a point are accumulated and from which residual values."""

    ACTIVE = 0
    LINEARIZED = 1
    MARGINALIZE = 2


def _adjoints(values: ArrayLike, count: int, name: str) -> np.ndarray:
    mats = np.asarray(values, dtype=np.float64).reshape(-1, FRAME_PARS, FRAME_PARS)
    if mats.shape[0] < count:
        raise ValueError(f"{name} needs {count} 8x8 matrices, got {mats.shape[0]}")
    return mats


class AccumulatedTopHessian:
    """Accumulates ``J^T J`` and ``J^T r`` of residuals per host/target frame pair.

    Each thread slot ``tid`` owns ``n_frames * n_frames`` accumulators; the
    stitch methods map them through the adjoints into the full system of
    ``8 * n_frames + 14`` unknowns.  Pairs whose host equals the target hold
    the left/right stereo residuals.
    """

    def __init__(self, num_threads: int = NUM_THREADS) -> None:
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.num_threads = num_threads
        self.n_frames = [0] * num_threads
        self.nres = [0] * num_threads
        self.acc: list[list[AccumulatorApprox]] = [[] for _ in range(num_threads)]

    def _check_tid(self, tid: int) -> int:
        if not 0 <= tid < self.num_threads:
            raise ValueError(f"tid must be in [0, {self.num_threads}), got {tid}")
        return tid

    def set_zero(self, n_frames: int, tid: int = 0) -> None:
        """Clear thread slot ``tid`` and size it for ``n_frames`` frames."""
        tid = self._check_tid(tid)
        if n_frames < 0:
            raise ValueError("n_frames must not be negative")
        if n_frames != self.n_frames[tid] or len(self.acc[tid]) != n_frames * n_frames:
            self.acc[tid] = [AccumulatorApprox() for _ in range(n_frames * n_frames)]
        for acc in self.acc[tid]:
            acc.initialize()
        self.n_frames[tid] = n_frames
        self.nres[tid] = 0

    def add_point(
        self,
        point: EFPoint,
        mode: AccumulationMode | int,
        ad_ht_delta: ArrayLike | None = None,
        c_delta: ArrayLike | None = None,
        tid: int = 0,
    ) -> None:
        """Accumulate the residuals of ``point`` selected by ``mode`` into slot ``tid``.

        ``ad_ht_delta`` holds one 8-vector per host/target pair (needed for
        ``LINEARIZED``), ``c_delta`` the 14-vector camera increment.
        """
        tid = self._check_tid(tid)
        mode = AccumulationMode(mode)
        n = self.n_frames[tid]
        dc = (
            np.zeros(CPARS, dtype=np.float32)
            if c_delta is None
            else np.asarray(c_delta, dtype=np.float32).reshape(-1)
        )
        deltas = None
        if mode is AccumulationMode.LINEARIZED:
            if ad_ht_delta is None:
                raise ValueError("linearized accumulation needs ad_ht_delta")
            deltas = np.asarray(ad_ht_delta, dtype=np.float32).reshape(-1, FRAME_PARS)

        bd_acc = np.float32(0.0)
        hdd_acc = np.float32(0.0)
        hcd_acc = np.zeros(CPARS, dtype=np.float32)

        for r in point.residuals_all:
            if not r.is_active:
                continue
            if mode is AccumulationMode.ACTIVE and r.is_linearized:
                continue
            if mode is AccumulationMode.LINEARIZED and not r.is_linearized:
                continue
            if mode is AccumulationMode.MARGINALIZE and not r.is_linearized:
                raise ValueError("a residual to marginalize must be linearized")

            j = r.jacobian
            ht_idx = r.host_idx + r.target_idx * n
            left_to_right = r.host_idx == r.target_idx

            if mode is AccumulationMode.ACTIVE:
                res = j.res_f
            elif mode is AccumulationMode.MARGINALIZE:
                res = r.res_to_zero_f
            else:
                dp = deltas[ht_idx]
                dd = np.float32(point.delta_f)
                jp_dx = j.jpdd[0] * dd
                jp_dy = j.jpdd[1] * dd
                if left_to_right:
                    jp_dx += j.jpdc[0] @ dc
                    jp_dy += j.jpdc[1] @ dc
                else:
                    jp_dx += j.jpdc[0][:4] @ dc[:4] + j.jpdxi[0] @ dp[:6]
                    jp_dy += j.jpdc[1][:4] @ dc[:4] + j.jpdxi[1] @ dp[:6]
                res = (
                    r.res_to_zero_f
                    + j.jidx[0] * jp_dx
                    + j.jidx[1] * jp_dy
                    + j.jab_f[0] * dp[6]
                    + j.jab_f[1] * dp[7]
                ).astype(np.float32)

            ji_r = j.jidx @ res
            jab_r = j.jab_f @ res
            rr = res @ res

            if left_to_right:
                pose_x = j.jpdc[0][CIPARS:CIPARS + 6]
                pose_y = j.jpdc[1][CIPARS:CIPARS + 6]
            else:
                pose_x, pose_y = j.jpdxi[0], j.jpdxi[1]

            acc = self.acc[tid][ht_idx]
            acc.update(j.jpdc[0], pose_x, j.jpdc[1], pose_y,
                       j.jidx2[0, 0], j.jidx2[0, 1], j.jidx2[1, 1])
            acc.update_bot_right(j.jab2[0, 0], j.jab2[0, 1], jab_r[0],
                                 j.jab2[1, 1], jab_r[1], rr)
            acc.update_top_right(j.jpdc[0], pose_x, j.jpdc[1], pose_y,
                                 j.jab_jidx[0, 0], j.jab_jidx[0, 1],
                                 j.jab_jidx[1, 0], j.jab_jidx[1, 1],
                                 ji_r[0], ji_r[1])

            ji2_jpdd = j.jidx2 @ j.jpdd
            bd_acc += ji_r @ j.jpdd
            hdd_acc += ji2_jpdd @ j.jpdd
            hcd_acc += j.jpdc[0] * ji2_jpdd[0] + j.jpdc[1] * ji2_jpdd[1]
            self.nres[tid] += 1

        if mode is AccumulationMode.ACTIVE:
            point.hdd_acc_af = float(hdd_acc)
            point.hcd_acc_af = hcd_acc
            point.bd_acc_af = float(bd_acc)
        else:
            point.hdd_acc_lf = float(hdd_acc)
            point.hcd_acc_lf = hcd_acc
            point.bd_acc_lf = float(bd_acc)
        if mode is AccumulationMode.MARGINALIZE:
            point.hdd_acc_af = 0.0
            point.hcd_acc_af = np.zeros(CPARS, dtype=np.float32)
            point.bd_acc_af = 0.0

    def add_points(
        self,
        points: Iterable[EFPoint],
        mode: AccumulationMode | int,
        ad_ht_delta: ArrayLike | None = None,
        c_delta: ArrayLike | None = None,
        tid: int = 0,
    ) -> None:
        """Accumulate every point of ``points`` into slot ``tid``."""
        for point in points:
            self.add_point(point, mode, ad_ht_delta, c_delta, tid)

    def _dimension(self) -> int:
        return self.n_frames[0] * FRAME_PARS + CPARS

    def _stitch_range(
        self,
        h_mat: np.ndarray,
        b_vec: np.ndarray,
        ad_host: np.ndarray,
        ad_target: np.ndarray,
        lo: int,
        hi: int,
        tids: Sequence[int],
    ) -> None:
        n = self.n_frames[0]
        for k in range(lo, hi):
            host = k % n
            target = k // n
            h_idx = CPARS + host * FRAME_PARS
            t_idx = CPARS + target * FRAME_PARS

            acc_h = np.zeros((_RES_COL + 1, _RES_COL + 1))
            num = 0
            for tid in tids:
                acc = self.acc[tid][k]
                acc.finish()
                if acc.num > 0:
                    acc_h += acc.H.astype(np.float64)
                    num += acc.num
            if num == 0:
                continue

            h_mat[:CIPARS, :CIPARS] += acc_h[:CIPARS, :CIPARS]
            b_vec[:CIPARS] += acc_h[:CIPARS, _RES_COL]

            if host != target:
                ah = ad_host[k]
                at = ad_target[k]
                hb = slice(h_idx, h_idx + FRAME_PARS)
                tb = slice(t_idx, t_idx + FRAME_PARS)
                pose_ab = acc_h[CIPARS:_RES_COL, CIPARS:_RES_COL]
                h_mat[hb, hb] += ah @ pose_ab @ ah.T
                h_mat[tb, tb] += at @ pose_ab @ at.T
                h_mat[hb, tb] += ah @ pose_ab @ at.T

                pose_intr = acc_h[CIPARS:_RES_COL, :CIPARS]
                h_mat[hb, :CIPARS] += ah @ pose_intr
                h_mat[tb, :CIPARS] += at @ pose_intr

                pose_res = acc_h[CIPARS:_RES_COL, _RES_COL]
                b_vec[hb] += ah @ pose_res
                b_vec[tb] += at @ pose_res
            else:
                adj = ad_target[k][:6, :6]
                lr = slice(CIPARS, CPARS)
                h_mat[lr, lr] += adj @ acc_h[lr, lr] @ adj.T
                h_mat[lr, :CIPARS] += adj @ acc_h[lr, :CIPARS]
                b_vec[lr] += adj @ acc_h[lr, _RES_COL]

    def _copy_upper_to_lower(self, h_mat: np.ndarray) -> None:
        n = self.n_frames[0]
        for host in range(n):
            hb = slice(CPARS + host * FRAME_PARS, CPARS + (host + 1) * FRAME_PARS)
            h_mat[:CPARS, hb] = h_mat[hb, :CPARS].T
            for target in range(host + 1, n):
                tb = slice(CPARS + target * FRAME_PARS, CPARS + (target + 1) * FRAME_PARS)
                h_mat[hb, tb] += h_mat[tb, hb].T
                h_mat[tb, hb] = h_mat[hb, tb].T
        h_mat[:CIPARS, CIPARS:CPARS] = h_mat[CIPARS:CPARS, :CIPARS].T

    def stitch_double(
        self, ad_host: ArrayLike, ad_target: ArrayLike
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(H, b)`` built from thread slot 0 alone."""
        n = self.n_frames[0]
        ah = _adjoints(ad_host, n * n, "ad_host")
        at = _adjoints(ad_target, n * n, "ad_target")
        dim = self._dimension()
        h_mat = np.zeros((dim, dim))
        b_vec = np.zeros(dim)
        self._stitch_range(h_mat, b_vec, ah, at, 0, n * n, [0])
        self._copy_upper_to_lower(h_mat)
        return h_mat, b_vec

    def stitch_double_mt(
        self, ad_host: ArrayLike, ad_target: ArrayLike, multithreaded: bool = False
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(H, b)``; when ``multithreaded``, sum every thread slot in parallel."""
        if not multithreaded:
            return self.stitch_double(ad_host, ad_target)
        if any(n != self.n_frames[0] for n in self.n_frames):
            raise ValueError("all thread slots must be sized for the same number of frames")

        n = self.n_frames[0]
        total = n * n
        ah = _adjoints(ad_host, total, "ad_host")
        at = _adjoints(ad_target, total, "ad_target")
        dim = self._dimension()
        all_tids = list(range(self.num_threads))

        h_mat = np.zeros((dim, dim))
        b_vec = np.zeros(dim)
        if total > 0:
            step = math.ceil(total / self.num_threads)
            bounds = [(lo, min(lo + step, total)) for lo in range(0, total, step)]

            def work(span: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
                h_part = np.zeros((dim, dim))
                b_part = np.zeros(dim)
                self._stitch_range(h_part, b_part, ah, at, span[0], span[1], all_tids)
                return h_part, b_part

            with ThreadPoolExecutor(max_workers=self.num_threads) as pool:
                for h_part, b_part in pool.map(work, bounds):
                    h_mat += h_part
                    b_vec += b_part

        for tid in range(1, self.num_threads):
            self.nres[0] += self.nres[tid]
        self._copy_upper_to_lower(h_mat)
        return h_mat, b_vec

    def add_prior(
        self,
        h: ArrayLike,
        b: ArrayLike,
        c_prior: ArrayLike,
        c_delta: ArrayLike,
        frames: Sequence[EFFrame],
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(H, b)`` with the camera and frame priors added."""
        h_out = np.array(h, dtype=np.float64)
        b_out = np.array(b, dtype=np.float64).reshape(-1)
        prior = np.asarray(c_prior, dtype=np.float64).reshape(-1)
        delta = np.asarray(c_delta, dtype=np.float64).reshape(-1)
        if prior.size != CPARS or delta.size != CPARS:
            raise ValueError(f"c_prior and c_delta must have {CPARS} elements")
        n = self.n_frames[0]
        if len(frames) < n:
            raise ValueError(f"need {n} frames, got {len(frames)}")

        idx = np.arange(CPARS)
        h_out[idx, idx] += prior
        b_out[:CPARS] += prior * delta
        for i, frame in enumerate(frames[:n]):
            start = CPARS + i * FRAME_PARS
            seg = np.arange(start, start + FRAME_PARS)
            h_out[seg, seg] += frame.prior
            b_out[start:start + FRAME_PARS] += frame.prior * frame.delta_prior
        return h_out, b_out