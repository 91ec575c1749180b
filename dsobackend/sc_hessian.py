"""Schur complement of the point depths, accumulated per frame block."""

from __future__ import annotations

import math
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from dsobackend.accumulators import AccumulatorX, AccumulatorXX
from dsobackend.energy_structs import CIPARS, CPARS, FRAME_PARS, EFPoint

NUM_THREADS = 6


class AccumulatedSCHessian:
    """Accumulates ``Hcd Hdd^-1 Hdc`` and ``Hcd Hdd^-1 bd`` over points.

    Each thread slot ``tid`` has its own accumulators; stitching sums them
    into the full system of ``8 * n_frames + 14`` unknowns.
    """

    def __init__(self, num_threads: int = NUM_THREADS) -> None:
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1")
        self.num_threads = num_threads
        self.n_frames = [0] * num_threads
        self.acc_e: list[list[AccumulatorXX]] = [[] for _ in range(num_threads)]
        self.acc_eb: list[list[AccumulatorX]] = [[] for _ in range(num_threads)]
        self.acc_d: list[list[AccumulatorXX]] = [[] for _ in range(num_threads)]
        self.acc_hcc = [AccumulatorXX(CIPARS, CIPARS) for _ in range(num_threads)]
        self.acc_bc = [AccumulatorX(CIPARS) for _ in range(num_threads)]
        for tid in range(num_threads):
            self._allocate(0, tid)

    def _check_tid(self, tid: int) -> int:
        if not 0 <= tid < self.num_threads:
            raise ValueError(f"tid must be in [0, {self.num_threads}), got {tid}")
        return tid

    def _allocate(self, n_frames: int, tid: int) -> None:
        nplus1 = n_frames + 1
        self.acc_e[tid] = [AccumulatorXX(FRAME_PARS, CIPARS) for _ in range(nplus1)]
        self.acc_eb[tid] = [AccumulatorX(FRAME_PARS) for _ in range(nplus1)]
        self.acc_d[tid] = [AccumulatorXX(FRAME_PARS, FRAME_PARS) for _ in range(nplus1 * nplus1)]

    def set_zero(self, n_frames: int, tid: int = 0) -> None:
        """Clear thread slot ``tid`` and size it for ``n_frames`` frames."""
        tid = self._check_tid(tid)
        if n_frames < 0:
            raise ValueError("n_frames must not be negative")
        # Block 0 holds the left/right stereo pose, blocks 1..n the frames.
        if n_frames != self.n_frames[tid]:
            self._allocate(n_frames, tid)
        self.acc_bc[tid].initialize()
        self.acc_hcc[tid].initialize()
        for acc in (*self.acc_e[tid], *self.acc_eb[tid], *self.acc_d[tid]):
            acc.initialize()
        self.n_frames[tid] = n_frames

    def add_point(self, point: EFPoint, shift_prior_to_zero: bool, tid: int = 0) -> None:
        """Add the Schur complement terms of one point to thread slot ``tid``."""
        tid = self._check_tid(tid)
        active = [r for r in point.residuals_all if r.is_active]
        if not active:
            point.hdi_f = 0.0
            point.bd_sum_f = 0.0
            point.ph.idepth_hessian = 0.0
            point.ph.max_rel_baseline = 0.0
            return

        h = np.float32(point.hdd_acc_af) + np.float32(point.hdd_acc_lf) + np.float32(point.prior_f)
        if h < 1e-10:
            h = np.float32(1e-10)
        point.ph.idepth_hessian = float(h)

        hdi = np.float32(1.0) / h
        if not math.isfinite(float(hdi)):
            raise ValueError("inverse depth Hessian is not finite")
        point.hdi_f = float(hdi)

        bd_sum = np.float32(point.bd_acc_af) + np.float32(point.bd_acc_lf)
        if shift_prior_to_zero:
            bd_sum += np.float32(point.prior_f) * np.float32(point.delta_f)
        point.bd_sum_f = float(bd_sum)

        hcd = (
            np.asarray(point.hcd_acc_af, dtype=np.float32)
            + np.asarray(point.hcd_acc_lf, dtype=np.float32)
        )[:CIPARS]
        bd_w = bd_sum * hdi
        self.acc_hcc[tid].update(hcd, hcd, hdi)
        self.acc_bc[tid].update(hcd, bd_w)

        acc_d = self.acc_d[tid]
        acc_e = self.acc_e[tid]
        acc_eb = self.acc_eb[tid]
        d_size = self.n_frames[tid] + 1
        for r1 in active:
            i = r1.host_idx + 1
            j = r1.target_idx + 1
            if j == i:
                for r2 in active:
                    k = r2.target_idx + 1
                    if k != i:
                        acc_d[i].update(r2.jp_jd_ad_h, r1.jp_jd_ad_t, hdi)
                        acc_d[k].update(r2.jp_jd_ad_t, r1.jp_jd_ad_t, hdi)
                acc_d[0].update(r1.jp_jd_ad_t, r1.jp_jd_ad_t, hdi)
                acc_e[0].update(r1.jp_jd_ad_t, hcd, hdi)
                acc_eb[0].update(r1.jp_jd_ad_t, bd_w)
            else:
                for r2 in active:
                    k = r2.target_idx + 1
                    if k != i:
                        acc_d[i + d_size * i].update(r1.jp_jd_ad_h, r2.jp_jd_ad_h, hdi)
                        acc_d[j + d_size * k].update(r1.jp_jd_ad_t, r2.jp_jd_ad_t, hdi)
                        acc_d[j + d_size * i].update(r1.jp_jd_ad_t, r2.jp_jd_ad_h, hdi)
                        acc_d[i + d_size * k].update(r1.jp_jd_ad_h, r2.jp_jd_ad_t, hdi)
                acc_e[i].update(r1.jp_jd_ad_h, hcd, hdi)
                acc_eb[i].update(r1.jp_jd_ad_h, bd_w)
                acc_e[j].update(r1.jp_jd_ad_t, hcd, hdi)
                acc_eb[j].update(r1.jp_jd_ad_t, bd_w)

    def add_points(
        self, points: Iterable[EFPoint], shift_prior_to_zero: bool, tid: int = 0
    ) -> None:
        """Add every point of ``points`` to thread slot ``tid``."""
        for point in points:
            self.add_point(point, shift_prior_to_zero, tid)

    def _dimension(self) -> int:
        return self.n_frames[0] * FRAME_PARS + CPARS

    def _stitch_range(
        self, h: np.ndarray, b: np.ndarray, lo: int, hi: int, tids: Iterable[int]
    ) -> None:
        tids = list(tids)
        if lo == hi:
            return
        d_size = self.n_frames[0] + 1
        for jk in range(lo, hi):
            j = jk % d_size
            k = jk // d_size
            j_idx = CIPARS if j == 0 else CPARS + (j - 1) * FRAME_PARS
            k_idx = CIPARS if k == 0 else CPARS + (k - 1) * FRAME_PARS
            js = 6 if j == 0 else FRAME_PARS
            ks = 6 if k == 0 else FRAME_PARS
            for tid in tids:
                if j == 0:
                    h[k_idx:k_idx + ks, :CIPARS] += self.acc_e[tid][k].A[:ks, :CIPARS]
                    b[k_idx:k_idx + ks] += self.acc_eb[tid][k].A[:ks]
                h[j_idx:j_idx + js, k_idx:k_idx + ks] += self.acc_d[tid][jk].A[:js, :ks]
        if lo == 0:
            for tid in tids:
                h[:CIPARS, :CIPARS] += self.acc_hcc[tid].A
                b[:CIPARS] += self.acc_bc[tid].A

    def _copy_upper_to_lower(self, h: np.ndarray) -> None:
        h[:CIPARS, CIPARS:CPARS] = h[CIPARS:CPARS, :CIPARS].T
        for frame in range(self.n_frames[0]):
            idx = CPARS + frame * FRAME_PARS
            block = slice(idx, idx + FRAME_PARS)
            h[:CIPARS, block] = h[block, :CIPARS].T
            h[CIPARS:CPARS, block] = h[block, CIPARS:CPARS].T

    def stitch_double(self) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(H, b)`` built from thread slot 0 alone."""
        dim = self._dimension()
        h = np.zeros((dim, dim))
        b = np.zeros(dim)
        self._stitch_range(h, b, 0, (self.n_frames[0] + 1) ** 2, [0])
        self._copy_upper_to_lower(h)
        return h, b

    def stitch_double_mt(self, multithreaded: bool = False) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(H, b)``; when ``multithreaded``, sum every thread slot in parallel."""
        if not multithreaded:
            return self.stitch_double()
        if any(n != self.n_frames[0] for n in self.n_frames):
            raise ValueError("all thread slots must be sized for the same number of frames")

        dim = self._dimension()
        total = (self.n_frames[0] + 1) ** 2
        step = math.ceil(total / self.num_threads)
        bounds = [(lo, min(lo + step, total)) for lo in range(0, total, step)]
        all_tids = range(self.num_threads)

        def work(span: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
            h_part = np.zeros((dim, dim))
            b_part = np.zeros(dim)
            self._stitch_range(h_part, b_part, span[0], span[1], all_tids)
            return h_part, b_part

        with ThreadPoolExecutor(max_workers=self.num_threads) as pool:
            parts = list(pool.map(work, bounds))

        h = sum((p[0] for p in parts), np.zeros((dim, dim)))
        b = sum((p[1] for p in parts), np.zeros(dim))
        self._copy_upper_to_lower(h)
        return h, b