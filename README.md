# dsobackend

Building blocks for the optimisation back-end of a stereo direct sparse
odometry system, written with NumPy.

The package turns per-residual Jacobians into the normal equations
(`H`, `b`) of a sliding-window bundle adjustment over camera intrinsics,
frame poses with affine brightness, and point inverse depths.

## Modules

- `dsobackend.accumulators`: `AccumulatorXX` (weighted outer products
  `w * left @ right.T`), `AccumulatorX` (weighted or unweighted vector sums)
  and `Accumulator11` (a scalar sum kept as four partial sums and combined by
  `finish()`).
- `dsobackend.approx_accumulator`: `AccumulatorApprox`, which sums the
  camera/pose block, the affine/residual block and their cross terms for one
  host/target frame pair; `finish()` assembles the symmetric 17×17 matrix `H`.
- `dsobackend.dense_accumulators`: `Accumulator14` and `Accumulator9`, which
  accumulate the symmetric `J^T J` of 14 or 9 Jacobian entries, either four
  samples at a time (`update_sse`) or one sample into a chosen lane
  (`update_single`); `Accumulator9` also has weighted variants.
- `dsobackend.raw_residual_jacobian`: `RawResidualJacobian`, a dataclass of
  the residuals and Jacobian blocks of one point's pattern, with
  `describe()` for a text dump.
- `dsobackend.energy_structs`: `EFResidual`, `EFPoint`, `EFFrame`,
  `PointState` and the `EFPointStatus` enum. `EFResidual.take_data_f` adopts a
  new Jacobian and derives the pose/depth coupling terms through the host and
  target adjoints; `EFResidual.fix_linearization_f` freezes the residual at
  zero increment. A residual whose host and target index are equal is a
  left/right stereo residual inside one frame.
- `dsobackend.top_hessian`: `AccumulatedTopHessian` and `AccumulationMode`
  (`ACTIVE`, `LINEARIZED`, `MARGINALIZE`). Points are added per thread slot;
  `stitch_double` / `stitch_double_mt` map the per-pair blocks through the
  adjoints into the full system of `8 * n_frames + 14` unknowns, and
  `add_prior` returns a copy of `(H, b)` with camera and frame priors added.
- `dsobackend.sc_hessian`: `AccumulatedSCHessian`, the Schur complement that
  removes the point inverse depths from the system, with the same
  `set_zero` / `add_point` / `add_points` / `stitch_double` /
  `stitch_double_mt` workflow.
- `dsobackend.projections`: `derive_idepth`, `project_point_krki`,
  `project_point` and `project_point_lr`, with `StereoIntrinsics`
  (buildable from two 3×3 camera matrices via `from_matrices`).
  `project_point` and `project_point_lr` return `None` when the point lands
  behind the camera; every result carries an `inside` flag telling whether
  the pixel lies within the usable image area.
- `dsobackend.pixel_selector`: `grid_max_selection`, which marks the
  strongest-gradient pixels in each grid cell and returns the map and count,
  and `make_pixel_status`, which adapts the cell size towards a desired
  number of points and returns a `PixelStatus`.

With `multithreaded=True`, the stitch methods sum every thread slot, spread
over a `concurrent.futures.ThreadPoolExecutor`; otherwise only slot 0 is used.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install ".[test]"
pytest
```

## Example

Build the Schur complement of a single point that has one active residual
between frames 0 and 1:

```python
import numpy as np
from dsobackend.energy_structs import EFPoint, EFResidual, PointState
from dsobackend.sc_hessian import AccumulatedSCHessian

acc = AccumulatedSCHessian()
acc.set_zero(2, 0)

residual = EFResidual()
residual.is_active = True
residual.host_idx, residual.target_idx = 0, 1
residual.jp_jd_ad_h = np.ones(8, dtype=np.float32)
residual.jp_jd_ad_t = np.ones(8, dtype=np.float32)

point = EFPoint(PointState())
point.prior_f = 2500.0
point.hdd_acc_af = 1.0e4
point.residuals_all.append(residual)

acc.add_point(point, False, 0)
H, b = acc.stitch_double_mt(False)
print(H.shape, b.shape)   # (30, 30) (30,)
```

`AccumulatedTopHessian` works the same way: call `set_zero`, add points with
`add_point` in the wanted `AccumulationMode`, then call `stitch_double_mt`
with the 8×8 host and target adjoints of every frame pair to get `H` and `b`.

## What this package does not do

It provides the accumulation and projection pieces only. It does not solve
the normal equations, marginalise frames, manage the window of keyframes,
track frames, read images or calibration files, or display anything, and it
installs no command-line program. The caller supplies the Jacobians,
adjoints and increments and does the solving.