import numpy as np
import pytest

from dsobackend.energy_structs import EFFrame, EFPoint, EFResidual, PointState
from dsobackend.raw_residual_jacobian import RawResidualJacobian
from dsobackend.top_hessian import AccumulatedTopHessian, AccumulationMode

ONES = [1.0] * 8


def tol(lhs, rhs):
    return 1e-4 * min(np.linalg.norm(lhs), np.linalg.norm(rhs))


def identity_adjoints(n):
    return [np.eye(8) for _ in range(n * n)]


def left_left_residual():
    jac = RawResidualJacobian(
        res_f=ONES,
        jpdxi=[[133.221, 0, 19.6512, -6.50697, 468.632, 44.1125],
               [0, 132.827, 12.7751, -461.526, 6.48773, -67.455]],
        jpdc=[[-0.508134, -0.000141843, -1.03484, -0.503665] + [0] * 10,
              [-0.0121198, -4.82333, 0.090069, -1.13272] + [0] * 10],
        jpdd=[-0.704304, -74.2505],
        jidx=[[-0.736503, 8.31152, 11.5026, 2.71132, 24.6621, 6.55246, 16.7477, 18.9202],
              [7.0005, -0.129556, 24.5396, -2.11575, 6.98762, 15.0123, -3.53676, -4.6037]],
        jab_f=[[44.9032, 35.7146, 53.4572, 27.9331, 56.1396, 108.597, 28.0283, 38.2034],
               [0.990189, 0.974635, 0.846627, 0.994076, 0.872015, 0.968303, 0.89612, 0.857008]],
        jidx2=[1498.9, 394.662, 394.662, 963.593],
        jab_jidx=[4242.72, 3310.01, 78.8782, 38.9933],
        jab2=[24119.8, 364.264, 364.264, 6.87087],
    )
    return EFResidual(is_active=True, host_idx=0, target_idx=1, jacobian=jac)


def left_right_residual():
    jac = RawResidualJacobian(
        res_f=ONES,
        jpdc=[[16.0111, 0.123961, -50.2193, 0.335251, -30.5502, 0, 50, 0,
               1221.26, 0, 746.192, 108.528, 628.362, -177.623],
              [-0.03008, -18.6761, 0.0943469, -50.5094, 0, 19.4103, 0, 50,
               0, 1217.54, -472.654, -524.898, -108.197, -278.712]],
        jpdd=[-50.56, 0.224778],
        jidx=[[5.79476, 6.96991, 1.51123, 4.52278, 3.62904, -3.04868, 1.90134, -2.95721],
              [4.79284, 5.05582, 1.76634, 6.03098, 1.00303, -3.40171, 2.51659, -4.7374]],
        jidx2=[139.723, 125.763, 125.763, 129.379],
    )
    return EFResidual(is_active=True, host_idx=0, target_idx=0, jacobian=jac)


def add_res_to_j(r, j_rows):
    jac = r.jacobian
    block = np.zeros((8, 30))
    d_i_dp = jac.jidx.T.astype(float)
    block[:, :14] = d_i_dp @ jac.jpdc.astype(float)
    if r.host_idx != r.target_idx:
        h = 14 + r.host_idx * 8
        t = 14 + r.target_idx * 8
        pose = d_i_dp @ jac.jpdxi.astype(float)
        block[:, h:h + 6] = pose
        block[:, t:t + 6] = pose
        ab = jac.jab_f.T.astype(float)
        block[:, h + 6:h + 8] = ab
        block[:, t + 6:t + 8] = ab
    return np.vstack([j_rows, block])


def accumulate(residuals, n=2):
    acc = AccumulatedTopHessian()
    acc.set_zero(n)
    point = EFPoint(PointState())
    point.residuals_all.extend(residuals)
    acc.add_point(point, AccumulationMode.ACTIVE, None, np.zeros(14))
    return acc, point


def test_zero():
    acc = AccumulatedTopHessian()
    acc.set_zero(3)
    h, b = acc.stitch_double_mt(identity_adjoints(3), identity_adjoints(3), False)
    assert h.shape == (38, 38)
    assert np.linalg.norm(h) == 0
    assert np.linalg.norm(b) == 0


def test_one_left_left_residual():
    r = left_left_residual()
    acc, _ = accumulate([r])
    h, b = acc.stitch_double_mt(identity_adjoints(2), identity_adjoints(2), False)
    j = add_res_to_j(r, np.zeros((0, 30)))
    b_expected = j.T @ r.jacobian.res_f.astype(float)
    h_expected = j.T @ j
    assert np.linalg.norm(b - b_expected) <= tol(b, b_expected)
    assert np.linalg.norm(h - h_expected) <= tol(h, h_expected)


def test_one_left_right_residual():
    r = left_right_residual()
    acc, _ = accumulate([r])
    h, b = acc.stitch_double_mt(identity_adjoints(2), identity_adjoints(2), False)
    j = add_res_to_j(r, np.zeros((0, 30)))
    b_expected = j.T @ r.jacobian.res_f.astype(float)
    h_expected = j.T @ j
    assert np.linalg.norm(b - b_expected) <= tol(b, b_expected)
    assert np.linalg.norm(h - h_expected) <= tol(h, h_expected)


def test_left_left_and_left_right_residual():
    llr = left_left_residual()
    lrr = left_right_residual()
    acc, _ = accumulate([llr, lrr])
    h, _ = acc.stitch_double_mt(identity_adjoints(2), identity_adjoints(2), False)
    j = add_res_to_j(llr, np.zeros((0, 30)))
    j = add_res_to_j(lrr, j)
    h_expected = j.T @ j
    assert np.linalg.norm(h - h_expected) <= tol(h, h_expected)


def test_hessian_is_symmetric():
    acc, _ = accumulate([left_left_residual(), left_right_residual()])
    h, _ = acc.stitch_double(identity_adjoints(2), identity_adjoints(2))
    assert np.allclose(h, h.T)


def test_nres_counts_active_residuals():
    inactive = left_left_residual()
    inactive.is_active = False
    acc, _ = accumulate([left_left_residual(), inactive, left_right_residual()])
    assert acc.nres[0] == 2


def test_active_mode_skips_linearized_and_sets_active_terms():
    r = left_left_residual()
    r.is_linearized = True
    acc, point = accumulate([r])
    assert acc.nres[0] == 0
    assert point.hdd_acc_af == 0.0

    acc2, point2 = accumulate([left_left_residual()])
    jac = left_left_residual().jacobian
    expected = float(jac.jpdd @ (jac.jidx2 @ jac.jpdd))
    assert point2.hdd_acc_af == pytest.approx(expected, rel=1e-5)


def test_linearized_mode_with_zero_delta_matches_active():
    active_acc, _ = accumulate([left_left_residual()])
    h_active, b_active = active_acc.stitch_double(identity_adjoints(2), identity_adjoints(2))

    r = left_left_residual()
    r.is_linearized = True
    r.res_to_zero_f = r.jacobian.res_f.copy()
    acc = AccumulatedTopHessian()
    acc.set_zero(2)
    point = EFPoint(PointState())
    point.residuals_all.append(r)
    acc.add_point(point, AccumulationMode.LINEARIZED, np.zeros((4, 8)), np.zeros(14))
    h, b = acc.stitch_double(identity_adjoints(2), identity_adjoints(2))
    assert np.allclose(h, h_active)
    assert np.allclose(b, b_active)
    assert point.hdd_acc_lf > 0


def test_linearized_mode_needs_deltas():
    r = left_left_residual()
    r.is_linearized = True
    acc = AccumulatedTopHessian()
    acc.set_zero(2)
    point = EFPoint(PointState())
    point.residuals_all.append(r)
    with pytest.raises(ValueError):
        acc.add_point(point, AccumulationMode.LINEARIZED, None, np.zeros(14))


def test_marginalize_requires_linearized_residual():
    acc = AccumulatedTopHessian()
    acc.set_zero(2)
    point = EFPoint(PointState())
    point.residuals_all.append(left_left_residual())
    with pytest.raises(ValueError):
        acc.add_point(point, AccumulationMode.MARGINALIZE, None, np.zeros(14))


def test_marginalize_clears_active_terms():
    r = left_left_residual()
    r.is_linearized = True
    r.res_to_zero_f = r.jacobian.res_f.copy()
    acc = AccumulatedTopHessian()
    acc.set_zero(2)
    point = EFPoint(PointState())
    point.hdd_acc_af = 5.0
    point.bd_acc_af = 3.0
    point.residuals_all.append(r)
    acc.add_point(point, AccumulationMode.MARGINALIZE, None, np.zeros(14))
    assert point.hdd_acc_af == 0.0
    assert point.bd_acc_af == 0.0
    assert point.hdd_acc_lf > 0


def test_multithreaded_matches_single_slot():
    single, _ = accumulate([left_left_residual(), left_right_residual()])
    h_single, b_single = single.stitch_double(identity_adjoints(2), identity_adjoints(2))

    acc = AccumulatedTopHessian(num_threads=3)
    for tid in range(3):
        acc.set_zero(2, tid)
    p1 = EFPoint(PointState())
    p1.residuals_all.append(left_left_residual())
    p2 = EFPoint(PointState())
    p2.residuals_all.append(left_right_residual())
    acc.add_points([p1], AccumulationMode.ACTIVE, None, np.zeros(14), tid=0)
    acc.add_points([p2], AccumulationMode.ACTIVE, None, np.zeros(14), tid=2)
    h, b = acc.stitch_double_mt(identity_adjoints(2), identity_adjoints(2), True)
    assert np.allclose(h, h_single, rtol=1e-6, atol=1e-6)
    assert np.allclose(b, b_single, rtol=1e-6, atol=1e-6)
    assert acc.nres[0] == 2


def test_multithreaded_requires_equal_sizes():
    acc = AccumulatedTopHessian(num_threads=2)
    acc.set_zero(2, 0)
    acc.set_zero(3, 1)
    with pytest.raises(ValueError):
        acc.stitch_double_mt(identity_adjoints(2), identity_adjoints(2), True)


def test_invalid_tid_raises():
    acc = AccumulatedTopHessian(num_threads=2)
    with pytest.raises(ValueError):
        acc.set_zero(2, 5)


def test_add_prior():
    acc = AccumulatedTopHessian()
    acc.set_zero(1)
    frame = EFFrame(key_frame_id=0, prior=np.arange(1, 9), delta_prior=np.full(8, 2.0))
    c_prior = np.full(14, 3.0)
    c_delta = np.full(14, 0.5)
    h, b = acc.add_prior(np.zeros((22, 22)), np.zeros(22), c_prior, c_delta, [frame])
    assert np.allclose(np.diag(h)[:14], 3.0)
    assert np.allclose(np.diag(h)[14:], np.arange(1, 9))
    assert np.allclose(b[:14], 1.5)
    assert np.allclose(b[14:], 2.0 * np.arange(1, 9))
    assert np.count_nonzero(h - np.diag(np.diag(h))) == 0