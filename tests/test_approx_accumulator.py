import numpy as np
import pytest

from dsobackend.approx_accumulator import AccumulatorApprox

X_C = np.arange(1, 9, dtype=np.float32)
X_X = np.arange(9, 15, dtype=np.float32)
Y_C = np.linspace(-1.0, 1.0, 8, dtype=np.float32)
Y_X = np.linspace(2.0, 3.0, 6, dtype=np.float32)
X = np.concatenate((X_C, X_X))
Y = np.concatenate((Y_C, Y_X))


@pytest.fixture
def acc():
    a = AccumulatorApprox()
    a.initialize()
    return a


def test_weight_a_gives_outer_product_of_x(acc):
    acc.update(X_C, X_X, Y_C, Y_X, 1.0, 0.0, 0.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, :14], np.outer(X, X), rtol=1e-6)
    assert acc.num == 1


def test_weight_c_gives_outer_product_of_y(acc):
    acc.update(X_C, X_X, Y_C, Y_X, 0.0, 0.0, 1.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, :14], np.outer(Y, Y), rtol=1e-5, atol=1e-6)


def test_cross_weight_couples_unit_vectors(acc):
    x_c = np.zeros(8)
    x_c[0] = 1.0
    y_c = np.zeros(8)
    y_c[1] = 1.0
    acc.update(x_c, np.zeros(6), y_c, np.zeros(6), 0.0, 1.0, 0.0)
    h = acc.finish()
    assert h[0, 1] == 1.0
    assert h[1, 0] == 1.0
    assert h[0, 0] == 0.0


def test_longer_camera_rows_use_only_first_eight(acc):
    long_x = np.concatenate((X_C, np.full(6, 100.0)))
    acc.update(long_x, X_X, Y_C, Y_X, 1.0, 0.0, 0.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, :14], np.outer(X, X), rtol=1e-6)


def test_updates_sum_up(acc):
    acc.update(X_C, X_X, Y_C, Y_X, 1.0, 0.0, 0.0)
    acc.update(X_C, X_X, Y_C, Y_X, 1.0, 0.0, 0.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, :14], 2 * np.outer(X, X), rtol=1e-6)
    assert acc.num == 2


def test_finished_matrix_is_symmetric(acc):
    acc.update(X_C, X_X, Y_C, Y_X, 0.3, -0.7, 1.2)
    acc.update_top_right(X_C, X_X, Y_C, Y_X, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    acc.update_bot_right(1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    h = acc.finish()
    np.testing.assert_array_equal(h, h.T)


def test_top_right_columns(acc):
    acc.update_top_right(X_C, X_X, Y_C, Y_X, 1.0, 0.0, 0.0, 1.0, 0.0, 0.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, 14], X)
    np.testing.assert_allclose(h[:14, 15], Y)
    np.testing.assert_allclose(h[:14, 16], np.zeros(14))
    np.testing.assert_allclose(h[14, :14], X)
    assert acc.num == 0


def test_top_right_residual_column(acc):
    acc.update_top_right(X_C, X_X, Y_C, Y_X, 0.0, 0.0, 0.0, 0.0, 2.0, 3.0)
    h = acc.finish()
    np.testing.assert_allclose(h[:14, 16], 2.0 * X + 3.0 * Y, rtol=1e-6)


def test_bot_right_block(acc):
    acc.update_bot_right(1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    h = acc.finish()
    expected = np.array([[1.0, 2.0, 3.0], [2.0, 4.0, 5.0], [3.0, 5.0, 6.0]])
    np.testing.assert_array_equal(h[14:, 14:], expected)


def test_initialize_clears_sums(acc):
    acc.update(X_C, X_X, Y_C, Y_X, 1.0, 1.0, 1.0)
    acc.update_bot_right(1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    acc.initialize()
    h = acc.finish()
    assert np.count_nonzero(h) == 0
    assert acc.num == 0


def test_short_input_is_rejected(acc):
    with pytest.raises(ValueError):
        acc.update(X_C[:5], X_X, Y_C, Y_X, 1.0, 0.0, 0.0)
    with pytest.raises(ValueError):
        acc.update_top_right(X_C, X_X[:3], Y_C, Y_X, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0)