import numpy as np
import pytest

from stereo_odometry.config import RobustLoss
from stereo_odometry.robust import RobustKernel


def test_none_is_plain_least_squares():
    k = RobustKernel(RobustLoss.NONE, 0.0)
    r = np.array([-3.0, 0.0, 100.0])
    np.testing.assert_array_equal(k.weights(r), 1.0)
    assert k.cost(r) == pytest.approx(np.mean(0.5 * r * r))
    assert k.scale(r) == 1.0


def test_huber_weights_and_cost():
    k = RobustKernel("huber", 4.0)
    r = np.array([0.0, 2.0, -4.0, 8.0, -40.0])
    np.testing.assert_allclose(k.weights(r), [1.0, 1.0, 1.0, 0.5, 0.1])
    np.testing.assert_allclose(k.rho(r), [0.0, 2.0, 8.0, 4.0 * (8.0 - 2.0), 4.0 * (40.0 - 2.0)])
    # continuous at the threshold
    assert k.rho(np.array([4.0 + 1e-9]))[0] == pytest.approx(8.0)


def test_student_t_weights_and_scale():
    nu = 5.0
    k = RobustKernel(RobustLoss.STUDENT_T, nu)
    assert k.weights(np.array([0.0]), scale=2.0)[0] == pytest.approx((nu + 1.0) / nu)
    w = k.weights(np.array([0.0, 1.0, 10.0, 100.0]), scale=1.0)
    assert np.all(np.diff(w) < 0.0)

    r = np.random.default_rng(0).normal(scale=3.0, size=20000)
    s = k.scale(r)
    assert 0.6 * 3.0 < s < 1.2 * 3.0
    # gross outliers barely move the scale estimate
    r_out = r.copy()
    r_out[:1000] = 500.0
    assert k.scale(r_out) < 2.0 * s


def test_student_t_cost_is_monotonic_in_residual():
    k = RobustKernel("student_t", 3.0)
    rho = k.rho(np.array([0.0, 0.5, 1.0, 5.0, 50.0]), scale=1.5)
    assert rho[0] == 0.0
    assert np.all(np.diff(rho) > 0.0)


def test_empty_residuals():
    for loss in RobustLoss:
        k = RobustKernel(loss, 1.0)
        assert k.cost(np.zeros(0)) == 0.0
        assert k.scale(np.zeros(0)) == 1.0


@pytest.mark.parametrize("loss", ["huber", "student_t"])
def test_invalid_parameter(loss):
    with pytest.raises(ValueError):
        RobustKernel(loss, 0.0)
