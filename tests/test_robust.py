from __future__ import annotations

import math

import pytest

from sgo_jit.slam.robust import RobustKernel, RobustCostType


@pytest.mark.parametrize("kind", list(RobustCostType))
def test_kernels_are_quadratic_near_zero(kind):
    rho, rho1 = RobustKernel(kind, delta=2.0).robustify(1e-8)

    assert rho == pytest.approx(1e-8, rel=1e-3)
    assert rho1 == pytest.approx(1.0, rel=1e-3)


def test_huber_is_linear_beyond_delta():
    kernel = RobustKernel(RobustCostType.HUBER, delta=1.5)

    rho, rho1 = kernel.robustify(16.0)

    assert rho == pytest.approx(2.0 * 4.0 * 1.5 - 1.5 ** 2)
    assert rho1 == pytest.approx(1.5 / 4.0)


def test_cauchy():
    rho, rho1 = RobustKernel(RobustCostType.CAUCHY, delta=1.0).robustify(3.0)

    assert rho == pytest.approx(math.log(4.0))
    assert rho1 == pytest.approx(0.25)


def test_tukey_saturates():
    kernel = RobustKernel(RobustCostType.TUKEY, delta=2.0)

    assert kernel.robustify(100.0) == (pytest.approx(4.0 / 3.0), 0.0)
    assert kernel.robustify(4.0)[0] == pytest.approx(4.0 / 3.0)


def test_l2_is_identity():
    assert RobustKernel(RobustCostType.L2).robustify(42.0) == (42.0, 1.0)
