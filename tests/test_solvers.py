from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from sgo_jit.core.factor_graph import FactorGraph
from sgo_jit.core.math3d import relative_pose_se3, so3_exp
from sgo_jit.slam.measurements import (
    prior_residual,
    odom_residual,
    odom_se3_residual,
    pose_landmark_relative_residual,
)
from sgo_jit.slam.robust import RobustKernel, RobustCostType
from sgo_jit.optimization.solvers import (
    GaussNewton,
    GNConfig,
    LevenbergMarquardt,
    LMConfig,
    SolverStatus,
)
from sgo_jit.optimization.sparse_optimizer import SparseOptimizer


def _chain_1d(values, prior: bool = True) -> tuple[FactorGraph, list]:
    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom", odom_residual)
    ids = [fg.add_variable("pose1d", jnp.array([v])) for v in values]
    if prior:
        fg.add_factor("prior", (ids[0],), {"target": jnp.array([0.0])})
    for i in range(len(ids) - 1):
        fg.add_factor("odom", (ids[i], ids[i + 1]), {"measurement": jnp.array([1.0])})
    return fg, ids


def _ground_truth_se3(n: int) -> list:
    return [
        jnp.array([1.0 * i, 0.1 * i, 0.0, 0.0, 0.0, 0.05 * i], dtype=jnp.float32)
        for i in range(n)
    ]


def _se3_chain(n: int = 4) -> tuple[FactorGraph, list, list]:
    """
    SE(3) pose chain with exact odometry and a prior on the first pose.
    Initial estimates are perturbed away from the ground truth.
    """
    gt = _ground_truth_se3(n)
    rng = np.random.default_rng(7)

    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom_se3", odom_se3_residual)

    ids = []
    for i, pose in enumerate(gt):
        noise = 0.0 if i == 0 else rng.normal(scale=0.05, size=6)
        ids.append(fg.add_variable("pose_se3", pose + jnp.asarray(noise, dtype=jnp.float32)))

    fg.add_factor("prior", (ids[0],), {"target": gt[0]})
    for i in range(n - 1):
        meas = relative_pose_se3(gt[i], gt[i + 1])
        fg.add_factor("odom_se3", (ids[i], ids[i + 1]), {"measurement": meas})
    return fg, ids, gt


def test_levenberg_marquardt_solves_linear_chain():
    fg, ids = _chain_1d([0.3, 0.8, 1.3, 1.8])
    opt = SparseOptimizer(fg)
    opt.set_algorithm(LevenbergMarquardt())
    assert opt.initialize_optimization()

    assert opt.optimize(10) >= 1

    for k, nid in enumerate(ids):
        assert float(fg.vertices[nid].value[0]) == pytest.approx(float(k), abs=1e-3)


def test_gauss_newton_se3_chain_converges():
    fg, ids, gt = _se3_chain(4)
    opt = SparseOptimizer(fg)
    opt.set_algorithm(GaussNewton(GNConfig(damping=1e-6)))
    assert opt.initialize_optimization()
    opt.compute_active_errors()
    initial = opt.active_chi2()

    assert opt.optimize(10) == 10

    assert opt.active_chi2() < 1e-2 * initial
    for nid, pose in zip(ids, gt):
        np.testing.assert_allclose(np.array(fg.vertices[nid].value), np.array(pose), atol=1e-2)


def test_levenberg_marquardt_chi2_never_increases():
    """
    Rejected LM steps are rolled back through the estimate stack, so the
    active chi2 at the end of each iteration is monotonically non-increasing.
    """
    fg, ids, gt = _se3_chain(5)
    opt = SparseOptimizer(fg, compute_batch_statistics=True)
    opt.set_algorithm(LevenbergMarquardt())
    assert opt.initialize_optimization()
    opt.compute_active_errors()
    initial = opt.active_chi2()

    opt.optimize(8)

    chi2 = [initial] + [s.chi2 for s in opt.batch_statistics]
    for before, after in zip(chi2, chi2[1:]):
        assert after <= before + 1e-9
    assert chi2[-1] < initial
    assert all(s.levenberg_iterations >= 1 for s in opt.batch_statistics)


def test_levenberg_marquardt_terminates_at_optimum():
    """
    At an exact optimum no trial step lowers the error; LM gives up after
    its trial budget and the driver stops after that single iteration.
    """
    fg, ids = _chain_1d([0.0, 1.0, 2.0])
    strategy = LevenbergMarquardt(LMConfig(max_trials_after_failure=4))
    opt = SparseOptimizer(fg)
    opt.set_algorithm(strategy)
    assert opt.initialize_optimization()

    assert opt.optimize(5) == 1
    assert strategy.levenberg_iterations == 4
    # rejected trials were rolled back
    assert [float(fg.vertices[n].value[0]) for n in ids] == [0.0, 1.0, 2.0]
    assert all(fg.vertices[n].stack_size == 0 for n in ids)


def test_gauss_newton_singular_system_fails():
    """
    Without a prior the chain has a free global offset; undamped normal
    equations are singular and the run reports failure.
    """
    fg, _ = _chain_1d([0.0, 2.0], prior=False)
    opt = SparseOptimizer(fg)
    opt.set_algorithm(GaussNewton(GNConfig(damping=0.0)))
    assert opt.initialize_optimization()

    assert opt.optimize(3) == 0


def test_gauss_newton_step_tolerance_terminates():
    fg, _ = _chain_1d([0.0, 1.0, 2.0])
    opt = SparseOptimizer(fg)
    opt.set_algorithm(GaussNewton(GNConfig(step_tolerance=1e-6)))
    assert opt.initialize_optimization()

    assert opt.optimize(10) == 1


def test_landmark_with_fixed_pose():
    fg = FactorGraph()
    fg.register_residual("pose_landmark_relative", pose_landmark_relative_residual)
    pose = jnp.array([1.0, 2.0, 0.5, 0.0, 0.0, 0.3])
    p0 = fg.add_variable("pose_se3", pose, fixed=True)
    l0 = fg.add_variable("landmark3d", jnp.zeros(3))
    meas = jnp.array([2.0, -1.0, 0.5])
    fg.add_factor("pose_landmark_relative", (p0, l0), {"measurement": meas})

    opt = SparseOptimizer(fg)
    opt.set_algorithm(GaussNewton(GNConfig(damping=1e-8, max_step_norm=None)))
    assert opt.initialize_optimization()
    assert [v.id for v in opt.active_vertices] == [l0]

    assert opt.optimize(2) == 2

    expected = so3_exp(pose[3:]) @ meas + pose[:3]
    np.testing.assert_allclose(np.array(fg.vertices[l0].value), np.array(expected), atol=1e-4)
    np.testing.assert_array_equal(np.array(fg.vertices[p0].value), np.array(pose))


def test_robust_kernel_limits_outlier_influence():
    """
    With a Huber kernel on a gross outlier prior, the solution stays close
    to the consistent measurements instead of being pulled halfway.
    """
    def solve(kernel):
        fg, ids = _chain_1d([0.0, 1.0, 2.0])
        for _ in range(3):
            fg.add_factor("prior", (ids[2],), {"target": jnp.array([2.0])})
        fg.add_factor("prior", (ids[2],), {"target": jnp.array([50.0])}, robust_kernel=kernel)
        opt = SparseOptimizer(fg)
        opt.set_algorithm(LevenbergMarquardt())
        assert opt.initialize_optimization()
        opt.optimize(30)
        return float(fg.vertices[ids[2]].value[0])

    plain = solve(None)
    robust = solve(RobustKernel(RobustCostType.HUBER, delta=1.0))

    assert abs(robust - 2.0) < abs(plain - 2.0)
    assert abs(robust - 2.0) < 1.0


def test_solver_status_values():
    assert {s.name for s in SolverStatus} == {"OK", "TERMINATE", "FAIL"}
