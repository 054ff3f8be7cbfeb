# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.

import argparse
import logging
import time

import jax.numpy as jnp

from sgo_jit.core.factor_graph import FactorGraph
from sgo_jit.slam.measurements import prior_residual, odom_se3_residual
from sgo_jit.optimization.solvers import GaussNewton, GNConfig, LevenbergMarquardt, LMConfig
from sgo_jit.optimization.sparse_optimizer import SparseOptimizer


def build_se3_chain(num_poses: int = 10):
    """
    Simple SE3 pose chain:
        pose0 --odom--> pose1 --odom--> ... --odom--> pose_{N-1}
    Prior on pose0, odom edges of +1m in x, no rotation.
    """
    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom_se3", odom_se3_residual)
    pose_ids = []

    # Initial guesses: slightly perturbed around ground truth [i, 0, 0, 0, 0, 0]
    for i in range(num_poses):
        init_val = jnp.array(
            [
                i + 0.1 * jnp.sin(0.3 * i),  # tx
                0.05 * jnp.cos(0.2 * i),     # ty
                0.0,                         # tz
                0.0,
                0.0,
                0.02 * jnp.sin(0.5 * i),     # yaw
            ]
        )
        pose_ids.append(fg.add_variable("pose_se3", init_val))

    fg.add_factor("prior", (pose_ids[0],), {"target": jnp.zeros(6)})

    meas = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
    for i in range(num_poses - 1):
        fg.add_factor("odom_se3", (pose_ids[i], pose_ids[i + 1]), {"measurement": meas})

    return fg, pose_ids


def run_benchmark(num_poses: int = 50, max_iters: int = 20, use_jit: bool = True, solver: str = "gn"):
    print("=== SE3 sparse optimizer benchmark ===")
    print(f"num_poses = {num_poses}, max_iters = {max_iters}, use_jit = {use_jit}, solver = {solver}")

    fg, pose_ids = build_se3_chain(num_poses)
    opt = SparseOptimizer(fg, compute_batch_statistics=True, use_jit=use_jit)
    if solver == "lm":
        opt.set_algorithm(LevenbergMarquardt(LMConfig()))
    else:
        opt.set_algorithm(GaussNewton(GNConfig(damping=1e-3, max_step_norm=1.0)))

    if not opt.initialize_optimization():
        raise RuntimeError("initialize_optimization failed")

    # Warmup: compile the edge kernels on a throwaway snapshot
    opt.push()
    opt.optimize(1)
    opt.pop()
    opt.batch_statistics = []

    t0 = time.time()
    iterations = opt.optimize(max_iters)
    t1 = time.time()

    elapsed = t1 - t0
    print(f"Iterations: {iterations}")
    print(f"Elapsed time: {elapsed * 1000:.3f} ms")
    print(f"Final chi2: {opt.active_chi2():.6e}")
    if opt.batch_statistics:
        lin = sum(s.time_linearize for s in opt.batch_statistics)
        print(f"Linearization time: {lin * 1000:.3f} ms")

    print(f"pose0 (opt):   {fg.vertices[pose_ids[0]].value}")
    print(f"poseN-1 (opt): {fg.vertices[pose_ids[-1]].value}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--num-poses", type=int, default=50)
    parser.add_argument("--max-iters", type=int, default=20)
    parser.add_argument("--solver", choices=("gn", "lm"), default="gn")
    parser.add_argument("--no-jit", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    run_benchmark(
        num_poses=args.num_poses,
        max_iters=args.max_iters,
        use_jit=not args.no_jit,
        solver=args.solver,
    )
