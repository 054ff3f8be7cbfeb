# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Residual models (measurement edges) for SGO-JIT.

Each function here implements a residual

      r(x; params) ∈ ℝᵏ

where `x` is the concatenation of the estimates of the edge's vertices, in
`edge.var_ids` order. Edge types are mapped to these functions with
`FactorGraph.register_residual`.

The module also provides *initial-estimate* functions, registered with
`FactorGraph.register_initializer`, which `SparseOptimizer.compute_initial_guess`
uses to propagate estimates outwards from fixed vertices and priors. An
initializer receives the current estimates of the edge's vertices (with
`None` at the position to initialize), the edge params and that position,
and returns a new estimate or `None` if it cannot produce one.

Families
--------
1. Priors and Euclidean edges
    • `prior_residual`:          r = x − target
    • `odom_residual`:           r = (x₁ − x₀) − measurement

2. SE(3) edges
    • `odom_se3_residual`:
          r = log( meas⁻¹ ∘ (T₀⁻¹ ∘ T₁) )   (6-vector form)
    • `pose_landmark_relative_residual`:
          r = R₀ᵀ (l − t₀) − measurement

3. Weighting
    Residuals accept an optional "weight" param handled by `_apply_weight`.
    Full information matrices and robust kernels are attached to the edge
    instead and handled by the optimizer.
"""

from __future__ import annotations
from typing import Dict, Optional, Tuple

import jax.numpy as jnp

from sgo_jit.core.math3d import (
    compose_pose_se3,
    invert_pose_se3,
    relative_pose_se3,
    so3_exp,
)


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        return jnp.sqrt(w) * residual
    else:
        return w * residual


def sigma_to_weight(sigma):
    """
    Convert a standard deviation (or vector of them) into a weight usable by
    `_apply_weight`: w = 1 / sigma^2.
    """
    s = jnp.asarray(sigma)
    return 1.0 / (s * s)


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single vertex:
        residual = x - target
    Works for any vector dimension.
    """
    r = x - params["target"]
    return _apply_weight(r, params)


def odom_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Euclidean odometry between two equally sized vertices:

        x = [pose0, pose1]
        residual = (pose1 - pose0) - measurement
    """
    dim = x.shape[0] // 2
    pose0 = x[:dim]
    pose1 = x[dim:]
    r = (pose1 - pose0) - params["measurement"]
    return _apply_weight(r, params)


def odom_se3_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Geodesic SE(3) relative-pose residual.

    pose0, pose1 in R^6: [tx, ty, tz, wx, wy, wz]
    measurement in R^6: expected pose of 1 in the frame of 0

    The residual is the pose error meas⁻¹ ∘ (pose0⁻¹ ∘ pose1), which is zero
    exactly when the relative pose matches the measurement.
    """
    assert x.shape[0] == 12, "odom_se3_residual expects two 6D poses stacked."

    rel = relative_pose_se3(x[:6], x[6:])
    r = relative_pose_se3(params["measurement"], rel)
    return _apply_weight(r, params)


def pose_landmark_relative_residual(x: jnp.ndarray, params: dict) -> jnp.ndarray:
    """
    Landmark position observed in the frame of an SE(3) pose.

    x: concatenated [pose(6), landmark(3)]
    params:
      - "measurement": landmark position in the pose frame (R^3)

        residual = R^T (landmark - t) - measurement
    """
    pose = x[:6]
    landmark = x[6:9]

    R = so3_exp(pose[3:6])
    landmark_pose = R.T @ (landmark - pose[:3])

    r = landmark_pose - params["measurement"]
    return _apply_weight(r, params)


# --- Initial estimates ---

Known = Tuple[Optional[jnp.ndarray], ...]


def prior_initializer(values: Known, params: dict, target: int) -> Optional[jnp.ndarray]:
    return jnp.asarray(params["target"])


def odom_initializer(values: Known, params: dict, target: int) -> Optional[jnp.ndarray]:
    meas = jnp.asarray(params["measurement"])
    if target == 1 and values[0] is not None:
        return values[0] + meas
    if target == 0 and values[1] is not None:
        return values[1] - meas
    return None


def odom_se3_initializer(values: Known, params: dict, target: int) -> Optional[jnp.ndarray]:
    meas = jnp.asarray(params["measurement"])
    if target == 1 and values[0] is not None:
        return compose_pose_se3(values[0], meas)
    if target == 0 and values[1] is not None:
        return compose_pose_se3(values[1], invert_pose_se3(meas))
    return None


def pose_landmark_initializer(values: Known, params: dict, target: int) -> Optional[jnp.ndarray]:
    """Place the landmark from the pose; a pose cannot be recovered from one landmark."""
    if target != 1 or values[0] is None:
        return None
    pose = values[0]
    R = so3_exp(pose[3:6])
    return R @ jnp.asarray(params["measurement"]) + pose[:3]
