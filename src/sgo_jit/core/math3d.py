"""
SO(3) / SE(3) helpers on 6-vector poses for SGO-JIT.

Poses are stored as flat vectors

    [tx, ty, tz, wx, wy, wz]

(translation followed by an axis-angle rotation vector). This module keeps
the minimal Lie-group toolkit needed by SE(3) residuals, the SE(3) manifold
retraction used in `SparseOptimizer.update`, and SE(3) initial-estimate
propagation:

    • hat / vee              (R^3 <-> so(3))
    • so3_exp / so3_log      (rotation vector <-> rotation matrix)
    • compose_pose_se3       (a ∘ b)
    • invert_pose_se3        (a⁻¹)
    • relative_pose_se3      (a⁻¹ ∘ b)
    • se3_retract_left       (Exp(δ) ∘ pose)

All functions are pure JAX, so residuals built on them can be JIT-compiled
and differentiated with `jax.jacfwd` when the optimizer linearizes an edge.
Small-angle branches go through `jax.lax.cond` to keep derivatives finite at
the identity rotation.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE = 1e-5


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Split a 6D pose into (translation, rotation vector)."""
    v = jnp.asarray(v)
    return v[0:3], v[3:6]


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(M: jnp.ndarray) -> jnp.ndarray:
    """Inverse of hat, using the antisymmetric part of M."""
    return jnp.array([
        M[2, 1] - M[1, 2],
        M[0, 2] - M[2, 0],
        M[1, 0] - M[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Rodrigues' formula, with a first-order fallback near zero rotation.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3)

    def small_angle() -> jnp.ndarray:
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        # Guard the division; this branch is only taken for theta >= eps
        k = w / jnp.maximum(theta, _SMALL_ANGLE)
        K = hat(k)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map SO(3) -> R^3.

    The cosine is clamped to [-1, 1] so slightly non-orthonormal inputs do
    not produce NaNs.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        # R ~ I + hat(w)
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general_case(_) -> jnp.ndarray:
        factor = theta / (2.0 * jnp.sin(theta) + 1e-12)
        return factor * vee(R - R.T)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle_case, general_case, operand=None)


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Pose composition a ∘ b in 6D vector form."""
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    return jnp.concatenate([Ra @ tb + ta, so3_log(Ra @ Rb)])


def invert_pose_se3(a: jnp.ndarray) -> jnp.ndarray:
    """Pose inverse a⁻¹ in 6D vector form."""
    t, w = pose_vec_to_rt(a)
    R = so3_exp(w)
    return jnp.concatenate([-(R.T @ t), -w])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Relative pose a⁻¹ ∘ b in 6D vector form:

      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    return jnp.concatenate([Ra.T @ (tb - ta), so3_log(Ra.T @ Rb)])


def se3_retract_left(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Left-multiplicative retraction T_new = Exp(delta) * T_old, where the
    rotational part of `delta` is applied with so3_exp and its translational
    part is added after rotating the old translation:

        R_new = R_d R
        t_new = R_d t + t_d
    """
    t, w = pose_vec_to_rt(pose)
    dt, dw = pose_vec_to_rt(delta)

    R_d = so3_exp(dw)
    R_new = R_d @ so3_exp(w)
    t_new = R_d @ t + dt

    return jnp.concatenate([t_new, so3_log(R_new)])


def se3_identity() -> jnp.ndarray:
    return jnp.zeros(6, dtype=jnp.float32)
