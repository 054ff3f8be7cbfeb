# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Manifold metadata and retractions for SGO-JIT vertices.

The sparse optimizer solves for increments in a local tangent space while
the estimates live on a manifold (SE(3) for poses, ℝⁿ for Euclidean
variables). This module is the single place that knows how a vertex type
maps to a manifold and how a tangent increment is applied to an estimate:

    • `TYPE_TO_MANIFOLD`            (vertex type → {"se3", "euclidean"})
    • `get_manifold_for_var_type`
    • `oplus(manifold, value, delta)`  (x ⊞ δ)
    • `build_manifold_metadata`     (active vertices → slice, manifold)

Integration with the Optimizer
------------------------------
`SparseOptimizer.update` splits the stacked increment into per-vertex
slices according to the index mapping and calls `oplus` on each one.
`EdgeLinearizer` differentiates `r(x ⊞ δ)` at δ = 0 with the same `oplus`,
so the Jacobians handed to a solving strategy are always expressed in the
coordinates in which the increment is applied.

Extending
---------
To add a new manifold:

    • Add entries to `TYPE_TO_MANIFOLD`
    • Add a branch to `oplus`
    • Register the tangent dimension in `core.types` if it differs from the
      length of the stored value
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

import jax.numpy as jnp

from sgo_jit.core.math3d import se3_retract_left
from sgo_jit.core.types import NodeId, Vertex

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "pose1d": "euclidean",
    "pose2d": "euclidean",
    "landmark3d": "euclidean",
    "scalar": "euclidean",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def oplus(manifold: str, value: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Apply a tangent increment to an estimate.

    - "se3": left retraction Exp(δ) ∘ x
    - "euclidean": x + δ
    """
    if manifold == "se3":
        return se3_retract_left(value, delta)
    return value + delta


def build_manifold_metadata(
    vertices: Sequence[Vertex],
    block_offsets: Dict[NodeId, int],
) -> Tuple[Dict[NodeId, slice], Dict[NodeId, str]]:
    """
    Build metadata for the current index mapping:

      - block_slices: NodeId -> slice in the stacked increment
      - manifold_types: NodeId -> 'se3' or 'euclidean'

    `block_offsets` holds the scalar offset of each indexed vertex, as
    produced by the optimizer's index mapping.
    """
    block_slices: Dict[NodeId, slice] = {}
    manifold_types: Dict[NodeId, str] = {}

    for v in vertices:
        start = block_offsets[v.id]
        block_slices[v.id] = slice(start, start + v.dimension)
        manifold_types[v.id] = get_manifold_for_var_type(v.type)

    return block_slices, manifold_types
