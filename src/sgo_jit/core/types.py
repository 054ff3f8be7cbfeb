# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Core typed data structures for SGO-JIT.

This module defines the graph-level containers the sparse optimizer works
on. They are plain, mutable dataclasses: numerical work happens
in JAX-compiled functions built by the optimization layer, while these
objects only carry structure, estimates and cached linearization results.

Classes
-------
Vertex
    A state block in the factor graph:
    - id: unique identifier
    - type: string key selecting the manifold (e.g. "pose_se3", "landmark3d")
    - value: current estimate, a 1-D JAX array
    - fixed / marginalized: flags set by the caller before initialization
    - hessian_index: block column assigned by the optimizer (-1 if inactive)

    Each vertex also owns a private LIFO stack of estimate snapshots used for
    speculative steps (push / pop / discard_top).

Edge
    A measurement constraint over an ordered tuple of vertices:
    - id: unique identifier
    - type: string key selecting a registered residual function
    - var_ids: ordered vertex ids passed to the residual
    - params: measurement, weights and any other residual parameters
    - information: optional information matrix (identity if None)
    - level: optimization level for multi-resolution graphs
    - robust_kernel: optional robust cost applied to the chi-square

    The optimizer caches the error, Jacobians and chi-square on the edge
    after `compute_active_errors` / `linearize_system`.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import NewType, Dict, Any, List, Optional

import jax.numpy as jnp

NodeId = NewType("NodeId", int)
EdgeId = NewType("EdgeId", int)

# Tangent dimension for vertex types whose stored value is not the tangent.
_TANGENT_DIMS: Dict[str, int] = {
    "pose_se3": 6,
}


@dataclass(eq=False)
class Vertex:
    """State block in the factor graph."""
    id: NodeId
    type: str          # e.g. "pose_se3", "landmark3d", "scalar"
    value: Any         # JAX array holding the current estimate
    fixed: bool = False
    marginalized: bool = False
    hessian_index: int = -1
    _backup: List[Any] = field(default_factory=list, repr=False)

    @property
    def dimension(self) -> int:
        dim = _TANGENT_DIMS.get(self.type)
        if dim is not None:
            return dim
        return int(jnp.asarray(self.value).shape[0])

    # --- Estimate stack ---

    def push(self) -> None:
        self._backup.append(self.value)

    def pop(self) -> None:
        """Restore the last pushed estimate. No-op on an empty stack."""
        if not self._backup:
            return
        self.value = self._backup.pop()

    def discard_top(self) -> None:
        """Drop the last pushed estimate without restoring it."""
        if not self._backup:
            return
        self._backup.pop()

    @property
    def stack_size(self) -> int:
        return len(self._backup)


@dataclass(eq=False)
class Edge:
    """Measurement constraint connecting vertices."""
    id: EdgeId
    type: str          # e.g. "prior", "odom_se3", "pose_landmark_relative"
    var_ids: tuple[NodeId, ...]
    params: Dict[str, Any] = field(default_factory=dict)
    information: Optional[Any] = None
    level: int = 0
    robust_kernel: Optional[Any] = None

    # Filled in by the optimizer.
    error: Optional[jnp.ndarray] = field(default=None, repr=False)
    jacobians: Optional[List[Optional[jnp.ndarray]]] = field(default=None, repr=False)
    chi2: float = field(default=0.0, repr=False)
    robust_chi2: float = field(default=0.0, repr=False)

    def information_matrix(self, dim: int) -> jnp.ndarray:
        if self.information is None:
            return jnp.eye(dim)
        return jnp.asarray(self.information)
