# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Dense block linear system for the built-in solving strategies.

Given the optimizer's index mapping and the linearized active edges, this
module assembles the normal equations

    H = Σ_e  J_eᵀ (ρ'_e Ω_e) J_e
    b = Σ_e  J_eᵀ (ρ'_e Ω_e) e_e

block by block, where each vertex occupies the columns
[offset, offset + dimension) given by its `hessian_index`. Jacobians of
vertices without an index (fixed vertices) are skipped.

Accumulation uses NumPy in-place adds on a preallocated matrix; the result
is handed to JAX for the solve. Marginal covariance blocks are read from
the dense inverse of H.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from sgo_jit.core.types import Edge, Vertex


@dataclass(frozen=True)
class BlockLayout:
    """
    Scalar layout of the stacked system.

    - offsets[i]: first scalar row/column of block index i
    - dims[i]: size of block index i
    - total: dimension of the stacked system
    """
    offsets: Tuple[int, ...]
    dims: Tuple[int, ...]
    total: int

    @staticmethod
    def from_index_mapping(index_mapping: Sequence[Vertex]) -> "BlockLayout":
        offsets: List[int] = []
        dims: List[int] = []
        offset = 0
        for v in index_mapping:
            offsets.append(offset)
            dims.append(v.dimension)
            offset += v.dimension
        return BlockLayout(tuple(offsets), tuple(dims), offset)

    def block_slice(self, block: int) -> slice:
        start = self.offsets[block]
        return slice(start, start + self.dims[block])


def build_normal_equations(
    layout: BlockLayout,
    edges: Iterable[Edge],
    vertices: Dict,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assemble (H, b) from edges whose `error` and `jacobians` are populated.

    `vertices` maps NodeId -> Vertex and is used to look up the block index
    of each Jacobian.
    """
    H = np.zeros((layout.total, layout.total))
    b = np.zeros(layout.total)

    for e in edges:
        if e.error is None or e.jacobians is None:
            continue
        err = np.asarray(e.error, dtype=float)
        omega = np.asarray(e.information_matrix(err.shape[0]), dtype=float)
        if e.robust_kernel is not None:
            _, rho1 = e.robust_kernel.robustify(float(e.chi2))
            omega = rho1 * omega

        blocks = []
        for nid, J in zip(e.var_ids, e.jacobians):
            if J is None:
                continue
            idx = vertices[nid].hessian_index
            if idx < 0:
                continue
            blocks.append((layout.block_slice(idx), np.asarray(J, dtype=float)))

        for sl_i, J_i in blocks:
            JtO = J_i.T @ omega
            b[sl_i] += JtO @ err
            for sl_j, J_j in blocks:
                H[sl_i, sl_j] += JtO @ J_j

    return H, b


def solve_damped(H: np.ndarray, b: np.ndarray, damping: float) -> jnp.ndarray:
    """
    Solve (H + damping * I) dx = -b. Returns a non-finite vector if the
    system is singular.
    """
    n = H.shape[0]
    H_damped = jnp.asarray(H) + damping * jnp.eye(n)
    return jnp.linalg.solve(H_damped, -jnp.asarray(b))


def extract_marginals(
    H: np.ndarray,
    layout: BlockLayout,
    block_indices: Sequence[Tuple[int, int]],
) -> Optional[Dict[Tuple[int, int], jnp.ndarray]]:
    """
    Blocks of H⁻¹ for the requested (row, col) block index pairs, or None if
    H is singular or an index is out of range.
    """
    n_blocks = len(layout.dims)
    for r, c in block_indices:
        if not (0 <= r < n_blocks and 0 <= c < n_blocks):
            return None

    cov = jnp.linalg.inv(jnp.asarray(H))
    if not bool(jnp.all(jnp.isfinite(cov))):
        return None

    return {
        (r, c): cov[layout.block_slice(r), layout.block_slice(c)]
        for r, c in block_indices
    }
