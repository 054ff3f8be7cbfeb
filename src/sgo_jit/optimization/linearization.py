# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
JIT-compiled edge evaluation for the sparse optimizer.

This module turns the residual functions registered on a `FactorGraph`
into compiled per-edge kernels:

    • error(values, params)      -> r                  (m,)
    • jacobians(values, params)  -> (J_0, ..., J_k)     J_i: (m, d_i)

where `values` is the tuple of the edge's vertex estimates and `d_i` is
the tangent dimension of vertex i. The Jacobians are taken with respect to
a tangent perturbation applied through `slam.manifold.oplus`,

    J_i = ∂ r(x_0, ..., x_i ⊞ δ_i, ..., x_k) / ∂ δ_i   at δ = 0,

which is exactly the parameterization `SparseOptimizer.update` uses to
apply a solved increment. Jacobians are derived by `jax.jacfwd`.

Caching
-------
Compilation happens once per (edge type, residual function, manifold
signature, dimension signature). Edges of the same type over the same kind
of vertices share one compiled kernel; the measurement params are passed as
a pytree argument, so different measurements do not trigger recompilation.

Notes
-----
Residual functions must be pure JAX functions of (stacked_values, params):
avoid Python-side branching on traced values inside them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Optional, Tuple

import jax
import jax.numpy as jnp

from sgo_jit.core.factor_graph import FactorGraph, ResidualFn
from sgo_jit.core.types import Edge, Vertex
from sgo_jit.slam.manifold import get_manifold_for_var_type, oplus


@dataclass
class JittedEdge:
    """
    Compiled error and Jacobian kernels for one edge signature.

    Usage:
        kernel = JittedEdge.from_residual(prior_residual, ("euclidean",), (3,))
        r = kernel.error((x0,), params)
        (J0,) = kernel.jacobians((x0,), params)
    """
    error: Callable[..., jnp.ndarray]
    jacobians: Callable[..., Tuple[jnp.ndarray, ...]]
    manifolds: Tuple[str, ...]

    @staticmethod
    def from_residual(
        residual_fn: ResidualFn,
        manifolds: Tuple[str, ...],
        dims: Tuple[int, ...],
        use_jit: bool = True,
    ) -> "JittedEdge":
        def error(values, params):
            stacked = jnp.concatenate([jnp.reshape(v, (-1,)) for v in values])
            return jnp.reshape(residual_fn(stacked, params), (-1,))

        def perturbed(deltas, values, params):
            moved = tuple(
                oplus(m, v, d) for m, v, d in zip(manifolds, values, deltas)
            )
            return error(moved, params)

        def jacobians(values, params):
            deltas = tuple(
                jnp.zeros((d,), dtype=jnp.result_type(v, jnp.float32))
                for d, v in zip(dims, values)
            )
            return jax.jacfwd(perturbed)(deltas, values, params)

        if use_jit:
            return JittedEdge(jax.jit(error), jax.jit(jacobians), manifolds)
        return JittedEdge(error, jacobians, manifolds)


@dataclass
class EdgeLinearizer:
    """
    Evaluates errors and Jacobians of graph edges at the current estimates.
    """
    graph: FactorGraph
    use_jit: bool = True
    _cache: Dict[Hashable, JittedEdge] = field(default_factory=dict, repr=False)

    def _vertices(self, e: Edge) -> List[Vertex]:
        return [self.graph.vertices[nid] for nid in e.var_ids]

    def kernel_for(self, e: Edge) -> JittedEdge:
        residual_fn = self.graph.residual_fn_for(e)
        vertices = self._vertices(e)
        manifolds = tuple(get_manifold_for_var_type(v.type) for v in vertices)
        dims = tuple(v.dimension for v in vertices)

        key = (e.type, id(residual_fn), manifolds, dims)
        kernel = self._cache.get(key)
        if kernel is None:
            kernel = JittedEdge.from_residual(residual_fn, manifolds, dims, self.use_jit)
            self._cache[key] = kernel
        return kernel

    def error(self, e: Edge) -> jnp.ndarray:
        values = tuple(jnp.asarray(v.value) for v in self._vertices(e))
        return self.kernel_for(e).error(values, e.params)

    def jacobians(self, e: Edge) -> List[Optional[jnp.ndarray]]:
        """
        Jacobians of the edge error w.r.t. each vertex, None for fixed ones.
        """
        vertices = self._vertices(e)
        values = tuple(jnp.asarray(v.value) for v in vertices)
        full = self.kernel_for(e).jacobians(values, e.params)
        return [None if v.fixed else J for v, J in zip(vertices, full)]

    def clear_cache(self) -> None:
        self._cache.clear()
