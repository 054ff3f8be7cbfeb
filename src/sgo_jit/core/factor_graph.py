"""
Factor graph storage for SGO-JIT.

This module implements the graph model the sparse optimizer works on. The
graph is a plain Python object: it owns vertices and edges, keeps the
registry of residual functions (by edge type) and of optional initial
estimate functions, and answers the topology queries the optimizer needs.

The FactorGraph stores:
    - Vertices (state blocks, keyed by NodeId)
    - Edges (constraints, keyed by EdgeId)
    - Registered residual functions (by edge type)
    - Registered initial-estimate functions (by edge type)

Residual functions have the form

    r = residual_fn(stacked_values, params)

where `stacked_values` is the concatenation of the estimates of
`edge.var_ids` in order. They must be written in JAX so that the
optimization layer can JIT-compile them and derive Jacobians by autodiff.

Primary Methods
---------------
add_vertex(v) / add_variable(var_type, value)
    Insert a vertex (the latter allocates the next free NodeId).

add_edge(e) / add_factor(f_type, var_ids, params, ...)
    Insert an edge (the latter allocates the next free EdgeId).

remove_vertex(nid)
    Remove a vertex together with its incident edges and notify removal
    listeners (the optimizer registers itself as one).

compute_error(edge)
    Evaluate an edge's residual at the current estimates.

Notes
-----
The graph never assigns block indices or touches `hessian_index`; that is
the optimizer's job. Iteration helpers always return entities in id order so
everything built on top of them is deterministic.
"""


from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Callable, List, Optional, Tuple, Any

import jax.numpy as jnp

from .types import NodeId, EdgeId, Vertex, Edge


# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]
InitialEstimateFn = Callable[
    [Tuple[Optional[jnp.ndarray], ...], Dict[str, Any], int],
    Optional[jnp.ndarray],
]
RemovalListener = Callable[[Vertex, List[Edge]], None]


@dataclass
class FactorGraph:
    """
    Factor graph over typed vertices and edges.

    - vertices: mapping from NodeId -> Vertex
    - edges: mapping from EdgeId -> Edge
    - residual_fns: mapping edge.type -> callable that computes residuals
    - initializers: mapping edge.type -> callable that proposes an initial
      estimate for one of the edge's vertices from the others
    """
    vertices: Dict[NodeId, Vertex] = field(default_factory=dict)
    edges: Dict[EdgeId, Edge] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)
    initializers: Dict[str, InitialEstimateFn] = field(default_factory=dict)
    _vertex_edges: Dict[NodeId, Dict[EdgeId, Edge]] = field(default_factory=dict, repr=False)
    _removal_listeners: List[RemovalListener] = field(default_factory=list, repr=False)

    # --- Construction ---

    def add_vertex(self, v: Vertex) -> None:
        assert v.id not in self.vertices
        self.vertices[v.id] = v
        self._vertex_edges[v.id] = {}

    def add_edge(self, e: Edge) -> None:
        assert e.id not in self.edges
        for nid in e.var_ids:
            assert nid in self.vertices, f"Edge {e.id} references unknown vertex {nid}"
        self.edges[e.id] = e
        for nid in e.var_ids:
            self._vertex_edges[nid][e.id] = e

    def add_variable(self, var_type: str, value: jnp.ndarray, fixed: bool = False) -> NodeId:
        """
        Allocate a new vertex id, create the Vertex, add it to the graph,
        and return its NodeId.
        """
        nid = NodeId(max(self.vertices, default=-1) + 1)
        self.add_vertex(Vertex(id=nid, type=var_type, value=jnp.asarray(value), fixed=fixed))
        return nid

    def add_factor(
        self,
        f_type: str,
        var_ids,
        params: Dict[str, Any],
        information=None,
        level: int = 0,
        robust_kernel=None,
    ) -> EdgeId:
        """
        Allocate a new edge id, create the Edge, add it to the graph,
        and return its EdgeId.
        """
        eid = EdgeId(max(self.edges, default=-1) + 1)

        # Normalize everything to NodeId
        node_ids = tuple(NodeId(int(vid)) for vid in var_ids)

        self.add_edge(
            Edge(
                id=eid,
                type=f_type,
                var_ids=node_ids,
                params=params,
                information=information,
                level=level,
                robust_kernel=robust_kernel,
            )
        )
        return eid

    def register_residual(self, edge_type: str, fn: ResidualFn) -> None:
        self.residual_fns[edge_type] = fn

    def register_initializer(self, edge_type: str, fn: InitialEstimateFn) -> None:
        self.initializers[edge_type] = fn

    # --- Removal ---

    def add_removal_listener(self, listener: RemovalListener) -> None:
        if listener not in self._removal_listeners:
            self._removal_listeners.append(listener)

    def remove_removal_listener(self, listener: RemovalListener) -> None:
        if listener in self._removal_listeners:
            self._removal_listeners.remove(listener)

    def remove_edge(self, eid: EdgeId) -> bool:
        e = self.edges.pop(eid, None)
        if e is None:
            return False
        for nid in e.var_ids:
            self._vertex_edges.get(nid, {}).pop(eid, None)
        return True

    def remove_vertex(self, nid: NodeId) -> bool:
        """
        Remove a vertex and every edge incident to it.

        Removal listeners are notified with the removed vertex and edges
        after the graph has been updated.
        """
        v = self.vertices.get(nid)
        if v is None:
            return False
        incident = self.edges_of(nid)
        for e in incident:
            self.remove_edge(e.id)
        del self.vertices[nid]
        del self._vertex_edges[nid]
        for listener in list(self._removal_listeners):
            listener(v, incident)
        return True

    # --- Queries ---

    def vertex(self, nid: NodeId) -> Optional[Vertex]:
        return self.vertices.get(nid)

    def edge(self, eid: EdgeId) -> Optional[Edge]:
        return self.edges.get(eid)

    def sorted_vertices(self) -> List[Vertex]:
        return [self.vertices[nid] for nid in sorted(self.vertices)]

    def edges_of(self, nid: NodeId) -> List[Edge]:
        """Edges incident to a vertex, sorted by EdgeId."""
        incident = self._vertex_edges.get(nid, {})
        return [incident[eid] for eid in sorted(incident)]

    def edge_vertices(self, e: Edge) -> Optional[List[Vertex]]:
        """Vertices of an edge in var_ids order, or None if any is missing."""
        vs = []
        for nid in e.var_ids:
            v = self.vertices.get(nid)
            if v is None:
                return None
            vs.append(v)
        return vs

    # --- Evaluation ---

    def residual_fn_for(self, e: Edge) -> ResidualFn:
        residual_fn = self.residual_fns.get(e.type, None)
        if residual_fn is None:
            raise ValueError(f"No residual fn registered for factor type '{e.type}'")
        return residual_fn

    def compute_error(self, e: Edge) -> jnp.ndarray:
        """
        Evaluate the residual of a single edge at the current estimates.
        """
        residual_fn = self.residual_fn_for(e)
        stacked = jnp.concatenate(
            [jnp.asarray(self.vertices[nid].value) for nid in e.var_ids]
        )
        return jnp.reshape(residual_fn(stacked, e.params), (-1,))

    def edge_dimension(self, e: Edge) -> int:
        if e.error is not None:
            return int(e.error.shape[0])
        return int(self.compute_error(e).shape[0])
