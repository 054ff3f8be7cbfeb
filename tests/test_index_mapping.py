from __future__ import annotations

import random

import jax.numpy as jnp

from sgo_jit.core.types import NodeId, EdgeId, Edge
from sgo_jit.core.factor_graph import FactorGraph
from sgo_jit.slam.measurements import prior_residual, odom_residual
from sgo_jit.optimization.sparse_optimizer import SparseOptimizer


def _chain(n: int = 4) -> tuple[FactorGraph, list]:
    """1D pose chain: prior on pose0, unit odometry between neighbours."""
    fg = FactorGraph()
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom", odom_residual)
    ids = [fg.add_variable("pose1d", jnp.array([0.5 * i + 0.3])) for i in range(n)]
    fg.add_factor("prior", (ids[0],), {"target": jnp.array([0.0])})
    for i in range(n - 1):
        fg.add_factor("odom", (ids[i], ids[i + 1]), {"measurement": jnp.array([1.0])})
    return fg, ids


def _indices(fg: FactorGraph) -> dict:
    return {nid: v.hessian_index for nid, v in fg.vertices.items()}


def test_whole_graph_assigns_unique_contiguous_indices():
    fg, ids = _chain(5)
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization()

    indices = sorted(v.hessian_index for v in opt.active_vertices)
    assert indices == list(range(5))
    assert [v.id for v in opt.active_vertices] == ids
    assert [e.id for e in opt.active_edges] == sorted(fg.edges)
    assert [v.hessian_index for v in opt.index_mapping] == list(range(5))


def test_index_assignment_is_invariant_under_permutation():
    """
    Building the active set from any ordering of the same vertex subset
    yields identical block indices.
    """
    fg, ids = _chain(6)
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization(vertices=ids)
    reference = _indices(fg)

    rng = random.Random(3)
    for _ in range(5):
        shuffled = list(ids)
        rng.shuffle(shuffled)
        assert opt.initialize_optimization(vertices=shuffled)
        assert _indices(fg) == reference


def test_fixed_vertices_are_excluded():
    fg, ids = _chain(4)
    fg.vertices[ids[0]].fixed = True
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization()

    assert [v.id for v in opt.active_vertices] == ids[1:]
    assert fg.vertices[ids[0]].hessian_index == -1
    assert sorted(v.hessian_index for v in opt.active_vertices) == [0, 1, 2]
    # the prior only touches the fixed vertex
    assert EdgeId(0) not in [e.id for e in opt.active_edges]


def test_marginalized_vertices_are_indexed_last():
    fg, ids = _chain(4)
    fg.vertices[ids[1]].marginalized = True
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization()

    assert [v.id for v in opt.index_mapping] == [ids[0], ids[2], ids[3], ids[1]]
    assert fg.vertices[ids[1]].hessian_index == 3
    # active vertices stay in id order
    assert [v.id for v in opt.active_vertices] == ids


def test_vertex_subset_selects_only_enclosed_edges():
    fg, ids = _chain(4)
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization(vertices=ids[:2])

    assert [v.id for v in opt.active_vertices] == ids[:2]
    assert [e.id for e in opt.active_edges] == [EdgeId(0), EdgeId(1)]
    assert fg.vertices[ids[2]].hessian_index == -1


def test_level_filters_edges():
    fg, ids = _chain(3)
    coarse = fg.add_factor("odom", (ids[0], ids[2]), {"measurement": jnp.array([2.0])}, level=1)
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization(level=1)

    assert [e.id for e in opt.active_edges] == [coarse]
    assert [v.id for v in opt.active_vertices] == [ids[0], ids[2]]


def test_edge_set_form():
    fg, ids = _chain(4)
    opt = SparseOptimizer(fg)

    assert opt.initialize_optimization(edges=[EdgeId(2)])

    assert [e.id for e in opt.active_edges] == [EdgeId(2)]
    assert [v.id for v in opt.active_vertices] == [ids[1], ids[2]]
    assert fg.vertices[ids[1]].hessian_index == 0
    assert fg.vertices[ids[2]].hessian_index == 1


def test_missing_vertex_fails_without_mutation():
    """
    An edge referencing a vertex that is not in the graph makes
    initialization fail and leaves the previous session intact.
    """
    fg, ids = _chain(3)
    opt = SparseOptimizer(fg)
    assert opt.initialize_optimization()

    before_vertices = opt.active_vertices
    before_edges = opt.active_edges
    before_indices = _indices(fg)

    dangling = Edge(
        id=EdgeId(99),
        type="odom",
        var_ids=(ids[0], NodeId(42)),
        params={"measurement": jnp.array([1.0])},
    )
    assert not opt.initialize_optimization(edges=[dangling])
    assert not opt.initialize_optimization(vertices=[ids[0], NodeId(42)])

    assert opt.active_vertices == before_vertices
    assert opt.active_edges == before_edges
    assert _indices(fg) == before_indices


def test_empty_active_set_fails():
    fg, ids = _chain(3)
    for nid in ids:
        fg.vertices[nid].fixed = True
    opt = SparseOptimizer(fg)

    assert not opt.initialize_optimization()
    assert opt.active_vertices == ()
    assert opt.index_mapping == ()


def test_vertices_and_edges_together_is_rejected():
    fg, ids = _chain(3)
    opt = SparseOptimizer(fg)

    assert not opt.initialize_optimization(vertices=ids, edges=[EdgeId(0)])


def test_find_active_vertex_and_edge():
    fg, ids = _chain(4)
    opt = SparseOptimizer(fg)
    assert opt.initialize_optimization(vertices=ids[1:])

    assert opt.find_active_vertex(ids[0]) == -1
    assert opt.find_active_vertex(ids[1]) == 0
    assert opt.find_active_vertex(fg.vertices[ids[3]]) == 2
    assert opt.find_active_edge(EdgeId(0)) == -1
    assert opt.find_active_edge(fg.edges[EdgeId(3)]) == 1


def test_clear_discards_session_but_keeps_graph():
    fg, ids = _chain(3)
    opt = SparseOptimizer(fg)
    assert opt.initialize_optimization()
    opt.compute_active_errors()

    opt.clear()

    assert opt.active_vertices == ()
    assert opt.active_edges == ()
    assert opt.index_mapping == ()
    assert opt.active_chi2() == 0.0
    assert all(v.hessian_index == -1 for v in fg.vertices.values())
    assert len(fg.vertices) == 3
