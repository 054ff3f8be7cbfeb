# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Incremental sparse optimizer over a `FactorGraph`.

This module is the control core of SGO-JIT. `SparseOptimizer` decides which
part of the graph takes part in a solve, maps it onto the block structure of
a linear system, drives error and Jacobian evaluation, and repeatedly calls
into a pluggable solving strategy (`optimization.solvers`).

Lifecycle
---------
    opt = SparseOptimizer(fg)
    opt.set_algorithm(GaussNewton(GNConfig()))
    opt.initialize_optimization()          # or vertices=... / edges=...
    opt.optimize(10)
    opt.active_chi2()

and, for streaming problems,

    opt.update_initialization(new_vertices, new_edges)
    opt.optimize(1, online=True)

State held by the optimizer
---------------------------
active_vertices
    Non-fixed vertices of the current session, sorted by NodeId.

active_edges
    Edges of the current session, sorted by EdgeId.

index_mapping
    Block index -> vertex. Non-marginalized vertices come first, then
    marginalized ones (each group in id order), so a Schur-complement
    strategy can split the system. `update_initialization` appends new
    vertices at the end, after the marginalized block, until the next
    full initialization. `vertex.hessian_index` is the inverse
    of this table; inactive vertices carry -1.

Estimate stacks
    Owned by the vertices; the optimizer only offers batch push / pop /
    discard_top over a vertex collection (default: the active vertices).

Cached active error
    Sum of robustified chi-square over the active edges, refreshed by
    `compute_active_errors` and reset by re-initialization, `clear` and
    vertex removal.

Error policy
------------
Recoverable conditions are reported as return values (bool / int /
Optional) and logged; nothing is raised across the optimizer boundary.
Caller misuse (e.g. a wrongly sized increment) raises ValueError.
"""

from __future__ import annotations

import bisect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import jax.numpy as jnp

from sgo_jit.core.factor_graph import FactorGraph
from sgo_jit.core.types import Edge, EdgeId, NodeId, Vertex
from sgo_jit.slam.manifold import build_manifold_metadata, oplus
from .linearization import EdgeLinearizer
from .solvers import OptimizationAlgorithm, SolverStatus
from .statistics import BatchStatistics

logger = logging.getLogger(__name__)

VertexLike = Union[Vertex, NodeId, int]
EdgeLike = Union[Edge, EdgeId, int]


class StopFlag(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class ActiveSubgraphView:
    """Read-only view of the active sets, handed to compute-error actions."""
    active_vertices: Tuple[Vertex, ...]
    active_edges: Tuple[Edge, ...]
    index_mapping: Tuple[Vertex, ...]


ComputeErrorAction = Callable[[ActiveSubgraphView], None]


class SparseOptimizer:
    """
    Subgraph selection, linearization and iteration control for a factor
    graph.

    The optimizer never creates or destroys vertices; it flags them through
    `hessian_index`, evaluates edges and applies increments to estimates.
    """

    def __init__(
        self,
        graph: FactorGraph,
        verbose: bool = False,
        compute_batch_statistics: bool = False,
        use_jit: bool = True,
    ) -> None:
        self.graph = graph
        self._verbose = verbose
        self._compute_batch_statistics = compute_batch_statistics

        self._active_vertices: List[Vertex] = []
        self._active_edges: List[Edge] = []
        self._iv_map: List[Vertex] = []
        self._block_offsets: Dict[NodeId, int] = {}
        self._active_chi2: float = 0.0
        self._errors_valid = False
        self._structure_dirty = True

        self._algorithm: Optional[OptimizationAlgorithm] = None
        self._statistics: Optional[BatchStatistics] = None
        self._current_batch: Optional[BatchStatistics] = None
        self.batch_statistics: List[BatchStatistics] = []
        self._compute_error_actions: List[ComputeErrorAction] = []
        self._stop_flag: Optional[StopFlag] = None

        self._linearizer = EdgeLinearizer(graph, use_jit=use_jit)
        graph.add_removal_listener(self._on_vertex_removed)

    # --- Accessors ---

    @property
    def active_vertices(self) -> Tuple[Vertex, ...]:
        return tuple(self._active_vertices)

    @property
    def active_edges(self) -> Tuple[Edge, ...]:
        return tuple(self._active_edges)

    @property
    def index_mapping(self) -> Tuple[Vertex, ...]:
        return tuple(self._iv_map)

    @property
    def block_offsets(self) -> Dict[NodeId, int]:
        return dict(self._block_offsets)

    def view(self) -> ActiveSubgraphView:
        return ActiveSubgraphView(self.active_vertices, self.active_edges, self.index_mapping)

    @property
    def verbose(self) -> bool:
        return self._verbose

    def set_verbose(self, verbose: bool) -> None:
        self._verbose = verbose

    def set_compute_batch_statistics(self, enabled: bool) -> None:
        self._compute_batch_statistics = enabled
        if not enabled:
            self.batch_statistics = []

    @property
    def algorithm(self) -> Optional[OptimizationAlgorithm]:
        return self._algorithm

    def set_algorithm(self, algorithm: Optional[OptimizationAlgorithm]) -> None:
        """Install a solving strategy, releasing the previous one."""
        if self._algorithm is algorithm:
            return
        if self._algorithm is not None:
            self._algorithm.optimizer = None
        self._algorithm = algorithm
        if algorithm is not None:
            algorithm.optimizer = self
        self._structure_dirty = True

    @property
    def statistics(self) -> Optional[BatchStatistics]:
        return self._statistics

    def set_statistics(self, statistics: Optional[BatchStatistics]) -> None:
        """Install an externally owned record; the optimizer only updates it."""
        self._statistics = statistics

    def update_statistics(self, **fields) -> None:
        """
        Write counters to the installed record and, during an optimize run
        with batch statistics enabled, to the record of the current iteration.
        """
        for record in (self._statistics, self._current_batch):
            if record is None:
                continue
            for name, value in fields.items():
                setattr(record, name, value)

    def active_chi2(self) -> float:
        """Cached chi2 of the active edges as of the last compute_active_errors."""
        return self._active_chi2

    def terminate(self) -> bool:
        """State of the stop flag of the running optimize call (False if none)."""
        return self._stop_flag.is_set() if self._stop_flag is not None else False

    # --- Index mapping ---

    def _resolve_vertex(self, v: VertexLike) -> Optional[Vertex]:
        nid = v.id if isinstance(v, Vertex) else NodeId(int(v))
        found = self.graph.vertices.get(nid)
        if isinstance(v, Vertex) and found is not v:
            return None
        return found

    def _resolve_edge(self, e: EdgeLike) -> Optional[Edge]:
        if isinstance(e, Edge):
            return e
        return self.graph.edges.get(EdgeId(int(e)))

    @staticmethod
    def _index_order(vertices: Iterable[Vertex]) -> List[Vertex]:
        free = sorted((v for v in vertices if not v.fixed), key=lambda v: v.id)
        return [v for v in free if not v.marginalized] + [v for v in free if v.marginalized]

    def _build_index_mapping(self, vertices: Sequence[Vertex]) -> None:
        """
        Assign contiguous block indices: non-marginalized vertices first,
        then marginalized ones, each group in id order.
        """
        for v in self.graph.vertices.values():
            v.hessian_index = -1
        self._iv_map = self._index_order(vertices)
        self._block_offsets = {}
        offset = 0
        for i, v in enumerate(self._iv_map):
            v.hessian_index = i
            self._block_offsets[v.id] = offset
            offset += v.dimension

    def _clear_index_mapping(self) -> None:
        for v in self._iv_map:
            v.hessian_index = -1
        self._iv_map = []
        self._block_offsets = {}

    def _commit(self, vertices: List[Vertex], edges: List[Edge]) -> None:
        self._clear_index_mapping()
        self._active_vertices = sorted(vertices, key=lambda v: v.id)
        self._active_edges = sorted(edges, key=lambda e: e.id)
        self._build_index_mapping(self._active_vertices)
        self._active_chi2 = 0.0
        self._errors_valid = False
        self._invalidate_structure()

    def _invalidate_structure(self) -> None:
        self._structure_dirty = True
        if self._algorithm is not None:
            self._algorithm.reset_structure()

    def _all_fixed(self, e: Edge) -> bool:
        return all(self.graph.vertices[nid].fixed for nid in e.var_ids)

    def initialize_optimization(
        self,
        vertices: Optional[Iterable[VertexLike]] = None,
        edges: Optional[Iterable[EdgeLike]] = None,
        level: int = 0,
    ) -> bool:
        """
        Select the active subgraph and build the index mapping.

        - edges=...: the given edges and every non-fixed vertex they touch.
        - vertices=...: edges at `level` whose vertices all lie in the given
          set (and are not all fixed); vertices with at least one such edge.
        - neither: the vertex-set form over the whole graph.

        Mark vertices fixed / marginalized before calling this. Returns False
        and leaves the previous session untouched on failure.
        """
        if vertices is not None and edges is not None:
            logger.warning("initialize_optimization: pass either vertices or edges, not both")
            return False

        if edges is not None:
            candidate = self._select_from_edges(edges)
        else:
            if vertices is None:
                vertices = self.graph.sorted_vertices()
            candidate = self._select_from_vertices(vertices, level)

        if candidate is None:
            return False
        new_vertices, new_edges = candidate
        if not new_vertices:
            logger.warning("initialize_optimization: no vertices to optimize")
            return False

        self._commit(new_vertices, new_edges)
        logger.debug(
            "initialize_optimization: %d vertices, %d edges",
            len(self._active_vertices), len(self._active_edges),
        )
        return True

    def _select_from_edges(
        self, edges: Iterable[EdgeLike]
    ) -> Optional[Tuple[List[Vertex], List[Edge]]]:
        selected: Dict[EdgeId, Edge] = {}
        touched: Dict[NodeId, Vertex] = {}
        for item in edges:
            e = self._resolve_edge(item)
            if e is None:
                logger.warning("initialize_optimization: unknown edge %s", item)
                return None
            vs = self.graph.edge_vertices(e)
            if vs is None:
                logger.warning("initialize_optimization: edge %s references a missing vertex", e.id)
                return None
            selected[e.id] = e
            for v in vs:
                if not v.fixed:
                    touched[v.id] = v
        return list(touched.values()), list(selected.values())

    def _select_from_vertices(
        self, vertices: Iterable[VertexLike], level: int
    ) -> Optional[Tuple[List[Vertex], List[Edge]]]:
        vset: Dict[NodeId, Vertex] = {}
        for item in vertices:
            v = self._resolve_vertex(item)
            if v is None:
                logger.warning("initialize_optimization: unknown vertex %s", item)
                return None
            vset[v.id] = v

        selected: Dict[EdgeId, Edge] = {}
        active: List[Vertex] = []
        for nid in sorted(vset):
            v = vset[nid]
            level_edges = 0
            for e in self.graph.edges_of(nid):
                if e.level != level:
                    continue
                if not all(vid in vset for vid in e.var_ids):
                    continue
                if self._all_fixed(e):
                    continue
                selected[e.id] = e
                level_edges += 1
            if level_edges and not v.fixed:
                active.append(v)
        return active, list(selected.values())

    def update_initialization(
        self,
        vertices: Iterable[VertexLike],
        edges: Iterable[EdgeLike],
    ) -> bool:
        """
        Merge newly added vertices and edges into the current session.

        Previously active vertices keep their block index; new non-fixed
        vertices are appended with the next free indices, after any
        marginalized vertices of the session. Every non-fixed vertex of a new
        edge must be active already or be passed in `vertices`. The installed
        strategy is notified through `update_structure`.
        """
        if not self._iv_map:
            logger.warning("update_initialization: no session, call initialize_optimization first")
            return False

        new_vertices: List[Vertex] = []
        known = {v.id for v in self._active_vertices}
        for item in vertices:
            v = self._resolve_vertex(item)
            if v is None:
                logger.warning("update_initialization: unknown vertex %s", item)
                return False
            if v.fixed or v.id in known:
                continue
            if v.marginalized:
                logger.warning("update_initialization: marginalized vertex %s not supported online", v.id)
                return False
            new_vertices.append(v)
            known.add(v.id)

        new_edges: List[Edge] = []
        active_edge_ids = {e.id for e in self._active_edges}
        for item in edges:
            e = self._resolve_edge(item)
            if e is None or self.graph.edge_vertices(e) is None:
                logger.warning("update_initialization: edge %s is unknown or references a missing vertex", item)
                return False
            if e.id in active_edge_ids or self._all_fixed(e):
                continue
            unindexed = [
                nid for nid in e.var_ids
                if nid not in known and not self.graph.vertices[nid].fixed
            ]
            if unindexed:
                logger.warning(
                    "update_initialization: edge %s touches vertices %s outside the session",
                    e.id, unindexed,
                )
                return False
            new_edges.append(e)
            active_edge_ids.add(e.id)

        offset = sum(v.dimension for v in self._iv_map)
        for v in new_vertices:
            v.hessian_index = len(self._iv_map)
            self._iv_map.append(v)
            self._block_offsets[v.id] = offset
            offset += v.dimension

        self._active_vertices.extend(new_vertices)
        self._active_vertices.sort(key=lambda v: v.id)
        self._active_edges.extend(new_edges)
        self._active_edges.sort(key=lambda e: e.id)
        self._errors_valid = False

        if self._algorithm is None:
            return True
        return self._algorithm.update_structure(new_vertices, new_edges)

    def find_active_vertex(self, v: VertexLike) -> int:
        """Position of a vertex in active_vertices, or -1."""
        nid = v.id if isinstance(v, Vertex) else int(v)
        pos = bisect.bisect_left(self._active_vertices, nid, key=lambda x: x.id)
        if pos < len(self._active_vertices) and self._active_vertices[pos].id == nid:
            return pos
        return -1

    def find_active_edge(self, e: EdgeLike) -> int:
        """Position of an edge in active_edges, or -1."""
        eid = e.id if isinstance(e, Edge) else int(e)
        pos = bisect.bisect_left(self._active_edges, eid, key=lambda x: x.id)
        if pos < len(self._active_edges) and self._active_edges[pos].id == eid:
            return pos
        return -1

    def clear(self) -> None:
        """Discard the active sets and index mapping. The graph is untouched."""
        self._clear_index_mapping()
        self._active_vertices = []
        self._active_edges = []
        self._active_chi2 = 0.0
        self._errors_valid = False
        self._invalidate_structure()

    def detach(self) -> None:
        """
        Release the graph: stop listening for vertex removals, discard the
        session and release the installed strategy. The optimizer can be
        dropped afterwards without affecting the graph or other optimizers.
        """
        self.clear()
        self.set_algorithm(None)
        self.graph.remove_removal_listener(self._on_vertex_removed)

    def remove_vertex(self, v: VertexLike) -> bool:
        nid = v.id if isinstance(v, Vertex) else NodeId(int(v))
        return self.graph.remove_vertex(nid)

    def _on_vertex_removed(self, v: Vertex, edges: List[Edge]) -> None:
        removed_edges = {e.id for e in edges}
        was_active = v.hessian_index >= 0 or any(
            e.id in removed_edges for e in self._active_edges
        )
        v.hessian_index = -1
        if not was_active:
            return
        self._active_vertices = [x for x in self._active_vertices if x is not v]
        self._active_edges = [e for e in self._active_edges if e.id not in removed_edges]
        survivors = [x for x in self._iv_map if x is not v]
        self._build_index_mapping(survivors)
        self._active_chi2 = 0.0
        self._errors_valid = False
        self._invalidate_structure()

    # --- Estimate stack ---

    def _stack_targets(self, vertices: Optional[Iterable[VertexLike]]) -> List[Vertex]:
        if vertices is None:
            return list(self._active_vertices)
        out = []
        for item in vertices:
            v = item if isinstance(item, Vertex) else self.graph.vertices.get(NodeId(int(item)))
            if v is not None:
                out.append(v)
        return out

    def push(self, vertices: Optional[Iterable[VertexLike]] = None) -> None:
        """Snapshot the estimates of `vertices` (default: active vertices)."""
        for v in self._stack_targets(vertices):
            v.push()

    def pop(self, vertices: Optional[Iterable[VertexLike]] = None) -> None:
        """Restore the last snapshot of `vertices` (default: active vertices)."""
        for v in self._stack_targets(vertices):
            v.pop()
        self._errors_valid = False

    def discard_top(self, vertices: Optional[Iterable[VertexLike]] = None) -> None:
        """Drop the last snapshot of `vertices` without restoring it."""
        for v in self._stack_targets(vertices):
            v.discard_top()

    # --- Linearization ---

    def add_compute_error_action(self, action: ComputeErrorAction) -> bool:
        if action in self._compute_error_actions:
            return False
        self._compute_error_actions.append(action)
        return True

    def remove_compute_error_action(self, action: ComputeErrorAction) -> bool:
        if action not in self._compute_error_actions:
            return False
        self._compute_error_actions.remove(action)
        return True

    def compute_active_errors(self) -> None:
        """
        Evaluate the error of every active edge and cache the total
        (robustified) chi2.
        """
        if self._compute_error_actions:
            view = self.view()
            for action in self._compute_error_actions:
                action(view)

        t0 = time.perf_counter()
        total = 0.0
        for e in self._active_edges:
            err = self._linearizer.error(e)
            omega = e.information_matrix(err.shape[0])
            chi2 = float(err @ omega @ err)
            e.error = err
            e.chi2 = chi2
            if e.robust_kernel is not None:
                e.robust_chi2, _ = e.robust_kernel.robustify(chi2)
            else:
                e.robust_chi2 = chi2
            total += e.robust_chi2

        self._active_chi2 = total
        self._errors_valid = True
        self.update_statistics(time_residuals=time.perf_counter() - t0, chi2=total)

    def linearize_system(self) -> None:
        """
        Compute the Jacobians of every active edge w.r.t. its non-fixed
        vertices, at the point where the errors were last evaluated.
        """
        t0 = time.perf_counter()
        for e in self._active_edges:
            e.jacobians = self._linearizer.jacobians(e)
        self.update_statistics(time_linearize=time.perf_counter() - t0)

    def update(self, increment) -> None:
        """
        Apply a stacked tangent increment, ordered by block index, to the
        estimates of the indexed vertices.
        """
        increment = jnp.reshape(jnp.asarray(increment), (-1,))
        expected = sum(v.dimension for v in self._iv_map)
        if increment.shape[0] != expected:
            raise ValueError(
                f"Increment has size {increment.shape[0]}, expected {expected}"
            )

        block_slices, manifold_types = build_manifold_metadata(self._iv_map, self._block_offsets)
        for v in self._iv_map:
            v.value = oplus(manifold_types[v.id], jnp.asarray(v.value), increment[block_slices[v.id]])
        self._errors_valid = False

    # --- Gauge ---

    def find_gauge(self) -> Optional[Vertex]:
        """
        Vertex to fix to remove an undetermined global dof: the one with the
        largest dimension, smallest id first.
        """
        vertices = self.graph.sorted_vertices()
        if not vertices:
            return None
        max_dim = max(v.dimension for v in vertices)
        for v in vertices:
            if v.dimension == max_dim:
                return v
        return None

    def gauge_freedom(self) -> bool:
        """
        True unless a maximum-dimension vertex is fixed or held by a unary
        edge of full dimension.
        """
        vertices = self.graph.sorted_vertices()
        if not vertices:
            return False
        max_dim = max(v.dimension for v in vertices)
        for v in vertices:
            if v.dimension != max_dim:
                continue
            if v.fixed:
                return False
            for e in self.graph.edges_of(v.id):
                if len(e.var_ids) == 1 and self.graph.edge_dimension(e) == max_dim:
                    return False
        return True

    # --- Initial guess ---

    def compute_initial_guess(self) -> None:
        """
        Propagate estimates over the active edges from fixed vertices and
        vertices fully determined by a prior, using the initializers
        registered on the graph. Only indexed vertices are changed.
        """
        initializers = self.graph.initializers
        active_edge_ids = {e.id for e in self._active_edges}
        roots: Dict[NodeId, Vertex] = {}
        backup: Dict[NodeId, Vertex] = {}

        for e in self._active_edges:
            for nid in e.var_ids:
                v = self.graph.vertices[nid]
                if v.hessian_index < 0 and nid not in backup:
                    backup[nid] = v
                    v.push()
                if v.fixed:
                    roots[nid] = v

        for v in self._active_vertices:
            if v.id in roots:
                continue
            for e in self.graph.edges_of(v.id):
                fn = initializers.get(e.type)
                if e.id not in active_edge_ids or len(e.var_ids) != 1 or fn is None:
                    continue
                value = fn((None,), e.params, 0)
                if value is not None:
                    v.value = jnp.asarray(value)
                    roots[v.id] = v
                    break

        visited = set(roots)
        queue = deque(sorted(roots))
        while queue:
            nid = queue.popleft()
            for e in self.graph.edges_of(nid):
                fn = initializers.get(e.type)
                if e.id not in active_edge_ids or fn is None:
                    continue
                for target, tid in enumerate(e.var_ids):
                    if tid in visited:
                        continue
                    known = tuple(
                        jnp.asarray(self.graph.vertices[x].value) if x in visited else None
                        for x in e.var_ids
                    )
                    value = fn(known, e.params, target)
                    if value is None:
                        continue
                    self.graph.vertices[tid].value = jnp.asarray(value)
                    visited.add(tid)
                    queue.append(tid)

        for v in backup.values():
            v.pop()
        self._errors_valid = False

    # --- Driver ---

    def optimize(
        self,
        iterations: int,
        online: bool = False,
        stop_flag: Optional[StopFlag] = None,
    ) -> int:
        """
        Run up to `iterations` iterations of the installed strategy.

        `stop_flag` is polled before every iteration; once it reports set,
        the loop exits keeping the updates applied so far. Returns the number
        of iterations executed, or 0 if the run could not start or the
        strategy reported a non-recoverable failure.
        """
        if not self._iv_map:
            logger.error("optimize: 0 vertices to optimize, call initialize_optimization() first")
            return 0
        if self._algorithm is None:
            logger.error("optimize: no solving strategy installed")
            return 0

        if not self._algorithm.init(online and not self._structure_dirty):
            logger.error("optimize: error while initializing the solving strategy")
            return 0
        self._structure_dirty = False

        self._stop_flag = stop_flag
        try:
            return self._run(iterations, online)
        finally:
            self._stop_flag = None
            self._current_batch = None

    def _run(self, iterations: int, online: bool) -> int:
        executed = 0
        status = SolverStatus.OK
        cumulative = 0.0

        for i in range(iterations):
            if self.terminate():
                break

            t_iter = time.perf_counter()
            if self._compute_batch_statistics:
                self._current_batch = BatchStatistics(
                    iteration=i,
                    num_vertices=len(self._active_vertices),
                    num_edges=len(self._active_edges),
                )
                self.batch_statistics.append(self._current_batch)

            if not self._errors_valid:
                self.compute_active_errors()
            self.linearize_system()

            result = self._algorithm.solve(i, online)
            status = result.status

            if result.increment is not None:
                t0 = time.perf_counter()
                self.update(result.increment)
                self.update_statistics(time_update=time.perf_counter() - t0)

            if not online:
                self.compute_active_errors()

            executed += 1
            elapsed = time.perf_counter() - t_iter
            cumulative += elapsed
            self.update_statistics(time_iteration=elapsed)

            log = logger.info if self._verbose else logger.debug
            log(
                "iteration= %d\t chi2= %.6f\t time= %.6f\t cumTime= %.6f\t edges= %d",
                i, self._active_chi2, elapsed, cumulative, len(self._active_edges),
            )

            if status != SolverStatus.OK:
                break

        if status == SolverStatus.FAIL:
            logger.warning("optimize: solving strategy failed after %d iterations", executed)
            return 0
        return executed

    # --- Marginals ---

    def compute_marginals(
        self,
        spinv: Dict[Tuple[int, int], jnp.ndarray],
        block_indices: Sequence[Tuple[int, int]],
    ) -> bool:
        """
        Fill `spinv` with the requested (row, col) blocks of the inverse
        Hessian. Returns False, leaving `spinv` untouched, when the strategy
        cannot provide them.
        """
        if self._algorithm is None or not self._algorithm.supports_marginals:
            return False
        blocks = self._algorithm.compute_marginals(list(block_indices))
        if blocks is None:
            return False
        spinv.update(blocks)
        return True
