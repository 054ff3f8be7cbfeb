# Copyright (c) 2025.
# This file is part of SGO-JIT, released under the MIT License.
"""
Solving strategies for the SGO-JIT sparse optimizer.

`SparseOptimizer.optimize` is a control loop; the numerical step of each
iteration is delegated to an `OptimizationAlgorithm` installed with
`SparseOptimizer.set_algorithm`. Strategies are swappable at runtime and
only see the optimizer through its public surface:

    • `index_mapping` / `active_edges`   (block structure)
    • edge.error / edge.jacobians        (linearized system)
    • push / pop / discard_top / update  (speculative steps)
    • compute_active_errors / active_chi2
    • update_statistics                  (timing counters)

Key Concepts
------------
SolverStatus / SolverResult
    Outcome of one `solve(iteration, online)` call:
    - OK: the iteration succeeded, keep going
    - TERMINATE: converged or cannot make progress (degenerate system);
      the driver stops and counts the iteration
    - FAIL: non-recoverable failure; the driver stops and reports 0
    `increment` is the stacked tangent step for the driver to apply, or None
    if the strategy already applied it.

GaussNewton(GNConfig)
    Classic Gauss-Newton on the normal equations

        (JᵀΩJ + damping·I) Δx = -JᵀΩe

    with an optional clamp on the step norm.

LevenbergMarquardt(LMConfig)
    Trust-region style damping with Nielsen's lambda update. Each trial
    step is made speculatively:

        push → update → compute_active_errors → (discard_top | pop)

    so rejected steps leave the graph untouched.

Both built-in strategies use the dense block system in
`optimization.linear_system` and therefore also support marginal
covariance extraction.

Notes
-----
Both strategies assemble a dense H. Large problems call for a
sparse or Schur-complement strategy, which can be added by subclassing
`OptimizationAlgorithm` without touching the optimizer.
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from sgo_jit.core.types import Edge, Vertex
from .linear_system import (
    BlockLayout,
    build_normal_equations,
    extract_marginals,
    solve_damped,
)

if TYPE_CHECKING:
    from .sparse_optimizer import SparseOptimizer

logger = logging.getLogger(__name__)


class SolverStatus(Enum):
    OK = "ok"
    TERMINATE = "terminate"
    FAIL = "fail"


@dataclass
class SolverResult:
    status: SolverStatus
    increment: Optional[jnp.ndarray] = None


class OptimizationAlgorithm(ABC):
    """
    Interface of a solving strategy.

    The optimizer owns the installed strategy and sets `optimizer` when it
    is installed (and resets it to None when it is replaced).
    """

    def __init__(self) -> None:
        self.optimizer: Optional["SparseOptimizer"] = None

    @property
    def supports_marginals(self) -> bool:
        return False

    def init(self, online: bool = False) -> bool:
        """Prepare for a new optimization run over the current structure."""
        return self.optimizer is not None

    @abstractmethod
    def solve(self, iteration: int, online: bool = False) -> SolverResult:
        ...

    def update_structure(self, vertices: Sequence[Vertex], edges: Sequence[Edge]) -> bool:
        """Called after vertices/edges were appended by `update_initialization`."""
        return True

    def reset_structure(self) -> None:
        """
        Called when the optimizer discards or rebuilds its index mapping.
        Anything derived from the previous block structure must be dropped.
        """

    def compute_marginals(
        self, block_indices: Sequence[Tuple[int, int]]
    ) -> Optional[Dict[Tuple[int, int], jnp.ndarray]]:
        return None


class DenseBlockAlgorithm(OptimizationAlgorithm):
    """
    Shared plumbing for strategies working on the dense block system.
    """

    def __init__(self) -> None:
        super().__init__()
        self._layout: Optional[BlockLayout] = None
        self._H: Optional[np.ndarray] = None

    @property
    def supports_marginals(self) -> bool:
        return True

    def init(self, online: bool = False) -> bool:
        if self.optimizer is None:
            return False
        if not online or self._layout is None:
            self._layout = BlockLayout.from_index_mapping(self.optimizer.index_mapping)
            self._H = None
        return True

    def update_structure(self, vertices: Sequence[Vertex], edges: Sequence[Edge]) -> bool:
        if self.optimizer is None:
            return False
        self._layout = BlockLayout.from_index_mapping(self.optimizer.index_mapping)
        self._H = None
        return True

    def reset_structure(self) -> None:
        self._layout = None
        self._H = None

    def build_system(self) -> Tuple[np.ndarray, np.ndarray]:
        opt = self.optimizer
        t0 = time.perf_counter()
        H, b = build_normal_equations(self._layout, opt.active_edges, opt.graph.vertices)
        self._H = H
        opt.update_statistics(
            time_quadratic_form=time.perf_counter() - t0,
            hessian_dimension=self._layout.total,
        )
        return H, b

    def compute_marginals(
        self, block_indices: Sequence[Tuple[int, int]]
    ) -> Optional[Dict[Tuple[int, int], jnp.ndarray]]:
        # H must come from a solve over the current structure
        if self.optimizer is None or self._layout is None or self._H is None:
            return None
        return extract_marginals(self._H, self._layout, block_indices)


@dataclass
class GNConfig:
    damping: float = 1e-3              # LM-style diagonal damping
    max_step_norm: Optional[float] = 1.0  # clamp step size for stability
    step_tolerance: float = 0.0        # terminate when ||dx|| falls below


class GaussNewton(DenseBlockAlgorithm):
    """
    Gauss-Newton on the normal equations of the active subgraph.
    """

    def __init__(self, cfg: Optional[GNConfig] = None) -> None:
        super().__init__()
        self.cfg = cfg if cfg is not None else GNConfig()

    def solve(self, iteration: int, online: bool = False) -> SolverResult:
        H, b = self.build_system()

        t0 = time.perf_counter()
        delta = solve_damped(H, b, self.cfg.damping)
        self.optimizer.update_statistics(time_linear_solution=time.perf_counter() - t0)

        if not bool(jnp.all(jnp.isfinite(delta))):
            logger.warning("Gauss-Newton: linear system is singular at iteration %d", iteration)
            return SolverResult(SolverStatus.FAIL)

        # Optional step-size clamp to avoid huge jumps
        step_norm = float(jnp.linalg.norm(delta))
        if self.cfg.max_step_norm is not None and step_norm > self.cfg.max_step_norm:
            delta = delta * (self.cfg.max_step_norm / step_norm)

        if step_norm < self.cfg.step_tolerance:
            return SolverResult(SolverStatus.TERMINATE, delta)
        return SolverResult(SolverStatus.OK, delta)


@dataclass
class LMConfig:
    initial_lambda: Optional[float] = None  # None: tau * max(diag(H))
    tau: float = 1e-5
    max_trials_after_failure: int = 10
    min_relative_decrease: float = 0.0


class LevenbergMarquardt(DenseBlockAlgorithm):
    """
    Levenberg-Marquardt with speculative steps on the estimate stack.
    """

    def __init__(self, cfg: Optional[LMConfig] = None) -> None:
        super().__init__()
        self.cfg = cfg if cfg is not None else LMConfig()
        self.current_lambda: float = -1.0
        self._ni: float = 2.0
        self.levenberg_iterations: int = 0

    def init(self, online: bool = False) -> bool:
        if not super().init(online):
            return False
        if not online:
            self.current_lambda = -1.0
        return True

    def _initial_lambda(self, H: np.ndarray) -> float:
        if self.cfg.initial_lambda is not None:
            return self.cfg.initial_lambda
        max_diag = float(np.max(np.abs(np.diag(H)))) if H.size else 0.0
        return self.cfg.tau * max(max_diag, 1.0)

    def solve(self, iteration: int, online: bool = False) -> SolverResult:
        opt = self.optimizer
        H, b = self.build_system()

        if self.current_lambda < 0.0 or (iteration == 0 and not online):
            self.current_lambda = self._initial_lambda(H)
            self._ni = 2.0

        current_chi = opt.active_chi2()
        accepted = False
        trials = 0
        while True:
            opt.push()
            delta = solve_damped(H, b, self.current_lambda)
            ok = bool(jnp.all(jnp.isfinite(delta)))
            if ok:
                opt.update(delta)
                opt.compute_active_errors()
                temp_chi = opt.active_chi2()
            else:
                temp_chi = math.inf

            rho = -1.0
            if ok:
                d = np.asarray(delta, dtype=float)
                scale = float(d @ (self.current_lambda * d - b)) + 1e-3
                rho = (current_chi - temp_chi) / scale

            decrease_ok = temp_chi <= current_chi * (1.0 - self.cfg.min_relative_decrease)
            if rho > 0.0 and math.isfinite(temp_chi) and decrease_ok:
                alpha = 1.0 - (2.0 * rho - 1.0) ** 3
                self.current_lambda *= max(1.0 / 3.0, min(alpha, 2.0 / 3.0))
                self._ni = 2.0
                current_chi = temp_chi
                opt.discard_top()
                accepted = True
            else:
                self.current_lambda *= self._ni
                self._ni *= 2.0
                opt.pop()

            trials += 1
            if accepted or trials >= self.cfg.max_trials_after_failure or opt.terminate():
                break

        self.levenberg_iterations += trials
        opt.update_statistics(levenberg_iterations=trials)

        if not accepted and trials >= self.cfg.max_trials_after_failure:
            logger.debug("Levenberg-Marquardt: no improvement after %d trials", trials)
            return SolverResult(SolverStatus.TERMINATE)
        return SolverResult(SolverStatus.OK)
