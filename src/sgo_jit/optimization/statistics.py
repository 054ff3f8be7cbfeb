"""
Per-iteration statistics for the sparse optimizer.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass
class BatchStatistics:
    """
    Timing and size counters of one optimizer iteration.

    Times are wall-clock seconds measured with `time.perf_counter`. Fields a
    strategy does not fill stay at their default of -1.
    """
    iteration: int = -1
    num_vertices: int = 0
    num_edges: int = 0
    chi2: float = 0.0
    time_residuals: float = -1.0
    time_linearize: float = -1.0
    time_quadratic_form: float = -1.0
    time_linear_solution: float = -1.0
    time_update: float = -1.0
    time_iteration: float = -1.0
    levenberg_iterations: int = -1
    hessian_dimension: int = -1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
