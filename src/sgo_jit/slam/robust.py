"""
Robust kernels for edge chi-square values.

A kernel maps the squared Mahalanobis error e2 = eᵀΩe of an edge to

    rho(e2)   - the robustified cost added to the active chi-square
    rho'(e2)  - the weight applied to Ω when the edge is linearized

so large residuals (outliers) contribute less than quadratically.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class RobustCostType(Enum):
    """Types of robust cost functions."""
    L2 = "l2"           # Standard least squares
    HUBER = "huber"     # Huber loss
    CAUCHY = "cauchy"   # Cauchy/Lorentzian loss
    TUKEY = "tukey"     # Tukey biweight


@dataclass(frozen=True)
class RobustKernel:
    kind: RobustCostType = RobustCostType.HUBER
    delta: float = 1.0

    def robustify(self, e2: float) -> Tuple[float, float]:
        """Return (rho, rho') for a squared error."""
        d2 = self.delta * self.delta

        if self.kind == RobustCostType.HUBER:
            if e2 <= d2:
                return e2, 1.0
            sqrte = math.sqrt(e2)
            return 2.0 * sqrte * self.delta - d2, self.delta / sqrte

        if self.kind == RobustCostType.CAUCHY:
            aux = e2 / d2 + 1.0
            return d2 * math.log(aux), 1.0 / aux

        if self.kind == RobustCostType.TUKEY:
            if e2 > d2:
                return d2 / 3.0, 0.0
            aux = 1.0 - e2 / d2
            return d2 * (1.0 - aux ** 3) / 3.0, aux * aux

        return e2, 1.0
