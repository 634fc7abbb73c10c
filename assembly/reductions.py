"""
Reduction operators: pre-solve transformations of the assembled linear system.

The reduced system is only used for the linear solve; residuals are always measured
against the unreduced matrix/rhs. prolongate() maps the reduced solution back to the
full system numbering so the block-wise solution update stays unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from core.layout import Unknown
from assembly.problem import AssemblyContext, ReductionOperator
from solvers.linear_types import LinearProblem, as_csr

logger = logging.getLogger(__name__)


class EliminateDofs(ReductionOperator):
    """
    Remove prescribed dofs of one unknown from the system.

    Solves A_ff x_f = b_f - A_fc x_c for the free dofs; prolongate() reinserts x_c.
    """

    def __init__(self, unknown: Unknown, dofs: Iterable[int], values: Any = 0.0, *, name: str = "") -> None:
        self.unknown = unknown
        self.dofs = np.asarray(sorted(set(int(d) for d in dofs)), dtype=np.int64)
        self.values = np.broadcast_to(np.asarray(values, dtype=np.float64), self.dofs.shape).copy()
        self.name = name or f"eliminate[{unknown}]"
        self._n_full: Optional[int] = None
        self._free: Optional[np.ndarray] = None
        self._fixed: Optional[np.ndarray] = None

    def apply(self, linear_problem: LinearProblem, context: AssemblyContext) -> Tuple[LinearProblem, sp.csr_matrix, np.ndarray]:
        A = as_csr(linear_problem.A)
        b = np.asarray(linear_problem.b, dtype=np.float64)
        n = A.shape[0]
        fixed = context.layout.offset(self.unknown) + self.dofs
        if fixed.size and (fixed.min() < 0 or fixed.max() >= n):
            raise IndexError(f"{self.name}: eliminated dofs out of range for system size {n}")
        mask = np.ones(n, dtype=bool)
        mask[fixed] = False
        free = np.flatnonzero(mask)

        x_fixed = np.zeros(n, dtype=np.float64)
        x_fixed[fixed] = self.values
        b_red = (b - A @ x_fixed)[free]
        A_red = A[free, :][:, free].tocsr()

        self._n_full = n
        self._free = free
        self._fixed = fixed
        logger.debug("%s: reduced system %d -> %d dofs", self.name, n, free.size)
        return LinearProblem(A=A_red, b=b_red), A_red, b_red

    def prolongate(self, x: np.ndarray) -> np.ndarray:
        if self._n_full is None:
            raise RuntimeError(f"{self.name}: prolongate() called before apply()")
        out = np.zeros(self._n_full, dtype=np.float64)
        out[self._free] = x
        out[self._fixed] = self.values
        return out


class JacobiScaling(ReductionOperator):
    """Left-scale rows by the inverse diagonal (solution preserving)."""

    def __init__(self, *, name: str = "jacobi_scaling") -> None:
        self.name = name

    def apply(self, linear_problem: LinearProblem, context: AssemblyContext) -> Tuple[LinearProblem, sp.csr_matrix, np.ndarray]:
        A = as_csr(linear_problem.A)
        d = A.diagonal()
        zero = d == 0.0
        if np.any(zero):
            raise ZeroDivisionError(f"{self.name}: zero diagonal in rows {np.flatnonzero(zero)[:10].tolist()}")
        D_inv = sp.diags(1.0 / d)
        A_red = (D_inv @ A).tocsr()
        b_red = np.asarray(linear_problem.b, dtype=np.float64) / d
        return LinearProblem(A=A_red, b=b_red), A_red, b_red
