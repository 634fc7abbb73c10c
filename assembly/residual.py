"""
Block residual computation shared by the fixed-point and staggered loops.

Rules (both loops):
- nonlinear residual: r[j] = sum_k A[j,k] @ solution[unknowns[k]] - rhs[j], block by block,
  so the solution may be a larger combined vector with a different block order;
- fixed dofs of every operator are zeroed and never enter a norm;
- blocks of inactive unknowns are zeroed in the nonlinear residual only;
- the norm is the Euclidean norm of the whole residual buffer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

import numpy as np

from core.layout import BlockVector

if TYPE_CHECKING:
    from solvers.solver_state import SolverState

logger = logging.getLogger(__name__)


def zero_fixed_dofs(entries: np.ndarray, operators: Iterable) -> None:
    """Zero entries at every operator's fixed dofs; out-of-range indices are ignored."""
    n = entries.shape[0]
    for op in operators:
        dofs = np.fromiter((int(d) for d in op.fixed_dofs()), dtype=np.int64)
        if dofs.size == 0:
            continue
        dofs = dofs[(dofs >= 0) & (dofs < n)]
        entries[dofs] = 0.0


def zero_inactive_blocks(state: "SolverState", residual: BlockVector) -> None:
    """Zero residual blocks of unknowns declared inactive; warn once for strangers."""
    for u in state.parameters.inactive:
        if state.unknown_index(u) is not None:
            residual[u] = 0.0
        elif u not in state.warned_inactive:
            state.warned_inactive.add(u)
            logger.warning(
                "inactive unknown %s not part of unknowns of problem '%s', skipping this one",
                getattr(u, "name", u),
                state.problem.name,
            )


def compute_nonlinear_residual(state: "SolverState", solution: Optional[BlockVector] = None) -> float:
    """Fill state.residual with A*solution - rhs (exclusions applied) and return its norm."""
    solution = state.solution if solution is None else solution
    residual = state.residual
    residual.fill(0.0)
    unknowns = state.unknowns
    for uj in unknowns:
        block = residual[uj]
        for uk in unknowns:
            A_jk = state.matrix.block(uj, uk)
            if A_jk.nnz:
                block += A_jk @ solution[uk]
    residual.entries -= state.rhs.entries
    zero_fixed_dofs(residual.entries, state.problem.operators)
    zero_inactive_blocks(state, residual)
    return float(np.linalg.norm(residual.entries))


def compute_linear_residual(state: "SolverState", x: np.ndarray) -> float:
    """Fill state.residual with A*x - rhs (fixed dofs zeroed) and return its norm."""
    entries = state.residual.entries
    entries.fill(0.0)
    entries += state.matrix.entries @ x
    entries -= state.rhs.entries
    zero_fixed_dofs(entries, state.problem.operators)
    return float(np.linalg.norm(entries))
