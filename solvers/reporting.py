"""
Iteration table and matrix display helpers shared by the solver loops.

All output goes through logging; nothing here influences convergence.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import numpy as np
import scipy.sparse as sp

from solvers.nonlinear_types import IterationRecord

if TYPE_CHECKING:
    from solvers.solver_state import SolverState

logger = logging.getLogger(__name__)

TABLE_HEADER = (
    " #IT\t------- RESIDUALS -------\t---- DURATION (s) ----\t\t---- ALLOCATIONS (MiB) ----",
    "    \tNONLINEAR\tLINEAR\t\tASSEMB\tSOLVE\tTOTAL\t\tASSEMB\tSOLVE\tTOTAL",
)


def spy_text(A, max_cells: int = 40) -> str:
    """Coarse text sparsity plot ('#' marks a cell holding nonzeros)."""
    A = sp.coo_matrix(A)
    n, m = A.shape
    if n == 0 or m == 0:
        return "(empty matrix)"
    rows = min(n, max_cells)
    cols = min(m, max_cells)
    grid = np.zeros((rows, cols), dtype=bool)
    mask = A.data != 0.0
    grid[(A.row[mask] * rows) // n, (A.col[mask] * cols) // m] = True
    border = "+" + "-" * cols + "+"
    body = ["|" + "".join("#" if c else " " for c in line) + "|" for line in grid]
    return "\n".join([border] + body + [border, f"{n}x{m}, nnz={int(mask.sum())}"])


def show_system(state: "SolverState") -> None:
    p = state.parameters
    if p.show_matrix:
        logger.info(".... system matrix of '%s':\n%s", state.problem.name, state.matrix.entries.toarray())
    elif p.spy:
        logger.info(".... spy plot of system matrix:\n%s", spy_text(state.matrix.entries))


def log_solving(state: "SolverState") -> None:
    spaces = state.layout.spaces
    logger.info(
        "SOLVING %s\n\tunknowns = %s\n\tdiscretizations = %s\n\tndofs = %s",
        state.problem.name,
        [str(u) for u in state.unknowns],
        [getattr(s, "name", type(s).__name__) for s in spaces],
        [state.layout.block_size(u) for u in state.unknowns],
    )


def log_table_header(init_seconds: float, init_mib: float) -> None:
    for line in TABLE_HEADER:
        logger.info(line)
    logger.info(" INI\t\t\t\t\t\t\t%.2f\t\t\t\t%.2f", init_seconds, init_mib)


def format_row(rec: IterationRecord, *, label: str, show_nonlinear: bool) -> str:
    nl = f"{rec.nonlinear_residual:.3e}" if show_nonlinear else "---------"
    lin = f"{rec.linear_residual:.3e}"
    return (
        f"{label:>4}\t{nl}\t{lin}\t"
        f"{rec.time_assembly:.2f}\t{rec.time_solve:.2f}\t{rec.time_total:.2f}\t"
        f"\t{rec.alloc_assembly:.2f}\t{rec.alloc_solve:.2f}\t{rec.alloc_assembly + rec.alloc_solve:.2f}"
    )


def format_end(status: str, time_final: float, alloc_final: float) -> str:
    return f"\t{status}\t\t\t\tSUM -->\t{time_final:.2f}\t\t\tSUM -->\t{alloc_final:.2f}"


def format_coupling_row(step: int, residuals: Sequence[float], linres: Sequence[float]) -> str:
    parts = [f"{step:5d}"]
    for p, (r, lr) in enumerate(zip(residuals, linres), start=1):
        parts.append(f"res[{p}] = {r:.2e} ({lr:.3e})")
    return "\t".join(parts)
