"""
Generic, discretization-agnostic operators.

These cover the contribution kinds the solver loops distinguish (constant blocks,
right-hand sides, fixed-point linearized nonlinear terms, explicit coupling to other
fields, penalty Dirichlet constraints). Quadrature-based assembly lives elsewhere.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, Set, Tuple

import numpy as np
import scipy.sparse as sp

from core.layout import BlockMatrix, BlockVector, Unknown
from assembly.problem import AssemblyContext, Operator

PicardKernel = Callable[[BlockVector, AssemblyContext], Tuple[Any, Any]]


class LinearOperator(Operator):
    """Constant block A[row, col] with an optional constant rhs[row]."""

    def __init__(self, row: Unknown, col: Unknown, matrix: Any, rhs: Any = None, *, name: str = "") -> None:
        self.row = row
        self.col = col
        self.matrix = matrix if sp.issparse(matrix) else np.asarray(matrix, dtype=np.float64)
        self.rhs = None if rhs is None else np.asarray(rhs, dtype=np.float64)
        self.name = name or f"linear[{row},{col}]"
        self.unknowns = (row,) if row == col else (row, col)

    def assemble(self, matrix: BlockMatrix, rhs: BlockVector, solution: BlockVector, context: AssemblyContext) -> None:
        matrix.add_block(self.row, self.col, self.matrix)
        if self.rhs is not None:
            rhs[self.row] += self.rhs


class SourceOperator(Operator):
    """Right-hand side only: rhs[unknown] += values (scalar or array, or f(context))."""

    def __init__(self, unknown: Unknown, values: Any, *, name: str = "") -> None:
        self.unknown = unknown
        self.values = values
        self.name = name or f"source[{unknown}]"
        self.unknowns = (unknown,)

    def assemble(self, matrix: BlockMatrix, rhs: BlockVector, solution: BlockVector, context: AssemblyContext) -> None:
        values = self.values(context) if callable(self.values) else self.values
        rhs[self.unknown] += np.asarray(values, dtype=np.float64)


class PicardOperator(Operator):
    """
    Fixed-point linearization of a nonlinear term.

    kernel(solution, context) -> (local_matrix, local_rhs) is evaluated at the current
    iterate and added to block (unknown, unknown); local_rhs may be None.
    """

    def __init__(
        self,
        unknown: Unknown,
        kernel: PicardKernel,
        dependencies: Optional[Iterable[Unknown]] = None,
        *,
        name: str = "",
    ) -> None:
        self.unknown = unknown
        self.kernel = kernel
        self.dependencies = frozenset((unknown,) if dependencies is None else dependencies)
        self.name = name or f"picard[{unknown}]"
        self.unknowns = (unknown,)

    def nonlinear_dependencies(self) -> Set[Unknown]:
        return set(self.dependencies)

    def assemble(self, matrix: BlockMatrix, rhs: BlockVector, solution: BlockVector, context: AssemblyContext) -> None:
        local_matrix, local_rhs = self.kernel(solution, context)
        if local_matrix is not None:
            matrix.add_block(self.unknown, self.unknown, local_matrix)
        if local_rhs is not None:
            rhs[self.unknown] += np.asarray(local_rhs, dtype=np.float64)


class CouplingOperator(Operator):
    """
    Explicit coupling: rhs[row] += matrix @ solution[source].

    source is read from the solution vector handed to assemble (the combined vector in
    a staggered run), so it need not be an unknown of this problem.
    """

    def __init__(self, row: Unknown, source: Unknown, matrix: Any, *, name: str = "") -> None:
        self.row = row
        self.source = source
        self.matrix = matrix if sp.issparse(matrix) else np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        self.name = name or f"coupling[{row}<-{source}]"
        self.unknowns = (row,)

    def assemble(self, matrix: BlockMatrix, rhs: BlockVector, solution: BlockVector, context: AssemblyContext) -> None:
        if self.source not in solution:
            raise KeyError(f"{self.name}: solution vector has no block '{self.source}'")
        rhs[self.row] += np.asarray(self.matrix @ solution[self.source], dtype=np.float64).ravel()


class DirichletOperator(Operator):
    """
    Penalty Dirichlet constraint: A[d,d] += penalty, b[d] += penalty * value.

    The constrained dofs are reported (system numbering) after each assemble so the
    solvers exclude them from residual norms.
    """

    def __init__(
        self,
        unknown: Unknown,
        dofs: Iterable[int],
        values: Any = 0.0,
        *,
        penalty: float = 1.0e60,
        name: str = "",
    ) -> None:
        self.unknown = unknown
        self.dofs = np.asarray(list(dofs), dtype=np.int64)
        self.values = np.broadcast_to(np.asarray(values, dtype=np.float64), self.dofs.shape).copy()
        self.penalty = float(penalty)
        self.name = name or f"dirichlet[{unknown}]"
        self.unknowns = (unknown,)
        self._fixed: Set[int] = set()

    def fixed_dofs(self) -> Set[int]:
        return set(self._fixed)

    def assemble(self, matrix: BlockMatrix, rhs: BlockVector, solution: BlockVector, context: AssemblyContext) -> None:
        if self.dofs.size == 0:
            self._fixed = set()
            return
        matrix.add_diagonal(self.unknown, self.penalty, dofs=self.dofs)
        block = rhs[self.unknown]
        np.add.at(block, self.dofs, self.penalty * self.values)
        offset = matrix.layout.offset(self.unknown)
        self._fixed = {int(offset + d) for d in self.dofs}
