"""
Problem description and the operator interfaces consumed by the solver loops.

Operators are supplied externally and never enumerated by the solvers; they only see:
  - assemble(matrix, rhs, solution, context): add (never overwrite) contributions
  - nonlinear_dependencies(): unknowns the assembled system depends on
  - fixed_dofs(): system-numbered constrained dofs, valid after the latest assemble
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence, Set, Tuple

import numpy as np

from core.layout import BlockLayout, BlockMatrix, BlockVector, Unknown

if TYPE_CHECKING:
    from core.types import SolverParameters
    from solvers.linear_types import LinearProblem


@dataclass(slots=True)
class AssemblyContext:
    """What an operator may read while assembling."""

    layout: BlockLayout
    parameters: "SolverParameters"
    step: int = 1
    time: float = 0.0


class Operator(ABC):
    """A unit of weak-form contribution to the assembled system."""

    name: str = "operator"
    unknowns: Tuple[Unknown, ...] = ()

    @abstractmethod
    def assemble(
        self,
        matrix: BlockMatrix,
        rhs: BlockVector,
        solution: BlockVector,
        context: AssemblyContext,
    ) -> None:
        ...

    def nonlinear_dependencies(self) -> Set[Unknown]:
        return set()

    def fixed_dofs(self) -> Set[int]:
        return set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"


class ReductionOperator(ABC):
    """Pre-solve transformation yielding an alternative linear system."""

    name: str = "reduction"

    @abstractmethod
    def apply(
        self,
        linear_problem: "LinearProblem",
        context: AssemblyContext,
    ) -> Tuple["LinearProblem", Any, np.ndarray]:
        """Return (reduced_problem, reduced_matrix, reduced_rhs)."""

    def prolongate(self, x: np.ndarray) -> np.ndarray:
        """Map a solution of the reduced system back to the full system."""
        return x


def _ordered_union(groups: Iterable[Iterable[Unknown]]) -> Tuple[Unknown, ...]:
    out: list = []
    for group in groups:
        for u in group:
            if u not in out:
                out.append(u)
    return tuple(out)


@dataclass(frozen=True, slots=True)
class ProblemDescription:
    """Immutable list of operators (plus optional reductions) with a display name."""

    name: str
    operators: Tuple[Operator, ...] = ()
    reduction_operators: Tuple[ReductionOperator, ...] = ()
    unknowns: Tuple[Unknown, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "operators", tuple(self.operators))
        object.__setattr__(self, "reduction_operators", tuple(self.reduction_operators))
        unknowns = tuple(self.unknowns) if self.unknowns else _ordered_union(
            getattr(op, "unknowns", ()) for op in self.operators
        )
        if len(set(unknowns)) != len(unknowns):
            raise ValueError(f"Problem '{self.name}': duplicated unknowns {[str(u) for u in unknowns]}")
        object.__setattr__(self, "unknowns", unknowns)

    def nonlinear_unknowns(self, unknowns: Optional[Sequence[Unknown]] = None) -> Set[Unknown]:
        """Declared unknowns some operator depends on nonlinearly."""
        unknowns = self.unknowns if unknowns is None else tuple(unknowns)
        hits: Set[Unknown] = set()
        for op in self.operators:
            hits.update(set(op.nonlinear_dependencies()) & set(unknowns))
        return hits

    def is_nonlinear(self, unknowns: Optional[Sequence[Unknown]] = None) -> bool:
        return bool(self.nonlinear_unknowns(unknowns))
