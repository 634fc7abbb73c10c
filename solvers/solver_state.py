"""
Solver state bound 1:1 to a problem description (or one sub-problem of a coupled run).

This packages the buffers and the linear solver handle so the fixed-point and staggered
loops only depend on a state object.

Buffer contract (clear-before-assemble):
  - matrix/rhs are zeroed in place before every assembly, never reallocated mid-loop;
  - residual is scratch with the same block structure as rhs;
  - solution may be a view-holder into a larger shared vector (coupling medium).
Handle contract:
  - linear_solver_handle is None until ensure_linear_solver(); afterwards it is reused
    across outer iterations and across solve() calls until reset_linear_solver().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from core.layout import BlockLayout, BlockMatrix, BlockVector, Unknown
from core.types import SolverParameters
from assembly.problem import AssemblyContext, ProblemDescription, ReductionOperator
from solvers.linear_types import LinearProblem
from solvers.nonlinear_types import NonlinearDiagnostics
from solvers.solver_linear import init_linear_solver

logger = logging.getLogger(__name__)

# Changing any of these invalidates a persisted linear solver handle.
_HANDLE_KEYS = ("method_linear", "precon_linear", "abstol", "reltol", "backend")

SpacesLike = Union[Sequence[Any], Mapping[Unknown, Any]]


def resolve_spaces(
    unknowns: Sequence[Unknown],
    spaces: Optional[SpacesLike],
    init: Optional[BlockVector] = None,
) -> Tuple[Any, ...]:
    """Discretization targets aligned with unknowns (from spaces, else from init)."""
    if spaces is None:
        if init is None:
            raise ValueError("need to know initial vector or discretization targets for unknowns of problem")
        missing = init.missing(unknowns)
        if missing:
            raise ValueError(f"did not find unknowns {[str(u) for u in missing]} in init vector (tags missing?)")
        return tuple(init.layout.space(u) for u in unknowns)
    if isinstance(spaces, Mapping):
        missing = [u for u in unknowns if u not in spaces]
        if missing:
            raise ValueError(f"no discretization target given for unknowns {[str(u) for u in missing]}")
        return tuple(spaces[u] for u in unknowns)
    spaces = tuple(spaces)
    if len(spaces) != len(unknowns):
        raise ValueError(f"Got {len(unknowns)} unknowns but {len(spaces)} discretization targets")
    return spaces


@dataclass(slots=True)
class SolverState:
    """
    Mutable solver configuration for one problem.

    Responsibilities:
      - own matrix/rhs/residual buffers with congruent block structure
      - bind the solution vector (own or shared)
      - persist the linear solver handle across iterations and calls
      - keep the reduced system of the latest assembly
    """

    problem: ProblemDescription
    layout: BlockLayout
    parameters: SolverParameters
    matrix: BlockMatrix
    rhs: BlockVector
    residual: BlockVector
    solution: BlockVector
    linear_problem: LinearProblem
    linear_solver_handle: Any = None

    # Reduced system of the latest assembly; rhs stays the unreduced reference
    reduced: Optional[LinearProblem] = None

    diagnostics: NonlinearDiagnostics = field(default_factory=NonlinearDiagnostics)
    warned_inactive: Set[Unknown] = field(default_factory=set)
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        problem: ProblemDescription,
        spaces: Optional[SpacesLike] = None,
        *,
        unknowns: Optional[Sequence[Unknown]] = None,
        init: Optional[BlockVector] = None,
        solution: Optional[BlockVector] = None,
        parameters: Optional[SolverParameters] = None,
        **kwargs: Any,
    ) -> "SolverState":
        """
        Build buffers for problem.

        solution: shared vector to bind (all unknowns must be present); otherwise a fresh
        vector is allocated and, if init is given, its matching blocks are copied in.
        """
        unknowns = tuple(problem.unknowns if unknowns is None else unknowns)
        if not unknowns:
            raise ValueError(f"Problem '{problem.name}' has no unknowns")
        if parameters is None:
            parameters = SolverParameters.from_dict(kwargs)
        elif kwargs:
            parameters = parameters.updated(**kwargs)

        source = solution if solution is not None else init
        layout = BlockLayout(unknowns=unknowns, spaces=resolve_spaces(unknowns, spaces, source))

        if solution is not None:
            missing = solution.missing(unknowns)
            if missing:
                raise ValueError(f"shared solution vector lacks unknowns {[str(u) for u in missing]}")
            for u in unknowns:
                if solution.layout.block_size(u) != layout.block_size(u):
                    raise ValueError(
                        f"unknown '{u}': shared block has {solution.layout.block_size(u)} dofs, "
                        f"discretization target has {layout.block_size(u)}"
                    )
        else:
            solution = BlockVector(layout)
            if init is not None:
                solution.copy_from(init)

        matrix = BlockMatrix(layout)
        rhs = BlockVector(layout)
        residual = BlockVector(layout)
        return cls(
            problem=problem,
            layout=layout,
            parameters=parameters,
            matrix=matrix,
            rhs=rhs,
            residual=residual,
            solution=solution,
            linear_problem=LinearProblem(A=matrix.entries, b=rhs.entries),
        )

    @property
    def unknowns(self) -> Tuple[Unknown, ...]:
        return self.layout.unknowns

    def unknown_index(self, u: Unknown) -> Optional[int]:
        return self.layout.index(u)

    # ------------------------------------------------------------------
    # Parameters and handle lifecycle
    # ------------------------------------------------------------------
    def update_parameters(self, **overrides: Any) -> None:
        """Refresh parameters; a changed linear configuration drops the handle."""
        if not overrides:
            return
        new = self.parameters.updated(**overrides)
        if any(getattr(new, k) != getattr(self.parameters, k) for k in _HANDLE_KEYS):
            self.reset_linear_solver()
        self.parameters = new

    def reset_linear_solver(self) -> None:
        if self.linear_solver_handle is not None:
            logger.debug("dropping linear solver handle of problem '%s'", self.problem.name)
        self.linear_solver_handle = None

    def ensure_linear_solver(self, linear_problem: Optional[LinearProblem] = None):
        """Create the linear solver handle once; later calls return the persisted one."""
        if self.linear_solver_handle is None:
            lp = linear_problem if linear_problem is not None else self.linear_problem
            p = self.parameters
            if p.verbosity > 0:
                logger.info(".... initializing linear solver (%s, backend=%s)", p.method_linear, p.backend)
            self.linear_solver_handle = init_linear_solver(
                lp,
                p.method_linear,
                backend=p.backend,
                preconditioner=p.precon_linear,
                abstol=p.abstol,
                reltol=p.reltol,
            )
        return self.linear_solver_handle

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------
    def clear_buffers(self) -> None:
        self.rhs.fill(0.0)
        self.matrix.zero()

    def make_context(self, step: int) -> AssemblyContext:
        return AssemblyContext(
            layout=self.layout,
            parameters=self.parameters,
            step=int(step),
            time=self.parameters.time,
        )

    def assemble(self, solution: Optional[BlockVector] = None, *, step: int = 1) -> AssemblyContext:
        """Zero matrix/rhs and add every operator's contribution at the current solution."""
        solution = self.solution if solution is None else solution
        context = self.make_context(step)
        self.clear_buffers()
        for op in self.problem.operators:
            op.assemble(self.matrix, self.rhs, solution, context)
        self.matrix.flush()
        self.linear_problem.A = self.matrix.entries
        self.linear_problem.b = self.rhs.entries
        return context

    def apply_reductions(self, context: AssemblyContext) -> LinearProblem:
        """Derive the reduced linear system; matrix and rhs buffers are left untouched."""
        lp = LinearProblem(A=self.linear_problem.A, b=self.linear_problem.b)
        for op in self.problem.reduction_operators:
            lp, A_red, b_red = op.apply(lp, context)
            logger.debug("reduction %s: system size %d", getattr(op, "name", op), A_red.shape[0])
        self.reduced = lp
        return lp

    def prolongate(self, x: np.ndarray) -> np.ndarray:
        ops: List[ReductionOperator] = list(self.problem.reduction_operators)
        for op in reversed(ops):
            x = op.prolongate(x)
        return x

    def update_solution(self, x: np.ndarray, damping: Optional[float] = None) -> None:
        """Write the solved vector into each unknown's block (damped if 0 < damping < 1)."""
        damping = self.parameters.damping if damping is None else float(damping)
        if x.shape != (self.layout.size,):
            raise ValueError(f"solution update of size {x.shape} does not match system size {self.layout.size}")
        for u, sl in self.layout.iter_blocks():
            block = self.solution[u]
            if damping > 0.0:
                block *= damping
                block += (1.0 - damping) * x[sl]
            else:
                block[:] = x[sl]

    def describe(self) -> str:
        lines = [
            f"SolverState for '{self.problem.name}'",
            f"  unknowns         = {[str(u) for u in self.unknowns]}",
            f"  ndofs            = {[self.layout.block_size(u) for u in self.unknowns]}",
            f"  operators        = {[getattr(op, 'name', repr(op)) for op in self.problem.operators]}",
            f"  reductions       = {[getattr(op, 'name', repr(op)) for op in self.problem.reduction_operators]}",
            f"  linear handle    = {type(self.linear_solver_handle).__name__ if self.linear_solver_handle is not None else None}",
        ]
        return "\n".join(lines) + "\n" + self.parameters.describe()
