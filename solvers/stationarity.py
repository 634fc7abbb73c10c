"""
Staggered (Gauss-Seidel) coupling of several problems through one combined vector.

Every sub-problem owns a SolverState whose solution blocks are views into the shared
combined vector. One outer step visits the sub-problems in list order; each performs
exactly one assemble + residual check + linear solve + damped update, so later
sub-problems already see the blocks updated earlier in the same pass.

The loop stops when all per-problem residual flags are true (flags are taken before
the solve of that step) or when maxsteps is exhausted; the last iterate is returned
in both cases.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.layout import BlockVector, Unknown, ndofs_of
from core.profiling import StepTimer
from core.types import CouplingParameters
from assembly.problem import ProblemDescription
from assembly.residual import compute_linear_residual, compute_nonlinear_residual
from solvers.fixed_point import detect_linearity
from solvers.nonlinear_types import CouplingDiagnostics, SolveStatus
from solvers.reporting import format_coupling_row, show_system
from solvers.solver_state import SolverState, SpacesLike, resolve_spaces

logger = logging.getLogger(__name__)


def _combined_vector(
    problems: Sequence[ProblemDescription],
    unknowns: Sequence[Sequence[Unknown]],
    spaces: Optional[Sequence[SpacesLike]],
    init: Optional[BlockVector],
) -> BlockVector:
    if init is not None:
        for p, group in enumerate(unknowns):
            missing = init.missing(group)
            if missing:
                raise ValueError(
                    f"did not find unknowns {[str(u) for u in missing]} of problem "
                    f"'{problems[p].name}' in init vector (tags missing?)"
                )
        logger.debug(".... taking discretization targets from init vector")
        return init.copy()

    if spaces is None:
        raise ValueError("need init vector or discretization targets (one sequence per problem)")
    if len(spaces) != len(problems):
        raise ValueError(f"Got {len(problems)} problems but {len(spaces)} discretization target lists")

    all_unknowns: List[Unknown] = []
    all_spaces: List[Any] = []
    for group, sp_group in zip(unknowns, spaces):
        for u, space in zip(group, resolve_spaces(group, sp_group)):
            if u in all_unknowns:
                known = all_spaces[all_unknowns.index(u)]
                if ndofs_of(known) != ndofs_of(space):
                    raise ValueError(f"unknown '{u}' is discretized with different sizes in different problems")
                continue
            all_unknowns.append(u)
            all_spaces.append(space)
    return BlockVector.zeros(all_unknowns, all_spaces)


def iterate_until_stationarity(
    problems: Sequence[ProblemDescription],
    spaces: Optional[Sequence[SpacesLike]] = None,
    *,
    init: Optional[BlockVector] = None,
    unknowns: Optional[Sequence[Sequence[Unknown]]] = None,
    maxsteps: int = 1000,
    tolerance_change: float = 1.0e-10,
    **params: Any,
) -> Union[BlockVector, Tuple[BlockVector, List[SolverState], CouplingDiagnostics]]:
    """
    Iterate the problems in order until every residual is below its target.

    Parameters
    ----------
    problems : sequence of ProblemDescription
        Visited in this order in every outer step.
    spaces : sequence (one entry per problem), optional
        Discretization targets of each problem's unknowns; taken from init when omitted.
    init : BlockVector, optional
        Initial combined vector; it is value-copied, the caller's vector is left untouched.
    unknowns : sequence of unknown lists, optional
        Defaults to each problem's own unknowns.
    maxsteps : int
        Cap on outer steps.
    tolerance_change : float
        Accepted and reported; the step change norm is recorded but no stopping test uses it.
    **params
        SolverParameters fields shared by all sub-problems (return_config selects the
        (vector, states, diagnostics) return form).
    """
    coupling = CouplingParameters(maxsteps=maxsteps, tolerance_change=tolerance_change)
    problems = list(problems)
    if not problems:
        raise ValueError("iterate_until_stationarity needs at least one problem")
    groups = [tuple(pd.unknowns) for pd in problems] if unknowns is None else [tuple(g) for g in unknowns]
    if len(groups) != len(problems):
        raise ValueError(f"Got {len(problems)} problems but {len(groups)} unknown lists")

    t_init = StepTimer()
    with t_init:
        combined = _combined_vector(problems, groups, spaces, init)
        states: List[SolverState] = []
        for p, pd in enumerate(problems):
            sp_p = None if spaces is None or init is not None else spaces[p]
            state = SolverState.create(pd, sp_p, unknowns=groups[p], solution=combined, **params)
            if state.parameters.verbosity > 0:
                logger.info(".... init solver configurations")
            if state.parameters.show_config:
                logger.info("\n%s", state.describe())
            states.append(state)

    p0 = states[0].parameters
    verbose = p0.verbosity > -1
    if verbose:
        logger.info(
            "SOLVING iteratively %s\n\tunknowns = %s",
            [pd.name for pd in problems],
            [[str(u) for u in g] for g in groups],
        )
    for state in states:
        is_linear, nonlinear = detect_linearity(state.problem, state.unknowns, state.parameters.is_linear)
        state.meta["is_linear"] = is_linear
        if state.problem.reduction_operators:
            logger.warning("problem '%s': reduction operators are ignored in the coupling loop", state.problem.name)
        if state.parameters.verbosity > -1:
            logger.info(" %s: nonlinear = %s", state.problem.name, "true" if nonlinear else "false")
    if verbose:
        logger.info(" init time | allocs = %.2f s | %.2f MiB", t_init.seconds, t_init.mib)
        logger.info(" tolerance_change = %.3e (reported only)", coupling.tolerance_change)

    diag = CouplingDiagnostics(converged_flags=[False] * len(states))
    time_final = t_init.seconds
    alloc_final = t_init.mib
    converged = [False] * len(states)
    step = 0
    while step < coupling.maxsteps and not all(converged):
        step += 1
        previous = combined.copy()
        step_res: List[float] = []
        step_linres: List[float] = []
        for p, state in enumerate(states):
            t_asm = StepTimer()
            t_solve = StepTimer()
            with t_asm:
                state.assemble(step=step)
                show_system(state)
                handle = state.ensure_linear_solver()
                nlres = compute_nonlinear_residual(state)
            converged[p] = nlres < state.parameters.target_residual

            with t_solve:
                lp = state.linear_problem
                handle.A = lp.A
                handle.b = lp.b
                result = handle.solve()
                x = np.asarray(result.x, dtype=np.float64)
                linres = compute_linear_residual(state, x)
                state.update_solution(x)
            time_final += t_asm.seconds + t_solve.seconds
            alloc_final += t_asm.mib + t_solve.mib
            step_res.append(nlres)
            step_linres.append(linres)

        change = float(np.linalg.norm(combined.entries - previous.entries))
        diag.history_res.append(step_res)
        diag.history_linres.append(step_linres)
        diag.history_change.append(change)
        if verbose:
            logger.info(format_coupling_row(step, step_res, step_linres))

    diag.n_steps = step
    diag.converged_flags = list(converged)
    diag.converged = all(converged)
    diag.status = SolveStatus.CONVERGED if diag.converged else SolveStatus.NOT_CONVERGED
    diag.time_total = time_final
    diag.extra["alloc_total"] = alloc_final
    diag.extra["tolerance_change"] = coupling.tolerance_change

    if not diag.converged:
        logger.warning(
            "coupled problems %s did not converge within maxsteps=%d (flags=%s)",
            [pd.name for pd in problems],
            coupling.maxsteps,
            converged,
        )
    elif verbose:
        logger.info("\tconverged after %d steps\t\tSUM -->\t%.2f s\t%.2f MiB", step, time_final, alloc_final)

    if p0.return_config:
        return combined, states, diag
    return combined
