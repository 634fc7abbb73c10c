"""
Nonlinear/linear fixed-point loop for a single problem.

Depending on the detected/configured nonlinearity the system is either solved directly
in one assemble+solve pass or by a fixed-point iteration:

  for step j = 1 .. maxiterations+1:
    assemble (zero in place, additive operator contributions at the current iterate)
    apply reduction operators to the freshly assembled system (residuals stay unreduced)
    create the linear solver handle once (persisted in the SolverState)
    [nonlinear] residual = A*sol - rhs with fixed dofs and inactive blocks zeroed
    stop if ||residual|| < target_residual, or at the last step (maxiterations reached)
    solve, measure the linear residual, damped update of each unknown's block

Linear problems run the first pass only; step 2 is a reporting step that reuses the
linear residual as the convergence measure without reassembling.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from core.layout import BlockVector, Unknown
from core.profiling import StepTimer
from assembly.problem import ProblemDescription
from assembly.residual import compute_linear_residual, compute_nonlinear_residual
from solvers.nonlinear_types import IterationRecord, NonlinearDiagnostics, SolveStatus
from solvers.reporting import format_end, format_row, log_solving, log_table_header, show_system
from solvers.solver_state import SolverState, SpacesLike

logger = logging.getLogger(__name__)

_UNSET = 1.1e30


def detect_linearity(problem: ProblemDescription, unknowns: Sequence[Unknown], is_linear: Any) -> Tuple[bool, bool]:
    """
    Return (is_linear, nonlinear_detected).

    A user-forced is_linear=True on a detected-nonlinear problem is accepted with a warning.
    """
    nonlinear = problem.is_nonlinear(unknowns)
    if is_linear == "auto":
        linear = not nonlinear
    else:
        linear = bool(is_linear)
    if linear and nonlinear:
        logger.warning(
            "problem '%s' seems nonlinear, but user set is_linear = true (results may be wrong)!!",
            problem.name,
        )
    return linear, nonlinear


def solve(
    problem: ProblemDescription,
    spaces: Optional[SpacesLike] = None,
    state: Optional[SolverState] = None,
    *,
    init: Optional[BlockVector] = None,
    unknowns: Optional[Sequence[Unknown]] = None,
    **params: Any,
) -> Union[BlockVector, Tuple[BlockVector, SolverState]]:
    """
    Solve problem and return its solution vector (plus the state if return_config).

    Parameters
    ----------
    problem : ProblemDescription
    spaces : sequence aligned with unknowns, or mapping Unknown -> space, optional
        Discretization targets; taken from init when omitted.
    state : SolverState, optional
        Reused as is; only its parameters are refreshed from params. Must have been
        created for problem.
    init : BlockVector, optional
        Initial guess; matching blocks are copied into a fresh solution vector.
    unknowns : sequence of Unknown, optional
        Defaults to problem.unknowns.
    **params
        SolverParameters fields (verbosity, maxiterations, target_residual, is_linear,
        damping, method_linear, precon_linear, abstol, reltol, backend, inactive,
        show_config, show_matrix, spy, return_config, time).
    """
    t_init = StepTimer()
    if state is not None:
        if state.problem is not problem:
            raise ValueError(
                f"solver state belongs to problem '{state.problem.name}', cannot solve '{problem.name}' with it"
            )
        state.update_parameters(**params)
        if state.parameters.verbosity > 0:
            logger.info(".... reusing given solver configuration")
    else:
        if spaces is None and init is None:
            raise ValueError("need to know initial vector or discretization targets for unknowns of problem")
        with t_init:
            state = SolverState.create(problem, spaces, unknowns=unknowns, init=init, **params)
        if state.parameters.verbosity > 0:
            logger.info(".... init solver configuration")

    p = state.parameters
    verbose = p.verbosity > -1
    if verbose:
        log_solving(state)
    if p.verbosity > 0 or p.show_config:
        logger.info("\n%s", state.describe())

    is_linear, nonlinear = detect_linearity(problem, state.unknowns, p.is_linear)
    if verbose:
        logger.info(" nonlinear = %s", "true" if nonlinear else "false")
    maxits = 0 if is_linear else p.maxiterations
    n_steps = 2 if is_linear else maxits + 1
    has_reductions = bool(problem.reduction_operators)

    diag = NonlinearDiagnostics(is_linear=is_linear, nonlinear_detected=nonlinear)
    state.diagnostics = diag
    if verbose:
        log_table_header(t_init.seconds, t_init.mib)
    time_final = t_init.seconds
    alloc_final = t_init.mib
    nlres = _UNSET
    linres = _UNSET
    lp = state.linear_problem

    for j in range(1, n_steps + 1):
        t_asm = StepTimer()
        t_solve = StepTimer()
        if is_linear and j == 2:
            nlres = linres
        else:
            with t_asm:
                context = state.assemble(step=j)
                lp = state.linear_problem
                if has_reductions:
                    lp = state.apply_reductions(context)
                show_system(state)
                handle = state.ensure_linear_solver(lp)
                if not is_linear:
                    nlres = compute_nonlinear_residual(state)
            time_final += t_asm.seconds
            alloc_final += t_asm.mib

        rec = IterationRecord(
            step=j,
            nonlinear_residual=nlres,
            linear_residual=linres,
            time_assembly=t_asm.seconds,
            time_total=t_asm.seconds,
            alloc_assembly=t_asm.mib,
        )
        diag.n_iter = j

        if nlres < p.target_residual:
            diag.converged = True
            diag.status = SolveStatus.CONVERGED
            diag.history.append(rec)
            if verbose:
                logger.info(" END\t%.3e\t\t\t%.2f\t\t%.2f", nlres, rec.time_assembly, rec.time_total)
                logger.info(format_end("converged", time_final, alloc_final))
            break
        if j == n_steps and not is_linear:
            diag.status = SolveStatus.MAXITERATIONS
            diag.history.append(rec)
            if verbose:
                logger.info(" END\t\t\t%.3e\t\t%.2f\t\t%.2f", linres, rec.time_assembly, rec.time_total)
                logger.info(format_end("maxiterations reached", time_final, alloc_final))
            logger.warning(
                "problem '%s': maxiterations reached (residual=%.3e, target=%.3e)",
                problem.name,
                nlres,
                p.target_residual,
            )
            break
        if is_linear and j == 2:
            diag.status = SolveStatus.FINISHED
            diag.history.append(rec)
            if verbose:
                logger.info(format_end("finished", time_final, alloc_final))
            break

        with t_solve:
            handle.A = lp.A
            handle.b = lp.b
            result = handle.solve()
            x = state.prolongate(result.x) if has_reductions else np.asarray(result.x, dtype=np.float64)
            linres = compute_linear_residual(state, x)
            state.update_solution(x)
        diag.n_solves += 1
        time_final += t_solve.seconds
        alloc_final += t_solve.mib

        rec.linear_residual = linres
        rec.time_solve = t_solve.seconds
        rec.time_total += t_solve.seconds
        rec.alloc_solve = t_solve.mib
        diag.history.append(rec)
        if verbose:
            logger.info(format_row(rec, label="END" if is_linear else str(j), show_nonlinear=not is_linear))

    diag.res_norm_2 = float(nlres)
    diag.linear_res_norm = float(linres)
    diag.time_total = time_final
    diag.alloc_total = alloc_final

    if p.return_config:
        return state.solution, state
    return state.solution
