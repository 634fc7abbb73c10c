"""
Single-problem fixed-point loop.

Tests:
1. Linear problems: one assemble+solve, round-off residual, exact FD solution
2. Damped update rule and zero-residual start
3. Fixed dofs and inactive unknowns never enter the residual norm
4. Warnings: forced linearity, inactive unknown outside the problem
5. SolverState reuse keeps buffers and the linear solver handle
6. Nonlinear Picard iteration, maxiterations reached, reduction operators
7. A SolverState only solves the problem it was built for
"""

from __future__ import annotations

import logging

import numpy as np
import pytest

from core.layout import BlockLayout, BlockMatrix, BlockVector, Unknown
from assembly.operators import DirichletOperator, LinearOperator, PicardOperator, SourceOperator
from assembly.problem import AssemblyContext, Operator, ProblemDescription
from assembly.reductions import EliminateDofs, JacobiScaling
from assembly.residual import compute_linear_residual, compute_nonlinear_residual
from driver.problems import build_nonlinear_diffusion1d, build_poisson1d
from solvers.fixed_point import solve
from solvers.nonlinear_types import SolveStatus
from solvers.reporting import spy_text
from solvers.solver_state import SolverState

U = Unknown("u")
V = Unknown("v")


def _identity_problem(rhs, n: int = 3) -> ProblemDescription:
    return ProblemDescription(
        "identity",
        operators=[LinearOperator(U, U, np.eye(n)), SourceOperator(U, rhs)],
    )


def _vector(values, u: Unknown = U) -> BlockVector:
    values = np.asarray(values, dtype=np.float64)
    return BlockVector(BlockLayout.from_sizes([(u, values.size)]), values.copy())


class FixedDofJunk(Operator):
    """Writes large values at dof 0 and reports it as fixed."""

    name = "junk"
    unknowns = (U,)

    def __init__(self, value: float) -> None:
        self.value = value

    def assemble(self, matrix, rhs, solution, context):
        matrix.add(U, U, [0], [0], self.value)
        rhs[U][0] += 3.0 * self.value

    def fixed_dofs(self):
        return {0}


def test_linear_poisson_single_pass_exact():
    built = build_poisson1d({"n": 17, "source": 2.0, "dirichlet_values": {"left": 1.0, "right": 0.5}})
    sol, state = solve(built.problems[0], [built.space], return_config=True)
    diag = state.diagnostics
    assert diag.is_linear and not diag.nonlinear_detected
    assert diag.n_solves == 1
    assert diag.status in (SolveStatus.CONVERGED, SolveStatus.FINISHED)
    assert diag.n_iter == 2
    assert diag.linear_res_norm < 1e-8
    np.testing.assert_allclose(sol[U], built.exact["u"], atol=1e-10)


def test_return_without_config_is_vector():
    sol = solve(_identity_problem([1.0, 2.0, 3.0]), [3])
    assert isinstance(sol, BlockVector)
    np.testing.assert_allclose(sol[U], [1.0, 2.0, 3.0])


def test_missing_spaces_and_init_raises():
    with pytest.raises(ValueError, match="need to know initial vector"):
        solve(_identity_problem([1.0, 2.0, 3.0]))


@pytest.mark.parametrize("damping", [0.0, 0.25, 0.5, 0.9])
def test_damped_update(damping):
    old = np.array([10.0, -4.0, 2.0])
    new = np.array([1.0, 2.0, 3.0])
    sol = solve(_identity_problem(new), init=_vector(old), damping=damping)
    np.testing.assert_allclose(sol[U], damping * old + (1.0 - damping) * new)


def test_init_vector_not_mutated():
    init = _vector([5.0, 5.0, 5.0])
    sol = solve(_identity_problem([1.0, 2.0, 3.0]), init=init)
    np.testing.assert_allclose(init[U], 5.0)
    assert sol is not init


def test_zero_residual_start_converges_at_first_step():
    exact = np.array([1.0, -2.0, 0.5])
    op = PicardOperator(U, lambda sol, ctx: (np.eye(3), exact), dependencies=(U,))
    pd = ProblemDescription("picard_identity", operators=[op])
    sol, state = solve(pd, init=_vector(exact), return_config=True)
    diag = state.diagnostics
    assert diag.nonlinear_detected
    assert diag.converged
    assert diag.status == SolveStatus.CONVERGED
    assert diag.n_iter == 1
    assert diag.n_solves == 0
    np.testing.assert_allclose(sol[U], exact)


def test_fixed_dofs_do_not_change_residual_norms():
    x = np.array([0.0, 1.0, 2.0])
    base = [LinearOperator(U, U, np.diag([2.0, 3.0, 4.0])), SourceOperator(U, [1.0, 1.0, 1.0])]
    norms = []
    for junk in (1.0, 1.0e8):
        pd = ProblemDescription("fixed", operators=base + [FixedDofJunk(junk)])
        state = SolverState.create(pd, init=_vector(x))
        state.assemble()
        norms.append((compute_nonlinear_residual(state), compute_linear_residual(state, x)))
    assert norms[0][0] == pytest.approx(norms[1][0], rel=1e-14)
    assert norms[0][1] == pytest.approx(norms[1][1], rel=1e-14)
    # dofs 1 and 2 only: (3*1 - 1, 4*2 - 1)
    assert norms[0][0] == pytest.approx(np.hypot(2.0, 7.0))


def test_dirichlet_fixed_dofs_use_system_numbering():
    layout = BlockLayout.from_sizes([(V, 2), (U, 4)])
    matrix = BlockMatrix(layout)
    rhs = BlockVector(layout)
    op = DirichletOperator(U, [0, 3], [1.0, 2.0], penalty=10.0)
    op.assemble(matrix, rhs, BlockVector(layout), AssemblyContext(layout=layout, parameters=None))
    assert op.fixed_dofs() == {2, 5}
    np.testing.assert_allclose(rhs[U], [10.0, 0.0, 0.0, 20.0])


def test_inactive_unknown_excluded_from_residual():
    ops = [
        LinearOperator(U, U, np.eye(2), rhs=[1.0, 1.0]),
        LinearOperator(V, V, np.eye(2), rhs=[1.0e6, -1.0e6]),
    ]
    pd = ProblemDescription("two_fields", operators=ops)
    init = BlockVector.zeros([U, V], [2, 2])
    active = SolverState.create(pd, init=init)
    active.assemble()
    assert compute_nonlinear_residual(active) > 1.0e6

    muted = SolverState.create(pd, init=init, inactive=(V,))
    muted.assemble()
    assert compute_nonlinear_residual(muted) == pytest.approx(np.sqrt(2.0))
    np.testing.assert_allclose(muted.residual[V], 0.0)


def test_inactive_unknown_not_in_problem_warns_once(caplog):
    built = build_nonlinear_diffusion1d({"n": 9, "alpha": 0.5})
    caplog.set_level(logging.WARNING)
    solve(
        built.problems[0],
        [built.space],
        inactive=(Unknown("pressure"),),
        maxiterations=3,
        target_residual=1e-30,
        verbosity=-1,
    )
    hits = [r for r in caplog.records if "inactive unknown pressure" in r.getMessage()]
    assert len(hits) == 1
    assert hits[0].levelno == logging.WARNING


def test_forced_linear_on_nonlinear_problem_warns(caplog):
    built = build_nonlinear_diffusion1d({"n": 9, "alpha": 1.0})
    caplog.set_level(logging.WARNING)
    _, state = solve(built.problems[0], [built.space], is_linear=True, return_config=True)
    assert any("seems nonlinear" in r.getMessage() for r in caplog.records)
    assert state.diagnostics.is_linear
    assert state.diagnostics.nonlinear_detected
    assert state.diagnostics.n_solves == 1


def test_state_reuse_keeps_buffers_and_handle():
    built = build_poisson1d({"n": 11})
    pd = built.problems[0]
    _, state = solve(pd, [built.space], return_config=True)
    handle = state.linear_solver_handle
    csr = state.matrix.entries
    rhs_entries = state.rhs.entries
    pattern = state.matrix.pattern_changes
    assert handle is not None

    sol2, state2 = solve(pd, state=state, return_config=True)
    assert state2 is state
    assert state.linear_solver_handle is handle
    assert state.matrix.entries is csr
    assert state.rhs.entries is rhs_entries
    assert state.matrix.pattern_changes == pattern
    np.testing.assert_allclose(sol2[U], built.exact["u"], atol=1e-10)
    assert handle.n_solves == 2

    solve(pd, state=state, method_linear="gmres", precon_linear="ilu")
    assert state.linear_solver_handle is not handle
    assert state.parameters.method_linear == "gmres"


def test_state_reuse_refreshes_parameters_only():
    pd = _identity_problem([1.0, 2.0, 3.0])
    _, state = solve(pd, [3], return_config=True)
    handle = state.linear_solver_handle
    solve(pd, state=state, damping=0.5, verbosity=-1)
    assert state.parameters.damping == 0.5
    assert state.linear_solver_handle is handle


def test_nonlinear_diffusion_converges():
    built = build_nonlinear_diffusion1d({"n": 21, "alpha": 2.0, "source": 4.0})
    sol, state = solve(
        built.problems[0],
        [built.space],
        maxiterations=60,
        target_residual=1e-9,
        return_config=True,
    )
    diag = state.diagnostics
    assert diag.converged
    assert diag.status == SolveStatus.CONVERGED
    assert diag.n_iter > 2
    assert diag.history_res[-1] < 1e-9
    assert diag.history_res[-1] < diag.history_res[0]
    assert sol[U][0] == pytest.approx(0.0, abs=1e-12)
    assert np.all(sol[U][1:-1] > 0.0)


def test_maxiterations_reached_returns_last_iterate():
    built = build_nonlinear_diffusion1d({"n": 21, "alpha": 2.0, "source": 4.0})
    sol, state = solve(
        built.problems[0],
        [built.space],
        maxiterations=1,
        target_residual=1e-14,
        return_config=True,
    )
    diag = state.diagnostics
    assert not diag.converged
    assert diag.status == SolveStatus.MAXITERATIONS
    assert diag.n_iter == 2
    assert diag.n_solves == 1
    assert np.any(sol[U] != 0.0)


def test_maxiterations_zero_skips_solve():
    built = build_nonlinear_diffusion1d({"n": 9})
    sol, state = solve(built.problems[0], [built.space], maxiterations=0, return_config=True)
    assert state.diagnostics.status == SolveStatus.MAXITERATIONS
    assert state.diagnostics.n_solves == 0
    np.testing.assert_allclose(sol[U], 0.0)


def test_elimination_reduction_matches_penalty_dirichlet():
    raw = {"n": 15, "source": 1.5, "dirichlet_values": {"left": 0.25, "right": -1.0}}
    penalty = build_poisson1d(raw)
    eliminate = build_poisson1d(dict(raw, dirichlet="eliminate"))

    ref = solve(penalty.problems[0], [penalty.space])
    sol, state = solve(eliminate.problems[0], [eliminate.space], return_config=True)
    assert state.reduced is not None
    assert state.reduced.size == 13
    # residuals are taken against the unreduced system
    assert len(state.rhs) == 15
    np.testing.assert_allclose(sol[U], ref[U], atol=1e-10)
    np.testing.assert_allclose(sol[U], eliminate.exact["u"], atol=1e-10)


def test_elimination_reduction_on_nonlinear_problem():
    raw = {"n": 11, "alpha": 2.0, "source": 4.0, "dirichlet_values": {"left": 0.0, "right": 0.5}}
    penalty = build_nonlinear_diffusion1d(raw)
    picard = penalty.problems[0].operators[0]
    eliminated = ProblemDescription(
        "picard_eliminated",
        operators=[picard],
        reduction_operators=(EliminateDofs(U, [0, 10], [0.0, 0.5]),),
        unknowns=(U,),
    )
    params = dict(maxiterations=80, target_residual=1e-9, verbosity=-1)

    ref = solve(penalty.problems[0], [penalty.space], **params)
    sol, state = solve(eliminated, [penalty.space], return_config=True, **params)
    diag = state.diagnostics
    assert diag.converged
    assert diag.n_solves > 1
    assert state.reduced.size == 9
    assert sol[U][0] == 0.0
    assert sol[U][-1] == 0.5
    np.testing.assert_allclose(sol[U], ref[U], atol=1e-8)


def test_state_of_other_problem_rejected():
    first = _identity_problem([1.0, 1.0], n=2)
    _, state = solve(first, [2], return_config=True)
    second = _identity_problem([5.0, 5.0], n=2)
    with pytest.raises(ValueError, match="belongs to problem"):
        solve(second, state=state)
    np.testing.assert_allclose(state.solution[U], 1.0)


def test_time_forwarded_to_operators():
    pd = ProblemDescription(
        "timed",
        operators=[
            LinearOperator(U, U, np.eye(2)),
            SourceOperator(U, lambda ctx: np.full(2, ctx.time)),
        ],
    )
    sol = solve(pd, [2], time=2.5)
    np.testing.assert_allclose(sol[U], 2.5)


def test_krylov_method_solves_poisson():
    built = build_poisson1d({"n": 17, "dirichlet": "eliminate"})
    sol = solve(built.problems[0], [built.space], method_linear="cg", precon_linear="jacobi", reltol=1e-13, abstol=0.0)
    np.testing.assert_allclose(sol[U], built.exact["u"], atol=1e-8)


def test_jacobi_scaling_reduction_preserves_solution():
    built = build_poisson1d({"n": 13, "dirichlet_values": {"left": 0.5, "right": 0.0}})
    pd = built.problems[0]
    scaled = ProblemDescription("scaled", operators=pd.operators, reduction_operators=(JacobiScaling(),))
    sol, state = solve(scaled, [built.space], return_config=True)
    assert state.reduced.size == 13
    np.testing.assert_allclose(sol[U], built.exact["u"], atol=1e-10)


def test_reduction_errors_propagate():
    built = build_poisson1d({"n": 9, "dirichlet": "eliminate"})
    pd = built.problems[0]
    # boundary rows are empty before elimination
    broken = ProblemDescription("broken", operators=pd.operators, reduction_operators=(JacobiScaling(),))
    with pytest.raises(ZeroDivisionError, match="zero diagonal"):
        solve(broken, [built.space])


def test_show_matrix_and_spy_are_logged(caplog):
    pd = _identity_problem([1.0, 2.0, 3.0])
    caplog.set_level(logging.INFO)
    solve(pd, [3], show_matrix=True, show_config=True)
    messages = [r.getMessage() for r in caplog.records]
    assert any("system matrix of 'identity'" in m for m in messages)
    assert any("SolverParameters" in m for m in messages)

    caplog.clear()
    solve(pd, [3], spy=True)
    assert any("spy plot" in r.getMessage() for r in caplog.records)


def test_spy_text_marks_nonzeros():
    text = spy_text(np.eye(3))
    lines = text.splitlines()
    assert lines[1] == "|#  |"
    assert lines[3] == "|  #|"
    assert lines[-1] == "3x3, nnz=3"
