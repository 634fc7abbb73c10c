"""
Staggered (Gauss-Seidel) coupling loop.

Tests:
1. Independent problems reproduce the single-problem results within one step
2. Later problems see blocks updated earlier in the same pass
3. Init validation and value copy of the init vector
4. Coupled reaction-diffusion reaches the joint discrete solution
5. Non-convergence is reported, not raised; tolerance_change never stops the loop
6. Inactive unknowns do not enter the per-problem residual flags
"""

from __future__ import annotations

import logging

import numpy as np
import pytest
import scipy.sparse as sp

from core.layout import BlockLayout, BlockVector, DofSpace, Unknown
from assembly.operators import CouplingOperator, DirichletOperator, LinearOperator, SourceOperator
from assembly.problem import ProblemDescription
from driver.problems import build_coupled_reaction1d, laplacian_1d
from solvers.fixed_point import solve
from solvers.nonlinear_types import SolveStatus
from solvers.stationarity import iterate_until_stationarity

U = Unknown("u")
V = Unknown("v")
W = Unknown("w")


def _poisson(u: Unknown, n: int, source: float) -> ProblemDescription:
    h = 1.0 / (n - 1)
    f = np.zeros(n)
    f[1:-1] = source
    return ProblemDescription(
        f"poisson_{u}",
        operators=[
            LinearOperator(u, u, laplacian_1d(n, h)),
            SourceOperator(u, f),
            DirichletOperator(u, [0, n - 1], 0.0),
        ],
    )


def _copy_problem(target: Unknown, source: Unknown, n: int = 2) -> ProblemDescription:
    """target = source, through an explicit coupling term."""
    return ProblemDescription(
        f"copy_{source}_to_{target}",
        operators=[LinearOperator(target, target, np.eye(n)), CouplingOperator(target, source, np.eye(n))],
    )


def _constant_problem(u: Unknown, value: float, n: int = 2) -> ProblemDescription:
    return ProblemDescription(f"const_{u}", operators=[LinearOperator(u, u, np.eye(n), rhs=np.full(n, value))])


def test_independent_problems_match_single_solves():
    n = 13
    space = DofSpace("P1", n)
    pu, pv = _poisson(U, n, 1.0), _poisson(V, n, -3.0)
    ref_u = solve(pu, [space])
    ref_v = solve(pv, [space])

    one_step = iterate_until_stationarity([pu, pv], [[space], [space]], maxsteps=1)
    np.testing.assert_allclose(one_step[U], ref_u[U], atol=1e-12)
    np.testing.assert_allclose(one_step[V], ref_v[V], atol=1e-12)

    combined, states, diag = iterate_until_stationarity([pu, pv], [[space], [space]], return_config=True)
    assert diag.converged
    assert diag.status == SolveStatus.CONVERGED
    assert diag.n_steps == 2
    assert combined.tags == (U, V)
    assert all(s.solution is combined for s in states)
    np.testing.assert_allclose(combined[U], ref_u[U], atol=1e-12)


def test_gauss_seidel_order_is_observed():
    pu = _constant_problem(U, 1.0)
    pv = _copy_problem(V, U)

    forward = iterate_until_stationarity([pu, pv], [[2], [2]], maxsteps=1)
    np.testing.assert_allclose(forward[U], 1.0)
    np.testing.assert_allclose(forward[V], 1.0)

    backward = iterate_until_stationarity([pv, pu], [[2], [2]], maxsteps=1)
    np.testing.assert_allclose(backward[U], 1.0)
    np.testing.assert_allclose(backward[V], 0.0)


def test_flags_taken_before_solve():
    pu = _constant_problem(U, 1.0)
    pv = _copy_problem(V, U)
    _, _, diag = iterate_until_stationarity([pu, pv], [[2], [2]], return_config=True)
    # step 1 flags are false (zero start), step 2 sees the solved state
    assert diag.n_steps == 2
    assert diag.history_res[0][0] > 0.0
    assert diag.history_res[1] == pytest.approx([0.0, 0.0], abs=1e-14)


def test_requires_spaces_or_init():
    with pytest.raises(ValueError, match="need init vector or discretization targets"):
        iterate_until_stationarity([_constant_problem(U, 1.0)])


def test_init_must_contain_every_unknown():
    init = BlockVector(BlockLayout.from_sizes([(U, 2)]))
    with pytest.raises(ValueError, match="did not find unknowns"):
        iterate_until_stationarity([_constant_problem(U, 1.0), _copy_problem(V, U)], init=init)


def test_init_is_value_copied():
    init = BlockVector.zeros([U, V], [2, 2])
    init[V] = 7.0
    sol = iterate_until_stationarity([_constant_problem(U, 2.0), _copy_problem(V, U)], init=init)
    assert sol is not init
    np.testing.assert_allclose(init[V], 7.0)
    np.testing.assert_allclose(init[U], 0.0)
    np.testing.assert_allclose(sol[V], 2.0)


def test_inconsistent_sizes_rejected():
    with pytest.raises(ValueError, match="different sizes"):
        iterate_until_stationarity([_constant_problem(U, 1.0), _constant_problem(U, 1.0, n=3)], [[2], [3]])


def test_coupled_reaction_reaches_joint_solution():
    raw = {"n": 21, "a": 1.0, "b": 0.5, "c": 2.0, "d": 0.5, "source_u": 1.0, "source_v": 0.5}
    built = build_coupled_reaction1d(raw)
    spaces = [[built.space], [built.space]]
    sol, states, diag = iterate_until_stationarity(
        built.problems, spaces, target_residual=1e-9, return_config=True, verbosity=-1
    )
    assert diag.converged
    assert diag.n_steps > 2
    assert len(diag.history_change) == diag.n_steps
    for state in states:
        assert state.linear_solver_handle.n_solves == diag.n_steps

    n = raw["n"]
    h = 1.0 / (n - 1)
    lap = laplacian_1d(n, h)
    inner = slice(1, n - 1)
    u, v = sol[U], sol[V]
    r_u = (lap @ u + 1.0 * u - 1.0 - 0.5 * v)[inner]
    r_v = (lap @ v + 2.0 * v - 0.5 - 0.5 * u)[inner]
    assert np.max(np.abs(r_u)) < 1e-8
    assert np.max(np.abs(r_v)) < 1e-8
    assert u[0] == pytest.approx(0.0, abs=1e-12)


def test_non_convergence_returns_last_iterate(caplog):
    built = build_coupled_reaction1d({"n": 11})
    caplog.set_level(logging.WARNING)
    sol, _, diag = iterate_until_stationarity(
        built.problems,
        [[built.space], [built.space]],
        maxsteps=2,
        target_residual=1e-14,
        return_config=True,
    )
    assert not diag.converged
    assert diag.status == SolveStatus.NOT_CONVERGED
    assert diag.n_steps == 2
    assert np.any(sol[U] != 0.0)
    assert any("did not converge" in r.getMessage() for r in caplog.records)


def test_tolerance_change_is_not_a_stopping_test():
    built = build_coupled_reaction1d({"n": 11})
    spaces = [[built.space], [built.space]]
    _, _, strict = iterate_until_stationarity(built.problems, spaces, return_config=True, verbosity=-1)
    _, _, loose = iterate_until_stationarity(
        built.problems, spaces, tolerance_change=1.0e3, return_config=True, verbosity=-1
    )
    assert loose.n_steps == strict.n_steps
    assert loose.extra["tolerance_change"] == 1.0e3


def test_damping_applies_per_subproblem():
    pu = _constant_problem(U, 4.0)
    sol = iterate_until_stationarity([pu], [[2]], maxsteps=1, damping=0.75)
    np.testing.assert_allclose(sol[U], 0.25 * 4.0)


def test_sparse_coupling_matrix():
    pu = _constant_problem(U, 3.0, n=3)
    pv = ProblemDescription(
        "scaled_copy",
        operators=[LinearOperator(V, V, sp.eye(3, format="csr")), CouplingOperator(V, U, 2.0 * sp.eye(3))],
    )
    sol = iterate_until_stationarity([pu, pv], [[3], [3]])
    np.testing.assert_allclose(sol[V], 6.0)


def test_inactive_unknown_excluded_from_flags():
    # copy_u_to_v sets w = 1 and const_w sets w = 5, so the w block of copy_u_to_v never settles
    pv = ProblemDescription(
        "copy_u_to_v",
        operators=[
            LinearOperator(V, V, np.eye(2)),
            CouplingOperator(V, U, np.eye(2)),
            LinearOperator(W, W, np.eye(2), rhs=np.ones(2)),
        ],
    )
    problems = [_constant_problem(U, 1.0), pv, _constant_problem(W, 5.0)]
    spaces = [[2], [2, 2], [2]]

    _, _, stuck = iterate_until_stationarity(problems, spaces, maxsteps=4, return_config=True, verbosity=-1)
    assert not stuck.converged
    assert stuck.history_res[-1][1] > 1.0

    sol, _, diag = iterate_until_stationarity(
        problems, spaces, maxsteps=4, inactive=[W], return_config=True, verbosity=-1
    )
    assert diag.converged
    assert diag.n_steps == 2
    assert diag.history_res[-1] == pytest.approx([0.0, 0.0, 0.0], abs=1e-14)
    np.testing.assert_allclose(sol[V], 1.0)
    np.testing.assert_allclose(sol[W], 5.0)
