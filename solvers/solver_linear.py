"""
Linear solver handle dispatcher for SciPy/PETSc backends.

This module routes a LinearProblem to the selected backend without mixing assembly logic.
"""

from __future__ import annotations

from typing import Any, Optional

from solvers.linear_types import LinearProblem
from solvers.scipy_linear import init_linear_solver_scipy

_BACKEND_ALIAS = {
    "scipy": "scipy",
    "petsc": "petsc",
    "ksp": "petsc",
    "petsc_serial": "petsc",
}


def normalize_backend(backend: Optional[str]) -> str:
    if backend is None:
        return "scipy"
    val = str(getattr(backend, "value", backend)).strip().lower()
    return _BACKEND_ALIAS.get(val, val)


def init_linear_solver(
    problem: LinearProblem,
    method: str = "direct",
    *,
    backend: Optional[str] = "scipy",
    preconditioner: Any = None,
    abstol: float = 1.0e-11,
    reltol: float = 1.0e-11,
    **kwargs: Any,
):
    """Create a persisted linear solver handle on the selected backend."""
    backend = normalize_backend(backend)

    if backend == "scipy":
        return init_linear_solver_scipy(
            problem,
            method,
            preconditioner=preconditioner,
            abstol=abstol,
            reltol=reltol,
            **kwargs,
        )
    if backend == "petsc":
        from solvers.petsc_linear import init_linear_solver_petsc

        return init_linear_solver_petsc(
            problem,
            method,
            preconditioner=preconditioner,
            abstol=abstol,
            reltol=reltol,
            **kwargs,
        )

    raise ValueError(f"Unknown backend '{backend}' for linear solver (expected 'scipy' or 'petsc').")
