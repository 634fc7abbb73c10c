"""
SciPy-based linear solver backend with a persisted handle.

Design goals:
- Pure SciPy/NumPy (no PETSc dependency).
- Handle contract mirrors the PETSc backend: init once, then mutate A/b and solve().
- Assigning A marks the factorization stale; it is rebuilt lazily by the next solve().
- Strict shape checks; backend failures propagate unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Union

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from solvers.linear_types import LinearMethod, LinearProblem, LinearSolveResult, PCType, as_csr

logger = logging.getLogger(__name__)

PreconditionerFactory = Callable[[sp.csr_matrix], Any]

_KRYLOV = {
    LinearMethod.GMRES: spla.gmres,
    LinearMethod.LGMRES: spla.lgmres,
    LinearMethod.BICGSTAB: spla.bicgstab,
    LinearMethod.CG: spla.cg,
}


def build_preconditioner(precon: Union[None, str, PreconditionerFactory], A: sp.csr_matrix):
    """Build a preconditioner (LinearOperator approximating A^-1) from the current matrix."""
    if precon is None:
        return None
    if callable(precon):
        return precon(A)
    pc = PCType(str(precon).strip().lower())
    n = A.shape[0]
    if pc == PCType.NONE:
        return None
    if pc == PCType.JACOBI:
        d = A.diagonal()
        d_inv = np.where(d != 0.0, 1.0 / np.where(d != 0.0, d, 1.0), 1.0)
        return spla.LinearOperator((n, n), matvec=lambda v: d_inv * v, dtype=np.float64)
    ilu = spla.spilu(A.tocsc())
    return spla.LinearOperator((n, n), matvec=ilu.solve, dtype=np.float64)


class ScipyLinearSolver:
    """Persisted linear solver handle (factorization/preconditioner reused across solves)."""

    def __init__(
        self,
        problem: LinearProblem,
        method: Union[str, LinearMethod] = LinearMethod.DIRECT,
        *,
        preconditioner: Union[None, str, PreconditionerFactory] = None,
        abstol: float = 1.0e-11,
        reltol: float = 1.0e-11,
        maxiter: Optional[int] = None,
    ) -> None:
        self.method = LinearMethod.normalize(method)
        self.abstol = float(abstol)
        self.reltol = float(reltol)
        self.maxiter = maxiter
        self.preconditioner_arg = preconditioner
        self._A = as_csr(problem.A)
        self._b = np.asarray(problem.b, dtype=np.float64)
        self._check_shapes()
        self._factor = None
        self._x: Optional[np.ndarray] = None
        self.n_factorizations = 0
        self.n_solves = 0
        self.M = build_preconditioner(preconditioner, self._A) if self.method != LinearMethod.DIRECT else None

    @property
    def A(self) -> sp.csr_matrix:
        return self._A

    @A.setter
    def A(self, value) -> None:
        A_new = as_csr(value)
        if A_new.shape != self._A.shape:
            logger.debug("linear handle: operator shape changed %s -> %s", self._A.shape, A_new.shape)
            self._x = None
            if self.M is not None:
                self.M = build_preconditioner(self.preconditioner_arg, A_new)
        self._A = A_new
        self._factor = None

    @property
    def b(self) -> np.ndarray:
        return self._b

    @b.setter
    def b(self, value) -> None:
        self._b = np.asarray(value, dtype=np.float64)

    def _check_shapes(self) -> None:
        if self._A.shape[0] != self._A.shape[1]:
            raise ValueError(f"A must be square, got shape {self._A.shape}")
        N = self._A.shape[0]
        if self._b.shape != (N,):
            raise ValueError(f"b shape {self._b.shape} does not match A dimension {N}")

    def _factorize(self) -> None:
        self._factor = spla.splu(self._A.tocsc())
        self.n_factorizations += 1

    def solve(self) -> LinearSolveResult:
        """Solve A x = b with the persisted configuration."""
        self._check_shapes()
        A_csr, b = self._A, self._b
        N = A_csr.shape[0]

        logger.debug("ScipyLinearSolver.solve: size=%s method=%s", A_csr.shape, self.method.value)

        if self.method == LinearMethod.DIRECT:
            if self._factor is None:
                self._factorize()
            x_raw = self._factor.solve(b)
            n_iter = 1
            info = 0
            solve_method = "direct_splu"
        else:
            x0 = self._x if self._x is not None and self._x.shape == (N,) else None
            kwargs = dict(x0=x0, rtol=self.reltol, atol=self.abstol, M=self.M)
            if self.maxiter is not None:
                kwargs["maxiter"] = int(self.maxiter)
            counter = {"n": 0}

            def _count(_):
                counter["n"] += 1

            if self.method == LinearMethod.GMRES:
                kwargs["callback_type"] = "pr_norm"
            x_raw, info = _KRYLOV[self.method](A_csr, b, callback=_count, **kwargs)
            if info < 0:
                raise RuntimeError(f"{self.method.value}: illegal input or breakdown (info={info})")
            n_iter = counter["n"]
            solve_method = self.method.value

        self.n_solves += 1
        x = np.asarray(x_raw, dtype=np.float64)
        self._x = x

        r = b - A_csr.dot(x)
        res_norm = float(np.linalg.norm(r))
        b_norm = float(np.linalg.norm(b))
        rel = res_norm / (b_norm + 1e-30)
        converged = bool(np.isfinite(res_norm)) and info == 0

        if not converged:
            logger.warning(
                "Linear solve not converged: residual=%.3e rel=%.3e method=%s rtol=%.3e atol=%.3e",
                res_norm,
                rel,
                solve_method,
                self.reltol,
                self.abstol,
            )
        else:
            logger.debug("Linear solve converged: residual=%.3e rel=%.3e method=%s", res_norm, rel, solve_method)

        return LinearSolveResult(
            x=x,
            converged=converged,
            n_iter=n_iter,
            residual_norm=res_norm,
            rel_residual=rel,
            method=solve_method,
            message=None if converged else "Residual above tolerance",
            diag={"n_factorizations": self.n_factorizations, "n_solves": self.n_solves},
        )


def init_linear_solver_scipy(
    problem: LinearProblem,
    method: Union[str, LinearMethod] = LinearMethod.DIRECT,
    *,
    preconditioner: Union[None, str, PreconditionerFactory] = None,
    abstol: float = 1.0e-11,
    reltol: float = 1.0e-11,
    maxiter: Optional[int] = None,
) -> ScipyLinearSolver:
    """Create a persisted SciPy linear solver handle for problem."""
    return ScipyLinearSolver(
        problem,
        method,
        preconditioner=preconditioner,
        abstol=abstol,
        reltol=reltol,
        maxiter=maxiter,
    )
