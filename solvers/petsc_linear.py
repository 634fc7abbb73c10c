"""
PETSc KSP linear solver backend with a persisted handle (optional dependency).

The KSP object is created once per handle; assigning A re-sets the operators so PETSc
rebuilds the preconditioner on the next solve, assigning b only swaps the rhs.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np
import scipy.sparse as sp

from solvers.linear_types import LinearMethod, LinearProblem, LinearSolveResult, as_csr

logger = logging.getLogger(__name__)


def _import_petsc():
    try:
        from petsc4py import PETSc
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for PETSc backend.") from exc
    return PETSc


def _normalize_pc_type(pc_type: Optional[str]) -> Optional[str]:
    if pc_type is None:
        return None
    val = str(pc_type).strip().lower()
    if val in ("", "none", "null"):
        return "none"
    return val


def csr_to_petsc_aij(A: sp.csr_matrix, PETSc, comm=None):
    """Convert a SciPy CSR matrix into a sequential PETSc AIJ matrix."""
    A = as_csr(A)
    comm = PETSc.COMM_SELF if comm is None else comm
    mat = PETSc.Mat().createAIJ(
        size=A.shape,
        csr=(A.indptr.astype(PETSc.IntType), A.indices.astype(PETSc.IntType), A.data),
        comm=comm,
    )
    mat.assemble()
    return mat


class PetscLinearSolver:
    """Persisted KSP handle with the same A/b/solve() contract as ScipyLinearSolver."""

    def __init__(
        self,
        problem: LinearProblem,
        method: str = "gmres",
        *,
        preconditioner: Optional[str] = None,
        abstol: float = 1.0e-11,
        reltol: float = 1.0e-11,
        maxiter: int = 200,
        restart: int = 30,
        options_prefix: str = "",
        monitor: bool = False,
    ) -> None:
        PETSc = _import_petsc()
        self._PETSc = PETSc
        self.method = LinearMethod.normalize(method)
        if preconditioner is not None and not isinstance(preconditioner, str):
            raise TypeError("PETSc backend expects precon_linear as a PC type name")

        if self.method == LinearMethod.DIRECT:
            ksp_type, pc_type = "preonly", "lu"
        else:
            ksp_type = self.method.value
            pc_type = _normalize_pc_type(preconditioner) or "ilu"
        self.ksp_type = ksp_type
        self.pc_type = pc_type
        self.abstol = float(abstol)
        self.reltol = float(reltol)
        self.n_solves = 0
        self.n_setups = 0

        self._A_csr = as_csr(problem.A)
        self._A = csr_to_petsc_aij(self._A_csr, PETSc)
        self._b = np.asarray(problem.b, dtype=np.float64)

        prefix = str(options_prefix or "")
        if prefix and not prefix.endswith("_"):
            prefix += "_"

        ksp = PETSc.KSP().create(comm=PETSc.COMM_SELF)
        ksp.setOptionsPrefix(prefix)
        ksp.setOperators(self._A, self._A)
        try:
            ksp.setType(ksp_type)
        except Exception:
            logger.warning("Unknown ksp_type='%s', falling back to gmres", ksp_type)
            ksp.setType("gmres")
        pc = ksp.getPC()
        try:
            pc.setType(pc_type)
        except Exception:
            logger.warning("Unknown pc_type='%s', falling back to jacobi", pc_type)
            pc.setType("jacobi")
        ksp.setTolerances(rtol=self.reltol, atol=self.abstol, max_it=int(maxiter))
        try:
            if str(ksp.getType()).lower() in ("gmres", "fgmres"):
                ksp.setGMRESRestart(int(restart))
        except Exception:
            logger.debug("Unable to set restart for ksp_type='%s'", ksp.getType())

        if monitor:
            def _monitor(ksp_obj, its, rnorm):
                logger.debug("[KSP] its=%d rnorm=%.6e", its, rnorm)
            ksp.setMonitor(_monitor)

        ksp.setFromOptions()
        self.ksp = ksp
        self._needs_setup = True

    @property
    def A(self) -> sp.csr_matrix:
        return self._A_csr

    @A.setter
    def A(self, value) -> None:
        A_new = as_csr(value)
        if A_new.shape == self._A_csr.shape and A_new.nnz == self._A_csr.nnz and np.array_equal(
            A_new.indices, self._A_csr.indices
        ) and np.array_equal(A_new.indptr, self._A_csr.indptr):
            int_type = self._PETSc.IntType
            self._A.setValuesCSR(A_new.indptr.astype(int_type), A_new.indices.astype(int_type), A_new.data)
            self._A.assemble()
        else:
            if A_new.shape != self._A_csr.shape:
                self.ksp.reset()
            self._A = csr_to_petsc_aij(A_new, self._PETSc)
        self._A_csr = A_new
        self.ksp.setOperators(self._A, self._A)
        self._needs_setup = True

    @property
    def b(self) -> np.ndarray:
        return self._b

    @b.setter
    def b(self, value) -> None:
        self._b = np.asarray(value, dtype=np.float64)

    def solve(self) -> LinearSolveResult:
        PETSc = self._PETSc
        N = self._A_csr.shape[0]
        if self._b.shape != (N,):
            raise ValueError(f"b shape {self._b.shape} does not match A dimension {N}")
        if self._needs_setup:
            self.ksp.setUp()
            self.n_setups += 1
            self._needs_setup = False

        b = PETSc.Vec().createWithArray(np.ascontiguousarray(self._b).copy(), comm=PETSc.COMM_SELF)
        x = self._A.createVecRight()
        x.set(0.0)
        self.ksp.solve(b, x)
        self.n_solves += 1

        reason = int(self.ksp.getConvergedReason())
        converged = reason > 0
        n_iter = int(self.ksp.getIterationNumber())
        x_arr = np.asarray(x.getArray(), dtype=np.float64).copy()

        res_norm = float(np.linalg.norm(self._b - self._A_csr @ x_arr))
        b_norm = float(np.linalg.norm(self._b))
        rel = res_norm / (b_norm + 1e-30)

        if not converged:
            logger.warning(
                "PETSc KSP not converged: reason=%d residual=%.3e rel=%.3e ksp=%s pc=%s",
                reason,
                res_norm,
                rel,
                self.ksp.getType(),
                self.ksp.getPC().getType(),
            )

        return LinearSolveResult(
            x=x_arr,
            converged=converged,
            n_iter=n_iter,
            residual_norm=res_norm,
            rel_residual=rel,
            method=f"{self.ksp.getType()}+{self.ksp.getPC().getType()}",
            message=None if converged else f"PETSc KSP diverged (reason={reason})",
            diag={"ksp_type": str(self.ksp.getType()), "pc_type": str(self.ksp.getPC().getType()), "n_setups": self.n_setups},
        )


def init_linear_solver_petsc(
    problem: LinearProblem,
    method: str = "gmres",
    *,
    preconditioner: Any = None,
    abstol: float = 1.0e-11,
    reltol: float = 1.0e-11,
    **kwargs: Any,
) -> PetscLinearSolver:
    """Create a persisted PETSc KSP handle for problem."""
    return PetscLinearSolver(
        problem,
        method,
        preconditioner=preconditioner,
        abstol=abstol,
        reltol=reltol,
        **kwargs,
    )
