"""
Shared linear solver types.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np
import scipy.sparse as sp


@dataclass(slots=True)
class LinearProblem:
    """Operator and right-hand side handed to a backend (references, not copies)."""

    A: Any
    b: np.ndarray

    @property
    def size(self) -> int:
        return int(self.A.shape[0])


@dataclass
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None

    @property
    def u(self) -> np.ndarray:
        return self.x


_METHOD_ALIASES = {
    "lu": "direct",
    "splu": "direct",
    "spsolve": "direct",
    "preonly": "direct",
    "umfpack": "direct",
    "krylov": "gmres",
    "ksp": "gmres",
}


class LinearMethod(str, Enum):
    DIRECT = "direct"
    GMRES = "gmres"
    LGMRES = "lgmres"
    BICGSTAB = "bicgstab"
    CG = "cg"

    @classmethod
    def normalize(cls, value: Optional[str]) -> "LinearMethod":
        """
        Normalize user/cfg input into a canonical method.

        None and empty strings map to the direct method.
        """
        if value is None:
            return cls.DIRECT
        if isinstance(value, cls):
            return value
        v = str(value).strip().lower()
        if not v:
            return cls.DIRECT
        v = _METHOD_ALIASES.get(v, v)
        try:
            return cls(v)
        except ValueError:
            allowed = [m.value for m in cls] + sorted(_METHOD_ALIASES)
            raise ValueError(f"method_linear: invalid value {value!r}, allowed={allowed}")


class PCType(str, Enum):
    NONE = "none"
    ILU = "ilu"
    JACOBI = "jacobi"


def as_csr(A) -> sp.csr_matrix:
    """Ensure matrix is CSR sparse format."""
    if sp.issparse(A) and A.format == "csr":
        return A
    if sp.issparse(A):
        return sp.csr_matrix(A)
    if isinstance(A, np.ndarray):
        if A.ndim != 2:
            raise TypeError(f"Expected 2D array for A, got ndim={A.ndim}")
        return sp.csr_matrix(A)
    raise TypeError(f"Unsupported matrix type for A: {type(A)}")
