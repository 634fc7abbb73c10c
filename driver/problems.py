"""
Finite-difference demo problems for the case runner.

All problems live on a uniform 1D grid of n nodes on [0, length]; boundary nodes are
constrained either by penalty Dirichlet operators or, for poisson1d with
dirichlet: eliminate, by a reduction operator removing them from the linear solve.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from core.layout import BlockVector, DofSpace, Unknown
from assembly.operators import (
    CouplingOperator,
    DirichletOperator,
    LinearOperator,
    PicardOperator,
    SourceOperator,
)
from assembly.problem import AssemblyContext, ProblemDescription
from assembly.reductions import EliminateDofs

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaseProblems:
    """What a case kind builds: the problems, their grid and unknowns."""

    kind: str
    problems: List[ProblemDescription]
    unknowns: Tuple[Unknown, ...]
    space: DofSpace
    x: np.ndarray
    exact: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def coupled(self) -> bool:
        return len(self.problems) > 1


def grid_1d(n: int, length: float = 1.0) -> Tuple[np.ndarray, float]:
    n = int(n)
    if n < 3:
        raise ValueError(f"problem.n must be >= 3, got {n}")
    length = float(length)
    if length <= 0.0:
        raise ValueError(f"problem.length must be positive, got {length}")
    x = np.linspace(0.0, length, n)
    return x, float(x[1] - x[0])


def laplacian_1d(n: int, h: float, k_faces: Optional[np.ndarray] = None) -> sp.csr_matrix:
    """
    Rows of -(k u')' on interior nodes; boundary rows are left empty.

    k_faces holds the n-1 face coefficients k_{i+1/2} (default 1).
    """
    if k_faces is None:
        k_faces = np.ones(n - 1, dtype=np.float64)
    i = np.arange(1, n - 1)
    kw = k_faces[i - 1]
    ke = k_faces[i]
    rows = np.concatenate([i, i, i])
    cols = np.concatenate([i - 1, i, i + 1])
    vals = np.concatenate([-kw, kw + ke, -ke]) / (h * h)
    return sp.csr_matrix((vals, (rows, cols)), shape=(n, n))


def _interior_values(n: int, value: Any) -> np.ndarray:
    out = np.zeros(n, dtype=np.float64)
    out[1:-1] = float(value)
    return out


def _boundary(raw: Mapping[str, Any], key: str, default: float = 0.0) -> Tuple[float, float]:
    bc = raw.get(key, {}) or {}
    return float(bc.get("left", default)), float(bc.get("right", default))


def _dirichlet_ends(u: Unknown, n: int, left: float, right: float) -> DirichletOperator:
    return DirichletOperator(u, [0, n - 1], [left, right], name=f"dirichlet[{u}]")


def build_poisson1d(raw: Mapping[str, Any]) -> CaseProblems:
    """-u'' = f on (0, L) with u(0) = left, u(L) = right."""
    n = int(raw.get("n", 33))
    x, h = grid_1d(n, raw.get("length", 1.0))
    f = float(raw.get("source", 1.0))
    left, right = _boundary(raw, "dirichlet_values")
    mode = str(raw.get("dirichlet", "penalty")).strip().lower()
    u = Unknown("u")

    operators: list = [
        LinearOperator(u, u, laplacian_1d(n, h), name="laplace"),
        SourceOperator(u, _interior_values(n, f), name="source"),
    ]
    reductions: list = []
    if mode == "penalty":
        operators.append(_dirichlet_ends(u, n, left, right))
    elif mode == "eliminate":
        reductions.append(EliminateDofs(u, [0, n - 1], [left, right], name="eliminate_boundary"))
    else:
        raise ValueError(f"problem.dirichlet must be 'penalty' or 'eliminate', got {mode!r}")

    length = x[-1]
    exact = f * x * (length - x) / 2.0 + left + (right - left) * x / length
    pd = ProblemDescription("poisson1d", operators=operators, reduction_operators=reductions, unknowns=(u,))
    return CaseProblems("poisson1d", [pd], (u,), DofSpace("P1", n), x, {"u": exact})


def conductivity(alpha: float) -> Callable[[np.ndarray], np.ndarray]:
    def k(u: np.ndarray) -> np.ndarray:
        return 1.0 + alpha * u * u

    return k


def build_nonlinear_diffusion1d(raw: Mapping[str, Any]) -> CaseProblems:
    """-(k(u) u')' = f with k(u) = 1 + alpha u^2, linearized by Picard iteration."""
    n = int(raw.get("n", 33))
    x, h = grid_1d(n, raw.get("length", 1.0))
    f = _interior_values(n, raw.get("source", 1.0))
    left, right = _boundary(raw, "dirichlet_values")
    k = conductivity(float(raw.get("alpha", 1.0)))
    u = Unknown("u")

    def kernel(solution: BlockVector, context: AssemblyContext):
        uu = solution[u]
        k_faces = k(0.5 * (uu[:-1] + uu[1:]))
        return laplacian_1d(n, h, k_faces), f

    operators = [
        PicardOperator(u, kernel, dependencies=(u,), name="picard_diffusion"),
        _dirichlet_ends(u, n, left, right),
    ]
    pd = ProblemDescription("nonlinear_diffusion1d", operators=operators, unknowns=(u,))
    return CaseProblems("nonlinear_diffusion1d", [pd], (u,), DofSpace("P1", n), x)


def build_coupled_reaction1d(raw: Mapping[str, Any]) -> CaseProblems:
    """
    Two reaction-diffusion equations coupled through their reaction terms:

        -u'' + a u = f + b v,    -v'' + c v = g + d u,

    each with homogeneous Dirichlet ends, solved as two staggered problems.
    """
    n = int(raw.get("n", 33))
    x, h = grid_1d(n, raw.get("length", 1.0))
    a = float(raw.get("a", 1.0))
    b = float(raw.get("b", 0.5))
    c = float(raw.get("c", 1.0))
    d = float(raw.get("d", 0.5))
    u = Unknown("u")
    v = Unknown("v")

    lap = laplacian_1d(n, h)
    interior = sp.diags(_interior_values(n, 1.0))
    p_u = ProblemDescription(
        "reaction_u",
        operators=[
            LinearOperator(u, u, lap + a * interior, name="diffusion_reaction_u"),
            SourceOperator(u, _interior_values(n, raw.get("source_u", 1.0)), name="source_u"),
            CouplingOperator(u, v, b * interior, name="coupling_u<-v"),
            _dirichlet_ends(u, n, 0.0, 0.0),
        ],
        unknowns=(u,),
    )
    p_v = ProblemDescription(
        "reaction_v",
        operators=[
            LinearOperator(v, v, lap + c * interior, name="diffusion_reaction_v"),
            SourceOperator(v, _interior_values(n, raw.get("source_v", 0.0)), name="source_v"),
            CouplingOperator(v, u, d * interior, name="coupling_v<-u"),
            _dirichlet_ends(v, n, 0.0, 0.0),
        ],
        unknowns=(v,),
    )
    return CaseProblems("coupled_reaction1d", [p_u, p_v], (u, v), DofSpace("P1", n), x)


BUILDERS: Dict[str, Callable[[Mapping[str, Any]], CaseProblems]] = {
    "poisson1d": build_poisson1d,
    "nonlinear_diffusion1d": build_nonlinear_diffusion1d,
    "coupled_reaction1d": build_coupled_reaction1d,
}


def build_case_problems(kind: str, raw: Optional[Mapping[str, Any]] = None) -> CaseProblems:
    key = str(kind).strip().lower()
    if key not in BUILDERS:
        raise ValueError(f"Unknown case kind {kind!r}, allowed={sorted(BUILDERS)}")
    built = BUILDERS[key](raw or {})
    logger.debug("built case '%s': %d problem(s), unknowns=%s", key, len(built.problems), [str(u) for u in built.unknowns])
    return built
