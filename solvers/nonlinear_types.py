"""
Shared result/diagnostic types of the fixed-point and staggered loops.

Goal:
- Backend-agnostic: SciPy and PETSc linear handles feed the same structure.
- One record per outer step, so tests and the driver can inspect iteration history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class SolveStatus(str, Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    MAXITERATIONS = "maxiterations reached"
    FINISHED = "finished"
    NOT_CONVERGED = "not converged"


@dataclass(slots=True)
class IterationRecord:
    step: int
    nonlinear_residual: float
    linear_residual: float
    time_assembly: float = 0.0
    time_solve: float = 0.0
    time_total: float = 0.0
    alloc_assembly: float = 0.0
    alloc_solve: float = 0.0


@dataclass(slots=True)
class NonlinearDiagnostics:
    converged: bool = False
    status: SolveStatus = SolveStatus.RUNNING
    is_linear: bool = False
    nonlinear_detected: bool = False
    n_iter: int = 0
    n_solves: int = 0
    res_norm_2: float = float("nan")
    linear_res_norm: float = float("nan")
    time_total: float = 0.0
    alloc_total: float = 0.0
    history: List[IterationRecord] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def history_res(self) -> List[float]:
        return [rec.nonlinear_residual for rec in self.history]


@dataclass(slots=True)
class CouplingDiagnostics:
    converged: bool = False
    status: SolveStatus = SolveStatus.RUNNING
    n_steps: int = 0
    converged_flags: List[bool] = field(default_factory=list)
    history_res: List[List[float]] = field(default_factory=list)
    history_linres: List[List[float]] = field(default_factory=list)
    history_change: List[float] = field(default_factory=list)
    time_total: float = 0.0
    extra: Dict[str, float] = field(default_factory=dict)
