"""
Strongly typed solver configuration containers.

Conventions (law of the land):
- Every recognized option is a named dataclass field with a documented default.
- Ranges are validated at construction; a bad value raises ValueError naming the key.
- Unknown keys are rejected by from_dict(); there is no free-form parameter map.
- is_linear accepts True / False / "auto" (detect from operator dependencies).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

import numpy as np

LinearityFlag = Union[bool, str]
PreconditionerSpec = Union[None, str, Callable[..., Any]]


class LinearBackend(str, Enum):
    SCIPY = "scipy"
    PETSC = "petsc"


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except Exception:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}")
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


def _coerce_linearity(value: Any) -> LinearityFlag:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, np.integer)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text == "auto":
            return "auto"
        if text in ("true", "yes", "on"):
            return True
        if text in ("false", "no", "off"):
            return False
    raise ValueError(f"is_linear: invalid value {value!r}, allowed=[True, False, 'auto']")


@dataclass(slots=True)
class SolverParameters:
    """Options of the single-problem fixed-point loop.

    Attributes
    ----------
    verbosity : int
        -1 silences the iteration table, 0 prints it, >= 1 adds setup details.
    maxiterations : int
        Extra nonlinear iterations after the first pass (>= 0). Forced to 0 for
        linear problems.
    target_residual : float
        Tolerance on the Euclidean norm of the nonlinear residual.
    is_linear : bool or "auto"
        "auto" derives linearity from the operators' nonlinear dependencies.
    damping : float
        Convex blending weight of the previous iterate, in [0, 1). 0 replaces.
    method_linear : str
        Linear method handed to the backend ("direct", "gmres", "lgmres",
        "bicgstab", "cg").
    precon_linear : str, callable or None
        Preconditioner name ("ilu", "jacobi") or a callable building one from
        the current system matrix.
    abstol, reltol : float
        Tolerances of iterative linear methods.
    backend : str
        Linear backend ("scipy" or "petsc").
    inactive : tuple of Unknown
        Unknowns excluded from the nonlinear residual norm.
    show_config, show_matrix, spy : bool
        Diagnostic display toggles.
    return_config : bool
        Return (solution, SolverState) instead of the solution alone.
    time : float
        Model time forwarded to operators through the assembly context.
    """

    verbosity: int = 0
    maxiterations: int = 10
    target_residual: float = 1.0e-10
    is_linear: LinearityFlag = "auto"
    damping: float = 0.0
    method_linear: str = "direct"
    precon_linear: PreconditionerSpec = None
    abstol: float = 1.0e-11
    reltol: float = 1.0e-11
    backend: str = LinearBackend.SCIPY.value
    inactive: Tuple[Any, ...] = ()
    show_config: bool = False
    show_matrix: bool = False
    spy: bool = False
    return_config: bool = False
    time: float = 0.0

    def __post_init__(self) -> None:
        self.verbosity = int(self.verbosity)
        self.maxiterations = int(self.maxiterations)
        if self.maxiterations < 0:
            raise ValueError(f"maxiterations must be >= 0, got {self.maxiterations}")
        self.target_residual = float(self.target_residual)
        if not self.target_residual > 0.0:
            raise ValueError(f"target_residual must be positive, got {self.target_residual}")
        self.is_linear = _coerce_linearity(self.is_linear)
        self.damping = float(self.damping)
        if not (0.0 <= self.damping < 1.0):
            raise ValueError(f"damping must lie in [0, 1), got {self.damping}")
        self.method_linear = str(self.method_linear).strip().lower()
        self.abstol = float(self.abstol)
        self.reltol = float(self.reltol)
        for name in ("abstol", "reltol"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        self.backend = _coerce_enum(LinearBackend, self.backend, "backend").value
        if self.inactive is None:
            self.inactive = ()
        elif not isinstance(self.inactive, tuple):
            self.inactive = tuple(self.inactive)
        self.time = float(self.time)

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]] = None) -> "SolverParameters":
        d = dict(d or {})
        unknown = sorted(set(d) - set(cls.field_names()))
        if unknown:
            raise ValueError(f"Unsupported solver parameters: {unknown}")
        return cls(**d)

    def updated(self, **overrides: Any) -> "SolverParameters":
        """Return a validated copy with the given fields replaced."""
        unknown = sorted(set(overrides) - set(self.field_names()))
        if unknown:
            raise ValueError(f"Unsupported solver parameters: {unknown}")
        return replace(self, **overrides)

    def describe(self) -> str:
        lines = ["SolverParameters"]
        for name in self.field_names():
            value = getattr(self, name)
            if name == "inactive":
                value = [getattr(u, "name", u) for u in value]
            elif callable(value):
                value = getattr(value, "__name__", repr(value))
            lines.append(f"  {name:<16} = {value}")
        return "\n".join(lines)


@dataclass(slots=True)
class CouplingParameters:
    """Options of the staggered (Gauss-Seidel) coupling loop.

    tolerance_change is accepted and reported but no stopping test reads it.
    """

    maxsteps: int = 1000
    tolerance_change: float = 1.0e-10

    def __post_init__(self) -> None:
        self.maxsteps = int(self.maxsteps)
        if self.maxsteps < 1:
            raise ValueError(f"maxsteps must be >= 1, got {self.maxsteps}")
        self.tolerance_change = float(self.tolerance_change)
        if self.tolerance_change < 0.0:
            raise ValueError(f"tolerance_change must be >= 0, got {self.tolerance_change}")

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))


def split_parameters(d: Optional[Mapping[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split a flat option mapping into (solver_kwargs, coupling_kwargs)."""
    solver_kw: Dict[str, Any] = {}
    coupling_kw: Dict[str, Any] = {}
    coupling_names = set(CouplingParameters.field_names())
    for key, value in (d or {}).items():
        if key in coupling_names:
            coupling_kw[key] = value
        else:
            solver_kw[key] = value
    return solver_kw, coupling_kw


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block of a driver YAML file."""

    id: str
    kind: str
    title: str = ""
    notes: Optional[str] = None


@dataclass(slots=True)
class CaseConfig:
    """Top-level driver case configuration container."""

    case: CaseMeta
    solver: SolverParameters = field(default_factory=SolverParameters)
    coupling: CouplingParameters = field(default_factory=CouplingParameters)
    problem: Dict[str, Any] = field(default_factory=dict)
