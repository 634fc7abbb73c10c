"""
Command line runner for YAML-described demo cases.

Responsibilities:
- Load CaseConfig from YAML (case / solver / coupling / problem sections).
- Build the problems of the requested kind.
- Solve with the fixed-point loop (one problem) or the staggered loop (several).
- Write solution.npz and a copy of the case file when an output directory is given.

Exit codes: 0 converged (or a linear solve finished), 2 not converged or bad input.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import tracemalloc
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import numpy as np
import yaml

from core.layout import Unknown
from core.logging_utils import get_log_level_from_env, setup_logging, verbosity_to_level
from core.types import CaseConfig, CaseMeta, CouplingParameters, SolverParameters
from driver.problems import CaseProblems, build_case_problems
from solvers.fixed_point import solve
from solvers.nonlinear_types import SolveStatus
from solvers.stationarity import iterate_until_stationarity

logger = logging.getLogger(__name__)

_SUCCESS = (SolveStatus.CONVERGED, SolveStatus.FINISHED)


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def case_config_from_dict(raw: Mapping[str, Any], default_id: str = "case") -> CaseConfig:
    """Build a validated CaseConfig from a parsed YAML mapping."""
    if not isinstance(raw, Mapping):
        raise ValueError("case file must contain a mapping at top level")
    unknown = sorted(set(raw) - {"case", "solver", "coupling", "problem"})
    if unknown:
        raise ValueError(f"Unsupported case file sections: {unknown}")

    case_raw = dict(raw.get("case") or {})
    if "kind" not in case_raw:
        raise ValueError("case.kind is required")
    case_raw.setdefault("id", default_id)
    case_cfg = CaseMeta(**case_raw)

    solver_cfg = SolverParameters.from_dict(raw.get("solver") or {})
    coupling_raw = dict(raw.get("coupling") or {})
    bad = sorted(set(coupling_raw) - set(CouplingParameters.field_names()))
    if bad:
        raise ValueError(f"Unsupported coupling parameters: {bad}")
    coupling_cfg = CouplingParameters(**coupling_raw)

    return CaseConfig(
        case=case_cfg,
        solver=solver_cfg,
        coupling=coupling_cfg,
        problem=dict(raw.get("problem") or {}),
    )


def load_case_config(cfg_path: str | Path) -> CaseConfig:
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    return case_config_from_dict(raw, default_id=cfg_file.stem)


def _prepare_run_dir(cfg: CaseConfig, cfg_path: str | Path, out_root: Path) -> Path:
    """Create per-run output directory and copy cfg yaml into it."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(out_root) / cfg.case.id / stamp
    run_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(cfg_path, run_dir / "config.yaml")
    return run_dir


# -----------------------------------------------------------------------------
# Solve
# -----------------------------------------------------------------------------
def _solver_kwargs(params: SolverParameters, built: CaseProblems) -> Dict[str, Any]:
    """SolverParameters as keyword arguments, with inactive names mapped to Unknowns."""
    by_name = {str(u): u for u in built.unknowns}
    kw = {name: getattr(params, name) for name in SolverParameters.field_names()}
    kw["inactive"] = tuple(by_name.get(str(u), Unknown(str(u))) for u in params.inactive)
    kw["return_config"] = True
    return kw


def run_solve(cfg: CaseConfig, built: CaseProblems) -> Dict[str, Any]:
    """Solve the built problems; return solution blocks and a status summary."""
    kw = _solver_kwargs(cfg.solver, built)
    spaces = [[built.space] * len(pd.unknowns) for pd in built.problems]
    if built.coupled:
        sol, states, diag = iterate_until_stationarity(
            built.problems,
            spaces,
            maxsteps=cfg.coupling.maxsteps,
            tolerance_change=cfg.coupling.tolerance_change,
            **kw,
        )
        status = diag.status
        summary = {
            "status": status.value,
            "steps": diag.n_steps,
            "residuals": diag.history_res[-1] if diag.history_res else [],
        }
    else:
        sol, state = solve(built.problems[0], spaces[0], **kw)
        diag = state.diagnostics
        status = diag.status
        summary = {"status": status.value, "iterations": diag.n_iter, "residual": diag.res_norm_2}
    summary["ok"] = status in _SUCCESS
    summary["blocks"] = {str(u): np.array(sol[u]) for u in built.unknowns}
    return summary


def _write_solution(run_dir: Path, built: CaseProblems, summary: Mapping[str, Any]) -> Path:
    out = run_dir / "solution.npz"
    arrays = {"x": built.x}
    arrays.update(summary["blocks"])
    for name, exact in built.exact.items():
        arrays[f"{name}_exact"] = exact
    np.savez(out, **arrays)
    logger.info("Wrote %s", out)
    return out


def run_case(
    cfg_path: str | Path,
    *,
    out: Optional[str | Path] = None,
    log_level: int | str = logging.INFO,
    trace_alloc: bool = False,
) -> int:
    """Run one case file. Return 0 on success, 2 on non-convergence or bad input."""
    setup_logging(level=get_log_level_from_env(default=log_level))
    try:
        cfg = load_case_config(cfg_path)
        built = build_case_problems(cfg.case.kind, cfg.problem)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        logger.error("Cannot load case %s: %s", cfg_path, exc)
        return 2
    if cfg.solver.verbosity > 0:
        setup_logging(level=min(logging.getLogger().level, verbosity_to_level(cfg.solver.verbosity)))

    logger.info("Case: %s kind=%s backend=%s method=%s", cfg.case.id, cfg.case.kind, cfg.solver.backend, cfg.solver.method_linear)
    if trace_alloc:
        tracemalloc.start()
    try:
        summary = run_solve(cfg, built)
    finally:
        if trace_alloc:
            tracemalloc.stop()

    for name, exact in built.exact.items():
        err = float(np.max(np.abs(summary["blocks"][name] - exact)))
        logger.info("max error of %s against exact solution: %.3e", name, err)

    if out is not None:
        run_dir = _prepare_run_dir(cfg, cfg_path, Path(out))
        _write_solution(run_dir, built, summary)

    if summary["ok"]:
        logger.info("Completed case %s: %s", cfg.case.id, summary["status"])
        return 0
    logger.warning("Case %s ended with status '%s'", cfg.case.id, summary["status"])
    return 2


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a fixed-point / staggered solver case.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (overridden by FPSOLVE_LOG_LEVEL).",
    )
    parser.add_argument(
        "--out",
        default=None,
        help="Output root; results go to <out>/<case id>/<timestamp>/.",
    )
    parser.add_argument(
        "--trace-alloc",
        action="store_true",
        help="Trace allocations with tracemalloc for the diagnostics table.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(args.case_yaml, out=args.out, log_level=args.log_level, trace_alloc=args.trace_alloc)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
