"""
Driver to run a single adaptive time-integration case.

Responsibilities:
- Load CaseConfig from YAML.
- Set up the shared-memory block, grids, shared state and the derivative model.
- Run the adaptive time solve (root integrates, other block ranks serve RHS rounds).
- Return 0 on success, 2 on configuration or solver failure, 99 on an unhandled exception.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import shutil
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from core.errors import TimeSolverError
from core.grid import build_grid
from core.types import (
    CaseComposition,
    CaseConfig,
    CaseGrid,
    CaseIO,
    CaseInitial,
    CaseMeta,
    CasePaths,
    CasePhysics,
    CaseTime,
    EvolveFlags,
    IntegratorSettings,
    kinetic_state_shapes,
)
from driver.time_solver import time_solve
from output.writers import write_grid
from parallel.communication import setup_block_comms
from parallel.looping import split_range
from parallel.mpi_bootstrap import get_world_comm
from parallel.shared_memory import SharedArena, allocate_kinetic_state
from physics.initial import build_initial_state
from physics.krook import build_model
from solvers.backends import resolve_backend_name

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_TOP_LEVEL_KEYS = {
    "case", "paths", "grid", "composition", "evolve", "time", "integrator", "physics", "initial", "io",
}


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def _section(raw: Mapping[str, Any], name: str, *, required: bool = False) -> Dict[str, Any]:
    if name not in raw or raw[name] is None:
        if required:
            raise ValueError(f"Missing required config section '{name}'")
        return {}
    sec = raw[name]
    if not isinstance(sec, Mapping):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(sec).__name__}")
    return dict(sec)


def _build(cls, sec: Mapping[str, Any], name: str):
    allowed = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(sec) - allowed)
    if unknown:
        raise ValueError(f"{name}: unknown keys {unknown}")
    return cls(**sec)


def load_case_config(cfg_path: str | Path) -> CaseConfig:
    """Load YAML file into CaseConfig with nested dataclasses."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(cfg_file.read_text())
    if not isinstance(raw, Mapping):
        raise ValueError(f"Case file {cfg_file} does not contain a mapping")
    unknown = sorted(set(raw) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ValueError(f"Unknown top-level config keys: {unknown}")
    base = cfg_file.parent

    case_cfg = _build(CaseMeta, _section(raw, "case", required=True), "case")

    paths_raw = _section(raw, "paths", required=True)
    if "output_root" not in paths_raw:
        raise ValueError("paths.output_root is required")
    output_root = _resolve_path(base, paths_raw["output_root"])
    case_dir = _resolve_path(base, paths_raw.get("case_dir", output_root / case_cfg.id))
    paths_cfg = CasePaths(output_root=output_root, case_dir=case_dir)

    grid_cfg = _build(CaseGrid, _section(raw, "grid", required=True), "grid")
    comp_cfg = _build(CaseComposition, _section(raw, "composition"), "composition")

    evolve_raw = _section(raw, "evolve")
    unknown = sorted(set(evolve_raw) - {"density", "upar", "ppar"})
    if unknown:
        raise ValueError(f"evolve: unknown keys {unknown}")
    evolve_cfg = EvolveFlags(
        evolve_density=bool(evolve_raw.get("density", False)),
        evolve_upar=bool(evolve_raw.get("upar", False)),
        evolve_ppar=bool(evolve_raw.get("ppar", False)),
    )

    time_raw = _section(raw, "time", required=True)
    for key in ("t0", "dt", "nstep"):
        if key not in time_raw:
            raise ValueError(f"time.{key} is required")
    stopfile = time_raw.get("stopfile", None)
    time_cfg = _build(
        CaseTime,
        {
            **time_raw,
            "t0": float(time_raw["t0"]),
            "dt": float(time_raw["dt"]),
            "nstep": int(time_raw["nstep"]),
            "nwrite_moments": int(time_raw.get("nwrite_moments", 1)),
            "nwrite_dfns": int(time_raw.get("nwrite_dfns", 1)),
            "stopfile": None if stopfile is None else _resolve_path(base, stopfile),
        },
        "time",
    )

    integrator_cfg = IntegratorSettings.from_dict(_section(raw, "integrator"))
    physics_cfg = _build(CasePhysics, _section(raw, "physics"), "physics")
    initial_cfg = _build(CaseInitial, _section(raw, "initial"), "initial")
    io_cfg = _build(CaseIO, _section(raw, "io"), "io")

    return CaseConfig(
        case=case_cfg,
        paths=paths_cfg,
        grid=grid_cfg,
        time=time_cfg,
        composition=comp_cfg,
        evolve=evolve_cfg,
        integrator=integrator_cfg,
        physics=physics_cfg,
        initial=initial_cfg,
        io=io_cfg,
    )


# -----------------------------------------------------------------------------
# Run directory and logging
# -----------------------------------------------------------------------------
def _prepare_run_dir(cfg: CaseConfig, cfg_path: str) -> Path:
    """Create per-run output directory and copy cfg yaml into it."""
    out_root = Path(cfg.paths.output_root)
    case_id = getattr(cfg.case, "id", "case")
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = out_root / case_id / stamp
    run_dir.mkdir(parents=True, exist_ok=True)

    try:
        shutil.copy2(cfg_path, run_dir / "config.yaml")
    except OSError as exc:  # pragma: no cover - best-effort copy
        logger.warning("Failed to copy cfg to run dir: %s", exc)
    return run_dir


def _add_file_handler(run_dir: Path, level: int) -> Optional[logging.Handler]:
    log_path = run_dir / "run.log"
    root_logger = logging.getLogger()
    for h in root_logger.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_path:
            return None
    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root_logger.addHandler(file_handler)
    logger.info("Logging to file: %s", log_path)
    return file_handler


def _coerce_level(log_level: int | str) -> int:
    level = log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    return level


# -----------------------------------------------------------------------------
# Main driver
# -----------------------------------------------------------------------------
def run_case(cfg_path: str | Path, *, log_level: int | str = logging.INFO, backend: Optional[str] = None) -> int:
    """Run one case. Return 0 on success, 2 on configuration/solver failure, 99 on unhandled errors."""
    level = _coerce_level(log_level)
    world = get_world_comm()
    rank = world.Get_rank()
    # workers only report problems
    logging.basicConfig(level=level if rank == 0 else max(level, logging.WARNING), format=_LOG_FORMAT)
    cfg_path = str(cfg_path)

    comms = None
    arena = None
    file_handler = None
    try:
        try:
            cfg = load_case_config(cfg_path)
            if backend is not None:
                cfg.integrator = dataclasses.replace(cfg.integrator, backend=resolve_backend_name(backend))
        except (ValueError, TypeError, KeyError, OSError, yaml.YAMLError) as exc:
            logger.error("Invalid case configuration %s: %s", cfg_path, exc)
            return 2

        try:
            comms = setup_block_comms(world)
        except ValueError as exc:
            logger.error("%s", exc)
            return 2

        run_dir = _prepare_run_dir(cfg, cfg_path) if rank == 0 else None
        run_dir = world.bcast(run_dir, root=0)
        cfg.paths.case_dir = run_dir
        if cfg.time.stopfile is None:
            cfg.time.stopfile = run_dir / "stop"
        if rank == 0:
            logger.info("Run directory: %s", run_dir)
            file_handler = _add_file_handler(run_dir, level)

        grid = build_grid(cfg)
        shapes = kinetic_state_shapes(
            grid.nz,
            grid.nvpa,
            grid.nvz,
            cfg.composition.n_ion_species,
            cfg.composition.n_neutral_species,
        )
        arena = SharedArena(comms.block)
        state = allocate_kinetic_state(arena, shapes)
        ddt = allocate_kinetic_state(arena, shapes)
        if comms.is_root:
            build_initial_state(cfg, grid, state)
            if cfg.io.save_grid:
                write_grid(run_dir, grid)
        comms.block.Barrier()

        zrange = split_range(grid.nz, comms.block_rank, comms.block_size)
        model = build_model(cfg, grid, zrange)
        result = time_solve(cfg, comms.block, model, state, ddt, run_dir=run_dir)
        if result.failed:
            logger.error("Rank %d: run ended with a failure reported by the block root", rank)
            return 2
        if result.is_root:
            logger.info(
                "Completed run: %d output steps (stop requested: %s).",
                result.n_output_steps,
                result.stop_requested,
            )
        return 0
    except TimeSolverError as exc:
        logger.error("Time solve failed: %s", exc)
        return 2
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        if world.Get_size() > 1:
            world.Abort(1)
        return 99
    finally:
        if arena is not None:
            arena.close()
        if comms is not None:
            comms.free()
        if file_handler is not None:
            logging.getLogger().removeHandler(file_handler)
            file_handler.close()


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an adaptive time-integration case.")
    parser.add_argument("cfg_path", help="Path to case YAML file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (e.g., INFO, DEBUG).",
    )
    parser.add_argument(
        "--backend",
        default=None,
        help="Override integrator.backend (scipy | petsc).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    return run_case(args.cfg_path, log_level=args.log_level, backend=args.backend)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
