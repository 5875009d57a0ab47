"""
Adaptive time solve across one shared-memory block.

The block root owns the integrator session and drives the RHS through ``RootDriver``;
every other block rank runs ``WorkerLoop`` until the root broadcasts STOP. STOP is sent
from a ``finally`` so workers are released on success, early stop and failure alike.
Layout and schedule are built on every rank before the split, so a configuration error
raises identically everywhere instead of leaving workers waiting for a message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from core.layout import StateLayout, build_layout, pack_state
from core.schedule import OutputSchedule, build_output_schedule
from core.types import CaseConfig, KineticState
from driver.output_sink import SnapshotOutputSink
from output.writers import DfnsWriter, MomentsWriter
from parallel.coordinator import DerivativeModel, RootDriver, WorkerLoop
from solvers.backends import SolverBackend
from solvers.integrator import integrate

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TimeSolveResult:
    is_root: bool
    n_output_steps: int
    n_rounds: int
    failed: bool = False
    stop_requested: bool = False


def build_schedule(cfg: CaseConfig) -> OutputSchedule:
    tc = cfg.time
    return build_output_schedule(tc.dt, tc.t0, tc.nstep, tc.nwrite_moments, tc.nwrite_dfns)


def build_state_layout(cfg: CaseConfig, state: KineticState) -> StateLayout:
    return build_layout(state, cfg.evolve, cfg.composition.n_neutral_species)


def _solve_root(
    cfg: CaseConfig,
    comm: Any,
    model: DerivativeModel,
    state: KineticState,
    ddt: KineticState,
    layout: StateLayout,
    schedule: OutputSchedule,
    run_dir: Path,
    backend: Optional[SolverBackend],
) -> TimeSolveResult:
    logger.info(
        "Adaptive time solve: n=%d fields=%s outputs=%d (t0=%.6e, t_end=%.6e) backend=%s kind=%s",
        layout.size,
        ",".join(layout.order),
        schedule.n_outputs,
        schedule.all_times[0],
        schedule.all_times[-1],
        backend.name if backend is not None else cfg.integrator.backend.value,
        cfg.integrator.kind.value,
    )

    driver = RootDriver(comm, model, state, ddt, layout)
    failed = True
    try:
        n_neut = cfg.composition.n_neutral_species
        sink = SnapshotOutputSink(
            driver.refresh,
            state,
            schedule,
            moments_writer=MomentsWriter(run_dir, n_neut) if cfg.io.write_moments else None,
            dfns_writer=DfnsWriter(run_dir, n_neut) if cfg.io.write_dfns else None,
            stopfile=cfg.time.stopfile,
        )
        y0 = pack_state(state, layout)
        sink.write_initial(float(schedule.all_times[0]), y0)
        n_steps = integrate(driver, y0, schedule.all_times, sink, cfg.integrator, backend=backend, layout=layout)
        failed = False
    finally:
        driver.finish(failed=failed)

    logger.info("Time solve finished: %d output steps, %d RHS rounds", n_steps, driver.n_rounds)
    return TimeSolveResult(
        is_root=True,
        n_output_steps=n_steps,
        n_rounds=driver.n_rounds,
        stop_requested=sink.stop_requested,
    )


def time_solve(
    cfg: CaseConfig,
    comm: Any,
    model: DerivativeModel,
    state: KineticState,
    ddt: KineticState,
    *,
    run_dir: Path,
    backend: Optional[SolverBackend] = None,
) -> TimeSolveResult:
    """Run the adaptive time solve on every rank of the block communicator ``comm``."""
    layout = build_state_layout(cfg, state)
    schedule = build_schedule(cfg)

    if comm.Get_rank() == 0:
        return _solve_root(cfg, comm, model, state, ddt, layout, schedule, Path(run_dir), backend)

    result = WorkerLoop(comm, model, state, ddt).run()
    return TimeSolveResult(
        is_root=False,
        n_output_steps=0,
        n_rounds=result.n_rounds,
        failed=result.failed,
    )
