"""
Output-time schedule.

Moments and distribution-function snapshots are requested every ``nwrite_moments`` /
``nwrite_dfns`` steps of size ``dt``. Step index 0 is the initial time. The integrator is
asked to stop at the sorted union of both time sets.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .types import FloatArray

logger = logging.getLogger(__name__)

# Same default as a relative isapprox: sqrt(machine epsilon)
TIME_MATCH_RTOL = float(np.sqrt(np.finfo(np.float64).eps))


def _validate(dt: float, nstep: int, moments_interval: int, dfns_interval: int) -> None:
    if not (dt > 0.0):
        raise ValueError(f"dt must be positive, got {dt}")
    if int(nstep) < 1:
        raise ValueError(f"nstep must be >= 1, got {nstep}")
    if int(moments_interval) < 1:
        raise ValueError(f"moments write interval must be >= 1, got {moments_interval}")
    if int(dfns_interval) < 1:
        raise ValueError(f"dfns write interval must be >= 1, got {dfns_interval}")


def output_indices(nstep: int, interval: int) -> np.ndarray:
    """Step indices 0, interval, 2*interval, ... <= nstep."""
    return np.arange(0, int(nstep) + 1, int(interval), dtype=np.int64)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, slots=True)
class OutputSchedule:
    """Immutable output times; ``all_times[0]`` is the initial time."""

    moments_indices: np.ndarray
    dfns_indices: np.ndarray
    all_indices: np.ndarray
    moments_times: FloatArray
    dfns_times: FloatArray
    all_times: FloatArray

    @property
    def n_outputs(self) -> int:
        return int(self.all_times.size)


def build_output_schedule(
    dt: float,
    time0: float,
    nstep: int,
    moments_interval: int,
    dfns_interval: int,
) -> OutputSchedule:
    """Compute both index sets, their union, and the corresponding absolute times."""
    _validate(dt, nstep, moments_interval, dfns_interval)
    mom_idx = output_indices(nstep, moments_interval)
    dfn_idx = output_indices(nstep, dfns_interval)
    all_idx = np.union1d(mom_idx, dfn_idx)

    dt = float(dt)
    time0 = float(time0)
    return OutputSchedule(
        moments_indices=_readonly(mom_idx),
        dfns_indices=_readonly(dfn_idx),
        all_indices=_readonly(all_idx),
        moments_times=_readonly(time0 + dt * mom_idx),
        dfns_times=_readonly(time0 + dt * dfn_idx),
        all_times=_readonly(time0 + dt * all_idx),
    )


def compute_output_times(
    dt: float,
    time0: float,
    nstep: int,
    moments_interval: int,
    dfns_interval: int,
) -> FloatArray:
    """Sorted, duplicate-free union of moments and dfns output times."""
    return build_output_schedule(dt, time0, nstep, moments_interval, dfns_interval).all_times


def _matches_any(simtime: float, times: np.ndarray) -> bool:
    times = np.asarray(times, dtype=np.float64)
    if times.size == 0:
        return False
    return bool(np.any(np.isclose(float(simtime), times, rtol=TIME_MATCH_RTOL, atol=0.0)))


def should_write_moments(simtime: float, moments_times: np.ndarray) -> bool:
    return _matches_any(simtime, moments_times)


def should_write_dfns(simtime: float, dfns_times: np.ndarray) -> bool:
    return _matches_any(simtime, dfns_times)


def should_stop_now(stopfile: Optional[Union[str, os.PathLike]]) -> bool:
    """True if the stop file exists (polled once per output step)."""
    if stopfile is None:
        return False
    path = Path(stopfile)
    if path.is_file():
        logger.info("Found stop file %s, aborting run", path)
        return True
    return False
