"""
Output callback invoked by the integrator at every accepted output time.

Per call:
1. poll the stop file,
2. refresh the shared state at the output time (one lockstep round, so non-evolved moments
   are recomputed on every block rank),
3. write moments / dfns when the time matches their schedule (both when stopping),
4. log one line and tell the integrator whether to continue.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from core.errors import RhsEvaluationError
from core.schedule import OutputSchedule, should_stop_now, should_write_dfns, should_write_moments
from core.types import KineticState
from output.writers import DfnsWriter, MomentsWriter

logger = logging.getLogger(__name__)

RefreshFunction = Callable[[float, np.ndarray], int]


class SnapshotOutputSink:
    def __init__(
        self,
        refresh: RefreshFunction,
        state: KineticState,
        schedule: OutputSchedule,
        *,
        moments_writer: Optional[MomentsWriter] = None,
        dfns_writer: Optional[DfnsWriter] = None,
        stopfile: Optional[Path] = None,
    ) -> None:
        self.refresh = refresh
        self.state = state
        self.schedule = schedule
        self.moments_writer = moments_writer
        self.dfns_writer = dfns_writer
        self.stopfile = stopfile
        self.moments_index = 0
        self.dfns_index = 0
        self.n_calls = 0
        self.stop_requested = False
        self._wall0 = time.perf_counter()

    def _write(self, t: float, write_moments: bool, write_dfns: bool) -> tuple[bool, List[str]]:
        finite = True
        written: List[str] = []
        if write_moments and self.moments_writer is not None:
            finite = self.moments_writer.write(self.moments_index, t, self.state) and finite
            self.moments_index += 1
            written.append("moments")
        if write_dfns and self.dfns_writer is not None:
            finite = self.dfns_writer.write(self.dfns_index, t, self.state) and finite
            self.dfns_index += 1
            written.append("dfns")
        return finite, written

    def _refresh(self, t: float, y: np.ndarray) -> None:
        status = int(self.refresh(float(t), y))
        if status != 0:
            raise RhsEvaluationError(status, float(t))

    def write_initial(self, t0: float, y0: np.ndarray) -> None:
        """Refresh at the initial time and write snapshot 0 of both streams."""
        self._refresh(t0, y0)
        _, written = self._write(float(t0), True, True)
        logger.info("t=%.6e (initial) wrote=%s", t0, ",".join(written) or "-")

    def __call__(self, t: float, y: np.ndarray) -> bool:
        self.n_calls += 1
        stop = should_stop_now(self.stopfile)
        self._refresh(t, y)

        write_moments = stop or should_write_moments(t, self.schedule.moments_times)
        write_dfns = stop or should_write_dfns(t, self.schedule.dfns_times)
        finite, written = self._write(float(t), write_moments, write_dfns)
        if not finite:
            logger.error("Non-finite data at t=%.6e, stopping after this output", t)
            stop = True

        logger.info(
            "t=%.6e wall=%.2fs wrote=%s",
            t,
            time.perf_counter() - self._wall0,
            ",".join(written) or "-",
        )
        self.stop_requested = stop
        return not stop
