"""
Lockstep RHS evaluation across the ranks of a shared-memory block.

Only the block root runs the stiff integrator. Every RHS evaluation it requests becomes
one *round*:

    root:    unpack y -> shared state | bcast CONTINUE(t) | compute own z range | sync | pack ddt
    workers:                            bcast (receive)     | compute own z range | sync

The sync at the end of a round is a block-wide ``allreduce`` of the local failure flag, so
it doubles as the barrier and tells every rank whether any rank's physics raised. Every
participant reaches it whether or not its computation succeeded.

When the run ends (normally, by early stop, or by a fatal error) the root broadcasts STOP
exactly once via ``RootDriver.finish``. Workers only look at the channel between rounds, so
an in-flight round is always completed before STOP can be observed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Protocol

import numpy as np

from core.layout import StateLayout, pack_state, unpack_state
from core.types import KineticState

logger = logging.getLogger(__name__)

ROOT_RANK = 0

# RHS status returned to the integrator when any rank's physics failed in a round.
STATUS_PHYSICS_FAILURE = 1


class StepSignal(IntEnum):
    CONTINUE = 0
    STOP = 1


@dataclass(frozen=True, slots=True)
class StepMessage:
    """Broadcast from the block root before every round and once at the end."""

    signal: StepSignal
    time: float = math.nan
    failed: bool = False


class DerivativeModel(Protocol):
    def compute_ddt(self, ddt: KineticState, state: KineticState, t: float) -> None:
        """Write time derivatives of this rank's share of ``state`` into ``ddt``."""
        ...


@dataclass(slots=True)
class WorkerResult:
    n_rounds: int
    failed: bool
    n_local_failures: int


class StepParticipant:
    """Shared part of root and workers: compute this rank's share, then synchronize the block."""

    def __init__(self, comm: Any, model: DerivativeModel, state: KineticState, ddt: KineticState,
                 *, root: int = ROOT_RANK) -> None:
        self.comm = comm
        self.model = model
        self.state = state
        self.ddt = ddt
        self.root = int(root)
        self.rank = int(comm.Get_rank())
        self.n_rounds = 0
        self.n_local_failures = 0

    def _compute_and_sync(self, t: float) -> int:
        """Run one round on this rank; returns the number of ranks whose physics failed."""
        local_failed = 0
        try:
            self.model.compute_ddt(self.ddt, self.state, float(t))
        except Exception:
            logger.exception("Derivative computation failed on rank %d at t=%.6e", self.rank, t)
            local_failed = 1
            self.n_local_failures += 1
        finally:
            self.n_rounds += 1
        return int(self.comm.allreduce(local_failed))


class RootDriver(StepParticipant):
    """RHS evaluator handed to the integrator on the block root."""

    def __init__(self, comm: Any, model: DerivativeModel, state: KineticState, ddt: KineticState,
                 layout: StateLayout, *, root: int = ROOT_RANK) -> None:
        super().__init__(comm, model, state, ddt, root=root)
        if self.rank != self.root:
            raise ValueError(f"RootDriver created on rank {self.rank}, block root is {self.root}")
        self.layout = layout
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _round(self, t: float, y: np.ndarray) -> int:
        if self._finished:
            raise RuntimeError("RHS round requested after STOP was broadcast")
        unpack_state(y, self.layout, self.state)
        self.comm.bcast(StepMessage(StepSignal.CONTINUE, float(t)), root=self.root)
        n_failed = self._compute_and_sync(t)
        if n_failed:
            logger.error("RHS round at t=%.6e failed on %d rank(s)", t, n_failed)
            return STATUS_PHYSICS_FAILURE
        return 0

    def evaluate(self, t: float, y: np.ndarray, ydot: np.ndarray) -> int:
        status = self._round(t, y)
        if status == 0:
            pack_state(self.ddt, self.layout, out=ydot)
        return status

    def refresh(self, t: float, y: np.ndarray) -> int:
        """Bring the shared state (and derived moments) up to date at ``t`` without packing."""
        return self._round(t, y)

    def finish(self, failed: bool = False) -> None:
        """Broadcast STOP once; later calls are no-ops."""
        if self._finished:
            return
        self._finished = True
        self.comm.bcast(StepMessage(StepSignal.STOP, failed=bool(failed)), root=self.root)
        logger.debug("STOP broadcast after %d rounds (failed=%s)", self.n_rounds, failed)


class WorkerLoop(StepParticipant):
    """Non-root block rank: serve rounds until STOP."""

    def run(self) -> WorkerResult:
        while True:
            msg: Optional[StepMessage] = self.comm.bcast(None, root=self.root)
            if not isinstance(msg, StepMessage):
                raise TypeError(f"Unexpected message from block root: {msg!r}")
            if msg.signal is StepSignal.STOP:
                if msg.failed:
                    logger.warning("Rank %d: root reported a failed run", self.rank)
                return WorkerResult(
                    n_rounds=self.n_rounds,
                    failed=bool(msg.failed),
                    n_local_failures=self.n_local_failures,
                )
            self._compute_and_sync(msg.time)
