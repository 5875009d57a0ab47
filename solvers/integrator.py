"""
Adaptive stiff integrator session.

Life cycle:
    UNINITIALIZED --configure--> CONFIGURED --advance_to/run--> RUNNING --> COMPLETED | FAILED

Resources (solver handle, dense Jacobian matrix, linear solver) are acquired in that
order by ``configure`` and released in the reverse order by ``close``, exactly once,
whatever path the run takes. ``AdaptiveIntegrator`` is a context manager; ``integrate``
wraps configure/run/close for the common case.

RHS failures never propagate through the native solver as exceptions of the physics:
the RHS evaluator reports a status code, the wrapper turns a non-zero code into
``RhsEvaluationError`` which the backend maps to ``STATUS_RHS_FAILURE``, and
``advance_to`` finally raises ``SolverStepError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence, Union

import numpy as np

from core.errors import RhsEvaluationError, SizeMismatch, SolverAllocationError, SolverStepError
from core.layout import StateLayout
from core.types import IntegratorSettings
from solvers.backends import STATUS_RHS_FAILURE, SolverBackend, make_backend

logger = logging.getLogger(__name__)


class IntegratorStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RhsEvaluator(Protocol):
    def evaluate(self, t: float, y: np.ndarray, ydot: np.ndarray) -> int:
        """Fill ``ydot`` with d(y)/dt at time ``t``; return 0 on success."""
        ...


class OutputSink(Protocol):
    def __call__(self, t: float, y: np.ndarray) -> bool:
        """Handle an accepted output time; return False to stop the run."""
        ...


@dataclass(slots=True)
class IntegratorSession:
    """Mutable per-run state of the integrator (owned by the root driver)."""

    backend: SolverBackend
    layout: Optional[StateLayout]
    y: np.ndarray
    t: float
    n_output_steps: int = 1
    n_rhs_evals: int = 0
    status: IntegratorStatus = IntegratorStatus.CONFIGURED


class AdaptiveIntegrator:
    def __init__(
        self,
        rhs: RhsEvaluator,
        settings: Optional[IntegratorSettings] = None,
        *,
        backend: Optional[SolverBackend] = None,
        layout: Optional[StateLayout] = None,
    ) -> None:
        self.rhs = rhs
        self.settings = settings if settings is not None else IntegratorSettings()
        self.layout = layout
        self._backend = backend
        self._status = IntegratorStatus.UNINITIALIZED
        self._session: Optional[IntegratorSession] = None
        self._acquired = False
        self._closed = False
        self._last_rhs_error: Optional[RhsEvaluationError] = None

    # ------------------------------------------------------------------
    @property
    def status(self) -> IntegratorStatus:
        return self._status

    @property
    def session(self) -> Optional[IntegratorSession]:
        return self._session

    @property
    def backend(self) -> Optional[SolverBackend]:
        return self._backend

    def _set_status(self, status: IntegratorStatus) -> None:
        self._status = status
        if self._session is not None:
            self._session.status = status

    def _rhs(self, t: float, y: np.ndarray) -> np.ndarray:
        ydot = np.empty_like(y, dtype=np.float64)
        status = int(self.rhs.evaluate(float(t), y, ydot))
        if self._session is not None:
            self._session.n_rhs_evals += 1
        if status != 0:
            err = RhsEvaluationError(status, float(t))
            self._last_rhs_error = err
            raise err
        return ydot

    # ------------------------------------------------------------------
    def configure(self, y0: np.ndarray, t0: float) -> IntegratorSession:
        """Create the solver, register y0/t0 and the RHS, set tolerances, attach a dense LU solver."""
        if self._status is not IntegratorStatus.UNINITIALIZED:
            raise RuntimeError(f"configure() called in state {self._status.value}")

        y0 = np.array(y0, dtype=np.float64, copy=True)
        if y0.ndim != 1:
            raise SizeMismatch(f"initial state must be 1D, got shape {y0.shape}")
        if self.layout is not None and y0.size != self.layout.size:
            raise SizeMismatch(f"initial state has {y0.size} entries, layout requires {self.layout.size}")

        cfg = self.settings
        try:
            if self._backend is None:
                self._backend = make_backend(cfg.backend)
            backend = self._backend
            self._acquired = True
            backend.create(cfg.kind)
            backend.initialize(self._rhs, y0, float(t0))
            backend.set_tolerances(cfg.rtol, cfg.atol)
            backend.attach_linear_solver(y0.size, max_substeps=cfg.max_substeps, initial_step=cfg.initial_step)
        except Exception as exc:
            self._set_status(IntegratorStatus.FAILED)
            self._release()
            if isinstance(exc, SolverAllocationError):
                raise
            raise SolverAllocationError(f"Failed to configure {cfg.kind.value} integrator: {exc}") from exc

        self._session = IntegratorSession(backend=backend, layout=self.layout, y=y0, t=float(t0))
        self._set_status(IntegratorStatus.CONFIGURED)
        logger.debug(
            "Integrator configured: backend=%s kind=%s n=%d rtol=%.3e atol=%.3e",
            backend.name, cfg.kind.value, y0.size, cfg.rtol, cfg.atol,
        )
        return self._session

    def advance_to(self, t_out: float) -> np.ndarray:
        """Advance to exactly ``t_out``; raise SolverStepError on a non-success status."""
        if self._status not in (IntegratorStatus.CONFIGURED, IntegratorStatus.RUNNING):
            raise RuntimeError(f"advance_to() called in state {self._status.value}")
        session = self._session
        self._set_status(IntegratorStatus.RUNNING)

        self._last_rhs_error = None
        outcome = session.backend.step_to(float(t_out))
        if not outcome.success:
            self._set_status(IntegratorStatus.FAILED)
            if outcome.status == STATUS_RHS_FAILURE:
                msg = f"RHS evaluation failed while advancing to t={t_out:.6e}"
                if self._last_rhs_error is not None:
                    msg = f"{msg}: {self._last_rhs_error}"
            else:
                msg = f"Integrator failed while advancing to t={t_out:.6e}"
                if outcome.message:
                    msg = f"{msg}: {outcome.message}"
            raise SolverStepError(msg, status=outcome.status, t=outcome.t, t_target=float(t_out))

        session.y = outcome.y
        session.t = float(t_out)
        return session.y

    def run(self, times: Union[Sequence[float], np.ndarray], sink: OutputSink) -> int:
        """
        Integrate through ``times`` calling ``sink`` after each accepted output time.

        ``times[0]`` is the initial time (already handled by the caller). Returns the
        number of successful output steps, counting the initial state as 1.
        """
        times = np.asarray(times, dtype=np.float64)
        if times.ndim != 1 or times.size < 1:
            raise ValueError("times must be a non-empty 1D sequence")
        if times.size > 1 and not np.all(np.diff(times) > 0.0):
            raise ValueError("output times must be strictly increasing")
        session = self._session
        if session is None:
            raise RuntimeError("run() called before configure()")
        if not np.isclose(times[0], session.t, rtol=1.0e-12, atol=0.0):
            raise ValueError(f"times[0]={times[0]!r} differs from the configured initial time {session.t!r}")

        session.n_output_steps = 1
        try:
            for t_out in times[1:]:
                y = self.advance_to(float(t_out))
                if not sink(float(t_out), y):
                    logger.info("Output sink requested stop at t=%.6e", t_out)
                    self._set_status(IntegratorStatus.COMPLETED)
                    return session.n_output_steps
                session.n_output_steps += 1
        except BaseException:
            self._set_status(IntegratorStatus.FAILED)
            raise

        self._set_status(IntegratorStatus.COMPLETED)
        return session.n_output_steps

    # ------------------------------------------------------------------
    def _release(self) -> None:
        if not self._acquired or self._backend is None:
            return
        self._acquired = False
        backend = self._backend
        # reverse acquisition order
        backend.free_linear_solver()
        backend.free_matrix()
        backend.free_handle()
        logger.debug("Integrator resources released (backend=%s)", backend.name)

    def close(self) -> None:
        """Release linear solver, matrix and handle (idempotent)."""
        if self._closed:
            return
        self._closed = True
        self._release()

    def __enter__(self) -> "AdaptiveIntegrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


def integrate(
    rhs: RhsEvaluator,
    y0: np.ndarray,
    times: Union[Sequence[float], np.ndarray],
    sink: OutputSink,
    settings: Optional[IntegratorSettings] = None,
    *,
    backend: Optional[SolverBackend] = None,
    layout: Optional[StateLayout] = None,
) -> int:
    """configure + run + close; returns the successful output-step count."""
    times = np.asarray(times, dtype=np.float64)
    if times.size < 1:
        raise ValueError("times must contain at least the initial time")
    with AdaptiveIntegrator(rhs, settings, backend=backend, layout=layout) as integrator:
        integrator.configure(y0, float(times[0]))
        return integrator.run(times, sink)
