"""Exception types raised by the time-solve core."""

from __future__ import annotations

from typing import Optional


class TimeSolverError(RuntimeError):
    """Base class for fatal time-solver errors."""


class SolverAllocationError(TimeSolverError):
    """The stiff integrator (or one of its native resources) could not be created."""


class SolverStepError(TimeSolverError):
    """An advance-to-time call returned a non-success status."""

    def __init__(self, message: str, *, status: int, t: float, t_target: Optional[float] = None) -> None:
        super().__init__(message)
        self.status = int(status)
        self.t = float(t)
        self.t_target = t_target


class RhsEvaluationError(TimeSolverError):
    """Raised inside the solver callback to abort the current step after an RHS failure."""

    def __init__(self, status: int, t: float) -> None:
        super().__init__(f"RHS evaluation failed at t={t:.6e} (status={status})")
        self.status = int(status)
        self.t = float(t)


class SizeMismatch(TimeSolverError, ValueError):
    """Packed buffer length does not match the layout computed for the configuration."""


__all__ = [
    "TimeSolverError",
    "SolverAllocationError",
    "SolverStepError",
    "RhsEvaluationError",
    "SizeMismatch",
]
