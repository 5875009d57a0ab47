"""
Stiff-integrator backend interface and dispatcher.

A backend wraps one native ODE solver and exposes only the life-cycle operations the
AdaptiveIntegrator needs. Resources are acquired in the order handle -> matrix -> linear
solver and must be released in the reverse order through the ``free_*`` methods, each of
which is a no-op once the resource is gone.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

import numpy as np

from core.types import IntegratorKind, SolverBackendName

RhsFunction = Callable[[float, np.ndarray], np.ndarray]

# Status codes reported by step_to(); negative values are failures.
STATUS_SUCCESS = 0
STATUS_FAILURE = -1
STATUS_TOO_MUCH_WORK = -2
STATUS_RHS_FAILURE = -8


@dataclass(slots=True)
class StepOutcome:
    """Result of one advance-to-time call."""

    status: int
    t: float
    y: np.ndarray
    n_substeps: int = 0
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status >= 0


class SolverBackend(ABC):
    """Life-cycle of one stiff ODE solver instance."""

    name: str = "abstract"

    @abstractmethod
    def create(self, kind: IntegratorKind) -> None:
        """Allocate the solver handle for the given multistep family."""

    @abstractmethod
    def initialize(self, fun: RhsFunction, y0: np.ndarray, t0: float) -> None:
        """Register the RHS and the initial condition."""

    @abstractmethod
    def set_tolerances(self, rtol: float, atol: float) -> None:
        ...

    @abstractmethod
    def attach_linear_solver(self, n: int, *, max_substeps: int, initial_step: Optional[float] = None) -> None:
        """Build the dense Jacobian matrix and linear solver sized ``n`` and attach them."""

    @abstractmethod
    def step_to(self, t_out: float) -> StepOutcome:
        """Advance (possibly many internal substeps) to exactly ``t_out``."""

    @abstractmethod
    def free_linear_solver(self) -> None:
        ...

    @abstractmethod
    def free_matrix(self) -> None:
        ...

    @abstractmethod
    def free_handle(self) -> None:
        ...


_BACKEND_ALIAS = {
    "scipy": SolverBackendName.SCIPY,
    "vode": SolverBackendName.SCIPY,
    "scipy_vode": SolverBackendName.SCIPY,
    "petsc": SolverBackendName.PETSC,
    "ts": SolverBackendName.PETSC,
    "petsc_ts": SolverBackendName.PETSC,
}


def resolve_backend_name(name: Union[str, SolverBackendName, None]) -> SolverBackendName:
    if name is None:
        return SolverBackendName.SCIPY
    if isinstance(name, SolverBackendName):
        return name
    raw = str(name).strip().lower()
    if raw not in _BACKEND_ALIAS:
        raise ValueError(f"Unknown integrator backend: {name!r}")
    return _BACKEND_ALIAS[raw]


def make_backend(name: Union[str, SolverBackendName, None]) -> SolverBackend:
    """Construct a backend by name (default: SciPy VODE)."""
    key = resolve_backend_name(name)

    if key is SolverBackendName.SCIPY:
        from solvers.backend_scipy import ScipyVodeBackend
        return ScipyVodeBackend()
    if key is SolverBackendName.PETSC:
        from solvers.backend_petsc import PetscTSBackend
        return PetscTSBackend()

    raise ValueError(f"Unknown integrator backend: {name!r}")
