"""
SciPy VODE backend (default).

VODE provides the same BDF / Adams multistep families as CVODE. The dense Jacobian is
generated internally by finite differences (``with_jacobian=True``) and factored by
VODE's dense LU; both live in the integrator work arrays, so the "matrix" and "linear
solver" resources here are the integrator object and its work space.

Exceptions must not cross the Fortran callback: f2py keeps VODE running after a Python
error and later reports an unrelated ValueError. ``_call_rhs`` therefore records the first
failure, hands VODE NaNs, and stops calling the RHS until ``step_to`` reports it.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy.integrate import ode

from core.errors import RhsEvaluationError, SolverAllocationError
from core.types import IntegratorKind
from solvers.backends import (
    STATUS_FAILURE,
    STATUS_RHS_FAILURE,
    STATUS_SUCCESS,
    RhsFunction,
    SolverBackend,
    StepOutcome,
)

logger = logging.getLogger(__name__)

_VODE_METHOD = {
    IntegratorKind.BDF: "bdf",
    IntegratorKind.ADAMS: "adams",
}


class ScipyVodeBackend(SolverBackend):
    name = "scipy"

    def __init__(self) -> None:
        self._ode: Optional[ode] = None
        self._fun: Optional[RhsFunction] = None
        self._method: Optional[str] = None
        self._rtol = 1.0e-3
        self._atol = 1.0e-6
        self._matrix_shape: Optional[tuple[int, int]] = None
        self._linear_solver_attached = False
        self._callback_error: Optional[BaseException] = None
        self.n_rhs_calls = 0

    def _call_rhs(self, t: float, y: np.ndarray) -> np.ndarray:
        if self._callback_error is not None or self._fun is None:
            return np.full_like(y, np.nan, dtype=np.float64)
        self.n_rhs_calls += 1
        try:
            return self._fun(t, y)
        except Exception as exc:
            self._callback_error = exc
            return np.full_like(y, np.nan, dtype=np.float64)

    def create(self, kind: IntegratorKind) -> None:
        try:
            self._method = _VODE_METHOD[IntegratorKind(kind)]
        except (KeyError, ValueError) as exc:
            raise SolverAllocationError(f"VODE has no integrator family {kind!r}") from exc
        self._ode = ode(self._call_rhs)

    def initialize(self, fun: RhsFunction, y0: np.ndarray, t0: float) -> None:
        if self._ode is None:
            raise SolverAllocationError("initialize() called before create()")
        self._fun = fun
        self._ode.set_initial_value(np.asarray(y0, dtype=np.float64).copy(), float(t0))

    def set_tolerances(self, rtol: float, atol: float) -> None:
        self._rtol = float(rtol)
        self._atol = float(atol)

    def attach_linear_solver(self, n: int, *, max_substeps: int, initial_step: Optional[float] = None) -> None:
        if self._ode is None:
            raise SolverAllocationError("attach_linear_solver() called before create()")
        self._matrix_shape = (int(n), int(n))
        self._ode.set_integrator(
            "vode",
            method=self._method,
            with_jacobian=True,
            rtol=self._rtol,
            atol=self._atol,
            nsteps=int(max_substeps),
            first_step=float(initial_step) if initial_step is not None else 0.0,
        )
        self._linear_solver_attached = True
        logger.debug("VODE %s attached with dense %dx%d Jacobian", self._method, n, n)

    def step_to(self, t_out: float) -> StepOutcome:
        if self._ode is None or not self._linear_solver_attached:
            raise RuntimeError("step_to() called on an unconfigured VODE backend")
        t_out = float(t_out)
        if self._fun is None:
            raise RuntimeError("step_to() called before initialize()")
        self._callback_error = None
        y = self._ode.integrate(t_out)

        exc = self._callback_error
        if isinstance(exc, RhsEvaluationError):
            return StepOutcome(
                status=STATUS_RHS_FAILURE,
                t=float(exc.t),
                y=np.array(y, copy=True),
                message=str(exc),
            )
        if exc is not None:
            raise exc

        if self._ode.successful():
            return StepOutcome(status=STATUS_SUCCESS, t=float(self._ode.t), y=np.array(y, copy=True))

        code = int(self._ode.get_return_code())
        if code >= 0:
            code = STATUS_FAILURE
        return StepOutcome(
            status=code,
            t=float(self._ode.t),
            y=np.array(y, copy=True),
            message=f"VODE returned istate={code}",
        )

    def free_linear_solver(self) -> None:
        self._linear_solver_attached = False

    def free_matrix(self) -> None:
        self._matrix_shape = None

    def free_handle(self) -> None:
        self._ode = None
        self._fun = None
