"""
PETSc TS backend (BDF only, serial communicator).

Resources:
- handle: ``TS`` of type BDF with an RHS function,
- matrix: dense ``Mat`` filled with a finite-difference Jacobian of the RHS,
- linear solver: the TS' SNES ``KSP`` set to ``preonly`` + ``lu`` (dense direct solve).
PETSc has no explicit-Adams family, so ADAMS is rejected at allocation time.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from core.errors import RhsEvaluationError, SolverAllocationError
from core.types import IntegratorKind
from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc
from solvers.backends import (
    STATUS_FAILURE,
    STATUS_RHS_FAILURE,
    STATUS_SUCCESS,
    STATUS_TOO_MUCH_WORK,
    RhsFunction,
    SolverBackend,
    StepOutcome,
)

logger = logging.getLogger(__name__)

_FD_EPS = 1.0e-8


def _get_petsc():
    bootstrap_mpi_before_petsc()
    try:
        from petsc4py import PETSc
    except Exception as exc:  # pragma: no cover
        raise SolverAllocationError("petsc4py is required for the PETSc TS backend.") from exc
    return PETSc


def _read_vec(X) -> np.ndarray:
    try:
        view = X.getArray(readonly=True)
    except TypeError:
        view = X.getArray()
    return np.asarray(view, dtype=np.float64)


class PetscTSBackend(SolverBackend):
    name = "petsc"

    def __init__(self, options_prefix: str = "kinetic_") -> None:
        self._PETSc = None
        self._prefix = options_prefix
        self._ts = None
        self._J = None
        self._ksp = None
        self._x = None
        self._f = None
        self._fun: Optional[RhsFunction] = None
        self._n = 0
        self._t = 0.0
        self._initial_step: Optional[float] = None
        self._max_substeps = 5000
        self._rhs_error: Optional[RhsEvaluationError] = None
        self.n_jac_eval = 0

    # ------------------------------------------------------------------
    # PETSc callbacks
    # ------------------------------------------------------------------
    def _rhs_function(self, ts, t, X, F) -> None:
        try:
            ydot = self._fun(float(t), _read_vec(X).copy())
        except RhsEvaluationError as exc:
            self._rhs_error = exc
            raise
        F.getArray()[:] = ydot

    def _rhs_jacobian(self, ts, t, X, J, P) -> bool:
        PETSc = self._PETSc
        self.n_jac_eval += 1
        x0 = _read_vec(X).copy()
        n = x0.size
        try:
            f0 = np.asarray(self._fun(float(t), x0.copy()), dtype=np.float64)
            rows = np.arange(n, dtype=PETSc.IntType)
            x_work = x0.copy()
            P.zeroEntries()
            for j in range(n):
                dx = _FD_EPS * (1.0 + abs(x0[j]))
                x_work[j] = x0[j] + dx
                fj = np.asarray(self._fun(float(t), x_work.copy()), dtype=np.float64)
                col = np.asarray((fj - f0) / dx, dtype=PETSc.ScalarType)
                P.setValues(rows, np.array([j], dtype=PETSc.IntType), col.reshape(-1, 1), addv=False)
                x_work[j] = x0[j]
        except RhsEvaluationError as exc:
            self._rhs_error = exc
            raise
        P.assemblyBegin()
        P.assemblyEnd()
        if J is not P:
            J.assemblyBegin()
            J.assemblyEnd()
        return True

    # ------------------------------------------------------------------
    # Life cycle
    # ------------------------------------------------------------------
    def create(self, kind: IntegratorKind) -> None:
        if IntegratorKind(kind) is not IntegratorKind.BDF:
            raise SolverAllocationError("PETSc TS backend supports only the BDF integrator family")
        PETSc = _get_petsc()
        self._PETSc = PETSc
        try:
            ts = PETSc.TS().create(comm=PETSc.COMM_SELF)
            ts.setOptionsPrefix(self._prefix)
            ts.setProblemType(PETSc.TS.ProblemType.NONLINEAR)
            ts.setType(PETSc.TS.Type.BDF)
        except PETSc.Error as exc:
            raise SolverAllocationError(f"Failed to allocate PETSc TS: {exc}") from exc
        self._ts = ts

    def initialize(self, fun: RhsFunction, y0: np.ndarray, t0: float) -> None:
        PETSc = self._PETSc
        if self._ts is None:
            raise SolverAllocationError("initialize() called before create()")
        y0 = np.asarray(y0, dtype=np.float64)
        self._n = int(y0.size)
        self._fun = fun
        self._t = float(t0)

        self._x = PETSc.Vec().createSeq(self._n, comm=PETSc.COMM_SELF)
        self._x.getArray()[:] = y0
        self._f = PETSc.Vec().createSeq(self._n, comm=PETSc.COMM_SELF)
        self._ts.setRHSFunction(self._rhs_function, self._f)
        self._ts.setTime(self._t)
        self._ts.setSolution(self._x)

    def set_tolerances(self, rtol: float, atol: float) -> None:
        self._ts.setTolerances(rtol=float(rtol), atol=float(atol))

    def attach_linear_solver(self, n: int, *, max_substeps: int, initial_step: Optional[float] = None) -> None:
        PETSc = self._PETSc
        if self._ts is None:
            raise SolverAllocationError("attach_linear_solver() called before create()")
        n = int(n)
        try:
            J = PETSc.Mat().createDense([n, n], comm=PETSc.COMM_SELF)
            J.setUp()
        except PETSc.Error as exc:
            raise SolverAllocationError(f"Failed to allocate dense {n}x{n} Jacobian: {exc}") from exc
        self._J = J
        self._ts.setRHSJacobian(self._rhs_jacobian, J, J)

        snes = self._ts.getSNES()
        ksp = snes.getKSP()
        ksp.setType("preonly")
        ksp.getPC().setType("lu")
        self._ksp = ksp

        self._max_substeps = int(max_substeps)
        self._initial_step = initial_step
        self._ts.setExactFinalTime(PETSc.TS.ExactFinalTime.MATCHSTEP)
        self._ts.setMaxSNESFailures(-1)
        self._ts.setFromOptions()
        logger.debug("PETSc TS BDF attached with dense %dx%d Jacobian (ksp=preonly, pc=lu)", n, n)

    def step_to(self, t_out: float) -> StepOutcome:
        PETSc = self._PETSc
        if self._ts is None or self._ksp is None:
            raise RuntimeError("step_to() called on an unconfigured PETSc TS backend")
        t_out = float(t_out)
        ts = self._ts

        if ts.getStepNumber() == 0:
            dt0 = self._initial_step if self._initial_step is not None else 1.0e-3 * (t_out - self._t)
            ts.setTimeStep(float(dt0))
        ts.setMaxTime(t_out)
        ts.setMaxSteps(ts.getStepNumber() + self._max_substeps)
        steps_before = ts.getStepNumber()

        self._rhs_error = None
        try:
            ts.solve(self._x)
        except (PETSc.Error, RhsEvaluationError) as exc:
            rhs_error = self._rhs_error
            if rhs_error is not None:
                return StepOutcome(
                    status=STATUS_RHS_FAILURE,
                    t=float(rhs_error.t),
                    y=_read_vec(self._x).copy(),
                    message=str(rhs_error),
                )
            return StepOutcome(
                status=STATUS_FAILURE,
                t=float(ts.getTime()),
                y=_read_vec(self._x).copy(),
                message=f"TS solve raised: {exc}",
            )

        reason = int(ts.getConvergedReason())
        t_now = float(ts.getTime())
        n_sub = int(ts.getStepNumber() - steps_before)
        y = _read_vec(self._x).copy()
        if reason < 0:
            return StepOutcome(status=STATUS_FAILURE, t=t_now, y=y, n_substeps=n_sub,
                               message=f"TS diverged (reason={reason})")
        if t_now < t_out - 1.0e-12 * max(1.0, abs(t_out)):
            return StepOutcome(status=STATUS_TOO_MUCH_WORK, t=t_now, y=y, n_substeps=n_sub,
                               message=f"TS stopped at t={t_now:.6e} before t_out={t_out:.6e} (reason={reason})")
        self._t = t_out
        return StepOutcome(status=STATUS_SUCCESS, t=t_out, y=y, n_substeps=n_sub)

    def free_linear_solver(self) -> None:
        if self._ksp is not None:
            self._ksp.destroy()
            self._ksp = None

    def free_matrix(self) -> None:
        if self._J is not None:
            self._J.destroy()
            self._J = None

    def free_handle(self) -> None:
        if self._ts is not None:
            self._ts.destroy()
            self._ts = None
        for vec_name in ("_x", "_f"):
            vec = getattr(self, vec_name)
            if vec is not None:
                vec.destroy()
                setattr(self, vec_name, None)
        self._fun = None
