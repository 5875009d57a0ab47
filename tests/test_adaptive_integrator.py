from __future__ import annotations

from typing import List, Optional

import numpy as np
import pytest

from core.errors import SizeMismatch, SolverAllocationError, SolverStepError
from core.layout import build_layout
from core.types import EvolveFlags, IntegratorKind, IntegratorSettings, kinetic_state_shapes
from solvers.backends import STATUS_FAILURE, STATUS_SUCCESS, SolverBackend, StepOutcome
from solvers.integrator import AdaptiveIntegrator, IntegratorStatus, integrate


class FakeBackend(SolverBackend):
    """Records life-cycle calls; step_to evaluates the RHS once and takes an Euler step."""

    name = "fake"

    def __init__(self, *, fail_step_at: Optional[int] = None, fail_on: Optional[str] = None,
                 fail_with: type = SolverAllocationError) -> None:
        self.calls: List[str] = []
        self.fail_step_at = fail_step_at
        self.fail_on = fail_on
        self.fail_with = fail_with
        self.n_steps = 0
        self._fun = None
        self._y = None
        self._t = 0.0

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_on == op:
            raise self.fail_with(f"{op} failed")

    def create(self, kind):
        self._maybe_fail("create")

    def initialize(self, fun, y0, t0):
        self._maybe_fail("initialize")
        self._fun = fun
        self._y = np.array(y0, dtype=np.float64)
        self._t = t0

    def set_tolerances(self, rtol, atol):
        self._maybe_fail("set_tolerances")

    def attach_linear_solver(self, n, *, max_substeps, initial_step=None):
        self._maybe_fail("attach_linear_solver")

    def step_to(self, t_out):
        self.calls.append("step_to")
        self.n_steps += 1
        if self.fail_step_at is not None and self.n_steps == self.fail_step_at:
            return StepOutcome(status=STATUS_FAILURE, t=self._t, y=self._y.copy(), message="convergence failure")
        ydot = self._fun(self._t, self._y.copy())
        self._y = self._y + (t_out - self._t) * ydot
        self._t = t_out
        return StepOutcome(status=STATUS_SUCCESS, t=t_out, y=self._y.copy())

    def free_linear_solver(self):
        self.calls.append("free_linear_solver")

    def free_matrix(self):
        self.calls.append("free_matrix")

    def free_handle(self):
        self.calls.append("free_handle")

    def frees(self) -> List[str]:
        return [c for c in self.calls if c.startswith("free_")]


class ZeroRhs:
    def __init__(self, status: int = 0) -> None:
        self.status = status
        self.n_calls = 0

    def evaluate(self, t, y, ydot):
        self.n_calls += 1
        ydot[:] = 0.0
        return self.status


class CountingSink:
    def __init__(self, stop_on_call: Optional[int] = None) -> None:
        self.stop_on_call = stop_on_call
        self.times: List[float] = []

    def __call__(self, t, y):
        self.times.append(t)
        return not (self.stop_on_call is not None and len(self.times) == self.stop_on_call)


FREE_ORDER = ["free_linear_solver", "free_matrix", "free_handle"]
TIMES = np.linspace(0.0, 1.0, 6)


def test_full_run_counts_initial_state_plus_every_output():
    backend = FakeBackend()
    sink = CountingSink()
    n = integrate(ZeroRhs(), np.ones(3), TIMES, sink, backend=backend)
    assert n == len(TIMES)
    np.testing.assert_allclose(sink.times, TIMES[1:])
    assert backend.calls[:4] == ["create", "initialize", "set_tolerances", "attach_linear_solver"]
    assert backend.frees() == FREE_ORDER


def test_sink_stop_on_third_call_returns_three_and_stops_stepping():
    backend = FakeBackend()
    sink = CountingSink(stop_on_call=3)
    with AdaptiveIntegrator(ZeroRhs(), backend=backend) as integ:
        integ.configure(np.ones(2), 0.0)
        n = integ.run(TIMES, sink)
        assert integ.status is IntegratorStatus.COMPLETED
    assert n == 3
    assert backend.n_steps == 3
    assert len(sink.times) == 3
    assert backend.frees() == FREE_ORDER


def test_step_failure_raises_and_releases_exactly_once():
    backend = FakeBackend(fail_step_at=2)
    integ = AdaptiveIntegrator(ZeroRhs(), backend=backend)
    with pytest.raises(SolverStepError) as excinfo:
        with integ:
            integ.configure(np.ones(2), 0.0)
            integ.run(TIMES, CountingSink())
    assert excinfo.value.status == STATUS_FAILURE
    assert excinfo.value.t_target == pytest.approx(TIMES[2])
    assert "convergence failure" in str(excinfo.value)
    assert integ.status is IntegratorStatus.FAILED

    integ.close()
    integ.close()
    assert backend.frees() == FREE_ORDER


def test_sink_exception_propagates_after_teardown():
    backend = FakeBackend()

    def sink(t, y):
        raise OSError("disk full")

    with pytest.raises(OSError, match="disk full"):
        integrate(ZeroRhs(), np.ones(2), TIMES, sink, backend=backend)
    assert backend.frees() == FREE_ORDER


@pytest.mark.parametrize("op", ["create", "initialize", "set_tolerances", "attach_linear_solver"])
def test_allocation_failure_releases_acquired_resources(op):
    backend = FakeBackend(fail_on=op)
    integ = AdaptiveIntegrator(ZeroRhs(), backend=backend)
    with pytest.raises(SolverAllocationError):
        integ.configure(np.ones(2), 0.0)
    assert integ.status is IntegratorStatus.FAILED
    integ.close()
    assert backend.frees() == FREE_ORDER


def test_non_allocation_error_during_configure_is_wrapped():
    backend = FakeBackend(fail_on="attach_linear_solver", fail_with=MemoryError)
    with pytest.raises(SolverAllocationError) as excinfo:
        AdaptiveIntegrator(ZeroRhs(), backend=backend).configure(np.ones(2), 0.0)
    assert isinstance(excinfo.value.__cause__, MemoryError)


def test_rhs_failure_surfaces_as_step_error_with_fake_backend():
    from core.errors import RhsEvaluationError

    backend = FakeBackend()
    integ = AdaptiveIntegrator(ZeroRhs(status=4), backend=backend)
    integ.configure(np.ones(2), 0.0)
    # the fake backend does not trap RHS errors, the real ones map them to a status code
    with pytest.raises(RhsEvaluationError) as excinfo:
        integ.advance_to(0.5)
    assert excinfo.value.status == 4
    integ.close()


def test_run_rejects_non_increasing_times_and_wrong_start():
    integ = AdaptiveIntegrator(ZeroRhs(), backend=FakeBackend())
    integ.configure(np.ones(2), 0.0)
    with pytest.raises(ValueError):
        integ.run([0.0, 0.5, 0.5], CountingSink())
    with pytest.raises(ValueError):
        integ.run([0.1, 0.5], CountingSink())
    integ.close()


def test_configure_twice_is_an_error():
    integ = AdaptiveIntegrator(ZeroRhs(), backend=FakeBackend())
    integ.configure(np.ones(2), 0.0)
    with pytest.raises(RuntimeError):
        integ.configure(np.ones(2), 0.0)
    integ.close()


def test_initial_state_must_match_layout():
    layout = build_layout(kinetic_state_shapes(2, 3, 3, 1, 0), EvolveFlags(), 0)
    integ = AdaptiveIntegrator(ZeroRhs(), backend=FakeBackend(), layout=layout)
    with pytest.raises(SizeMismatch):
        integ.configure(np.ones(layout.size + 1), 0.0)


def test_session_tracks_time_and_rhs_count():
    backend = FakeBackend()
    rhs = ZeroRhs()
    settings = IntegratorSettings(kind=IntegratorKind.ADAMS, rtol=1e-5, atol=1e-8)
    with AdaptiveIntegrator(rhs, settings, backend=backend) as integ:
        session = integ.configure(np.ones(2), 0.0)
        integ.run(TIMES, CountingSink())
        assert session.t == pytest.approx(TIMES[-1])
        assert session.n_rhs_evals == rhs.n_calls == len(TIMES) - 1
        assert session.n_output_steps == len(TIMES)
