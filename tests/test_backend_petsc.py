from __future__ import annotations

import numpy as np
import pytest

from core.errors import SolverAllocationError
from core.types import IntegratorKind, IntegratorSettings
from solvers.integrator import AdaptiveIntegrator, integrate


def _import_petsc_or_skip():
    pytest.importorskip("petsc4py")
    from petsc4py import PETSc

    return PETSc


class LinearDecay:
    def __init__(self, rates):
        self.rates = np.asarray(rates, dtype=np.float64)

    def evaluate(self, t, y, ydot):
        ydot[:] = -self.rates * y
        return 0


def test_petsc_ts_bdf_matches_exponential_decay():
    _import_petsc_or_skip()
    from solvers.backend_petsc import PetscTSBackend

    rates = np.array([0.5, 2.0])
    y0 = np.array([1.0, 3.0])
    times = np.linspace(0.0, 1.0, 5)
    out = []

    def sink(t, y):
        out.append((t, np.array(y, copy=True)))
        return True

    backend = PetscTSBackend()
    settings = IntegratorSettings(kind=IntegratorKind.BDF, rtol=1.0e-7, atol=1.0e-10, backend="petsc")
    n = integrate(LinearDecay(rates), y0, times, sink, settings, backend=backend)

    assert n == len(times)
    for t, y in out:
        np.testing.assert_allclose(y, y0 * np.exp(-rates * t), rtol=1.0e-3)
    assert backend.n_jac_eval >= 1


def test_petsc_ts_rejects_adams():
    _import_petsc_or_skip()
    from solvers.backend_petsc import PetscTSBackend

    integ = AdaptiveIntegrator(
        LinearDecay([1.0]),
        IntegratorSettings(kind=IntegratorKind.ADAMS, backend="petsc"),
        backend=PetscTSBackend(),
    )
    with pytest.raises(SolverAllocationError):
        integ.configure(np.ones(1), 0.0)
    integ.close()
