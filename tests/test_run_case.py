from __future__ import annotations

import csv
from pathlib import Path

import numpy as np
import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
EXAMPLE_CASE = ROOT / "cases" / "krook_ionization.yaml"


def _import_mpi4py_or_skip():
    pytest.importorskip("mpi4py")
    from mpi4py import MPI

    return MPI


def _write_case(tmp_path: Path, **time_overrides) -> Path:
    raw = yaml.safe_load(EXAMPLE_CASE.read_text())
    raw["paths"]["output_root"] = str(tmp_path / "runs")
    raw["grid"].update(nz=4, nvpa=9, nvz=9)
    raw["time"].update(nstep=4, nwrite_moments=1, nwrite_dfns=2, **time_overrides)
    path = tmp_path / "case.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


def _single_run_dir(tmp_path: Path) -> Path:
    dirs = [p for p in (tmp_path / "runs" / "krook_ionization").iterdir() if p.is_dir()]
    assert len(dirs) == 1
    return dirs[0]


def test_run_case_serial_end_to_end(tmp_path):
    MPI = _import_mpi4py_or_skip()
    if MPI.COMM_WORLD.Get_size() != 1:
        pytest.skip("serial driver test")
    from driver.run_case import run_case

    assert run_case(_write_case(tmp_path), log_level="WARNING") == 0

    run_dir = _single_run_dir(tmp_path)
    assert (run_dir / "config.yaml").is_file()
    assert (run_dir / "run.log").is_file()
    assert (run_dir / "grid.npz").is_file()
    assert len(list((run_dir / "moments").glob("moments_*.npz"))) == 5
    assert len(list((run_dir / "dfns").glob("dfns_*.npz"))) == 3

    with (run_dir / "moments" / "moments.csv").open() as f:
        rows = list(csv.DictReader(f))
    dens = np.array([float(r["density_mean"]) for r in rows])
    neut = np.array([float(r["density_neutral_mean"]) for r in rows])
    assert np.all(np.isfinite(dens))
    # ionization moves particles from neutrals to ions
    assert dens[-1] > dens[0]
    assert neut[-1] < neut[0]


def test_run_case_stop_file(tmp_path):
    MPI = _import_mpi4py_or_skip()
    if MPI.COMM_WORLD.Get_size() != 1:
        pytest.skip("serial driver test")
    from driver.run_case import run_case

    stop = tmp_path / "stop_now"
    stop.write_text("")
    assert run_case(_write_case(tmp_path, stopfile=str(stop))) == 0
    run_dir = _single_run_dir(tmp_path)
    assert len(list((run_dir / "moments").glob("moments_*.npz"))) == 2


def test_run_case_invalid_config_returns_2(tmp_path):
    _import_mpi4py_or_skip()
    from driver.run_case import run_case

    raw = yaml.safe_load(EXAMPLE_CASE.read_text())
    raw["integrator"]["kind"] = "euler"
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump(raw))
    assert run_case(path) == 2


def test_run_case_unavailable_backend_returns_2(tmp_path, monkeypatch):
    _import_mpi4py_or_skip()
    from driver.run_case import run_case
    from core.errors import SolverAllocationError
    import solvers.backend_scipy as backend_scipy

    def _boom(self, kind):
        raise SolverAllocationError("no solver")

    monkeypatch.setattr(backend_scipy.ScipyVodeBackend, "create", _boom)
    assert run_case(_write_case(tmp_path)) == 2


def test_main_parses_arguments(tmp_path, monkeypatch):
    import driver.run_case as rc

    seen = {}

    def fake_run_case(cfg_path, *, log_level, backend):
        seen.update(cfg_path=cfg_path, log_level=log_level, backend=backend)
        return 0

    monkeypatch.setattr(rc, "run_case", fake_run_case)
    assert rc.main(["case.yaml", "--log-level", "DEBUG", "--backend", "petsc"]) == 0
    assert seen == {"cfg_path": "case.yaml", "log_level": "DEBUG", "backend": "petsc"}


def test_run_case_physics_failure_during_stepping_returns_2(tmp_path, monkeypatch):
    MPI = _import_mpi4py_or_skip()
    if MPI.COMM_WORLD.Get_size() != 1:
        pytest.skip("serial driver test")
    import physics.krook as krook
    from driver.run_case import run_case

    original = krook.KrookIonizationModel.compute_ddt

    def flaky(self, ddt, state, t):
        if self.n_calls >= 3:
            raise FloatingPointError("collision operator blew up")
        original(self, ddt, state, t)

    monkeypatch.setattr(krook.KrookIonizationModel, "compute_ddt", flaky)
    assert run_case(_write_case(tmp_path)) == 2
