from __future__ import annotations

import csv

import numpy as np

from core.grid import build_grid
from core.schedule import build_output_schedule
from core.types import allocate_kinetic_state, kinetic_state_shapes
from driver.output_sink import SnapshotOutputSink
from output.writers import DfnsWriter, MomentsWriter, write_grid
from tests.utils_case import make_case_config, make_random_state


def _sink(tmp_path, *, stopfile=None, nstep=6, k_mom=2, k_dfn=3, refresh=None):
    state = make_random_state(3, 4, 4, 1, 1)
    schedule = build_output_schedule(0.1, 0.0, nstep, k_mom, k_dfn)
    refreshed = []

    def _refresh(t, y):
        refreshed.append(t)
        return 0

    sink = SnapshotOutputSink(
        refresh or _refresh,
        state,
        schedule,
        moments_writer=MomentsWriter(tmp_path, 1),
        dfns_writer=DfnsWriter(tmp_path, 1),
        stopfile=stopfile,
    )
    return sink, state, schedule, refreshed


def test_writers_follow_schedule(tmp_path):
    sink, _state, schedule, refreshed = _sink(tmp_path)
    sink.write_initial(0.0, np.zeros(1))
    for t in schedule.all_times[1:]:
        assert sink(float(t), np.zeros(1))

    assert refreshed == [0.0] + [float(t) for t in schedule.all_times[1:]]
    # moments at 0, 2, 4, 6; dfns at 0, 3, 6
    assert sink.moments_writer.n_written == 4
    assert sink.dfns_writer.n_written == 3
    assert sorted(p.name for p in (tmp_path / "dfns").glob("*.npz")) == [
        "dfns_000000.npz",
        "dfns_000001.npz",
        "dfns_000002.npz",
    ]
    with (tmp_path / "moments" / "moments.csv").open() as f:
        rows = list(csv.DictReader(f))
    assert [int(r["index"]) for r in rows] == [0, 1, 2, 3]
    np.testing.assert_allclose([float(r["t"]) for r in rows], [0.0, 0.2, 0.4, 0.6])
    assert "density_neutral_mean" in rows[0]


def test_stop_file_forces_both_writers_and_stops(tmp_path):
    stop = tmp_path / "stop"
    sink, _state, _schedule, _ = _sink(tmp_path, stopfile=stop)
    assert sink(0.1, np.zeros(1))
    assert sink.moments_writer.n_written == 0

    stop.write_text("")
    assert sink(0.25, np.zeros(1)) is False
    assert sink.stop_requested
    assert sink.moments_writer.n_written == 1
    assert sink.dfns_writer.n_written == 1


def test_non_finite_data_requests_stop(tmp_path):
    sink, state, _schedule, _ = _sink(tmp_path)
    state.pdf[0, 0, 0] = np.nan
    assert sink(0.3, np.zeros(1)) is False
    assert sink.dfns_writer.n_written == 1


def test_moments_snapshot_contents(tmp_path):
    state = make_random_state(2, 3, 3, 1, 0)
    writer = MomentsWriter(tmp_path, 0)
    assert writer.write(5, 1.5, state)
    data = np.load(tmp_path / "moments" / "moments_000005.npz")
    np.testing.assert_array_equal(data["density"], state.density)
    assert float(data["t"]) == 1.5
    assert "density_neutral" not in data.files


def test_write_grid(tmp_path):
    cfg = make_case_config(tmp_path)
    grid = build_grid(cfg)
    path = write_grid(tmp_path, grid)
    data = np.load(path)
    np.testing.assert_array_equal(data["vpa_wgts"], grid.vpa_wgts)
    assert data["z"].shape == (cfg.grid.nz,)


def test_zero_shaped_state_fields_are_written(tmp_path):
    state = allocate_kinetic_state(kinetic_state_shapes(2, 3, 3, 1, 0))
    assert DfnsWriter(tmp_path, 0).write(0, 0.0, state)
