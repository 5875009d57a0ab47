from __future__ import annotations

import numpy as np
import pytest

from core.grid import build_grid
from core.types import CasePhysics, EvolveFlags, kinetic_state_shapes, allocate_kinetic_state
from parallel.looping import split_range
from physics.initial import build_initial_state
from physics.krook import KrookIonizationModel, build_model
from physics.moments import all_moments, maxwellian, temperature
from tests.utils_case import make_case_config


def _setup(tmp_path, **kwargs):
    cfg = make_case_config(tmp_path, nz=6, nvpa=33, nvz=33, **kwargs)
    grid = build_grid(cfg)
    shapes = kinetic_state_shapes(grid.nz, grid.nvpa, grid.nvz, 1, cfg.composition.n_neutral_species)
    state = build_initial_state(cfg, grid, allocate_kinetic_state(shapes))
    ddt = allocate_kinetic_state(shapes)
    return cfg, grid, state, ddt


def test_maxwellian_moments_recovered_on_grid(tmp_path):
    cfg = make_case_config(tmp_path, nz=3, nvpa=41)
    grid = build_grid(cfg)
    n = np.array([[1.0], [2.0], [0.5]])
    u = np.array([[0.0], [0.3], [-0.2]])
    T = np.array([[1.0], [0.5], [1.5]])
    f = maxwellian(grid.vpa, n, u, T)
    n_f, u_f, p_f = all_moments(f, grid.vpa, grid.vpa_wgts)
    np.testing.assert_allclose(n_f, n, rtol=1.0e-4)
    np.testing.assert_allclose(u_f, u, atol=1.0e-4)
    np.testing.assert_allclose(temperature(n_f, p_f, 1.0), T, rtol=1.0e-3)


def test_temperature_falls_back_where_density_vanishes():
    T = temperature(np.array([[0.0, 2.0]]), np.array([[0.0, 1.0]]), 3.0)
    np.testing.assert_allclose(T, [[3.0, 0.5]])


def test_initial_state_has_consistent_moments(tmp_path):
    cfg, grid, state, _ = _setup(tmp_path)
    n_f, _, _ = all_moments(state.pdf, grid.vpa, grid.vpa_wgts)
    np.testing.assert_allclose(state.density, n_f)
    assert state.density[:, 0].max() > state.density[:, 0].min()
    np.testing.assert_allclose(np.mean(state.density), cfg.initial.density, rtol=1.0e-6)
    np.testing.assert_allclose(np.mean(state.density_neutral), cfg.initial.neutral_density, rtol=1.0e-6)


def test_no_collisions_no_ionization_gives_zero_derivative(tmp_path):
    phys = CasePhysics(krook_frequency=0.0, ionization_frequency=0.0, moment_relaxation_frequency=0.0)
    cfg, grid, state, ddt = _setup(tmp_path, physics=phys)
    model = build_model(cfg, grid, slice(0, grid.nz))
    model.compute_ddt(ddt, state, 0.0)
    np.testing.assert_array_equal(ddt.pdf, 0.0)
    np.testing.assert_array_equal(ddt.pdf_neutral, 0.0)
    np.testing.assert_array_equal(ddt.density, 0.0)


def test_ionization_moves_density_from_neutrals_to_ions(tmp_path):
    phys = CasePhysics(krook_frequency=0.0, ionization_frequency=0.7, moment_relaxation_frequency=0.0)
    cfg, grid, state, ddt = _setup(tmp_path, physics=phys)
    model = build_model(cfg, grid, slice(0, grid.nz))
    model.compute_ddt(ddt, state, 0.0)

    np.testing.assert_allclose(ddt.pdf_neutral, -0.7 * state.pdf_neutral)
    dn_ion = np.einsum("v,vzs->zs", grid.vpa_wgts, ddt.pdf)
    dn_neut = np.einsum("v,vzs->zs", grid.vz_wgts, ddt.pdf_neutral)
    np.testing.assert_allclose(dn_ion.sum(axis=1) + dn_neut.sum(axis=1), 0.0, atol=1.0e-6)
    # evolved ion density carries the same source
    np.testing.assert_allclose(ddt.density, dn_ion, rtol=1.0e-6)


def test_split_ranges_reproduce_full_domain_derivative(tmp_path):
    evolve = EvolveFlags(evolve_density=True, evolve_upar=True, evolve_ppar=True)
    cfg, grid, state, ddt_full = _setup(tmp_path, evolve=evolve)
    state.density *= 1.05
    state.ppar *= 0.9
    build_model(cfg, grid, slice(0, grid.nz)).compute_ddt(ddt_full, state, 0.0)

    _, _, _, ddt_split = _setup(tmp_path, evolve=evolve)
    for rank in range(4):
        model = build_model(cfg, grid, split_range(grid.nz, rank, 4))
        model.compute_ddt(ddt_split, state, 0.0)
    for name in ("pdf", "density", "upar", "ppar", "pdf_neutral", "density_neutral", "uz_neutral", "pz_neutral"):
        np.testing.assert_allclose(getattr(ddt_split, name), getattr(ddt_full, name), atol=1.0e-14, err_msg=name)


def test_non_evolved_moments_refreshed_from_pdf(tmp_path):
    cfg, grid, state, ddt = _setup(tmp_path, evolve=EvolveFlags())
    state.pdf *= 2.0
    model = KrookIonizationModel(grid, cfg.physics, cfg.evolve, 1, 1, slice(0, 3))
    before = state.density.copy()
    model.compute_ddt(ddt, state, 0.0)
    np.testing.assert_allclose(state.density[:3], 2.0 * before[:3])
    np.testing.assert_array_equal(state.density[3:], before[3:])


def test_empty_range_is_a_no_op(tmp_path):
    cfg, grid, state, ddt = _setup(tmp_path)
    ddt.pdf[...] = 5.0
    build_model(cfg, grid, slice(2, 2)).compute_ddt(ddt, state, 0.0)
    assert np.all(ddt.pdf == 5.0)


def test_unknown_model_rejected(tmp_path):
    cfg = make_case_config(tmp_path)
    with pytest.raises(ValueError):
        CasePhysics(model="fokker_planck")
    cfg.physics.model = "fokker_planck"
    with pytest.raises(ValueError):
        build_model(cfg, build_grid(cfg), slice(0, 1))
