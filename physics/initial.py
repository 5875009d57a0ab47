from __future__ import annotations

import numpy as np

from core.types import CaseConfig, Grid, KineticState
from physics.moments import all_moments, maxwellian


def _density_profile(z: np.ndarray, n0: float, amplitude: float, L: float) -> np.ndarray:
    return n0 * (1.0 + amplitude * np.cos(2.0 * np.pi * z / L))


def build_initial_state(cfg: CaseConfig, grid: Grid, state: KineticState) -> KineticState:
    """
    Fill ``state`` (in place) with Maxwellians carrying a cosine density perturbation.

    Ions: n(z) = n0 (1 + A cos(2 pi z / L)), flow ``upar``, temperature ``temperature``.
    Neutrals: the mirrored perturbation n_n0 (1 - A cos(...)), zero flow.
    Stored moments are the discrete moments of the resulting pdfs, so evolved moments start
    consistent with the distribution functions.
    """
    ini = cfg.initial
    n_ion = cfg.composition.n_ion_species
    n_neut = cfg.composition.n_neutral_species
    nz = grid.nz
    L = float(cfg.grid.z_length)

    n_i = np.repeat(_density_profile(grid.z, ini.density, ini.density_amplitude, L)[:, None], n_ion, axis=1)
    state.pdf[...] = maxwellian(
        grid.vpa,
        n_i,
        np.full((nz, n_ion), ini.upar, dtype=np.float64),
        np.full((nz, n_ion), ini.temperature, dtype=np.float64),
    )
    state.density[...], state.upar[...], state.ppar[...] = all_moments(state.pdf, grid.vpa, grid.vpa_wgts)

    if n_neut > 0:
        n_n = np.repeat(
            _density_profile(grid.z, ini.neutral_density, -ini.density_amplitude, L)[:, None], n_neut, axis=1
        )
        state.pdf_neutral[...] = maxwellian(
            grid.vz,
            n_n,
            np.zeros((nz, n_neut), dtype=np.float64),
            np.full((nz, n_neut), ini.neutral_temperature, dtype=np.float64),
        )
        moments = all_moments(state.pdf_neutral, grid.vz, grid.vz_wgts)
        state.density_neutral[...], state.uz_neutral[...], state.pz_neutral[...] = moments
    return state
