"""
Krook relaxation + ionization derivative model.

Ions (pdf f) and neutrals (pdf g) relax towards the Maxwellian carrying their own
moments at rate ``krook_frequency``. Neutrals ionize at rate ``ionization_frequency``;
the lost neutral density appears as ion density with a Maxwellian at ``T_ion``, split
evenly across ion species. Separately evolved moments relax towards the moments of the
pdf at ``moment_relaxation_frequency`` (density also carries the ionization source).

Each block rank handles its own z range; moments that are not evolved are refreshed from
the pdf on that range as a side effect.
"""

from __future__ import annotations

import logging

import numpy as np

from core.types import CasePhysics, EvolveFlags, Grid, KineticState
from physics.moments import all_moments, maxwellian, temperature

logger = logging.getLogger(__name__)


class KrookIonizationModel:
    def __init__(
        self,
        grid: Grid,
        physics: CasePhysics,
        flags: EvolveFlags,
        n_ion_species: int,
        n_neutral_species: int,
        zrange: slice,
    ) -> None:
        self.grid = grid
        self.physics = physics
        self.flags = flags
        self.n_ion_species = int(n_ion_species)
        self.n_neutral_species = int(n_neutral_species)
        self.zrange = zrange
        self.n_calls = 0

    def compute_ddt(self, ddt: KineticState, state: KineticState, t: float) -> None:
        self.n_calls += 1
        zs = self.zrange
        if zs.stop <= zs.start:
            return
        grid = self.grid
        phys = self.physics
        flags = self.flags
        nu_k = float(phys.krook_frequency)
        nu_iz = float(phys.ionization_frequency)
        nu_m = float(phys.moment_relaxation_frequency)

        f = state.pdf[:, zs, :]
        n_f, u_f, p_f = all_moments(f, grid.vpa, grid.vpa_wgts)
        self._refresh_ion_moments(state, zs, n_f, u_f, p_f)

        T_f = temperature(n_f, p_f, phys.T_ion)
        dfdt = -nu_k * (f - maxwellian(grid.vpa, n_f, u_f, T_f))

        source = np.zeros_like(n_f)
        if self.n_neutral_species > 0:
            g = state.pdf_neutral[:, zs, :]
            n_g, u_g, p_g = all_moments(g, grid.vz, grid.vz_wgts)
            self._refresh_neutral_moments(state, zs, n_g, u_g, p_g)

            T_g = temperature(n_g, p_g, phys.T_neutral)
            ddt.pdf_neutral[:, zs, :] = -nu_k * (g - maxwellian(grid.vz, n_g, u_g, T_g)) - nu_iz * g

            source[:, :] = (nu_iz * np.sum(n_g, axis=1) / self.n_ion_species)[:, None]
            zeros = np.zeros_like(source)
            dfdt += maxwellian(grid.vpa, source, zeros, np.full_like(source, phys.T_ion))

            if flags.evolve_density:
                n_state = state.density_neutral[zs]
                ddt.density_neutral[zs] = -nu_m * (n_state - n_g) - nu_iz * n_state
            if flags.evolve_upar:
                ddt.uz_neutral[zs] = -nu_m * (state.uz_neutral[zs] - u_g)
            if flags.evolve_ppar:
                ddt.pz_neutral[zs] = -nu_m * (state.pz_neutral[zs] - p_g)

        ddt.pdf[:, zs, :] = dfdt
        if flags.evolve_density:
            ddt.density[zs] = -nu_m * (state.density[zs] - n_f) + source
        if flags.evolve_upar:
            ddt.upar[zs] = -nu_m * (state.upar[zs] - u_f)
        if flags.evolve_ppar:
            ddt.ppar[zs] = -nu_m * (state.ppar[zs] - p_f)

    def _refresh_ion_moments(self, state: KineticState, zs: slice, n, u, p) -> None:
        if not self.flags.evolve_density:
            state.density[zs] = n
        if not self.flags.evolve_upar:
            state.upar[zs] = u
        if not self.flags.evolve_ppar:
            state.ppar[zs] = p

    def _refresh_neutral_moments(self, state: KineticState, zs: slice, n, u, p) -> None:
        if not self.flags.evolve_density:
            state.density_neutral[zs] = n
        if not self.flags.evolve_upar:
            state.uz_neutral[zs] = u
        if not self.flags.evolve_ppar:
            state.pz_neutral[zs] = p


def build_model(cfg, grid: Grid, zrange: slice) -> KrookIonizationModel:
    """Derivative model for ``cfg.physics.model`` on the given z range."""
    if cfg.physics.model != "krook":
        raise ValueError(f"Unknown physics model: {cfg.physics.model!r}")
    return KrookIonizationModel(
        grid=grid,
        physics=cfg.physics,
        flags=cfg.evolve,
        n_ion_species=cfg.composition.n_ion_species,
        n_neutral_species=cfg.composition.n_neutral_species,
        zrange=zrange,
    )
