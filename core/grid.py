"""
Grid construction from CaseConfig grid settings.

Builds a uniform periodic z grid on [-L/2, L/2) and symmetric uniform velocity grids
(vpa for ions, vz for neutrals) with trapezoidal quadrature weights.
"""

from __future__ import annotations

import numpy as np

from .types import CaseConfig, FloatArray, Grid


def _build_velocity_grid(n: int, vmax: float) -> tuple[FloatArray, FloatArray]:
    """
    Uniform nodes on [-vmax, vmax] and trapezoid weights.

    A single node sits at v=0 with unit weight, so moments of a one-point grid reduce to
    the stored value.
    """
    n = int(n)
    vmax = float(vmax)
    if n <= 0:
        raise ValueError(f"Velocity grid needs at least one point, got n={n}")
    if n == 1:
        return np.zeros(1, dtype=np.float64), np.ones(1, dtype=np.float64)

    v = np.linspace(-vmax, vmax, n, dtype=np.float64)
    dv = float(v[1] - v[0])
    wgts = np.full(n, dv, dtype=np.float64)
    wgts[0] *= 0.5
    wgts[-1] *= 0.5
    return v, wgts


def _build_z_grid(nz: int, L: float) -> FloatArray:
    """Cell-centred periodic grid on [-L/2, L/2)."""
    nz = int(nz)
    L = float(L)
    if not (L > 0.0):
        raise ValueError(f"z_length must be positive, got {L}")
    dz = L / nz
    return -0.5 * L + dz * (np.arange(nz, dtype=np.float64) + 0.5)


def build_grid(cfg: CaseConfig) -> Grid:
    """Build the z/vpa/vz grids from ``cfg.grid``."""
    gcfg = cfg.grid
    z = _build_z_grid(gcfg.nz, gcfg.z_length)
    vpa, vpa_wgts = _build_velocity_grid(gcfg.nvpa, gcfg.vpa_max)
    vz, vz_wgts = _build_velocity_grid(gcfg.nvz, gcfg.vz_max)

    if np.any(vpa_wgts <= 0.0) or np.any(vz_wgts <= 0.0):
        raise ValueError("velocity quadrature produced non-positive weights.")

    return Grid(z=z, vpa=vpa, vpa_wgts=vpa_wgts, vz=vz, vz_wgts=vz_wgts)
