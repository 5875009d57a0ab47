"""
Velocity moments of the distribution functions.

Distribution arrays have velocity on axis 0: f.shape == (nv, nz, n_species); moments come
back with shape (nz, n_species).
- density  n = sum_v w f
- flow     u = sum_v w v f / n
- pressure p = sum_v w (v - u)^2 f          (parallel pressure, T = p / n)
"""

from __future__ import annotations

import numpy as np

FloatArray = np.ndarray

_TINY = 1.0e-300


def density_moment(f: FloatArray, wgts: FloatArray) -> FloatArray:
    return np.einsum("v,vzs->zs", wgts, f)


def flow_moment(f: FloatArray, v: FloatArray, wgts: FloatArray, density: FloatArray) -> FloatArray:
    flux = np.einsum("v,vzs->zs", wgts * v, f)
    out = np.zeros_like(flux)
    np.divide(flux, density, out=out, where=np.abs(density) > _TINY)
    return out


def pressure_moment(f: FloatArray, v: FloatArray, wgts: FloatArray, flow: FloatArray) -> FloatArray:
    dv = v[:, None, None] - flow[None, :, :]
    return np.einsum("v,vzs->zs", wgts, f * dv * dv)


def temperature(density: FloatArray, pressure: FloatArray, T_ref: float) -> FloatArray:
    """p / n where both are positive, ``T_ref`` elsewhere."""
    out = np.full_like(density, float(T_ref))
    ok = (density > _TINY) & (pressure > 0.0)
    np.divide(pressure, density, out=out, where=ok)
    return out


def all_moments(f: FloatArray, v: FloatArray, wgts: FloatArray) -> tuple[FloatArray, FloatArray, FloatArray]:
    """(density, flow, pressure) of ``f``."""
    n = density_moment(f, wgts)
    u = flow_moment(f, v, wgts, n)
    p = pressure_moment(f, v, wgts, u)
    return n, u, p


def maxwellian(v: FloatArray, density: FloatArray, flow: FloatArray, T: FloatArray) -> FloatArray:
    """1D Maxwellian n / sqrt(2 pi T) exp(-(v-u)^2 / 2T) on the velocity grid, shape (nv, nz, ns)."""
    n = np.asarray(density, dtype=np.float64)[None, :, :]
    u = np.asarray(flow, dtype=np.float64)[None, :, :]
    T = np.asarray(T, dtype=np.float64)[None, :, :]
    dv = v[:, None, None] - u
    return n / np.sqrt(2.0 * np.pi * T) * np.exp(-dv * dv / (2.0 * T))
