"""
Snapshot writers for moments and distribution functions.

Layout under the run directory:
- grid.npz                                    z / velocity grids and weights
- moments/moments_XXXXXX.npz, moments.csv     moment snapshots + one summary row per write
- dfns/dfns_XXXXXX.npz                        distribution-function snapshots

Writers return False when the data they were given is not finite, which the caller
treats as a request to stop the run after this output step.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

import numpy as np

from core.types import Grid, KineticState

logger = logging.getLogger(__name__)

_ION_MOMENTS = ("density", "upar", "ppar")
_NEUTRAL_MOMENTS = ("density_neutral", "uz_neutral", "pz_neutral")


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _all_finite(arrays: dict) -> bool:
    return all(bool(np.all(np.isfinite(a))) for a in arrays.values())


def write_grid(run_dir: Path, grid: Grid) -> Path:
    out_path = _ensure_dir(Path(run_dir)) / "grid.npz"
    np.savez(
        out_path,
        z=grid.z,
        vpa=grid.vpa,
        vpa_wgts=grid.vpa_wgts,
        vz=grid.vz,
        vz_wgts=grid.vz_wgts,
    )
    return out_path


class MomentsWriter:
    def __init__(self, run_dir: Path, n_neutral_species: int) -> None:
        self.out_dir = _ensure_dir(Path(run_dir) / "moments")
        self.csv_path = self.out_dir / "moments.csv"
        self.n_neutral_species = int(n_neutral_species)
        self.n_written = 0

    def _names(self) -> tuple[str, ...]:
        if self.n_neutral_species > 0:
            return _ION_MOMENTS + _NEUTRAL_MOMENTS
        return _ION_MOMENTS

    def write(self, index: int, t: float, state: KineticState) -> bool:
        """Write moments snapshot ``index`` at time ``t``; False if any moment is not finite."""
        data = {name: np.array(getattr(state, name), copy=True) for name in self._names()}
        np.savez(self.out_dir / f"moments_{int(index):06d}.npz", t=np.asarray(t), index=np.asarray(index), **data)

        row = {"index": int(index), "t": float(t)}
        for name, arr in data.items():
            row[f"{name}_mean"] = float(np.mean(arr)) if arr.size else np.nan
        write_header = not self.csv_path.exists()
        with self.csv_path.open("a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=list(row.keys()))
            if write_header:
                writer.writeheader()
            writer.writerow(row)

        self.n_written += 1
        if not _all_finite(data):
            logger.error("Non-finite moments at t=%.6e (snapshot %d)", t, index)
            return False
        return True


class DfnsWriter:
    def __init__(self, run_dir: Path, n_neutral_species: int) -> None:
        self.out_dir = _ensure_dir(Path(run_dir) / "dfns")
        self.n_neutral_species = int(n_neutral_species)
        self.n_written = 0

    def write(self, index: int, t: float, state: KineticState) -> bool:
        """Write distribution-function snapshot ``index``; False if any value is not finite."""
        data = {"pdf": np.array(state.pdf, copy=True)}
        if self.n_neutral_species > 0:
            data["pdf_neutral"] = np.array(state.pdf_neutral, copy=True)
        np.savez(self.out_dir / f"dfns_{int(index):06d}.npz", t=np.asarray(t), index=np.asarray(index), **data)

        self.n_written += 1
        if not _all_finite(data):
            logger.error("Non-finite distribution function at t=%.6e (snapshot %d)", t, index)
            return False
        return True
