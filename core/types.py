"""
Typed containers for case configuration, grids and the evolved kinetic state.

Shape conventions (all arrays float64):
- nz: number of spatial points; nvpa: ion parallel-velocity points; nvz: neutral velocity points
- pdf.shape == (nvpa, nz, n_ion_species); pdf_neutral.shape == (nvz, nz, n_neutral_species)
- ion moments (density, upar, ppar).shape == (nz, n_ion_species)
- neutral moments (density_neutral, uz_neutral, pz_neutral).shape == (nz, n_neutral_species)
- Neutral arrays always exist; with n_neutral_species == 0 their last axis is empty.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]


def _enum_value(enum_cls, raw, key: str):
    if isinstance(raw, enum_cls):
        return raw
    val = str(raw).strip().lower()
    try:
        return enum_cls(val)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValueError(f"{key}: invalid value {raw!r} (allowed: {allowed})") from None


class IntegratorKind(str, Enum):
    """Linear multistep family used by the stiff integrator."""

    BDF = "bdf"
    ADAMS = "adams"


class SolverBackendName(str, Enum):
    SCIPY = "scipy"
    PETSC = "petsc"


@dataclass(slots=True)
class IntegratorSettings:
    """Integrator configuration (YAML ``integrator`` block)."""

    kind: IntegratorKind = IntegratorKind.BDF
    rtol: float = 1.0e-3
    atol: float = 1.0e-6
    backend: SolverBackendName = SolverBackendName.SCIPY
    max_substeps: int = 5000
    initial_step: Optional[float] = None

    def __post_init__(self) -> None:
        self.kind = _enum_value(IntegratorKind, self.kind, "integrator.kind")
        self.backend = _enum_value(SolverBackendName, self.backend, "integrator.backend")
        if not (self.rtol > 0.0):
            raise ValueError(f"integrator.rtol must be positive, got {self.rtol}")
        if not (self.atol > 0.0):
            raise ValueError(f"integrator.atol must be positive, got {self.atol}")
        if int(self.max_substeps) < 1:
            raise ValueError(f"integrator.max_substeps must be >= 1, got {self.max_substeps}")
        if self.initial_step is not None and not (self.initial_step > 0.0):
            raise ValueError(f"integrator.initial_step must be positive, got {self.initial_step}")

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "IntegratorSettings":
        raw = dict(raw or {})
        unknown = sorted(set(raw) - {"kind", "rtol", "atol", "backend", "max_substeps", "initial_step"})
        if unknown:
            raise ValueError(f"integrator: unknown keys {unknown}")
        initial_step = raw.get("initial_step", None)
        return cls(
            kind=raw.get("kind", IntegratorKind.BDF),
            rtol=float(raw.get("rtol", 1.0e-3)),
            atol=float(raw.get("atol", 1.0e-6)),
            backend=raw.get("backend", SolverBackendName.SCIPY),
            max_substeps=int(raw.get("max_substeps", 5000)),
            initial_step=None if initial_step is None else float(initial_step),
        )


@dataclass(slots=True)
class EvolveFlags:
    """Which moments are evolved separately from the distribution function."""

    evolve_density: bool = False
    evolve_upar: bool = False
    evolve_ppar: bool = False


@dataclass(slots=True)
class CaseMeta:
    id: str
    title: str = ""
    notes: Optional[str] = None


@dataclass(slots=True)
class CasePaths:
    """Output locations (resolved by the loader)."""

    output_root: Path
    case_dir: Path

    def __post_init__(self) -> None:
        for name in ("output_root", "case_dir"):
            v = getattr(self, name)
            if not isinstance(v, Path):
                raise TypeError(f"{name} must be pathlib.Path (loader must convert str -> Path).")


@dataclass(slots=True)
class CaseGrid:
    """Resolution and extent of the z and velocity grids."""

    nz: int
    nvpa: int
    nvz: int
    z_length: float = 1.0
    vpa_max: float = 6.0
    vz_max: float = 6.0

    def __post_init__(self) -> None:
        for name in ("nz", "nvpa", "nvz"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"grid.{name} must be >= 1, got {getattr(self, name)}")
        if self.z_length <= 0.0:
            raise ValueError(f"grid.z_length must be positive, got {self.z_length}")
        if self.vpa_max <= 0.0 or self.vz_max <= 0.0:
            raise ValueError("grid.vpa_max and grid.vz_max must be positive")


@dataclass(slots=True)
class CaseComposition:
    n_ion_species: int = 1
    n_neutral_species: int = 0

    def __post_init__(self) -> None:
        if self.n_ion_species < 1:
            raise ValueError(f"composition.n_ion_species must be >= 1, got {self.n_ion_species}")
        if self.n_neutral_species < 0:
            raise ValueError(f"composition.n_neutral_species must be >= 0, got {self.n_neutral_species}")


@dataclass(slots=True)
class CaseTime:
    """Output-time controls: outputs at t0 + i*dt for the configured write intervals."""

    t0: float
    dt: float
    nstep: int
    nwrite_moments: int = 1
    nwrite_dfns: int = 1
    stopfile: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.dt <= 0.0:
            raise ValueError(f"time.dt must be positive, got {self.dt}")
        if self.nstep < 1:
            raise ValueError(f"time.nstep must be >= 1, got {self.nstep}")
        if self.nwrite_moments < 1 or self.nwrite_dfns < 1:
            raise ValueError(
                f"time.nwrite_moments/nwrite_dfns must be >= 1, got {self.nwrite_moments}/{self.nwrite_dfns}"
            )


@dataclass(slots=True)
class CasePhysics:
    """Parameters of the Krook/ionization derivative model."""

    model: str = "krook"
    krook_frequency: float = 1.0
    ionization_frequency: float = 0.0
    moment_relaxation_frequency: float = 1.0
    T_ion: float = 1.0
    T_neutral: float = 1.0

    def __post_init__(self) -> None:
        if self.model != "krook":
            raise ValueError(f"physics.model: invalid value {self.model!r} (allowed: krook)")
        for name in ("krook_frequency", "ionization_frequency", "moment_relaxation_frequency"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"physics.{name} must be non-negative")
        if self.T_ion <= 0.0 or self.T_neutral <= 0.0:
            raise ValueError("physics.T_ion and physics.T_neutral must be positive")


@dataclass(slots=True)
class CaseInitial:
    density: float = 1.0
    density_amplitude: float = 0.1
    upar: float = 0.0
    temperature: float = 1.0
    neutral_density: float = 1.0
    neutral_temperature: float = 1.0


@dataclass(slots=True)
class CaseIO:
    write_moments: bool = True
    write_dfns: bool = True
    save_grid: bool = True


@dataclass(slots=True)
class CaseConfig:
    """Top-level case configuration container."""

    case: CaseMeta
    paths: CasePaths
    grid: CaseGrid
    time: CaseTime
    composition: CaseComposition = field(default_factory=CaseComposition)
    evolve: EvolveFlags = field(default_factory=EvolveFlags)
    integrator: IntegratorSettings = field(default_factory=IntegratorSettings)
    physics: CasePhysics = field(default_factory=CasePhysics)
    initial: CaseInitial = field(default_factory=CaseInitial)
    io: CaseIO = field(default_factory=CaseIO)

    def __post_init__(self) -> None:
        if not isinstance(self.evolve, EvolveFlags):
            raise TypeError("evolve must be EvolveFlags (loader must build dataclass).")
        if not isinstance(self.integrator, IntegratorSettings):
            raise TypeError("integrator must be IntegratorSettings (loader must build dataclass).")
        if not isinstance(self.composition, CaseComposition):
            raise TypeError("composition must be CaseComposition (loader must build dataclass).")


@dataclass(slots=True)
class Grid:
    """z and velocity grids with uniform-spacing quadrature weights."""

    z: FloatArray
    vpa: FloatArray
    vpa_wgts: FloatArray
    vz: FloatArray
    vz_wgts: FloatArray

    @property
    def nz(self) -> int:
        return int(self.z.size)

    @property
    def nvpa(self) -> int:
        return int(self.vpa.size)

    @property
    def nvz(self) -> int:
        return int(self.vz.size)


@dataclass(slots=True)
class KineticState:
    """Evolved fields at one instant; arrays may live in block-shared memory."""

    pdf: FloatArray
    density: FloatArray
    upar: FloatArray
    ppar: FloatArray
    pdf_neutral: FloatArray
    density_neutral: FloatArray
    uz_neutral: FloatArray
    pz_neutral: FloatArray

    def copy(self) -> "KineticState":
        """Deep copy arrays to decouple from the original (shared) storage."""
        return KineticState(**{name: np.array(getattr(self, name), copy=True) for name in FIELD_NAMES})

    def shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {name: tuple(getattr(self, name).shape) for name in FIELD_NAMES}


FIELD_NAMES: Tuple[str, ...] = (
    "pdf",
    "density",
    "upar",
    "ppar",
    "pdf_neutral",
    "density_neutral",
    "uz_neutral",
    "pz_neutral",
)


def kinetic_state_shapes(
    nz: int, nvpa: int, nvz: int, n_ion_species: int, n_neutral_species: int
) -> Dict[str, Tuple[int, ...]]:
    """Array shapes of every KineticState field for the given resolution."""
    ion_mom = (nz, n_ion_species)
    neut_mom = (nz, n_neutral_species)
    return {
        "pdf": (nvpa, nz, n_ion_species),
        "density": ion_mom,
        "upar": ion_mom,
        "ppar": ion_mom,
        "pdf_neutral": (nvz, nz, n_neutral_species),
        "density_neutral": neut_mom,
        "uz_neutral": neut_mom,
        "pz_neutral": neut_mom,
    }


def allocate_kinetic_state(shapes: Mapping[str, Tuple[int, ...]]) -> KineticState:
    """Process-local zero-initialized state (see parallel.shared_memory for the shared variant)."""
    return KineticState(**{name: np.zeros(shapes[name], dtype=np.float64) for name in FIELD_NAMES})
