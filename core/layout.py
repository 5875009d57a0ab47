"""
Packed state-vector layout and pack/unpack utilities.

Principles:
- Block order is fixed: (1) pdf, (2) density, (3) upar, (4) ppar, (5) pdf_neutral,
  (6) density_neutral, (7) uz_neutral, (8) pz_neutral; disabled blocks are skipped.
- Block inclusion comes only from EvolveFlags + n_neutral_species via ``enabled_fields``;
  pack, unpack and size all go through the same function.
- Offsets are computed once in ``build_layout`` and cached on the StateLayout.
- Unpack writes into the existing state arrays (they may be block-shared memory).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from .errors import SizeMismatch
from .types import EvolveFlags, KineticState

FloatArray = np.ndarray
ShapeSource = Union[KineticState, Mapping[str, Tuple[int, ...]]]


@dataclass(slots=True)
class StateLayout:
    """Offsets of every enabled field inside the packed vector."""

    size: int
    order: Tuple[str, ...]
    blocks: Dict[str, slice]
    shapes: Dict[str, Tuple[int, ...]]
    flags: EvolveFlags
    n_neutral_species: int

    def require_block(self, name: str) -> slice:
        if name not in self.blocks:
            raise ValueError(f"Field '{name}' not present in layout (order={self.order}).")
        return self.blocks[name]


def enabled_fields(flags: EvolveFlags, n_neutral_species: int) -> Tuple[str, ...]:
    """Names of the fields present in the packed vector, in packing order."""
    if n_neutral_species < 0:
        raise ValueError(f"n_neutral_species must be >= 0, got {n_neutral_species}")

    names: List[str] = ["pdf"]
    if flags.evolve_density:
        names.append("density")
    if flags.evolve_upar:
        names.append("upar")
    if flags.evolve_ppar:
        names.append("ppar")

    if n_neutral_species > 0:
        names.append("pdf_neutral")
        if flags.evolve_density:
            names.append("density_neutral")
        if flags.evolve_upar:
            names.append("uz_neutral")
        if flags.evolve_ppar:
            names.append("pz_neutral")
    return tuple(names)


def _shapes_of(source: ShapeSource) -> Dict[str, Tuple[int, ...]]:
    if isinstance(source, KineticState):
        return source.shapes()
    return {name: tuple(int(n) for n in shape) for name, shape in source.items()}


def state_size(source: ShapeSource, flags: EvolveFlags, n_neutral_species: int) -> int:
    """Total packed length: sum of the sizes of the enabled fields."""
    shapes = _shapes_of(source)
    total = 0
    for name in enabled_fields(flags, n_neutral_species):
        if name not in shapes:
            raise ValueError(f"Missing shape for enabled field '{name}'")
        total += int(np.prod(shapes[name], dtype=np.int64))
    return total


def build_layout(source: ShapeSource, flags: EvolveFlags, n_neutral_species: int) -> StateLayout:
    """
    Build the packed-vector layout for a state (or a mapping of field shapes).

    Neutral fields, when enabled, must carry ``n_neutral_species`` along their last axis.
    """
    shapes = _shapes_of(source)
    order = enabled_fields(flags, n_neutral_species)

    blocks: Dict[str, slice] = {}
    used_shapes: Dict[str, Tuple[int, ...]] = {}
    cursor = 0
    for name in order:
        if name not in shapes:
            raise ValueError(f"Missing shape for enabled field '{name}'")
        shape = shapes[name]
        if name.endswith("_neutral") and (len(shape) == 0 or shape[-1] != n_neutral_species):
            raise ValueError(
                f"{name} shape {shape} inconsistent with n_neutral_species={n_neutral_species}"
            )
        n = int(np.prod(shape, dtype=np.int64))
        blocks[name] = slice(cursor, cursor + n)
        used_shapes[name] = shape
        cursor += n

    layout = StateLayout(
        size=cursor,
        order=order,
        blocks=blocks,
        shapes=used_shapes,
        flags=EvolveFlags(
            evolve_density=bool(flags.evolve_density),
            evolve_upar=bool(flags.evolve_upar),
            evolve_ppar=bool(flags.evolve_ppar),
        ),
        n_neutral_species=int(n_neutral_species),
    )
    expected = state_size(shapes, flags, n_neutral_species)
    if layout.size != expected:
        raise SizeMismatch(f"layout size {layout.size} != field-sum size {expected}")
    return layout


def _check_field(state: KineticState, layout: StateLayout, name: str) -> np.ndarray:
    arr = getattr(state, name)
    if tuple(arr.shape) != layout.shapes[name]:
        raise SizeMismatch(
            f"field '{name}' shape {tuple(arr.shape)} does not match layout shape {layout.shapes[name]}"
        )
    return arr


def pack_state(state: KineticState, layout: StateLayout, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Pack the enabled fields of ``state`` into a flat float64 vector.

    If ``out`` is given it must be 1D with exactly ``layout.size`` entries; it is filled
    in place and returned.
    """
    if out is None:
        out = np.empty(layout.size, dtype=np.float64)
    elif out.ndim != 1 or out.size != layout.size:
        raise SizeMismatch(f"output buffer has shape {out.shape}, layout requires ({layout.size},)")

    for name in layout.order:
        arr = _check_field(state, layout, name)
        out[layout.require_block(name)] = arr.reshape(-1)
    return out


def unpack_state(u: np.ndarray, layout: StateLayout, state: KineticState) -> KineticState:
    """Copy a packed vector back into the fields of ``state`` (in place) and return it."""
    u = np.asarray(u, dtype=np.float64)
    if u.ndim != 1 or u.size != layout.size:
        raise SizeMismatch(f"packed vector has shape {u.shape}, layout requires ({layout.size},)")

    for name in layout.order:
        arr = _check_field(state, layout, name)
        arr[...] = u[layout.require_block(name)].reshape(layout.shapes[name])
    return state


def assert_pack_unpack_consistency(state: KineticState, layout: StateLayout) -> None:
    """Pack then unpack into a copy and assert every enabled field is bit-identical (for tests)."""
    u = pack_state(state, layout)
    state2 = unpack_state(u, layout, state.copy())
    for name in layout.order:
        np.testing.assert_array_equal(getattr(state2, name), getattr(state, name))
