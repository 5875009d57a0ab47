"""
numpy arrays backed by MPI shared-memory windows.

Rank 0 of the block communicator owns the bytes of every window; the other ranks map the
same memory through ``Shared_query(0)``, so a write on any rank is visible to all after
the next synchronization.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Tuple

import numpy as np

from core.types import FIELD_NAMES, KineticState

logger = logging.getLogger(__name__)


class SharedArena:
    """Owns the MPI windows behind a set of block-shared arrays; free them with ``close``."""

    def __init__(self, comm: Any) -> None:
        self.comm = comm
        self._windows: List[Any] = []

    def allocate(self, shape: Tuple[int, ...], dtype=np.float64) -> np.ndarray:
        """Zero-initialized shared array (collective over the block communicator)."""
        from mpi4py import MPI

        dtype = np.dtype(dtype)
        shape = tuple(int(n) for n in shape)
        n_items = int(np.prod(shape, dtype=np.int64))
        if n_items == 0:
            return np.zeros(shape, dtype=dtype)

        itemsize = dtype.itemsize
        nbytes = n_items * itemsize if self.comm.Get_rank() == 0 else 0
        win = MPI.Win.Allocate_shared(nbytes, itemsize, comm=self.comm)
        self._windows.append(win)
        buf, _ = win.Shared_query(0)
        arr = np.ndarray(buffer=buf, dtype=dtype, shape=shape)
        if self.comm.Get_rank() == 0:
            arr.fill(0)
        self.comm.Barrier()
        return arr

    @property
    def n_windows(self) -> int:
        return len(self._windows)

    def close(self) -> None:
        while self._windows:
            self._windows.pop().Free()

    def __enter__(self) -> "SharedArena":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


def allocate_kinetic_state(arena: SharedArena, shapes: Mapping[str, Tuple[int, ...]]) -> KineticState:
    """KineticState whose arrays all live in block-shared memory."""
    return KineticState(**{name: arena.allocate(shapes[name]) for name in FIELD_NAMES})
