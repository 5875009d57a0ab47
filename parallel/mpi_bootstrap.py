from __future__ import annotations

_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """
    Initialize MPI through mpi4py.

    mpi4py must own MPI_Init so that petsc4py (imported lazily by the PETSc backend)
    attaches to the already-initialized MPI instead of initializing it itself.
    """
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    from mpi4py import MPI  # noqa: F401

    _BOOTSTRAPPED = True


def bootstrap_mpi_before_petsc() -> None:
    bootstrap_mpi()


def get_world_comm():
    """MPI.COMM_WORLD after bootstrapping."""
    bootstrap_mpi()
    from mpi4py import MPI

    return MPI.COMM_WORLD
