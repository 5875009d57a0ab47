"""
Shared-memory block communicators.

A block is the set of ranks that can address the same physical memory
(``MPI.COMM_TYPE_SHARED``). The adaptive time solver runs one stiff integrator on the
block root and uses the other block ranks only as RHS workers, so it requires the whole
world to form a single block.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from parallel.mpi_bootstrap import get_world_comm

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BlockComms:
    world: Any
    block: Any
    block_rank: int
    block_size: int
    n_blocks: int

    @property
    def is_root(self) -> bool:
        return self.block_rank == 0

    def free(self) -> None:
        if self.block is not None and self.block is not self.world:
            self.block.Free()
        self.block = None


def setup_block_comms(world: Any = None, *, require_single_block: bool = True) -> BlockComms:
    """Split ``world`` into shared-memory blocks (collective over ``world``)."""
    from mpi4py import MPI

    if world is None:
        world = get_world_comm()
    block = world.Split_type(MPI.COMM_TYPE_SHARED, key=world.Get_rank())
    block_rank = int(block.Get_rank())
    block_size = int(block.Get_size())
    n_blocks = int(world.allreduce(1 if block_rank == 0 else 0))

    comms = BlockComms(world=world, block=block, block_rank=block_rank, block_size=block_size, n_blocks=n_blocks)
    if require_single_block and n_blocks != 1:
        comms.free()
        raise ValueError(
            f"Adaptive time solver requires a single shared-memory block, got n_blocks={n_blocks} "
            f"(world size {world.Get_size()})"
        )
    logger.debug("Block communicator: rank %d/%d, n_blocks=%d", block_rank, block_size, n_blocks)
    return comms
