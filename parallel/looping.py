"""Per-rank index ranges for block-parallel loops over z."""

from __future__ import annotations


def split_range(n: int, rank: int, size: int) -> slice:
    """
    Contiguous slice of ``range(n)`` owned by ``rank`` out of ``size`` ranks.

    The first ``n % size`` ranks get one extra point; ranks beyond ``n`` get an empty slice.
    """
    n = int(n)
    rank = int(rank)
    size = int(size)
    if n < 0:
        raise ValueError(f"n must be >= 0, got {n}")
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}")
    if not (0 <= rank < size):
        raise ValueError(f"rank {rank} out of range for size {size}")

    base, rem = divmod(n, size)
    start = rank * base + min(rank, rem)
    stop = start + base + (1 if rank < rem else 0)
    return slice(start, stop)
