"""
Shard Layout

Design Decision: Split Policy
=============================

A file of `size` bytes stored on K nodes is cut into K contiguous ranges.
Shards 1..K-1 hold floor(size / K) bytes each and shard K additionally
holds the remainder (size mod K). This is the layout existing deployments
were written with, so it must be reproduced exactly.

Example (10 bytes, 3 nodes):
```
shard:   1      2      3
bytes: [0,3) [3,6) [6,10)
size:    3      3      4
```

Shard i of file F is stored as "F.part<i>" on node i (1-based).
"""

import re
from typing import List, Tuple

SHARD_SUFFIX = re.compile(r'\.part[0-9]+$')


def shard_sizes(size: int, shard_count: int) -> List[int]:
    """Split `size` bytes into `shard_count` shard lengths."""
    if shard_count < 1:
        raise ValueError("shard_count must be at least 1")
    if size < 0:
        raise ValueError("size must not be negative")

    base, remainder = divmod(size, shard_count)
    sizes = [base] * shard_count
    sizes[-1] += remainder
    return sizes


def shard_ranges(size: int, shard_count: int) -> List[Tuple[int, int]]:
    """
    Get the byte range of every shard.

    Returns:
        (offset, length) tuples in shard order
    """
    ranges = []
    offset = 0
    for length in shard_sizes(size, shard_count):
        ranges.append((offset, length))
        offset += length
    return ranges


def shard_name(file_name: str, index: int) -> str:
    """Name of shard `index` (1-based) of `file_name`."""
    return f"{file_name}.part{index}"


def logical_name(name: str) -> str:
    """Strip a trailing .part<N> suffix to recover the file name."""
    return SHARD_SUFFIX.sub('', name)
