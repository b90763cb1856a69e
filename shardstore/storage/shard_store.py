"""
Shard Storage

Design Decision: Storage Strategy
==================================

Options Considered:
1. Shard files plus a per-file metadata sidecar
   - Could detect partial uploads
   - Extra state to keep consistent, not understood by existing nodes

2. Flat directory, one regular file per shard, named <file>.part<N>
   - The shard name is the only metadata
   - Directory listing is the index
   - Can inspect storage manually

Decision: Flat directory of shard files
- Existence and size of a shard file are the only state
- Uploads overwrite in place (no temp file + rename); a crash mid-write
  leaves a truncated shard
- No locking: concurrent writes/reads of the same shard name can race

Storage Layout:
```
server_1/
├── report.txt.part1
├── photo.jpg.part1
└── ...
```
"""

import logging
from pathlib import Path
from typing import Optional, List, AsyncIterator
from dataclasses import dataclass

import aiofiles
import aiofiles.os

from ..exceptions import ShardStoreError

logger = logging.getLogger(__name__)


@dataclass
class StorageStats:
    """Statistics about stored shards."""
    shard_count: int
    total_bytes: int


async def iter_file_range(path: Path, offset: int, length: int,
                          chunk_size: int) -> AsyncIterator[bytes]:
    """
    Read `length` bytes of a file starting at `offset`.

    Yields:
        Blocks of at most chunk_size bytes

    Raises:
        ShardStoreError: if the file ends before `length` bytes were read
    """
    remaining = length
    async with aiofiles.open(path, 'rb') as f:
        await f.seek(offset)
        while remaining > 0:
            block = await f.read(min(chunk_size, remaining))
            if not block:
                raise ShardStoreError("File ended before the expected size",
                                      {'path': path, 'missing': remaining})
            remaining -= len(block)
            yield block


class ShardStore:
    """
    Local shard storage scoped to one directory.

    Provides:
    - Shard store (overwrite) from a byte stream
    - Shard size lookup and streaming reads
    - Non-recursive listing of shard files
    - Shard removal
    """

    def __init__(self, directory: Path):
        """
        Initialize shard storage.

        Args:
            directory: Directory holding this node's shard files
        """
        self.directory = Path(directory)
        self._ensure_directory()

    def _ensure_directory(self):
        """Create the storage directory if it doesn't exist."""
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created storage directory {self.directory}")

    def _shard_path(self, name: str) -> Path:
        """
        Get filesystem path for a shard.

        Raises:
            ValueError: if the name resolves outside the storage directory
        """
        root = self.directory.resolve()
        path = (self.directory / name).resolve()
        if path == root or root not in path.parents:
            raise ValueError(f"Shard name escapes storage directory: {name!r}")
        return path

    # === Shard Operations ===

    async def store_shard(self, name: str, blocks: AsyncIterator[bytes]) -> int:
        """
        Write a shard, replacing any existing shard of the same name.

        Parent directories are created as needed.

        Returns:
            Number of bytes written
        """
        shard_path = self._shard_path(name)
        await aiofiles.os.makedirs(shard_path.parent, exist_ok=True)

        written = 0
        async with aiofiles.open(shard_path, 'wb') as f:
            async for block in blocks:
                await f.write(block)
                written += len(block)

        return written

    async def shard_size(self, name: str) -> Optional[int]:
        """
        Get the byte length of a shard.

        Returns:
            Size in bytes, or None if the shard doesn't exist
        """
        shard_path = self._shard_path(name)
        if not await aiofiles.os.path.isfile(shard_path):
            return None
        return await aiofiles.os.path.getsize(shard_path)

    def iter_shard(self, name: str, size: int,
                   chunk_size: int) -> AsyncIterator[bytes]:
        """Stream the first `size` bytes of a shard."""
        return iter_file_range(self._shard_path(name), 0, size, chunk_size)

    async def has_shard(self, name: str) -> bool:
        """Check if a shard exists."""
        return await self.shard_size(name) is not None

    async def remove_shard(self, name: str) -> bool:
        """
        Delete a shard.

        Returns:
            True only if the shard existed and was deleted
        """
        shard_path = self._shard_path(name)
        if not await aiofiles.os.path.isfile(shard_path):
            return False

        try:
            await aiofiles.os.remove(shard_path)
        except OSError as e:
            logger.error(f"Failed to delete shard {name}: {e}")
            return False

        return True

    def list_shards(self) -> List[str]:
        """
        List shard files directly under the storage directory.

        Subdirectories are skipped. Order is whatever the directory
        enumeration yields.
        """
        if not self.directory.is_dir():
            return []
        return [entry.name for entry in self.directory.iterdir() if entry.is_file()]

    # === Statistics ===

    def get_stats(self) -> StorageStats:
        """Get storage statistics."""
        total_shards = 0
        total_bytes = 0

        for name in self.list_shards():
            total_shards += 1
            total_bytes += (self.directory / name).stat().st_size

        return StorageStats(shard_count=total_shards, total_bytes=total_bytes)
