"""
Distribution / Reconstruction Engine

Design Decision: Fan-out Strategy
=================================

Options Considered:
1. Sequential, one shard at a time
   - Simplest, latency = sum of per-shard round trips

2. Concurrent per-shard tasks joined before replying
   - Latency ~ slowest shard
   - Needs each shard stream to be independent

Decision: Concurrent fan-out with asyncio.gather
- UPLOAD spools the client payload to a temp file first, so every shard
  task can stream its own byte range
- DOWNLOAD fetches every shard into its own temp file, then replays them
  in shard order
- Results are aggregated exactly as a sequential loop would:
  - UPLOAD / DOWNLOAD: any shard failure fails the whole operation
  - LIST: union of de-suffixed names, unreachable nodes skipped
  - REMOVE: logical AND, every node attempted

Failure Semantics:
- Best effort, no two-phase commit: a failed UPLOAD leaves the shards that
  did reach their node in place (no rollback)
- Nothing is retried
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Sequence, Set, AsyncIterator

import aiofiles
import aiofiles.tempfile

from .node_client import StorageNodeClient
from .sharding import shard_name, shard_ranges, logical_name
from ..config import StorageEndpoint
from ..exceptions import ConfigurationError, ShardStoreError
from ..storage.shard_store import iter_file_range
from ..transfer.protocol import TRANSFER_CHUNK_SIZE

logger = logging.getLogger(__name__)


@dataclass
class ReconstructedFile:
    """A file whose shards have all been fetched to local spool files."""
    name: str
    shard_paths: List[Path]
    shard_sizes: List[int]
    chunk_size: int = TRANSFER_CHUNK_SIZE

    @property
    def size(self) -> int:
        return sum(self.shard_sizes)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the file content, shards in order."""
        for path, length in zip(self.shard_paths, self.shard_sizes):
            async for block in iter_file_range(path, 0, length, self.chunk_size):
                yield block


class DistributionEngine:
    """
    Turns file-level operations into shard-level operations on K nodes.

    The node list is fixed at construction: node i (0-based) always holds
    shard i+1 of every file.
    """

    def __init__(self, endpoints: Sequence[StorageEndpoint],
                 connect_timeout: Optional[float] = 10.0,
                 chunk_size: int = TRANSFER_CHUNK_SIZE,
                 spool_dir: Optional[Path] = None):
        """
        Initialize the engine.

        Args:
            endpoints: Storage nodes in shard order
            connect_timeout: Seconds allowed to establish a node connection
            chunk_size: Transfer buffer size
            spool_dir: Where temporary upload/download files go
                (system temp dir if not set)

        Raises:
            ConfigurationError: if no storage node is configured
        """
        if not endpoints:
            raise ConfigurationError("No storage nodes configured")

        self.endpoints = tuple(endpoints)
        self.chunk_size = chunk_size
        self.spool_dir = spool_dir
        self.nodes = [
            StorageNodeClient(endpoint, connect_timeout=connect_timeout,
                              chunk_size=chunk_size)
            for endpoint in self.endpoints
        ]

        # Statistics
        self.files_uploaded = 0
        self.files_downloaded = 0

    @property
    def shard_count(self) -> int:
        return len(self.nodes)

    def _spool(self):
        spool_dir = str(self.spool_dir) if self.spool_dir else None
        return aiofiles.tempfile.TemporaryDirectory(prefix='shardstore-', dir=spool_dir)

    # === Upload ===

    async def upload(self, name: str, size: int,
                     payload: AsyncIterator[bytes]) -> bool:
        """
        Receive a file and distribute it across all nodes.

        The payload is spooled to a temporary file, which is removed once
        distribution finishes.

        Returns:
            True if every shard was stored
        """
        async with self._spool() as spool:
            spool_path = Path(spool) / 'upload.tmp'
            async with aiofiles.open(spool_path, 'wb') as f:
                async for block in payload:
                    await f.write(block)

            return await self.distribute(spool_path, name, size)

    async def distribute(self, path: Path, name: str, size: int) -> bool:
        """
        Split a local file into shards and send shard i to node i.

        Returns:
            True if every shard was stored. Shards stored before a failure
            are left in place.
        """
        ranges = shard_ranges(size, self.shard_count)

        async def store(index: int, node: StorageNodeClient,
                        offset: int, length: int) -> bool:
            shard = shard_name(name, index)
            try:
                blocks = iter_file_range(path, offset, length, self.chunk_size)
                return await node.store_shard(shard, length, blocks)
            except ShardStoreError as e:
                logger.error(f"Failed to store {shard} on {node.endpoint.address}: {e}")
                return False

        results = await asyncio.gather(*(
            store(index, node, offset, length)
            for index, (node, (offset, length)) in enumerate(zip(self.nodes, ranges), start=1)
        ))

        if not all(results):
            failed = [i for i, ok in enumerate(results, start=1) if not ok]
            logger.error(f"Upload of {name} failed for shards {failed}")
            return False

        self.files_uploaded += 1
        logger.info(f"Distributed {name} ({size:,} bytes) over {self.shard_count} nodes")
        return True

    # === Download ===

    @asynccontextmanager
    async def download(self, name: str) -> AsyncIterator[Optional[ReconstructedFile]]:
        """
        Fetch every shard of a file.

        Usage:
            async with engine.download(name) as reconstructed:
                if reconstructed is None: ...   # some shard is absent
                async for block in reconstructed.iter_bytes(): ...

        Spool files are deleted when the context exits. Every node
        connection is closed before the context is entered.
        """
        async with self._spool() as spool:
            paths = [Path(spool) / f"shard{index}.tmp"
                     for index in range(1, self.shard_count + 1)]

            async def fetch(index: int, node: StorageNodeClient,
                            path: Path) -> Optional[int]:
                shard = shard_name(name, index)
                try:
                    return await node.fetch_shard(shard, path)
                except ShardStoreError as e:
                    logger.error(f"Failed to fetch {shard} from {node.endpoint.address}: {e}")
                    return None

            sizes = await asyncio.gather(*(
                fetch(index, node, path)
                for index, (node, path) in enumerate(zip(self.nodes, paths), start=1)
            ))

            if any(size is None for size in sizes):
                missing = [i for i, size in enumerate(sizes, start=1) if size is None]
                logger.warning(f"Cannot reconstruct {name}: shards {missing} unavailable")
                yield None
                return

            self.files_downloaded += 1
            reconstructed = ReconstructedFile(
                name=name,
                shard_paths=paths,
                shard_sizes=list(sizes),
                chunk_size=self.chunk_size,
            )
            logger.info(f"Reconstructed {name} ({reconstructed.size:,} bytes)")
            yield reconstructed

    # === Listing ===

    async def list_files(self) -> Set[str]:
        """
        List logical file names across all nodes.

        Unreachable nodes are logged and skipped.
        """
        async def query(node: StorageNodeClient) -> List[str]:
            try:
                return await node.list_shards()
            except ShardStoreError as e:
                logger.warning(f"Skipping {node.endpoint.address} in listing: {e}")
                return []

        listings = await asyncio.gather(*(query(node) for node in self.nodes))
        return {logical_name(shard) for listing in listings for shard in listing}

    # === Removal ===

    async def remove(self, name: str) -> bool:
        """
        Remove every shard of a file.

        All nodes are attempted even if some fail.

        Returns:
            True only if every node deleted its shard
        """
        async def remove_one(index: int, node: StorageNodeClient) -> bool:
            shard = shard_name(name, index)
            try:
                return await node.remove_shard(shard)
            except ShardStoreError as e:
                logger.error(f"Failed to remove {shard} from {node.endpoint.address}: {e}")
                return False

        results = await asyncio.gather(*(
            remove_one(index, node)
            for index, node in enumerate(self.nodes, start=1)
        ))

        success = all(results)
        if success:
            logger.info(f"Removed {name} from {self.shard_count} nodes")
        else:
            logger.error(f"Removal of {name} incomplete: {list(results)}")
        return success
