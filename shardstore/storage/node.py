"""
Storage Node

Serves shard-level store/fetch/list/delete requests for one directory.
The node knows nothing about sharding: names are opaque file names.
"""

import logging
from pathlib import Path

from .shard_store import ShardStore
from ..transfer.protocol import (
    ABSENT, TRANSFER_CHUNK_SIZE, Opcode, ShardConnection, ShardServer
)

logger = logging.getLogger(__name__)


class StorageNode:
    """
    Storage node server.

    Each inbound connection carries exactly one operation. Operations on the
    same shard name are not synchronized with each other.
    """

    def __init__(self, directory: Path, host: str = '0.0.0.0', port: int = 5001,
                 chunk_size: int = TRANSFER_CHUNK_SIZE):
        self.store = ShardStore(directory)
        self.chunk_size = chunk_size
        self.server = ShardServer(host=host, port=port, chunk_size=chunk_size,
                                  name=f"Storage node ({directory})")

        # Statistics
        self.shards_received = 0
        self.shards_served = 0

        # Register handlers
        self._setup_handlers()

    def _setup_handlers(self):
        """Register request handlers with the server."""
        self.server.set_handler(Opcode.UPLOAD, self._handle_upload)
        self.server.set_handler(Opcode.DOWNLOAD, self._handle_download)
        self.server.set_handler(Opcode.LIST, self._handle_list)
        self.server.set_handler(Opcode.REMOVE, self._handle_remove)

    @property
    def port(self) -> int:
        return self.server.port

    async def start(self):
        """Start the storage node server."""
        stats = self.store.get_stats()
        await self.server.start()
        logger.info(f"Storage node serving {self.store.directory} "
                    f"({stats.shard_count} shards, {stats.total_bytes:,} bytes)")

    async def serve_forever(self):
        await self.server.serve_forever()

    async def stop(self):
        """Stop the storage node server."""
        await self.server.stop()
        logger.info(f"Storage node stopped. Received {self.shards_received} shards, "
                    f"served {self.shards_served}")

    async def _handle_upload(self, connection: ShardConnection):
        """Store a shard, overwriting any existing one."""
        name = await connection.read_string()
        size = await connection.read_int64()
        if size < 0:
            logger.warning(f"Rejected upload of {name} with negative size {size}")
            connection.write_bool(False)
            return

        try:
            written = await self.store.store_shard(name, connection.iter_payload(size))
        except (ValueError, OSError) as e:
            logger.error(f"Failed to store shard {name}: {e}")
            connection.write_bool(False)
            return

        self.shards_received += 1
        logger.info(f"Shard received: {name} ({written:,} bytes)")
        connection.write_bool(written == size)

    async def _handle_download(self, connection: ShardConnection):
        """Send a shard, or the ABSENT sentinel if there is none."""
        name = await connection.read_string()

        try:
            size = await self.store.shard_size(name)
        except ValueError as e:
            logger.warning(str(e))
            size = None

        if size is None:
            logger.warning(f"Shard not found: {name}")
            connection.write_int64(ABSENT)
            return

        connection.write_int64(size)
        await connection.write_payload(
            self.store.iter_shard(name, size, self.chunk_size), size
        )
        self.shards_served += 1
        logger.info(f"Shard sent: {name} ({size:,} bytes)")

    async def _handle_list(self, connection: ShardConnection):
        """List shard file names."""
        names = self.store.list_shards()
        connection.write_int32(len(names))
        for name in names:
            connection.write_string(name)
        logger.info(f"Shard list sent, {len(names)} shards")

    async def _handle_remove(self, connection: ShardConnection):
        """Delete a shard; fails if it doesn't exist."""
        name = await connection.read_string()

        try:
            success = await self.store.remove_shard(name)
        except ValueError as e:
            logger.warning(str(e))
            success = False

        connection.write_bool(success)
        if success:
            logger.info(f"Shard removed: {name}")
        else:
            logger.warning(f"Failed to remove shard: {name}")
