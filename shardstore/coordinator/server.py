"""
Coordinator

Client-facing server. Each accepted connection runs in its own task, reads
one opcode, lets the distribution engine fan it out to the storage nodes,
replies once and closes.
"""

import logging
from pathlib import Path
from typing import Optional

from .engine import DistributionEngine
from .node_client import ping_all
from ..config import ServiceConfig
from ..transfer.protocol import ABSENT, Opcode, ShardConnection, ShardServer

logger = logging.getLogger(__name__)


class Coordinator:
    """
    Sharding coordinator.

    The storage node list comes from the configuration and never changes
    afterwards. An empty list is a fatal configuration error.
    """

    def __init__(self, config: ServiceConfig, spool_dir: Optional[Path] = None):
        """
        Initialize the coordinator.

        Raises:
            ConfigurationError: if the configuration has no storage nodes
        """
        self.config = config
        self.engine = DistributionEngine(
            config.endpoints,
            connect_timeout=config.connect_timeout,
            chunk_size=config.chunk_size,
            spool_dir=spool_dir,
        )
        self.server = ShardServer(host=config.host, port=config.port,
                                  chunk_size=config.chunk_size, name="Coordinator")
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
        """Start the coordinator and report which storage nodes answer."""
        await self.server.start()
        logger.info(f"Coordinator using {self.engine.shard_count} storage nodes")

        reachable = await ping_all(self.engine.nodes)
        for node, ok in zip(self.engine.nodes, reachable):
            if not ok:
                logger.warning(f"Storage node {node.endpoint.address} is not reachable")

    async def serve_forever(self):
        await self.server.serve_forever()

    async def stop(self):
        """Stop the coordinator server."""
        await self.server.stop()
        logger.info(f"Coordinator stopped. Distributed {self.engine.files_uploaded} files, "
                    f"reconstructed {self.engine.files_downloaded}")

    async def _handle_upload(self, connection: ShardConnection):
        name = await connection.read_string()
        size = await connection.read_int64()
        if size < 0:
            logger.warning(f"Rejected upload of {name} with negative size {size}")
            connection.write_bool(False)
            return

        logger.info(f"Upload requested: {name} ({size:,} bytes)")
        success = await self.engine.upload(name, size, connection.iter_payload(size))
        connection.write_bool(success)

    async def _handle_download(self, connection: ShardConnection):
        name = await connection.read_string()
        logger.info(f"Download requested: {name}")

        async with self.engine.download(name) as reconstructed:
            if reconstructed is None:
                connection.write_int64(ABSENT)
                return

            connection.write_int64(reconstructed.size)
            await connection.write_payload(reconstructed.iter_bytes(), reconstructed.size)
            logger.info(f"File sent: {name} ({reconstructed.size:,} bytes)")

    async def _handle_list(self, connection: ShardConnection):
        names = await self.engine.list_files()
        connection.write_int32(len(names))
        for name in names:
            connection.write_string(name)
        logger.info(f"File list sent, {len(names)} files")

    async def _handle_remove(self, connection: ShardConnection):
        name = await connection.read_string()
        logger.info(f"Removal requested: {name}")
        success = await self.engine.remove(name)
        connection.write_bool(success)
