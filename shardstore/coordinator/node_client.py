"""
Storage Node Client

Shard-level operations against one storage node. Every call opens its own
connection, performs one exchange and closes it.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, List, AsyncIterator

import aiofiles

from ..config import StorageEndpoint
from ..exceptions import NodeUnavailableError, ProtocolError
from ..transfer.protocol import (
    ABSENT, TRANSFER_CHUNK_SIZE, Opcode, ShardConnection, open_connection
)

logger = logging.getLogger(__name__)


class StorageNodeClient:
    """
    Talks to a single storage node.

    Connection and framing failures are raised as NodeUnavailableError;
    "not found" outcomes are ordinary return values.
    """

    def __init__(self, endpoint: StorageEndpoint,
                 connect_timeout: Optional[float] = 10.0,
                 chunk_size: int = TRANSFER_CHUNK_SIZE):
        self.endpoint = endpoint
        self.connect_timeout = connect_timeout
        self.chunk_size = chunk_size

    def __repr__(self) -> str:
        return f"StorageNodeClient({self.endpoint.address})"

    def _unavailable(self, reason: str) -> NodeUnavailableError:
        return NodeUnavailableError(reason, {
            'host': self.endpoint.host,
            'port': self.endpoint.port,
        })

    async def _connect(self) -> ShardConnection:
        conn = await open_connection(
            self.endpoint.host, self.endpoint.port,
            timeout=self.connect_timeout, chunk_size=self.chunk_size
        )
        if conn is None:
            raise self._unavailable("Storage node unreachable")
        return conn

    async def ping(self) -> bool:
        """Check that the node accepts connections."""
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.PING)
                await conn.flush()
            return True
        except (NodeUnavailableError, ConnectionError, OSError):
            return False

    async def store_shard(self, shard_name: str, size: int,
                          blocks: AsyncIterator[bytes]) -> bool:
        """
        Upload one shard.

        Returns:
            The node's success flag
        """
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.UPLOAD)
                conn.write_string(shard_name)
                conn.write_int64(size)
                await conn.write_payload(blocks, size)
                success = await conn.read_bool()
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._unavailable(f"Upload of {shard_name} failed: {e}") from e

        logger.debug(f"Stored {shard_name} ({size:,} bytes) on {self.endpoint.address}")
        return success

    async def fetch_shard(self, shard_name: str, output_path: Path) -> Optional[int]:
        """
        Download one shard into a local file.

        Returns:
            Shard size, or None if the node doesn't have it
        """
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.DOWNLOAD)
                conn.write_string(shard_name)
                await conn.flush()

                size = await conn.read_int64()
                if size == ABSENT:
                    logger.debug(f"{shard_name} not found on {self.endpoint.address}")
                    return None
                if size < 0:
                    raise ProtocolError("Negative shard size", {'size': size})

                async with aiofiles.open(output_path, 'wb') as f:
                    async for block in conn.iter_payload(size):
                        await f.write(block)
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._unavailable(f"Download of {shard_name} failed: {e}") from e

        logger.debug(f"Fetched {shard_name} ({size:,} bytes) from {self.endpoint.address}")
        return size

    async def list_shards(self) -> List[str]:
        """List shard names stored on the node."""
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.LIST)
                await conn.flush()

                count = await conn.read_int32()
                names = [await conn.read_string() for _ in range(count)]
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._unavailable(f"Listing failed: {e}") from e

        return names

    async def remove_shard(self, shard_name: str) -> bool:
        """
        Delete one shard.

        Returns:
            The node's success flag (False if the shard didn't exist)
        """
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.REMOVE)
                conn.write_string(shard_name)
                await conn.flush()
                return await conn.read_bool()
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._unavailable(f"Removal of {shard_name} failed: {e}") from e


async def ping_all(clients: List[StorageNodeClient]) -> List[bool]:
    """Ping every node concurrently."""
    return list(await asyncio.gather(*(client.ping() for client in clients)))
