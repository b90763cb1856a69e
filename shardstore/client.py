"""
Shard Store Client

File-level operations against a coordinator, using the same framing as
the coordinator uses towards its storage nodes.
"""

import logging
from pathlib import Path
from typing import Optional, List

import aiofiles

from .exceptions import NodeUnavailableError, ProtocolError, ShardStoreError
from .storage.shard_store import iter_file_range
from .transfer.protocol import (
    ABSENT, TRANSFER_CHUNK_SIZE, Opcode, ShardConnection, open_connection
)

logger = logging.getLogger(__name__)


async def _iter_bytes(data: bytes, chunk_size: int):
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]


class ShardStoreClient:
    """
    Client for a shard store coordinator.

    Every method opens a fresh connection, as the protocol allows only one
    operation per connection.

    Raises:
        NodeUnavailableError: if the coordinator can't be reached or drops
            the connection mid-exchange
    """

    def __init__(self, host: str = 'localhost', port: int = 5000,
                 timeout: Optional[float] = 10.0,
                 chunk_size: int = TRANSFER_CHUNK_SIZE):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.chunk_size = chunk_size

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def _connect(self) -> ShardConnection:
        conn = await open_connection(self.host, self.port,
                                     timeout=self.timeout, chunk_size=self.chunk_size)
        if conn is None:
            raise NodeUnavailableError("Coordinator unreachable",
                                       {'host': self.host, 'port': self.port})
        return conn

    def _broken(self, e: Exception) -> NodeUnavailableError:
        return NodeUnavailableError(f"Exchange with coordinator failed: {e}",
                                    {'host': self.host, 'port': self.port})

    async def ping(self) -> bool:
        """Probe the coordinator."""
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.PING)
                await conn.flush()
        except NodeUnavailableError:
            return False
        return True

    async def list_files(self) -> List[str]:
        """List stored file names (unordered)."""
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.LIST)
                await conn.flush()
                count = await conn.read_int32()
                return [await conn.read_string() for _ in range(count)]
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._broken(e) from e

    async def _upload(self, name: str, size: int, blocks) -> bool:
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.UPLOAD)
                conn.write_string(name)
                conn.write_int64(size)
                await conn.write_payload(blocks, size)
                return await conn.read_bool()
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._broken(e) from e

    async def upload(self, path: Path, name: Optional[str] = None) -> bool:
        """
        Upload a local file.

        Args:
            path: File to upload
            name: Stored name (defaults to the file's base name)

        Returns:
            True if every shard was stored
        """
        path = Path(path)
        size = path.stat().st_size
        name = name or path.name
        logger.debug(f"Uploading {path} as {name} ({size:,} bytes)")
        return await self._upload(name, size,
                                  iter_file_range(path, 0, size, self.chunk_size))

    async def upload_bytes(self, name: str, data: bytes) -> bool:
        """Upload in-memory content."""
        return await self._upload(name, len(data), _iter_bytes(data, self.chunk_size))

    async def download(self, name: str, dest_dir: Path) -> Optional[Path]:
        """
        Download a file into `dest_dir`.

        Returns:
            Path of the written file, or None if the file doesn't exist
        """
        file_name = Path(name).name
        if file_name in ('', '.', '..'):
            raise ShardStoreError("Invalid file name for download", {'name': name})

        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        output_path = dest_dir / file_name

        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.DOWNLOAD)
                conn.write_string(name)
                await conn.flush()

                size = await conn.read_int64()
                if size == ABSENT:
                    return None

                async with aiofiles.open(output_path, 'wb') as f:
                    async for block in conn.iter_payload(size):
                        await f.write(block)
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._broken(e) from e

        return output_path

    async def download_bytes(self, name: str) -> Optional[bytes]:
        """
        Download a file into memory.

        Returns:
            File content, or None if the file doesn't exist
        """
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.DOWNLOAD)
                conn.write_string(name)
                await conn.flush()

                size = await conn.read_int64()
                if size == ABSENT:
                    return None
                return await conn.read_payload(size)
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._broken(e) from e

    async def remove(self, name: str) -> bool:
        """Remove a file from every storage node."""
        try:
            async with await self._connect() as conn:
                conn.write_opcode(Opcode.REMOVE)
                conn.write_string(name)
                await conn.flush()
                return await conn.read_bool()
        except (ProtocolError, ConnectionError, OSError) as e:
            raise self._broken(e) from e
