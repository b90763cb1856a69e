"""
Shard Transfer Protocol

Design Decision: Wire Framing
=============================

Options Considered:
1. JSON header + binary body (length prefixed)
   - Self-describing, easy to extend
   - Incompatible with the deployed clients and storage nodes

2. Raw TCP with fixed-width big-endian fields
   - Byte-for-byte compatible with existing deployments
   - Tiny framing overhead, payloads streamed without copies

Decision: Fixed-width big-endian fields, one opcode per connection
- Strings are UTF-8 prefixed by an unsigned 16-bit length
- Sizes are signed 64-bit (-1 means "not found"), counts signed 32-bit
- Booleans are a single byte, nonzero is true
- Payloads are raw bytes whose length was declared by a preceding size

The same framing is used on both links (client -> coordinator and
coordinator -> storage node). Each connection carries exactly one request
and one response, then closes.

Message Shapes:
```
PING      ->  (nothing, connection is closed)
LIST      ->  count:int32, count x name:string
UPLOAD    name:string, size:int64, payload   ->  success:bool
DOWNLOAD  name:string   ->  size:int64 (-1 if absent), payload
REMOVE    name:string   ->  success:bool
```
"""

import asyncio
import struct
import logging
from enum import Enum
from typing import Optional, Tuple, Callable, Awaitable, Dict, AsyncIterator

from ..exceptions import ProtocolError, ShardStoreError

logger = logging.getLogger(__name__)

# Transfers are staged through buffers of this size: 1MB
TRANSFER_CHUNK_SIZE = 1024 * 1024

# Size sentinel meaning "requested file/shard not found"
ABSENT = -1

MAX_STRING_LENGTH = 0xFFFF

_STRING_LENGTH = struct.Struct('>H')
_INT64 = struct.Struct('>q')
_INT32 = struct.Struct('>i')


class Opcode(Enum):
    """Operations understood by coordinators and storage nodes."""
    PING = "PING"
    LIST = "LIST"
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    REMOVE = "REMOVE"


# === Encoding primitives ===

def pack_string(value: str) -> bytes:
    """Encode a string field (2-byte length + UTF-8 bytes)."""
    encoded = value.encode('utf-8')
    if len(encoded) > MAX_STRING_LENGTH:
        raise ProtocolError("String too long for a 16-bit length prefix",
                            {'length': len(encoded)})
    return _STRING_LENGTH.pack(len(encoded)) + encoded


def pack_int64(value: int) -> bytes:
    return _INT64.pack(value)


def pack_int32(value: int) -> bytes:
    return _INT32.pack(value)


def pack_bool(value: bool) -> bytes:
    return b'\x01' if value else b'\x00'


# === Decoding primitives ===

async def _read_exactly(reader: asyncio.StreamReader, count: int, what: str) -> bytes:
    try:
        return await reader.readexactly(count)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(f"Connection closed while reading {what}",
                            {'expected': count, 'received': len(e.partial)}) from e


async def read_string(reader: asyncio.StreamReader) -> str:
    """Decode a string field."""
    (length,) = _STRING_LENGTH.unpack(await _read_exactly(reader, 2, 'string length'))
    raw = await _read_exactly(reader, length, 'string')
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ProtocolError("String field is not valid UTF-8") from e


async def read_int64(reader: asyncio.StreamReader) -> int:
    (value,) = _INT64.unpack(await _read_exactly(reader, 8, 'int64'))
    return value


async def read_int32(reader: asyncio.StreamReader) -> int:
    (value,) = _INT32.unpack(await _read_exactly(reader, 4, 'int32'))
    return value


async def read_bool(reader: asyncio.StreamReader) -> bool:
    return (await _read_exactly(reader, 1, 'bool')) != b'\x00'


class ShardConnection:
    """
    One request/response exchange over a TCP stream.

    Wraps an asyncio reader/writer pair with the framing primitives. Writes
    are buffered by the transport until flush() (or a payload write) drains
    them.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 chunk_size: int = TRANSFER_CHUNK_SIZE):
        self.reader = reader
        self.writer = writer
        self.chunk_size = chunk_size
        self._closed = False

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    async def __aenter__(self) -> 'ShardConnection':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Close the connection."""
        if not self._closed:
            self._closed = True
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                # Peer already went away
                pass

    # === Reading ===

    async def read_opcode(self) -> Optional[Opcode]:
        """
        Read the request opcode.

        Returns:
            The opcode, or None if the peer closed before sending anything
        """
        if self.reader.at_eof():
            return None
        try:
            head = await self.reader.readexactly(2)
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                return None
            raise ProtocolError("Connection closed while reading opcode") from e

        (length,) = _STRING_LENGTH.unpack(head)
        raw = await _read_exactly(self.reader, length, 'opcode')
        try:
            return Opcode(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError("Unknown opcode", {'opcode': raw[:32]}) from e

    async def read_string(self) -> str:
        return await read_string(self.reader)

    async def read_int64(self) -> int:
        return await read_int64(self.reader)

    async def read_int32(self) -> int:
        return await read_int32(self.reader)

    async def read_bool(self) -> bool:
        return await read_bool(self.reader)

    async def iter_payload(self, size: int) -> AsyncIterator[bytes]:
        """
        Yield exactly `size` payload bytes, staged through chunk_size buffers.

        Raises:
            ProtocolError: if the peer closes before `size` bytes arrive
        """
        remaining = size
        while remaining > 0:
            block = await _read_exactly(
                self.reader, min(self.chunk_size, remaining), 'payload'
            )
            remaining -= len(block)
            yield block

    async def read_payload(self, size: int) -> bytes:
        """Read a whole payload into memory (small transfers only)."""
        data = bytearray()
        async for block in self.iter_payload(size):
            data.extend(block)
        return bytes(data)

    # === Writing ===

    def write_opcode(self, opcode: Opcode):
        self.writer.write(pack_string(opcode.value))

    def write_string(self, value: str):
        self.writer.write(pack_string(value))

    def write_int64(self, value: int):
        self.writer.write(pack_int64(value))

    def write_int32(self, value: int):
        self.writer.write(pack_int32(value))

    def write_bool(self, value: bool):
        self.writer.write(pack_bool(value))

    async def flush(self):
        await self.writer.drain()

    async def write_payload(self, blocks: AsyncIterator[bytes], size: int):
        """
        Stream exactly `size` bytes taken from `blocks`.

        Raises:
            ProtocolError: if the source yields more or fewer bytes than declared
        """
        sent = 0
        async for block in blocks:
            sent += len(block)
            if sent > size:
                raise ProtocolError("Payload source overran its declared size",
                                    {'declared': size})
            self.writer.write(block)
            await self.writer.drain()

        if sent != size:
            raise ProtocolError("Payload source ended early",
                                {'declared': size, 'sent': sent})
        await self.writer.drain()


# Type for request handlers
RequestHandler = Callable[[ShardConnection], Awaitable[None]]


class ShardServer:
    """
    TCP server dispatching one opcode per connection.

    Every accepted connection runs in its own task: the opcode is read, the
    registered handler answers, and the connection is closed. PING needs no
    handler; the connection is simply accepted then closed.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 5000,
                 chunk_size: int = TRANSFER_CHUNK_SIZE, name: str = 'server'):
        self.host = host
        self.port = port
        self.chunk_size = chunk_size
        self.name = name
        self.server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[Opcode, RequestHandler] = {}

    def set_handler(self, opcode: Opcode, handler: RequestHandler):
        """Set a request handler."""
        self._handlers[opcode] = handler

    async def start(self):
        """Start listening. A port of 0 binds an ephemeral port."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"{self.name} listening on {addr[0]}:{addr[1]}")

    async def serve_forever(self):
        """Serve until cancelled."""
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def stop(self):
        """Stop the server."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info(f"{self.name} stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        connection = ShardConnection(reader, writer, self.chunk_size)
        peer = connection.remote_address
        logger.debug(f"New connection from {peer}")

        try:
            opcode = await connection.read_opcode()
            if opcode is None:
                return

            if opcode is Opcode.PING:
                logger.debug(f"Ping from {peer}")
                return

            handler = self._handlers.get(opcode)
            if handler:
                await handler(connection)
                await connection.flush()
            else:
                logger.warning(f"No handler for {opcode.value} on {self.name}")

        except ShardStoreError as e:
            logger.warning(f"Request from {peer} aborted: {e}")
        except (ConnectionError, OSError) as e:
            logger.error(f"Connection error with {peer}: {e}")
        except Exception:
            logger.exception(f"Unexpected error handling connection from {peer}")
        finally:
            await connection.close()
            logger.debug(f"Connection closed: {peer}")


async def open_connection(host: str, port: int,
                          timeout: Optional[float] = 10.0,
                          chunk_size: int = TRANSFER_CHUNK_SIZE) -> Optional[ShardConnection]:
    """
    Connect to a coordinator or storage node.

    Returns:
        ShardConnection, or None if connection failed
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
        return ShardConnection(reader, writer, chunk_size)
    except (OSError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to connect to {host}:{port}: {e!r}")
        return None
