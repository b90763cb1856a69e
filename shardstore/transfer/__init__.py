"""
Transfer Module - Wire Protocol

Length-prefixed binary framing shared by clients, coordinators and
storage nodes.
"""

from .protocol import (
    ABSENT,
    TRANSFER_CHUNK_SIZE,
    Opcode,
    ShardConnection,
    ShardServer,
    open_connection,
)

__all__ = [
    'ABSENT',
    'TRANSFER_CHUNK_SIZE',
    'Opcode',
    'ShardConnection',
    'ShardServer',
    'open_connection',
]
