"""
Exception hierarchy for the shard store.

Every error raised on purpose by this package derives from ShardStoreError,
so callers can catch the whole family with a single except clause.

Example:
    >>> raise NodeUnavailableError("Cannot reach node", {"host": "localhost", "port": 5001})
    Traceback (most recent call last):
    ...
    shardstore.exceptions.NodeUnavailableError: Cannot reach node [host=localhost, port=5001]
"""

from typing import Optional, Dict, Any


class ShardStoreError(Exception):
    """
    Base exception for all shard store errors.

    Attributes:
        message: Human readable description
        details: Extra context (endpoint, shard name, sizes...)
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{details_str}]"
        return self.message


class ConfigurationError(ShardStoreError):
    """
    Invalid or incomplete configuration.

    Fatal: a coordinator with no storage nodes refuses to start.
    """
    pass


class ProtocolError(ShardStoreError):
    """
    Malformed or truncated frame on the wire.

    Raised for short reads, unknown opcodes, oversized strings and payload
    streams that do not match their declared size.
    """
    pass


class NodeUnavailableError(ShardStoreError):
    """A remote node could not be reached or dropped the connection mid-exchange."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.host = self.details.get('host')
        self.port = self.details.get('port')
