"""
Storage Module - Storage Node

Directory-scoped shard persistence and the server that exposes it.
"""

from .shard_store import ShardStore, StorageStats, iter_file_range
from .node import StorageNode

__all__ = [
    'ShardStore',
    'StorageStats',
    'StorageNode',
    'iter_file_range',
]
