"""
Coordinator Module - Sharding Coordinator

Splits uploaded files across storage nodes and reconstructs them on
download.
"""

from .sharding import shard_sizes, shard_ranges, shard_name, logical_name
from .node_client import StorageNodeClient
from .engine import DistributionEngine, ReconstructedFile
from .server import Coordinator

__all__ = [
    'shard_sizes',
    'shard_ranges',
    'shard_name',
    'logical_name',
    'StorageNodeClient',
    'DistributionEngine',
    'ReconstructedFile',
    'Coordinator',
]
