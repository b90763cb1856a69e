"""
Shard Store - Sharded File Storage

A coordinator splits each uploaded file into one shard per storage node,
and reconstructs files on download by fetching shards in order.
"""

__version__ = '1.0.0'
