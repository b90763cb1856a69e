"""Shared pytest fixtures for all tests."""

import asyncio
import socket
import threading

import pytest
import pytest_asyncio

from shardstore.client import ShardStoreClient
from shardstore.config import ServiceConfig, StorageEndpoint
from shardstore.coordinator import Coordinator
from shardstore.storage import StorageNode

# Small transfer buffer so modest payloads span several chunks
TEST_CHUNK_SIZE = 1024


def unused_port() -> int:
    """Find a loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def make_config(nodes, chunk_size=TEST_CHUNK_SIZE, extra_endpoints=()) -> ServiceConfig:
    """Build a coordinator configuration pointing at running storage nodes."""
    endpoints = tuple(
        StorageEndpoint('127.0.0.1', node.port, node.store.directory)
        for node in nodes
    ) + tuple(extra_endpoints)
    return ServiceConfig(host='127.0.0.1', port=0, endpoints=endpoints,
                         chunk_size=chunk_size, connect_timeout=5.0)


@pytest.fixture
def spool_dir(tmp_path):
    """Directory for coordinator spool files."""
    path = tmp_path / 'spool'
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def storage_nodes(tmp_path):
    """
    Three running storage nodes on ephemeral ports.

    Yields:
        List of StorageNode, in shard order
    """
    nodes = [
        StorageNode(tmp_path / f'server_{i}', host='127.0.0.1', port=0,
                    chunk_size=TEST_CHUNK_SIZE)
        for i in range(1, 4)
    ]
    for node in nodes:
        await node.start()

    yield nodes

    for node in nodes:
        await node.stop()


@pytest_asyncio.fixture
async def coordinator(storage_nodes, spool_dir):
    """A running coordinator in front of the three storage nodes."""
    node = Coordinator(make_config(storage_nodes), spool_dir=spool_dir)
    await node.start()

    yield node

    await node.stop()


@pytest.fixture
def client(coordinator):
    """Client bound to the running coordinator."""
    return ShardStoreClient('127.0.0.1', coordinator.port, timeout=5.0)


@pytest.fixture
def live_cluster(tmp_path):
    """
    Storage nodes and a coordinator served from a background event loop.

    Lets synchronous code (the click CLI) talk to real servers.

    Yields:
        Path of a properties file describing the cluster
    """
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()

    def call(coro):
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=10)

    nodes = [
        StorageNode(tmp_path / f'server_{i}', host='127.0.0.1', port=0)
        for i in range(1, 4)
    ]
    for node in nodes:
        call(node.start())

    spool = tmp_path / 'spool'
    spool.mkdir()
    coordinator = Coordinator(make_config(nodes), spool_dir=spool)
    call(coordinator.start())

    lines = [f'port={coordinator.port}']
    for i, node in enumerate(nodes, start=1):
        lines.append(f'slave.port{i}={node.port}')
        lines.append(f'slave.directory.{i}={node.store.directory}')
    lines.append(f'client.download.directory={tmp_path / "downloads"}')
    config_path = tmp_path / 'configuration.txt'
    config_path.write_text('\n'.join(lines) + '\n')

    yield config_path

    call(coordinator.stop())
    for node in nodes:
        call(node.stop())
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=10)
    loop.close()
