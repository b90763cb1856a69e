"""End-to-end tests: client -> coordinator -> storage nodes over loopback TCP."""

import asyncio
import os

import pytest

from shardstore.client import ShardStoreClient
from shardstore.config import ServiceConfig, StorageEndpoint
from shardstore.coordinator import Coordinator, DistributionEngine
from shardstore.exceptions import ConfigurationError, NodeUnavailableError, ShardStoreError

from conftest import TEST_CHUNK_SIZE, make_config, unused_port


def shard_files(storage_nodes, name):
    """Shard file paths for `name`, in shard order."""
    return [
        node.store.directory / f"{name}.part{index}"
        for index, node in enumerate(storage_nodes, start=1)
    ]


class TestStartup:
    """Test configuration checks."""

    def test_coordinator_refuses_empty_node_list(self):
        config = ServiceConfig(endpoints=())
        with pytest.raises(ConfigurationError):
            Coordinator(config)

    def test_engine_refuses_empty_node_list(self):
        with pytest.raises(ConfigurationError):
            DistributionEngine([])


class TestRoundTrip:
    """UPLOAD then DOWNLOAD returns the original bytes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        b'',
        b'x',
        os.urandom(TEST_CHUNK_SIZE * 5 + 7),
    ], ids=['empty', 'single-byte', 'multi-chunk'])
    async def test_upload_then_download(self, client, payload):
        assert await client.upload_bytes('data.bin', payload) is True
        assert await client.download_bytes('data.bin') == payload

    @pytest.mark.asyncio
    async def test_upload_file_and_download_to_directory(self, client, tmp_path):
        source = tmp_path / 'photo.jpg'
        source.write_bytes(os.urandom(50_000))

        assert await client.upload(source) is True
        result = await client.download('photo.jpg', tmp_path / 'downloads')

        assert result == tmp_path / 'downloads' / 'photo.jpg'
        assert result.read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_upload_overwrites_existing_file(self, client):
        await client.upload_bytes('notes.txt', b'first version, longer')
        await client.upload_bytes('notes.txt', b'second')

        assert await client.download_bytes('notes.txt') == b'second'

    @pytest.mark.asyncio
    async def test_spool_files_are_cleaned_up(self, client, spool_dir):
        await client.upload_bytes('a', b'abcdef')
        await client.download_bytes('a')

        assert list(spool_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_engine_counts_completed_transfers(self, client, coordinator):
        await client.upload_bytes('a', b'abcdef')
        await client.download_bytes('a')
        await client.download_bytes('ghost')

        assert coordinator.engine.files_uploaded == 1
        assert coordinator.engine.files_downloaded == 1


class TestReportScenario:
    """10-byte file over three storage nodes."""

    @pytest.mark.asyncio
    async def test_report_lifecycle(self, client, storage_nodes):
        content = b'0123456789'

        assert await client.upload_bytes('report.txt', content) is True

        shards = shard_files(storage_nodes, 'report.txt')
        assert [path.stat().st_size for path in shards] == [3, 3, 4]
        assert [path.read_bytes() for path in shards] == [b'012', b'345', b'6789']

        assert set(await client.list_files()) == {'report.txt'}
        assert await client.download_bytes('report.txt') == content

        assert await client.remove('report.txt') is True
        assert 'report.txt' not in await client.list_files()
        assert not any(path.exists() for path in shards)


class TestDownload:
    """Test the absent sentinel."""

    @pytest.mark.asyncio
    async def test_download_unknown_file_is_absent(self, client, tmp_path):
        assert await client.download_bytes('ghost') is None
        assert await client.download('ghost', tmp_path) is None
        assert not (tmp_path / 'ghost').exists()

    @pytest.mark.asyncio
    async def test_download_with_missing_shard_is_absent(self, client, storage_nodes):
        await client.upload_bytes('partial', b'abcdefghij')
        shard_files(storage_nodes, 'partial')[1].unlink()

        assert await client.download_bytes('partial') is None

    @pytest.mark.asyncio
    async def test_download_with_node_down_is_absent(self, client, storage_nodes):
        await client.upload_bytes('doc', b'abcdefghij')
        await storage_nodes[2].stop()

        assert await client.download_bytes('doc') is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ['', '..', 'docs/..'])
    async def test_download_rejects_names_without_file_component(self, name, tmp_path):
        client = ShardStoreClient('127.0.0.1', unused_port(), timeout=2.0)

        with pytest.raises(ShardStoreError, match='Invalid file name') as excinfo:
            await client.download(name, tmp_path / 'out')

        assert not isinstance(excinfo.value, NodeUnavailableError)
        assert not (tmp_path / 'out').exists()


class TestList:
    """Test listing across nodes."""

    @pytest.mark.asyncio
    async def test_list_deduplicates_and_strips_suffixes(self, client):
        await client.upload_bytes('a', b'aaaa')
        await client.upload_bytes('b', b'bbbbbbbb')

        names = await client.list_files()

        assert sorted(names) == ['a', 'b']

    @pytest.mark.asyncio
    async def test_list_empty(self, client):
        assert await client.list_files() == []

    @pytest.mark.asyncio
    async def test_list_skips_unreachable_node(self, client, storage_nodes):
        await client.upload_bytes('a', b'aaaa')
        await storage_nodes[0].stop()

        assert await client.list_files() == ['a']

    @pytest.mark.asyncio
    async def test_list_reports_partial_shard_sets(self, client, storage_nodes):
        await client.upload_bytes('a', b'aaaa')
        for path in shard_files(storage_nodes, 'a')[:2]:
            path.unlink()

        assert await client.list_files() == ['a']


class TestRemove:
    """Test aggregate removal."""

    @pytest.mark.asyncio
    async def test_remove_unknown_file_fails(self, client):
        assert await client.remove('ghost') is False

    @pytest.mark.asyncio
    async def test_remove_with_node_down_still_removes_reachable_shards(
            self, client, storage_nodes):
        await client.upload_bytes('doc', b'abcdefghij')
        shards = shard_files(storage_nodes, 'doc')
        await storage_nodes[1].stop()

        assert await client.remove('doc') is False
        assert not shards[0].exists()
        assert shards[1].exists()
        assert not shards[2].exists()

    @pytest.mark.asyncio
    async def test_remove_with_one_shard_missing_fails(self, client, storage_nodes):
        await client.upload_bytes('doc', b'abcdefghij')
        shards = shard_files(storage_nodes, 'doc')
        shards[0].unlink()

        assert await client.remove('doc') is False
        assert not any(path.exists() for path in shards)


class TestUploadFailures:
    """Test best-effort upload semantics."""

    @pytest.mark.asyncio
    async def test_upload_with_unreachable_node_fails_without_rollback(
            self, storage_nodes, spool_dir):
        dead = StorageEndpoint('127.0.0.1', unused_port(), spool_dir / 'dead')
        coordinator = Coordinator(make_config(storage_nodes[:2], extra_endpoints=[dead]),
                                  spool_dir=spool_dir)
        await coordinator.start()
        try:
            client = ShardStoreClient('127.0.0.1', coordinator.port, timeout=5.0)

            assert await client.upload_bytes('doc', b'abcdefghij') is False
            assert (storage_nodes[0].store.directory / 'doc.part1').read_bytes() == b'abc'
            assert (storage_nodes[1].store.directory / 'doc.part2').read_bytes() == b'def'
        finally:
            await coordinator.stop()


class TestConcurrency:
    """Test independent connections."""

    @pytest.mark.asyncio
    async def test_concurrent_uploads_do_not_interfere(self, client):
        first = os.urandom(TEST_CHUNK_SIZE * 3 + 1)
        second = os.urandom(TEST_CHUNK_SIZE * 2 + 5)

        results = await asyncio.gather(
            client.upload_bytes('first', first),
            client.upload_bytes('second', second),
        )

        assert results == [True, True]
        assert await client.download_bytes('first') == first
        assert await client.download_bytes('second') == second


class TestPing:
    """Test connectivity probing."""

    @pytest.mark.asyncio
    async def test_ping_running_coordinator(self, client):
        assert await client.ping() is True

    @pytest.mark.asyncio
    async def test_ping_nothing_listening(self):
        client = ShardStoreClient('127.0.0.1', unused_port(), timeout=2.0)
        assert await client.ping() is False

    @pytest.mark.asyncio
    async def test_operations_on_unreachable_coordinator_raise(self):
        client = ShardStoreClient('127.0.0.1', unused_port(), timeout=2.0)
        with pytest.raises(NodeUnavailableError):
            await client.list_files()
