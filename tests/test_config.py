"""Unit tests for configuration loading."""

from pathlib import Path

import pytest

from shardstore.config import (
    ServiceConfig, StorageEndpoint, parse_properties, load_config, EXAMPLE_CONFIG
)
from shardstore.exceptions import ConfigurationError

ENV_VARS = [
    'SHARDSTORE_HOST', 'SHARDSTORE_PORT', 'SHARDSTORE_DOWNLOAD_DIR',
    'SHARDSTORE_CONNECT_TIMEOUT', 'SHARDSTORE_LOG_LEVEL',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the caller's environment and .env files."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


class TestParseProperties:
    """Test the properties file format."""

    def test_separators_and_comments(self):
        properties = parse_properties(
            "# comment\n"
            "! another comment\n"
            "\n"
            "port=5000\n"
            "slave.port1 : 5001\n"
            "slave.directory.1 server_1/\n"
        )

        assert properties == {
            'port': '5000',
            'slave.port1': '5001',
            'slave.directory.1': 'server_1/',
        }

    def test_value_may_contain_separators(self):
        assert parse_properties("dir=C:/data=x") == {'dir': 'C:/data=x'}


class TestServiceConfig:
    """Test building the configuration."""

    def test_example_config(self, tmp_path):
        path = tmp_path / 'configuration.txt'
        path.write_text(EXAMPLE_CONFIG)

        config = ServiceConfig.from_file(path)

        assert config.port == 5000
        assert config.endpoints == (
            StorageEndpoint('localhost', 5001, Path('server_1/')),
            StorageEndpoint('localhost', 5002, Path('server_2/')),
            StorageEndpoint('localhost', 5003, Path('server_3/')),
        )
        assert config.download_dir == Path('client_downloads/')

    def test_enumeration_stops_at_first_gap(self):
        config = ServiceConfig.from_properties({
            'slave.port1': '5001', 'slave.directory.1': 'a',
            'slave.port2': '5002',
            'slave.port3': '5003', 'slave.directory.3': 'c',
        })

        assert [e.port for e in config.endpoints] == [5001]

    def test_invalid_port_is_skipped(self):
        config = ServiceConfig.from_properties({
            'slave.port1': '5001', 'slave.directory.1': 'a',
            'slave.port2': 'abc', 'slave.directory.2': 'b',
            'slave.port3': '5003', 'slave.directory.3': 'c',
        })

        assert [e.port for e in config.endpoints] == [5001, 5003]

    def test_optional_host(self):
        config = ServiceConfig.from_properties({
            'slave.port1': '5001', 'slave.directory.1': 'a', 'slave.host1': '10.0.0.7',
        })

        assert config.endpoints[0].address == '10.0.0.7:5001'

    def test_no_storage_nodes_gives_empty_list(self):
        config = ServiceConfig.from_properties({'port': '6000'})

        assert config.port == 6000
        assert config.endpoints == ()

    def test_invalid_coordinator_port(self):
        with pytest.raises(ConfigurationError):
            ServiceConfig.from_properties({'port': 'http'})

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ServiceConfig.from_file(tmp_path / 'missing.txt')

        assert config.port == 5000
        assert config.endpoints == (StorageEndpoint('localhost', 5001, Path('server_1/')),)

    def test_storage_node_lookup(self):
        config = ServiceConfig.from_properties({
            'slave.port1': '5001', 'slave.directory.1': 'a',
            'slave.port2': '5002', 'slave.directory.2': 'b',
        })

        assert config.storage_node(2).port == 5002
        with pytest.raises(ConfigurationError):
            config.storage_node(3)
        with pytest.raises(ConfigurationError):
            config.storage_node(0)

    def test_config_is_immutable(self):
        config = ServiceConfig()
        with pytest.raises(AttributeError):
            config.port = 1


class TestEnvironmentOverrides:
    """Test SHARDSTORE_* overrides."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / 'configuration.txt'
        path.write_text(EXAMPLE_CONFIG)
        monkeypatch.setenv('SHARDSTORE_PORT', '7000')
        monkeypatch.setenv('SHARDSTORE_LOG_LEVEL', 'debug')

        config = load_config(path)

        assert config.port == 7000
        assert config.log_level == 'DEBUG'
        assert len(config.endpoints) == 3

    def test_zero_timeout_disables_it(self, monkeypatch):
        monkeypatch.setenv('SHARDSTORE_CONNECT_TIMEOUT', '0')

        assert ServiceConfig().with_env().connect_timeout is None

    def test_non_numeric_port_is_rejected(self, monkeypatch):
        monkeypatch.setenv('SHARDSTORE_PORT', 'abc')

        with pytest.raises(ConfigurationError, match='SHARDSTORE_PORT=abc'):
            ServiceConfig().with_env()

    def test_non_numeric_timeout_is_rejected(self, monkeypatch):
        monkeypatch.setenv('SHARDSTORE_CONNECT_TIMEOUT', 'soon')

        with pytest.raises(ConfigurationError, match='SHARDSTORE_CONNECT_TIMEOUT=soon'):
            ServiceConfig().with_env()
