"""
Configuration Management

Loads the service configuration from a key/value properties file and
environment variables into immutable values built once at startup.

Configuration priority (highest to lowest):
1. Environment variables (SHARDSTORE_*, a .env file is honoured)
2. Properties file (configuration.txt)
3. Default values

Properties file keys:
```
port=5000                          # coordinator port
slave.port1=5001                   # storage node 1 port
slave.directory.1=server_1/        # storage node 1 directory
slave.host1=localhost              # optional, storage node 1 host
client.download.directory=client_downloads/
```
Storage nodes are enumerated from N=1 and stop at the first N whose port or
directory key is missing. The order of the list decides which shard number
each node stores, so it never changes while the service runs.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .transfer.protocol import TRANSFER_CHUNK_SIZE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path('configuration.txt')
DEFAULT_COORDINATOR_PORT = 5000


@dataclass(frozen=True)
class StorageEndpoint:
    """Address and directory of one storage node."""
    host: str
    port: int
    directory: Path

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def _default_endpoints() -> Tuple[StorageEndpoint, ...]:
    return (StorageEndpoint('localhost', 5001, Path('server_1/')),)


@dataclass(frozen=True)
class ServiceConfig:
    """Shard store configuration."""
    # Network
    host: str = '0.0.0.0'
    port: int = DEFAULT_COORDINATOR_PORT

    # Storage nodes, index i stores shard i+1
    endpoints: Tuple[StorageEndpoint, ...] = field(default_factory=_default_endpoints)

    # Client
    download_dir: Path = Path('client_downloads/')

    # Transfers
    chunk_size: int = TRANSFER_CHUNK_SIZE
    connect_timeout: Optional[float] = 10.0

    # Logging
    log_level: str = 'INFO'

    def storage_node(self, number: int) -> StorageEndpoint:
        """
        Get storage node `number` (1-based, as in the properties file).

        Raises:
            ConfigurationError: if no such node is configured
        """
        if number < 1 or number > len(self.endpoints):
            raise ConfigurationError(
                f"No configuration found for storage node {number}",
                {'configured': len(self.endpoints)}
            )
        return self.endpoints[number - 1]

    @classmethod
    def from_properties(cls, properties: Dict[str, str]) -> 'ServiceConfig':
        """Build a configuration from parsed properties."""
        config = cls()

        port = properties.get('port')
        if port is not None:
            try:
                config = replace(config, port=int(port))
            except ValueError:
                raise ConfigurationError("Invalid coordinator port", {'port': port})

        endpoints = []
        index = 1
        while True:
            port_value = properties.get(f'slave.port{index}')
            dir_value = properties.get(f'slave.directory.{index}')
            if port_value is None or dir_value is None:
                break

            try:
                endpoints.append(StorageEndpoint(
                    host=properties.get(f'slave.host{index}', 'localhost'),
                    port=int(port_value),
                    directory=Path(dir_value),
                ))
            except ValueError:
                logger.error(f"Invalid port for slave.port{index}: {port_value}")
            index += 1

        config = replace(config, endpoints=tuple(endpoints))

        download_dir = properties.get('client.download.directory')
        if download_dir:
            config = replace(config, download_dir=Path(download_dir))

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'ServiceConfig':
        """
        Load configuration from a properties file.

        A missing file gives the defaults: coordinator on port 5000 and a
        single storage node on localhost:5001 storing into server_1/.
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Configuration file {path} not found, using defaults")
            return cls()

        with open(path, encoding='utf-8') as f:
            properties = parse_properties(f.read())

        config = cls.from_properties(properties)
        logger.debug(f"Loaded {len(config.endpoints)} storage nodes from {path}")
        return config

    def with_env(self) -> 'ServiceConfig':
        """Apply SHARDSTORE_* environment overrides."""
        load_dotenv()

        config = self
        host = os.getenv('SHARDSTORE_HOST')
        if host:
            config = replace(config, host=host)

        port = os.getenv('SHARDSTORE_PORT')
        if port:
            try:
                config = replace(config, port=int(port))
            except ValueError:
                raise ConfigurationError("Invalid coordinator port",
                                         {'SHARDSTORE_PORT': port})

        download_dir = os.getenv('SHARDSTORE_DOWNLOAD_DIR')
        if download_dir:
            config = replace(config, download_dir=Path(download_dir))

        timeout = os.getenv('SHARDSTORE_CONNECT_TIMEOUT')
        if timeout:
            try:
                config = replace(config, connect_timeout=float(timeout) or None)
            except ValueError:
                raise ConfigurationError("Invalid connect timeout",
                                         {'SHARDSTORE_CONNECT_TIMEOUT': timeout})

        log_level = os.getenv('SHARDSTORE_LOG_LEVEL')
        if log_level:
            config = replace(config, log_level=log_level.upper())

        return config


def parse_properties(text: str) -> Dict[str, str]:
    """
    Parse a key/value properties document.

    Accepts `key=value`, `key: value` and `key value` lines. Lines starting
    with `#` or `!` are comments.
    """
    properties = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line[0] in '#!':
            continue

        # First separator wins
        positions = [pos for pos in (line.find('='), line.find(':'), line.find(' '))
                     if pos != -1]
        if not positions:
            properties[line] = ''
            continue

        split_at = min(positions)
        key = line[:split_at].strip()
        value = line[split_at + 1:].strip()
        if value[:1] in ('=', ':'):
            value = value[1:].strip()
        properties[key] = value

    return properties


def load_config(config_path: Optional[Path] = None) -> ServiceConfig:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
    return ServiceConfig.from_file(path).with_env()


# Example configuration file
EXAMPLE_CONFIG = """\
port=5000
slave.port1=5001
slave.directory.1=server_1/
slave.port2=5002
slave.directory.2=server_2/
slave.port3=5003
slave.directory.3=server_3/
client.download.directory=client_downloads/
"""
