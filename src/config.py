"""Runner configuration.

Settings are immutable values. They are normally built from command-line
arguments, optionally starting from a YAML file:

    port: 2181
    tick_time: 3000
    temp_root: /var/tmp
    tls:
      secure: true
      key_store: /etc/zk/keystore.p12
      key_store_password: changeit
      trust_store: /etc/zk/truststore.p12
      trust_store_password: changeit
    probe:
      retries: 30
      retry_delay: 0.25
      connect_timeout: 5.0
"""

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from zkserver.server import DEFAULT_TICK_TIME

DEFAULT_PORT = 2181
DEFAULT_RETRIES = 30
DEFAULT_RETRY_DELAY = 0.25
DEFAULT_CONNECT_TIMEOUT = 5.0


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class TLSConfig:
    """TLS settings shared by the server and the readiness probe.

    When secure is False none of the store fields are consulted.
    """
    secure: bool = False
    key_store: str = ''
    key_store_password: str = field(default='', repr=False)
    trust_store: str = ''
    trust_store_password: str = field(default='', repr=False)

    def __post_init__(self):
        if self.secure and not (self.key_store and self.trust_store):
            raise ConfigError("TLS requires both a key-store and a trust-store path")


@dataclass(frozen=True)
class ProbeSettings:
    """Retry budget for the readiness probe."""
    retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __post_init__(self):
        if self.retries < 1:
            raise ConfigError(f"retries must be at least 1, got {self.retries}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must not be negative, got {self.retry_delay}")
        if self.connect_timeout <= 0:
            raise ConfigError(f"connect_timeout must be positive, got {self.connect_timeout}")


@dataclass(frozen=True)
class RunnerSettings:
    """Everything needed to run one embedded server instance."""
    port: int = DEFAULT_PORT
    tls: TLSConfig = field(default_factory=TLSConfig)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    tick_time: int = DEFAULT_TICK_TIME
    temp_root: Optional[Path] = None

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.tick_time <= 0:
            raise ConfigError(f"tick_time must be positive, got {self.tick_time}")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _build(cls, data, section: str):
    """Build a settings dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{section}': {', '.join(unknown)}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid '{section}' settings: {e}") from e


def _check_types(values: dict, types: dict, section: str) -> None:
    for key, expected in types.items():
        if key in values and not isinstance(values[key], expected):
            raise ConfigError(f"'{section}.{key}' has wrong type: {values[key]!r}")


def load_settings(path: Path) -> RunnerSettings:
    """Load runner settings from a YAML file.

    Args:
        path: YAML file path

    Returns:
        RunnerSettings with defaults for missing keys

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = _parse_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    tls_data = data.pop('tls', None)
    probe_data = data.pop('probe', None)
    if isinstance(tls_data, dict):
        _check_types(tls_data, {
            'secure': bool,
            'key_store': str,
            'key_store_password': str,
            'trust_store': str,
            'trust_store_password': str,
        }, 'tls')
    if isinstance(probe_data, dict):
        _check_types(probe_data, {
            'retries': int,
            'retry_delay': (int, float),
            'connect_timeout': (int, float),
        }, 'probe')
    _check_types(data, {'port': int, 'tick_time': int, 'temp_root': str}, 'settings')

    tls = _build(TLSConfig, tls_data, 'tls')
    probe = _build(ProbeSettings, probe_data, 'probe')
    if 'temp_root' in data:
        data['temp_root'] = Path(data['temp_root'])
    settings = _build(RunnerSettings, data, 'settings')
    return dataclasses.replace(settings, tls=tls, probe=probe)
