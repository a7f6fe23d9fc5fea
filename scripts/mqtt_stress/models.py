"""Data models and configuration classes for MQTT stress testing.

This module contains the dataclasses and enums shared across the
orchestrator, providing a single source of truth for the option table, the
resolved configuration record and the outcome of a benchmark run.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path

DEFAULT_PORT = 1883
DEFAULT_SSL_PORT = 8883


class TestMode(str, Enum):
    """Benchmark mode requested through the ``test-type`` option."""

    __test__ = False  # keep pytest from collecting this as a test class

    CONNECT = "connect"
    PUBLISH = "publish"
    SUBSCRIBE = "subscribe"
    FULL = "full"

    @classmethod
    def choices(cls) -> list[str]:
        """Return the accepted mode strings in declaration order."""
        return [mode.value for mode in cls]


class InstallMethod(str, Enum):
    """How the emqtt-bench binary is obtained."""

    BINARY = "binary"
    SOURCE = "source"


@dataclass(frozen=True)
class OptionSpec:
    """One recognised option: its metadata key, config field and default."""

    key: str
    field: str
    default: str

    @property
    def env_var(self) -> str:
        """Environment variable name: upper-cased key with hyphens as underscores."""
        return self.key.upper().replace("-", "_")


# Resolution order matters: use-ssl must come before mqtt-port so the port
# default can depend on it.
OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("mqtt-host", "mqtt_host", ""),
    OptionSpec("use-ssl", "use_ssl", "false"),
    OptionSpec("mqtt-port", "mqtt_port", str(DEFAULT_PORT)),
    OptionSpec("mqtt-username", "mqtt_username", ""),
    OptionSpec("mqtt-password", "mqtt_password", ""),
    OptionSpec("test-type", "test_mode", TestMode.CONNECT.value),
    OptionSpec("connections", "connections", "100"),
    OptionSpec("interval", "interval_ms", "1000"),
    OptionSpec("topic", "topic", "bench/%i"),
    OptionSpec("payload-size", "payload_size", "256"),
    OptionSpec("qos", "qos", "0"),
    OptionSpec("duration", "duration_seconds", "60"),
    OptionSpec("emqtt-version", "emqtt_version", "0.6.1"),
    OptionSpec("ssl-cert-file", "ssl_cert_file", ""),
    OptionSpec("ssl-key-file", "ssl_key_file", ""),
    OptionSpec("ssl-ca-file", "ssl_ca_file", ""),
    OptionSpec("use-websocket", "use_websocket", "false"),
    OptionSpec("install-method", "install_method", InstallMethod.BINARY.value),
    OptionSpec("install-dir", "install_dir", "/opt/emqtt-bench"),
    OptionSpec("log-dir", "log_dir", "/var/log/emqtt-bench"),
    OptionSpec("download-url", "download_url", ""),
)

OPTIONS_BY_KEY = {option.key: option for option in OPTIONS}


@dataclass(frozen=True)
class BenchConfig:
    """Fully resolved configuration for one stress-test run.

    Built once by the resolver and never mutated afterwards; every field has
    already been parsed into its proper type.
    """

    mqtt_host: str
    mqtt_port: int = DEFAULT_PORT
    mqtt_username: str = ""
    mqtt_password: str = ""
    test_mode: TestMode = TestMode.CONNECT
    connections: int = 100
    interval_ms: int = 1000
    topic: str = "bench/%i"
    payload_size: int = 256
    qos: int = 0
    duration_seconds: int = 60
    emqtt_version: str = "0.6.1"
    use_ssl: bool = False
    ssl_cert_file: str = ""
    ssl_key_file: str = ""
    ssl_ca_file: str = ""
    use_websocket: bool = False
    install_method: InstallMethod = InstallMethod.BINARY
    install_dir: str = "/opt/emqtt-bench"
    log_dir: str = "/var/log/emqtt-bench"
    download_url: str = ""

    @property
    def has_credentials(self) -> bool:
        """Whether both username and password are set."""
        return bool(self.mqtt_username and self.mqtt_password)

    @property
    def install_path(self) -> Path:
        """Installation directory as a path."""
        return Path(self.install_dir)

    @property
    def log_path(self) -> Path:
        """Log directory as a path."""
        return Path(self.log_dir)

    def as_report(self) -> dict[str, str]:
        """Return every field as a printable string, with the password masked."""
        report = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "mqtt_password" and value:
                value = "********"
            elif isinstance(value, Enum):
                value = value.value
            report[item.name] = str(value)
        return report


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one benchmark run, created once the run has finished."""

    mode: TestMode
    exit_code: int
    log_file: Path
    duration_seconds: float
    finished_at: str
    subscriber_log: Path | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the run ended with exit code zero."""
        return self.exit_code == 0
