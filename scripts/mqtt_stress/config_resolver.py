"""Configuration resolution from metadata, environment and defaults.

Each recognised option is looked up in the metadata service first, then in
the environment, and finally taken from its default. Raw strings are parsed
into a typed ``BenchConfig`` here so that nothing downstream deals with
untyped values.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from .errors import ConfigurationError
from .logger import logger as default_logger
from .models import (
    DEFAULT_PORT,
    DEFAULT_SSL_PORT,
    OPTIONS,
    BenchConfig,
    InstallMethod,
    OptionSpec,
    TestMode,
)

if TYPE_CHECKING:
    import logging

TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
FALSE_VALUES = frozenset({"false", "0", "no", "off"})
MAX_PORT = 65535
MAX_QOS = 2

# Integer options and the smallest value each accepts
INT_MINIMUMS = {
    "mqtt_port": 1,
    "connections": 1,
    "interval_ms": 1,
    "payload_size": 0,
    "qos": 0,
    "duration_seconds": 1,
}
INT_MAXIMUMS = {"mqtt_port": MAX_PORT, "qos": MAX_QOS}
BOOL_FIELDS = frozenset({"use_ssl", "use_websocket"})


class LookupSource(Protocol):
    """Anything exposing ``get(name) -> str | None``."""

    def get(self, name: str, /) -> str | None: ...


class ConfigResolver:
    """Resolves every option exactly once with fixed source precedence."""

    def __init__(
        self,
        metadata: LookupSource | None,
        environment: LookupSource | None,
        logger: logging.Logger = default_logger,
    ) -> None:
        """Initialise resolver with its lookup sources.

        Args:
            metadata: Instance metadata source, keyed by option key.
            environment: Environment source, keyed by environment variable name.
            logger: Run logger for parse warnings.
        """
        self.metadata = metadata
        self.environment = environment
        self.logger = logger
        self.sources: dict[str, str] = {}

    def lookup(self, option: OptionSpec, default: str | None = None) -> str:
        """Resolve one raw option value and remember which source supplied it.

        Returns:
            The metadata value, else the environment value, else the default.
        """
        if self.metadata is not None:
            value = self.metadata.get(option.key)
            if value:
                self.sources[option.key] = "metadata"
                return value
        if self.environment is not None:
            value = self.environment.get(option.env_var)
            if value:
                self.sources[option.key] = "environment"
                return value
        self.sources[option.key] = "default"
        return option.default if default is None else default

    def resolve(self) -> BenchConfig:
        """Build the configuration record.

        Returns:
            The fully populated configuration.

        Raises:
            ConfigurationError: If the broker host is missing or the test mode
                is not recognised.
        """
        values: dict[str, object] = {}
        for option in OPTIONS:
            default = None
            if option.field == "mqtt_port":
                default = str(DEFAULT_SSL_PORT if values["use_ssl"] else DEFAULT_PORT)
            raw = self.lookup(option, default)
            if option.field == "mqtt_host" and not raw:
                msg = "mqtt-host is required but was not set in metadata or environment (MQTT_HOST)"
                raise ConfigurationError(msg)
            values[option.field] = self._parse(option, raw, default or option.default)

        return BenchConfig(**values)  # type: ignore[arg-type]

    def _parse(self, option: OptionSpec, raw: str, default: str) -> object:
        """Convert a raw string into the field's type.

        Returns:
            The parsed value, or the parsed default when ``raw`` is unusable.

        Raises:
            ConfigurationError: If the test mode is not recognised.
        """
        if option.field == "test_mode":
            try:
                return TestMode(raw.lower())
            except ValueError as e:
                msg = (
                    f"Unknown test type: {raw!r}. "
                    f"Available test types: {', '.join(TestMode.choices())}"
                )
                raise ConfigurationError(msg) from e

        if option.field == "install_method":
            try:
                return InstallMethod(raw.lower())
            except ValueError:
                self._warn_fallback(option, raw, default)
                return InstallMethod(default)

        if option.field in BOOL_FIELDS:
            lowered = raw.lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
            self._warn_fallback(option, raw, default)
            return default in TRUE_VALUES

        if option.field in INT_MINIMUMS:
            return self._parse_int(option, raw, default)

        return raw

    def _parse_int(self, option: OptionSpec, raw: str, default: str) -> int:
        """Parse an integer option, falling back to the default when out of range.

        Returns:
            The parsed integer.
        """
        try:
            value = int(raw)
        except ValueError:
            self._warn_fallback(option, raw, default)
            return int(default)

        minimum = INT_MINIMUMS[option.field]
        maximum = INT_MAXIMUMS.get(option.field)
        if value < minimum or (maximum is not None and value > maximum):
            self._warn_fallback(option, raw, default)
            return int(default)
        return value

    def _warn_fallback(self, option: OptionSpec, raw: str, default: str) -> None:
        self.logger.warning(
            "⚠️ Invalid value %r for %s, using default %r", raw, option.key, default
        )
