"""Exceptions raised by the stress-test orchestrator.

Each class maps to one failure category; the entry script turns any of them
into a non-zero process exit code.
"""

from __future__ import annotations


class MqttStressError(Exception):
    """Base class for errors that should end the run without a traceback."""


class ConfigurationError(MqttStressError):
    """A required option is missing or a value cannot be used at all."""


class EnvironmentSetupError(MqttStressError):
    """The host could not be prepared for the benchmark."""


class BenchmarkRunError(MqttStressError):
    """A benchmark phase failed in a way that makes the run meaningless."""

    def __init__(
        self, message: str, exit_code: int = 1, duration_seconds: float = 0.0
    ) -> None:
        """Initialise BenchmarkRunError with message and the exit code to report.

        Args:
            message: The user-friendly error message.
            exit_code: Process exit code the run should end with.
            duration_seconds: Time the run took before it was aborted.
        """
        super().__init__(message)
        self.exit_code = exit_code
        self.duration_seconds = duration_seconds
