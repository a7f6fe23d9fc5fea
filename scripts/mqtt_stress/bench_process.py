"""Process handle for emqtt-bench invocations.

This module wraps ``subprocess.Popen`` with the lifecycle the test runner
needs: start in the foreground with output teed to the console and a log
file, or in the background with output sent to a file; then poll, signal,
wait and terminate.
"""

from __future__ import annotations

import signal
import subprocess
from typing import IO, TYPE_CHECKING

from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable, Sequence

SECRET_FLAGS = frozenset({"-P", "--password"})


def redact(command: Sequence[str]) -> str:
    """Render a command for logging with password values hidden.

    Returns:
        The space-joined command line.
    """
    rendered = []
    hide_next = False
    for part in command:
        rendered.append("********" if hide_next else part)
        hide_next = part in SECRET_FLAGS
    return " ".join(rendered)


class BenchProcess:
    """One emqtt-bench sub-process and its lifecycle operations."""

    def __init__(
        self,
        command: Sequence[str],
        logger: logging.Logger = default_logger,
        popen: Callable[..., subprocess.Popen[str]] = subprocess.Popen,
    ) -> None:
        """Initialise process handle; nothing is started yet."""
        self.command = list(command)
        self.logger = logger
        self._popen = popen
        self.process: subprocess.Popen[str] | None = None

    @property
    def pid(self) -> int | None:
        """Process id once started."""
        return self.process.pid if self.process else None

    def start(self, output: IO[str]) -> None:
        """Start in the background with stdout and stderr written to ``output``."""
        self.logger.debug("Starting background command: %s", redact(self.command))
        self.process = self._popen(
            self.command, stdout=output, stderr=subprocess.STDOUT, text=True
        )

    def stream_to(self, log: IO[str]) -> int:
        """Run to completion, copying every output line to the logger and ``log``.

        Returns:
            The process exit code.
        """
        self.logger.debug("Executing streaming command: %s", redact(self.command))
        self.process = self._popen(
            self.command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            errors="replace",
        )
        if self.process.stdout is not None:
            for line in self.process.stdout:
                log.write(line)
                log.flush()
                if line.strip():
                    self.logger.info(line.rstrip())
        return self.process.wait()

    def is_alive(self) -> bool:
        """Non-blocking liveness check."""
        return self.process is not None and self.process.poll() is None

    def send_signal(self, sig: int) -> None:
        """Deliver ``sig`` if the process is still running."""
        if self.is_alive() and self.process is not None:
            self.process.send_signal(sig)

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit.

        Returns:
            The exit code, or None if the process is still running after ``timeout``.
        """
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self, grace_seconds: float = 10.0) -> int | None:
        """Stop the process: SIGTERM, then SIGKILL if it ignores the grace period.

        Returns:
            The exit code, or None if the process was never started.
        """
        if self.process is None:
            return None
        if not self.is_alive():
            return self.process.returncode

        self.logger.debug("Sending SIGTERM to process %s", self.pid)
        self.send_signal(signal.SIGTERM)
        code = self.wait(grace_seconds)
        if code is None:
            self.logger.warning(
                "Process %s ignored SIGTERM for %.0fs, killing", self.pid, grace_seconds
            )
            self.process.kill()
            code = self.process.wait()
        return code
