"""Benchmark execution for each test mode.

This module provides the BenchmarkRunner, which drives emqtt-bench through
the requested test mode, tees its output into the run's test log and
produces the immutable ExecutionResult.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .bench_process import BenchProcess
from .command_builder import build_command
from .errors import BenchmarkRunError
from .logger import logger as default_logger
from .models import ExecutionResult, TestMode

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable
    from pathlib import Path

    from .host import RunLogFiles
    from .models import BenchConfig

# Exit status of coreutils timeout(1) when the time limit is hit
TIMEOUT_EXIT_CODE = 124
# A subscriber that outlives --kill-after ends with SIGKILL instead, reported
# as 128 + 9 by timeout(1) or as -9 when timeout(1) kills itself with it
KILLED_EXIT_CODES = frozenset({128 + 9, -9})
TIMEOUT_KILL_AFTER_SECONDS = 10
SETTLE_SECONDS = 5.0
STOP_GRACE_SECONDS = 10.0


class BenchmarkRunner:
    """Runs emqtt-bench for a configured test mode.

    ``connect`` and ``publish`` run to completion, ``subscribe`` runs under a
    wall-clock limit equal to the test duration, and ``full`` runs a background
    subscriber for the lifetime of a foreground publisher.
    """

    def __init__(
        self,
        config: BenchConfig,
        binary: Path | str,
        log_files: RunLogFiles,
        logger: logging.Logger = default_logger,
        *,
        settle_seconds: float = SETTLE_SECONDS,
        stop_grace_seconds: float = STOP_GRACE_SECONDS,
        kill_after_seconds: int = TIMEOUT_KILL_AFTER_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialise benchmark runner.

        Args:
            config: Resolved run configuration.
            binary: emqtt-bench executable.
            log_files: Paths for this run's logs.
            logger: Run logger; emqtt-bench output is echoed through it.
            settle_seconds: Pause around the publish phase in ``full`` mode.
            stop_grace_seconds: SIGTERM grace period before SIGKILL.
            kill_after_seconds: SIGKILL delay given to timeout(1) in ``subscribe`` mode.
            sleep: Sleep function, replaceable in tests.
        """
        self.config = config
        self.binary = str(binary)
        self.log_files = log_files
        self.logger = logger
        self.settle_seconds = settle_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.kill_after_seconds = kill_after_seconds
        self._sleep = sleep

    def run(self) -> ExecutionResult:
        """Execute the configured test mode.

        Returns:
            The execution result.

        Raises:
            BenchmarkRunError: If the ``full`` mode subscriber dies before publishing;
                its ``duration_seconds`` is set to the time spent before the abort.
        """
        mode = self.config.test_mode
        self.logger.info("🚀 Starting test type: %s", mode.value)
        started = time.monotonic()
        subscriber_log = None

        if mode is TestMode.SUBSCRIBE:
            exit_code = self.run_subscribe()
        elif mode is TestMode.FULL:
            try:
                exit_code = self.run_full()
            except BenchmarkRunError as e:
                e.duration_seconds = round(time.monotonic() - started, 3)
                raise
            subscriber_log = self.log_files.subscriber_log
        else:
            exit_code = self.run_foreground(mode)

        return ExecutionResult(
            mode=mode,
            exit_code=exit_code,
            log_file=self.log_files.test_log,
            duration_seconds=round(time.monotonic() - started, 3),
            finished_at=datetime.now(tz=UTC).isoformat(),
            subscriber_log=subscriber_log,
        )

    def command(self, mode: TestMode) -> list[str]:
        """Build the emqtt-bench command for a single phase."""
        return build_command(self.binary, self.config, mode)

    def run_foreground(self, mode: TestMode) -> int:
        """Run one phase to completion, teeing output into the test log.

        Returns:
            emqtt-bench's exit code.
        """
        self.logger.info("🧪 Running %s test...", mode.value)
        return self._stream(self.command(mode))

    def run_subscribe(self) -> int:
        """Run the subscriber for the configured duration.

        Returns:
            0 when the duration elapsed, even if the subscriber had to be killed,
            otherwise the subscriber's exit code.
        """
        duration = self.config.duration_seconds
        self.logger.info("🧪 Running subscribe test for %ds...", duration)
        command = [
            "timeout",
            f"--kill-after={self.kill_after_seconds}",
            str(duration),
            *self.command(TestMode.SUBSCRIBE),
        ]
        started = time.monotonic()
        exit_code = self._stream(command)
        reached_duration = time.monotonic() - started >= duration
        if exit_code == TIMEOUT_EXIT_CODE or (
            exit_code in KILLED_EXIT_CODES and reached_duration
        ):
            self.logger.info("⏱️ Subscribe test reached its %ds duration", duration)
            return 0
        return exit_code

    def run_full(self) -> int:
        """Run subscribers in the background while publishers run in the foreground.

        Returns:
            The publisher's exit code.

        Raises:
            BenchmarkRunError: If the subscriber is not alive after the settle period.
        """
        self.logger.info("🧪 Running full test (publish + subscribe)...")
        subscriber_log = self.log_files.subscriber_log

        with subscriber_log.open("w", encoding="utf-8") as sub_output:
            subscriber = BenchProcess(self.command(TestMode.SUBSCRIBE), self.logger)
            self.logger.info("📡 Starting subscribers (output: %s)...", subscriber_log)
            subscriber.start(sub_output)
            try:
                self._sleep(self.settle_seconds)
                if not subscriber.is_alive():
                    code = subscriber.wait()
                    self._merge_subscriber_log()
                    msg = (
                        f"Subscriber exited with code {code} before publishing started; "
                        f"see {subscriber_log}"
                    )
                    raise BenchmarkRunError(msg, exit_code=code or 1)

                self.logger.info("📤 Starting publishers...")
                exit_code = self.run_foreground(TestMode.PUBLISH)
                self._sleep(self.settle_seconds)
            finally:
                if subscriber.is_alive():
                    self.logger.info("🛑 Stopping subscribers...")
                subscriber.terminate(self.stop_grace_seconds)

        self._merge_subscriber_log()
        return exit_code

    def _stream(self, command: list[str]) -> int:
        with self.log_files.test_log.open("a", encoding="utf-8") as log:
            return BenchProcess(command, self.logger).stream_to(log)

    def _merge_subscriber_log(self) -> None:
        """Append the subscriber's output to the combined test log."""
        subscriber_log = self.log_files.subscriber_log
        try:
            content = subscriber_log.read_text(encoding="utf-8", errors="replace")
            with self.log_files.test_log.open("a", encoding="utf-8") as log:
                log.write(f"\n===== Subscriber output ({subscriber_log.name}) =====\n")
                log.write(content)
        except OSError as e:
            self.logger.warning("⚠️ Could not merge subscriber log: %s", e)
