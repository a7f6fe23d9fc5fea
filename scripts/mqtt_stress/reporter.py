"""Run reporting for MQTT stress tests.

This module provides the Reporter, which writes the configuration preamble
and the outcome summary into the test log and a JSON summary beside it.
Reporting is best-effort: a failed write is logged and never changes the
run's exit code.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging
    from pathlib import Path

    from .host import RunLogFiles
    from .models import BenchConfig, ExecutionResult


class Reporter:
    """Writes structured preamble and summary records for one run."""

    def __init__(self, log_files: RunLogFiles, logger: logging.Logger = default_logger) -> None:
        """Initialise reporter with the run's log file layout."""
        self.log_files = log_files
        self.logger = logger

    def write_preamble(self, config: BenchConfig, binary: Path | str) -> None:
        """Echo every resolved configuration value to the console and the test log."""
        report = config.as_report()
        self.logger.info("📋 Configuration loaded:")
        for key, value in report.items():
            self.logger.info("  %s: %s", key, value)

        lines = [
            "=== MQTT Stress Test ===",
            f"Started: {datetime.now(tz=UTC).isoformat()}",
            f"Binary: {binary}",
            "",
            "=== Configuration ===",
            *(f"{key}: {value}" for key, value in report.items()),
            "",
            "=== emqtt-bench output ===",
        ]
        self._append(self.log_files.test_log, lines)

    def write_summary(self, config: BenchConfig, result: ExecutionResult) -> None:
        """Record the outcome in the test log and as a JSON summary file."""
        summary = {
            "mode": result.mode.value,
            "exit_code": result.exit_code,
            "succeeded": result.succeeded,
            "duration_seconds": result.duration_seconds,
            "finished_at": result.finished_at,
            "test_log": str(result.log_file),
            "subscriber_log": str(result.subscriber_log) if result.subscriber_log else None,
            "startup_log": str(self.log_files.startup_log),
            "config": config.as_report(),
        }
        lines = [
            "",
            "=== Summary ===",
            f"Mode: {result.mode.value}",
            f"Exit code: {result.exit_code}",
            f"Duration: {result.duration_seconds:.1f}s",
            f"Finished: {result.finished_at}",
            f"Test log: {result.log_file}",
        ]
        if result.subscriber_log:
            lines.append(f"Subscriber log: {result.subscriber_log}")
        self._append(self.log_files.test_log, lines)

        try:
            self.log_files.summary_file.write_text(
                json.dumps(summary, indent=2) + "\n", encoding="utf-8"
            )
        except OSError as e:
            self.logger.warning(
                "⚠️ Could not write summary %s: %s", self.log_files.summary_file, e
            )

        if result.succeeded:
            self.logger.info("✅ Test completed. Logs saved to: %s", result.log_file)
        else:
            self.logger.error(
                "❌ Test failed with exit code %d. Logs saved to: %s",
                result.exit_code,
                result.log_file,
            )

    def _append(self, path: Path, lines: list[str]) -> None:
        try:
            with path.open("a", encoding="utf-8") as f:
                f.writelines(f"{line}\n" for line in lines)
        except OSError as e:
            self.logger.warning("⚠️ Could not write to %s: %s", path, e)
