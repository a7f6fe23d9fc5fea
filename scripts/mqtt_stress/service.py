"""systemd unit installation for unattended stress-test runs.

This module renders a service unit that runs the orchestrator with the same
configuration sources, installs it and starts it via systemctl.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import EnvironmentSetupError
from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable, Sequence

SERVICE_NAME = "emqtt-bench"
UNIT_DIR = Path("/etc/systemd/system")

UNIT_TEMPLATE = """\
[Unit]
Description=emqtt-bench MQTT stress test
Wants=network-online.target
After=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
Restart=on-failure
RestartSec=30
LimitNOFILE=1048576
StandardOutput=append:{log_file}
StandardError=append:{log_file}

[Install]
WantedBy=multi-user.target
"""


def render_unit(command: Sequence[str], log_dir: Path) -> str:
    """Render the unit file for ``command``.

    Returns:
        Unit file content.
    """
    exec_start = " ".join(_quote(part) for part in command)
    return UNIT_TEMPLATE.format(exec_start=exec_start, log_file=log_dir / "service.log")


def _quote(part: str) -> str:
    if not part or any(ch in part for ch in " \t\"'\\"):
        escaped = part.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return part


def service_command(script: Path, arguments: Sequence[str] = ()) -> list[str]:
    """Build the command the service runs: this orchestrator with the given run flags.

    Returns:
        Argument vector for ``ExecStart``.
    """
    return [sys.executable, str(script.resolve()), *arguments]


class ServiceInstaller:
    """Installs, enables and starts the stress-test systemd unit."""

    def __init__(
        self,
        logger: logging.Logger = default_logger,
        unit_dir: Path = UNIT_DIR,
        run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        """Initialise service installer."""
        self.logger = logger
        self.unit_dir = unit_dir
        self._run = run

    @property
    def unit_path(self) -> Path:
        """Where the unit file is written."""
        return self.unit_dir / f"{SERVICE_NAME}.service"

    def install(self, command: Sequence[str], log_dir: Path) -> Path:
        """Write the unit, reload systemd, then enable and start the service.

        Returns:
            Path of the written unit file.

        Raises:
            EnvironmentSetupError: If the unit cannot be written or systemctl fails.
        """
        self.logger.info("🛠️ Installing systemd service %s", self.unit_path)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(render_unit(command, log_dir), encoding="utf-8")
        except OSError as e:
            msg = f"Cannot write unit file {self.unit_path}: {e}"
            raise EnvironmentSetupError(msg) from e

        for args in (
            ["daemon-reload"],
            ["enable", f"{SERVICE_NAME}.service"],
            ["start", f"{SERVICE_NAME}.service"],
        ):
            self._systemctl(args)

        self.logger.info("✅ Service %s started; output in %s", SERVICE_NAME, log_dir)
        return self.unit_path

    def _systemctl(self, args: list[str]) -> None:
        """Run one systemctl command.

        Raises:
            EnvironmentSetupError: If systemctl is missing or the command fails.
        """
        command = ["systemctl", *args]
        try:
            result = self._run(command, check=False, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            msg = f"Command '{' '.join(command)}' could not run: {e}"
            raise EnvironmentSetupError(msg) from e
        if result.returncode != 0:
            msg = (
                f"Command '{' '.join(command)}' failed with exit code {result.returncode}: "
                f"{(result.stderr or '').strip()}"
            )
            raise EnvironmentSetupError(msg)
