"""Package installation with apt lock handling and retries.

Freshly booted cloud images often run unattended-upgrades while the startup
script executes, so every apt operation first waits (bounded) for the dpkg
and apt locks, and update/install are retried with a fixed backoff.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import time
from typing import TYPE_CHECKING

from .errors import EnvironmentSetupError
from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable, Iterable, Mapping

LOCK_FILES = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/dpkg/lock",
    "/var/lib/apt/lists/lock",
    "/var/cache/apt/archives/lock",
)
PACKAGE_MANAGER_PROCESSES = ("apt", "apt-get", "dpkg", "unattended-upgr")

MAX_LOCK_WAIT_SECONDS = 300
LOCK_POLL_SECONDS = 5
RETRY_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 10
STALE_KILL_GRACE_SECONDS = 5
COMMAND_TIMEOUT_SECONDS = 900

# Tools the orchestrator itself shells out to
BASE_PACKAGES = ("ca-certificates", "coreutils", "psmisc", "procps")


class AptPackageManager:
    """Runs apt-get non-interactively with lock waiting and bounded retries."""

    def __init__(
        self,
        logger: logging.Logger = default_logger,
        *,
        max_lock_wait: float = MAX_LOCK_WAIT_SECONDS,
        lock_poll_interval: float = LOCK_POLL_SECONDS,
        attempts: int = RETRY_ATTEMPTS,
        backoff: float = RETRY_BACKOFF_SECONDS,
        kill_stale: bool = True,
        run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        kill: Callable[[int, int], None] = os.kill,
    ) -> None:
        """Initialise package manager with its lock and retry policy.

        The process-level callables are injectable so the polling and retry
        loops can be exercised without touching the host.
        """
        self.logger = logger
        self.max_lock_wait = max_lock_wait
        self.lock_poll_interval = lock_poll_interval
        self.attempts = attempts
        self.backoff = backoff
        self.kill_stale = kill_stale
        self._run = run
        self._sleep = sleep
        self._clock = clock
        self._kill = kill

    @staticmethod
    def available() -> bool:
        """Whether apt-get exists on this host."""
        return shutil.which("apt-get") is not None

    def is_locked(self) -> bool:
        """Check whether any process holds a dpkg/apt lock file.

        Returns:
            True if a lock holder was found.
        """
        try:
            result = self._run(
                ["fuser", *LOCK_FILES], check=False, capture_output=True, text=True, timeout=10
            )
        except FileNotFoundError:
            # No fuser on this image; fall back to looking for the processes
            return bool(self.package_manager_pids())
        except subprocess.TimeoutExpired:
            return True
        return result.returncode == 0

    def wait_for_lock(self) -> bool:
        """Poll until the package-manager lock is released or the wait bound is hit.

        Returns:
            True if the lock was released, False if it was still held at the deadline.
        """
        deadline = self._clock() + self.max_lock_wait
        announced = False
        while self.is_locked():
            if self._clock() >= deadline:
                self.logger.warning(
                    "⚠️ Package manager lock still held after %ds, proceeding anyway",
                    self.max_lock_wait,
                )
                return False
            if not announced:
                self.logger.info("⏳ Waiting for package manager lock to be released...")
                announced = True
            self._sleep(self.lock_poll_interval)
        return True

    def package_manager_pids(self) -> list[int]:
        """Find running package-manager processes.

        Returns:
            Process ids, excluding this process.
        """
        pids: list[int] = []
        for name in PACKAGE_MANAGER_PROCESSES:
            try:
                result = self._run(
                    ["pgrep", "-x", name], check=False, capture_output=True, text=True, timeout=10
                )
            except (FileNotFoundError, subprocess.TimeoutExpired):
                continue
            pids.extend(int(pid) for pid in result.stdout.split() if pid.isdigit())
        return [pid for pid in pids if pid != os.getpid()]

    def terminate_stale(self) -> None:
        """Stop package-manager processes still holding the lock and repair dpkg state."""
        pids = self.package_manager_pids()
        if not pids:
            return
        self.logger.warning("🧹 Terminating stale package manager processes: %s", pids)
        self._signal_all(pids, signal.SIGTERM)
        self._sleep(STALE_KILL_GRACE_SECONDS)
        self._signal_all(pids, signal.SIGKILL)
        self._run(
            ["dpkg", "--configure", "-a"],
            check=False,
            capture_output=True,
            text=True,
            env=self._env(),
            timeout=COMMAND_TIMEOUT_SECONDS,
        )

    def _signal_all(self, pids: Iterable[int], sig: int) -> None:
        for pid in pids:
            try:
                self._kill(pid, sig)
            except ProcessLookupError:
                continue
            except PermissionError as e:
                self.logger.warning("⚠️ Cannot signal process %s: %s", pid, e)

    def prepare_lock(self) -> None:
        """Wait for the lock; as a last resort clear stale holders."""
        if not self.wait_for_lock() and self.kill_stale:
            self.terminate_stale()

    def update(self) -> None:
        """Refresh package lists."""
        self._run_with_retries(["apt-get", "update", "-qq"], "package list update")

    def install(self, packages: Iterable[str]) -> None:
        """Install packages."""
        packages = list(packages)
        if not packages:
            return
        self.logger.info("📦 Installing packages: %s", " ".join(packages))
        self._run_with_retries(
            ["apt-get", "install", "-y", "-qq", *packages], "package installation"
        )

    def ensure_commands(self, commands: Mapping[str, str]) -> None:
        """Install the packages providing any command missing from PATH.

        Args:
            commands: Mapping of command name to the package that provides it.
        """
        missing = sorted({pkg for cmd, pkg in commands.items() if shutil.which(cmd) is None})
        if missing:
            self.update()
            self.install(missing)

    def _run_with_retries(self, command: list[str], description: str) -> None:
        """Run an apt command, retrying with a fixed backoff.

        Raises:
            EnvironmentSetupError: If every attempt fails.
        """
        for attempt in range(1, self.attempts + 1):
            self.prepare_lock()
            self.logger.debug("Running: %s", " ".join(command))
            try:
                result = self._run(
                    command,
                    check=False,
                    capture_output=True,
                    text=True,
                    env=self._env(),
                    timeout=COMMAND_TIMEOUT_SECONDS,
                )
            except subprocess.TimeoutExpired:
                self.logger.warning(
                    "%s timed out (attempt %d/%d)", description, attempt, self.attempts
                )
            else:
                if result.returncode == 0:
                    return
                self.logger.warning(
                    "%s failed with exit code %d (attempt %d/%d): %s",
                    description,
                    result.returncode,
                    attempt,
                    self.attempts,
                    (result.stderr or "").strip()[-500:],
                )
            if attempt < self.attempts:
                self.logger.info("Retrying in %ds...", self.backoff)
                self._sleep(self.backoff)

        msg = f"{description} failed after {self.attempts} attempts"
        raise EnvironmentSetupError(msg)

    @staticmethod
    def _env() -> dict[str, str]:
        return {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}
