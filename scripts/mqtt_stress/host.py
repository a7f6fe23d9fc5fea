"""Host inspection and tuning for load generation.

This module detects the CPU architecture and OS release tag used to pick an
emqtt-bench artifact, raises the limits that cap how many client connections
one instance can open, and manages the timestamped files in the log
directory.
"""

from __future__ import annotations

import platform
import resource
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import EnvironmentSetupError
from .logger import logger as default_logger

if TYPE_CHECKING:
    import logging

ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

# Release tags emqtt-bench publishes Linux builds for
SUPPORTED_OS_TAGS = frozenset({
    "ubuntu20.04",
    "ubuntu22.04",
    "ubuntu24.04",
    "debian10",
    "debian11",
    "debian12",
    "el7",
    "el8",
    "el9",
    "amzn2",
    "amzn2023",
})
# Oldest glibc among the supported tags, so it runs on the widest range of hosts
FALLBACK_OS_TAG = "ubuntu20.04"
EL_FAMILY = frozenset({"rhel", "centos", "rocky", "almalinux", "ol"})

OS_RELEASE_PATH = Path("/etc/os-release")
PORT_RANGE_PATH = Path("/proc/sys/net/ipv4/ip_local_port_range")
TW_REUSE_PATH = Path("/proc/sys/net/ipv4/tcp_tw_reuse")
EPHEMERAL_PORT_RANGE = "1024 65535"

LOG_KINDS = ("startup", "test", "subscribe", "summary")
KEEP_LOGS_PER_KIND = 20


def detect_arch(machine: str | None = None) -> str:
    """Map the machine type to an artifact architecture suffix.

    Returns:
        ``amd64`` or ``arm64``.

    Raises:
        EnvironmentSetupError: If the architecture is not supported.
    """
    machine = (machine or platform.machine()).lower()
    try:
        return ARCH_ALIASES[machine]
    except KeyError as e:
        msg = f"Unsupported architecture: {machine}"
        raise EnvironmentSetupError(msg) from e


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``/etc/os-release`` content into a dictionary.

    Returns:
        Mapping of keys to unquoted values.
    """
    info = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        info[key.strip()] = value.strip().strip("\"'")
    return info


def os_tag_for(info: dict[str, str]) -> str | None:
    """Compute the release tag for parsed os-release data.

    Returns:
        A tag like ``ubuntu22.04`` or ``el9``, or None if the distribution is unknown.
    """
    distro = info.get("ID", "").lower()
    version = info.get("VERSION_ID", "")
    major = version.split(".", 1)[0]
    if not version:
        return None
    if distro == "ubuntu":
        return f"ubuntu{version}"
    if distro == "debian":
        return f"debian{major}"
    if distro in EL_FAMILY:
        return f"el{major}"
    if distro == "amzn":
        return f"amzn{major}"
    return None


def detect_os(
    os_release: Path = OS_RELEASE_PATH, logger: logging.Logger = default_logger
) -> str:
    """Detect the OS release tag, falling back to the most compatible build.

    Returns:
        A supported release tag.
    """
    try:
        info = parse_os_release(os_release.read_text(encoding="utf-8"))
    except OSError:
        logger.warning("⚠️ Cannot detect OS, defaulting to %s", FALLBACK_OS_TAG)
        return FALLBACK_OS_TAG

    tag = os_tag_for(info)
    if tag in SUPPORTED_OS_TAGS:
        return tag

    logger.warning(
        "⚠️ Unknown OS distribution %s %s, defaulting to %s",
        info.get("ID", "?"),
        info.get("VERSION_ID", "?"),
        FALLBACK_OS_TAG,
    )
    return FALLBACK_OS_TAG


class HostTuner:
    """Raises resource limits so the host can hold many MQTT connections.

    Every step is best-effort: the benchmark still runs with stock limits, it
    just tops out earlier.
    """

    def __init__(
        self,
        logger: logging.Logger = default_logger,
        port_range_path: Path = PORT_RANGE_PATH,
        tw_reuse_path: Path = TW_REUSE_PATH,
    ) -> None:
        """Initialise host tuner with the kernel parameter paths to write."""
        self.logger = logger
        self.port_range_path = port_range_path
        self.tw_reuse_path = tw_reuse_path

    def tune(self) -> None:
        """Apply all tuning steps."""
        self.logger.info("⚙️ Tuning host limits for load generation...")
        self.raise_file_limit()
        self._write_kernel_param(self.port_range_path, EPHEMERAL_PORT_RANGE)
        self._write_kernel_param(self.tw_reuse_path, "1")

    def raise_file_limit(self) -> int:
        """Raise the open-file soft limit to the hard limit; children inherit it.

        Returns:
            The soft limit in effect afterwards.
        """
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        if hard == resource.RLIM_INFINITY or soft >= hard:
            self.logger.debug("File descriptor limit already %s", soft)
            return soft
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (hard, hard))
        except (ValueError, OSError) as e:
            self.logger.warning("⚠️ Could not raise file descriptor limit: %s", e)
            return soft
        self.logger.info("📈 File descriptor limit raised %s → %s", soft, hard)
        return hard

    def _write_kernel_param(self, path: Path, value: str) -> None:
        try:
            path.write_text(f"{value}\n", encoding="utf-8")
        except OSError as e:
            self.logger.warning("⚠️ Could not set %s: %s", path, e)
        else:
            self.logger.info("📈 %s = %s", path, value)


class RunLogFiles:
    """Timestamped log file paths for one run inside the log directory."""

    def __init__(self, log_dir: Path, timestamp: str | None = None) -> None:
        """Initialise log file paths for a run started at ``timestamp``."""
        self.log_dir = log_dir
        self.timestamp = timestamp or datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")

    @property
    def startup_log(self) -> Path:
        """Orchestrator's own log."""
        return self.log_dir / f"startup-{self.timestamp}.log"

    @property
    def test_log(self) -> Path:
        """Combined emqtt-bench output."""
        return self.log_dir / f"test-{self.timestamp}.log"

    @property
    def subscriber_log(self) -> Path:
        """Background subscriber output in ``full`` mode."""
        return self.log_dir / f"subscribe-{self.timestamp}.log"

    @property
    def summary_file(self) -> Path:
        """Structured run summary."""
        return self.log_dir / f"summary-{self.timestamp}.json"

    def prepare(self) -> None:
        """Create the log directory."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def prune(
        self, keep: int = KEEP_LOGS_PER_KIND, logger: logging.Logger = default_logger
    ) -> None:
        """Delete the oldest run files of each kind beyond ``keep``."""
        for kind in LOG_KINDS:
            # Timestamps sort lexically in chronological order
            old_files = sorted(self.log_dir.glob(f"{kind}-*"), reverse=True)[keep:]
            for path in old_files:
                try:
                    path.unlink()
                except OSError as e:
                    logger.debug("Could not remove old log %s: %s", path, e)
                else:
                    logger.debug("Removed old log %s", path)
