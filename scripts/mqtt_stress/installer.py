"""emqtt-bench installation: prebuilt release or build from source.

This module provides the environment preparer that makes an emqtt-bench
binary available on the instance, either by downloading a release archive
matched to the host's OS and architecture or by building the tool from its
git repository.
"""

from __future__ import annotations

import shutil
import subprocess
import tarfile
from pathlib import Path
from typing import TYPE_CHECKING

import requests

from .errors import EnvironmentSetupError
from .host import FALLBACK_OS_TAG, detect_arch, detect_os
from .logger import logger as default_logger
from .models import InstallMethod
from .package_manager import BASE_PACKAGES

if TYPE_CHECKING:
    import logging
    from collections.abc import Callable

    from .models import BenchConfig
    from .package_manager import AptPackageManager

RELEASE_URL_TEMPLATES = (
    "https://github.com/emqx/emqtt-bench/releases/download/{version}/"
    "emqtt-bench-{version}-{os_tag}-{arch}.tar.gz",
    "https://github.com/emqx/emqtt-bench/releases/download/v{version}/"
    "emqtt-bench-{version}-{os_tag}-{arch}.tar.gz",
)
SOURCE_REPO_URL = "https://github.com/emqx/emqtt-bench.git"
REBAR3_URL = "https://s3.amazonaws.com/rebar3/rebar3"

ARCHIVE_NAME = "emqtt-bench.tar.gz"
VERSION_MARKER = ".emqtt-bench-version"
BINARY_NAME = "emqtt_bench"
SOURCE_BINARY = Path("_build/emqtt_bench/rel/emqtt_bench/bin") / BINARY_NAME

# Command on PATH -> package providing it
BUILD_TOOLS = {
    "git": "git",
    "make": "make",
    "gcc": "build-essential",
    "cmake": "cmake",
    "erl": "erlang",
}
DOWNLOAD_TIMEOUT = (10, 120)
BUILD_TIMEOUT_SECONDS = 3600


def make_executable(path: Path) -> None:
    """Add execute permission for everyone who can read the file."""
    path.chmod(path.stat().st_mode | 0o111)


def candidate_urls(version: str, os_tag: str, arch: str, custom_url: str = "") -> list[str]:
    """List download locations in the order they should be tried.

    A custom mirror URL comes first and may use the ``{version}``, ``{os_tag}``
    and ``{arch}`` placeholders. The fallback OS tag is tried after the
    detected one.

    Returns:
        De-duplicated candidate URLs.
    """
    os_tags = [os_tag] if os_tag == FALLBACK_OS_TAG else [os_tag, FALLBACK_OS_TAG]
    urls = []
    if custom_url:
        urls.append(
            custom_url.replace("{version}", version)
            .replace("{os_tag}", os_tag)
            .replace("{arch}", arch)
        )
    for tag in os_tags:
        urls.extend(
            template.format(version=version, os_tag=tag, arch=arch)
            for template in RELEASE_URL_TEMPLATES
        )
    return list(dict.fromkeys(urls))


class ReleaseInstaller:
    """Downloads and unpacks a prebuilt emqtt-bench release."""

    def __init__(
        self,
        install_dir: Path,
        version: str,
        logger: logging.Logger = default_logger,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise release installer for ``version`` under ``install_dir``."""
        self.install_dir = install_dir
        self.version = version
        self.logger = logger
        self.session = session or requests.Session()

    def installed_binary(self) -> Path | None:
        """Return a previously installed binary of the requested version, if any."""
        marker = self.install_dir / VERSION_MARKER
        try:
            if marker.read_text(encoding="utf-8").strip() != self.version:
                return None
        except OSError:
            return None
        return self.find_binary()

    def find_binary(self) -> Path | None:
        """Locate the emqtt-bench launcher inside the install directory."""
        candidates = [
            self.install_dir / "bin" / BINARY_NAME,
            self.install_dir / BINARY_NAME,
            *sorted(self.install_dir.glob(f"*/bin/{BINARY_NAME}")),
        ]
        return next((path for path in candidates if path.is_file()), None)

    def install(self, urls: list[str]) -> Path:
        """Install from the first candidate URL that yields a usable archive.

        Returns:
            Path to the emqtt-bench binary.

        Raises:
            EnvironmentSetupError: If no candidate yields an archive containing the binary.
        """
        existing = self.installed_binary()
        if existing:
            self.logger.info("✅ emqtt-bench %s already installed at %s", self.version, existing)
            return existing

        self.install_dir.mkdir(parents=True, exist_ok=True)
        archive = self.install_dir / ARCHIVE_NAME

        for index, url in enumerate(urls, start=1):
            self.logger.info("⬇️ Downloading emqtt-bench (%d/%d): %s", index, len(urls), url)
            try:
                self._download(url, archive)
                self._extract(archive)
            except (requests.RequestException, tarfile.TarError, OSError) as e:
                self.logger.warning("⚠️ Candidate failed: %s", e)
                continue
            finally:
                archive.unlink(missing_ok=True)
            binary = self.find_binary()
            if binary is not None:
                break
            self.logger.warning("⚠️ Candidate archive has no %s binary: %s", BINARY_NAME, url)
        else:
            msg = (
                f"Failed to install emqtt-bench {self.version} from {len(urls)} locations; "
                "check that the version and OS combination is published"
            )
            raise EnvironmentSetupError(msg)

        make_executable(binary)
        (self.install_dir / VERSION_MARKER).write_text(f"{self.version}\n", encoding="utf-8")
        self.logger.info("✅ emqtt-bench installed successfully at %s", binary)
        return binary

    def _download(self, url: str, destination: Path) -> None:
        with self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()
            with destination.open("wb") as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)

    def _extract(self, archive: Path) -> None:
        self.logger.info("📦 Extracting %s...", archive.name)
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(self.install_dir, filter="data")


class SourceBuilder:
    """Builds emqtt-bench from its git repository."""

    def __init__(
        self,
        install_dir: Path,
        version: str,
        package_manager: AptPackageManager | None,
        logger: logging.Logger = default_logger,
        session: requests.Session | None = None,
        run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
        tools_dir: Path = Path("/usr/local/bin"),
    ) -> None:
        """Initialise source builder.

        Args:
            install_dir: Directory holding the source checkout.
            version: Git tag or branch to build.
            package_manager: Used to install missing build tools, None to skip.
            logger: Run logger.
            session: HTTP session for downloading rebar3.
            run: Subprocess runner.
            tools_dir: Where rebar3 is placed when missing.
        """
        self.source_dir = install_dir / "src"
        self.version = version
        self.package_manager = package_manager
        self.logger = logger
        self.session = session or requests.Session()
        self._run = run
        self.tools_dir = tools_dir

    def build(self) -> Path:
        """Ensure build tools, fetch the source tree and run ``make``.

        Returns:
            Path to the built emqtt-bench binary.

        Raises:
            EnvironmentSetupError: If a build step fails or no binary is produced.
        """
        if self.package_manager is not None:
            self.package_manager.ensure_commands(BUILD_TOOLS)
        self.ensure_rebar3()
        self.checkout()

        self.logger.info("🔨 Building emqtt-bench %s from source...", self.version)
        self._check_call(["make"], cwd=self.source_dir, timeout=BUILD_TIMEOUT_SECONDS)

        binary = self.source_dir / SOURCE_BINARY
        if not binary.is_file():
            msg = f"Build finished but {binary} was not produced"
            raise EnvironmentSetupError(msg)
        make_executable(binary)
        self.logger.info("✅ emqtt-bench built successfully at %s", binary)
        return binary

    def ensure_rebar3(self) -> None:
        """Download rebar3 when it is not on PATH.

        Raises:
            EnvironmentSetupError: If the download fails.
        """
        if shutil.which("rebar3"):
            return
        target = self.tools_dir / "rebar3"
        self.logger.info("⬇️ Installing rebar3 to %s", target)
        try:
            response = self.session.get(REBAR3_URL, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(response.content)
        except (requests.RequestException, OSError) as e:
            msg = f"Failed to install rebar3: {e}"
            raise EnvironmentSetupError(msg) from e
        make_executable(target)

    def checkout(self) -> None:
        """Clone the repository, or update an existing checkout, at the requested version."""
        if (self.source_dir / ".git").is_dir():
            self.logger.info("🔄 Updating emqtt-bench source in %s", self.source_dir)
            self._check_call(["git", "fetch", "--tags", "--force", "origin"], cwd=self.source_dir)
            self._check_call(["git", "checkout", "--force", self.version], cwd=self.source_dir)
            return

        self.logger.info("📥 Cloning emqtt-bench %s into %s", self.version, self.source_dir)
        self.source_dir.parent.mkdir(parents=True, exist_ok=True)
        self._check_call([
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            self.version,
            SOURCE_REPO_URL,
            str(self.source_dir),
        ])

    def _check_call(self, command: list[str], cwd: Path | None = None, timeout: int = 600) -> None:
        """Run a build command.

        Raises:
            EnvironmentSetupError: If the command fails or times out.
        """
        self.logger.debug("Running: %s", " ".join(command))
        try:
            result = self._run(
                command, cwd=cwd, check=False, capture_output=True, text=True, timeout=timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            msg = f"Command '{' '.join(command)}' could not complete: {e}"
            raise EnvironmentSetupError(msg) from e
        if result.returncode != 0:
            self.logger.error("Output:\n%s", (result.stdout or "")[-2000:])
            self.logger.error("Error Output:\n%s", (result.stderr or "")[-2000:])
            msg = f"Command '{' '.join(command)}' failed with exit code {result.returncode}."
            raise EnvironmentSetupError(msg)


class EnvironmentPreparer:
    """Gets the host ready and returns the emqtt-bench binary to run."""

    def __init__(
        self,
        config: BenchConfig,
        package_manager: AptPackageManager | None,
        logger: logging.Logger = default_logger,
        session: requests.Session | None = None,
    ) -> None:
        """Initialise environment preparer with configuration.

        Args:
            config: Resolved run configuration.
            package_manager: apt wrapper, or None on hosts without apt.
            logger: Run logger.
            session: Shared HTTP session for downloads.
        """
        self.config = config
        self.package_manager = package_manager
        self.logger = logger
        self.session = session or requests.Session()

    def install_base_packages(self) -> None:
        """Install the tools the orchestrator shells out to."""
        if self.package_manager is None:
            self.logger.warning("⚠️ apt-get not available, skipping package installation")
            return
        self.logger.info("📦 Installing dependencies...")
        self.package_manager.update()
        self.package_manager.install(BASE_PACKAGES)

    def prepare(self) -> Path:
        """Install emqtt-bench with the configured method.

        Returns:
            Path to the emqtt-bench binary.
        """
        self.install_base_packages()

        if self.config.install_method is InstallMethod.SOURCE:
            return SourceBuilder(
                self.config.install_path,
                self.config.emqtt_version,
                self.package_manager,
                logger=self.logger,
                session=self.session,
            ).build()

        arch = detect_arch()
        os_tag = detect_os(logger=self.logger)
        self.logger.info("🖥️ Detected architecture: %s, OS: %s", arch, os_tag)
        urls = candidate_urls(self.config.emqtt_version, os_tag, arch, self.config.download_url)
        return ReleaseInstaller(
            self.config.install_path,
            self.config.emqtt_version,
            logger=self.logger,
            session=self.session,
        ).install(urls)
