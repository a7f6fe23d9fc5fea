#!/usr/bin/env python3
"""MQTT Stress Test Startup Orchestrator.

Cloud-instance startup program that turns instance metadata into an
emqtt-bench run. It resolves the test configuration from the metadata
service, environment variables or a .env file, prepares the host (packages,
resource limits, log directory), installs emqtt-bench from a release archive
or from source, runs the requested test mode and writes a summary next to the
captured output.

Test modes:
- connect: open the configured number of connections
- publish: publish for roughly the configured duration
- subscribe: subscribe for exactly the configured duration
- full: background subscribers plus foreground publishers

The process exit code is emqtt-bench's exit code, so a service manager can
tell a failed run from a successful one.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from mqtt_stress.config_resolver import ConfigResolver
from mqtt_stress.errors import BenchmarkRunError, ConfigurationError, MqttStressError
from mqtt_stress.host import HostTuner, RunLogFiles
from mqtt_stress.installer import EnvironmentPreparer
from mqtt_stress.logger import attach_file_handler, create_run_logger
from mqtt_stress.metadata import EnvironmentSource, MetadataSource
from mqtt_stress.models import OPTIONS_BY_KEY, BenchConfig, ExecutionResult, TestMode
from mqtt_stress.package_manager import AptPackageManager
from mqtt_stress.reporter import Reporter
from mqtt_stress.runner import BenchmarkRunner
from mqtt_stress.service import ServiceInstaller, service_command

if TYPE_CHECKING:
    import logging

TYPE_CHOICES = ", ".join(TestMode.choices())


class StressTestOrchestrator:
    """Main orchestrator for a single stress-test run.

    Coordinates host preparation, installation, execution and reporting,
    delegating each stage to its own component.
    """

    def __init__(
        self,
        config: BenchConfig,
        log_files: RunLogFiles,
        logger: logging.Logger,
        *,
        binary: str | None = None,
        tune_host: bool = True,
    ) -> None:
        """Initialise orchestrator with configuration.

        Args:
            config: Resolved run configuration.
            log_files: Paths for this run's logs.
            logger: Run logger.
            binary: Existing emqtt-bench binary; skips installation when given.
            tune_host: Whether to raise resource limits before the run.
        """
        self.config = config
        self.log_files = log_files
        self.logger = logger
        self.binary = binary
        self.tune_host = tune_host
        self.reporter = Reporter(log_files, logger)

    def run(self) -> int:
        """Execute the complete stress-test workflow.

        Returns:
            The exit code the process should end with.
        """
        self.logger.info("🚀 Starting MQTT stress testing setup...")

        try:
            if self.tune_host:
                HostTuner(self.logger).tune()
            binary = self.binary or str(self._prepare_environment())
        except MqttStressError as e:
            self.logger.error("❌ Environment setup failed: %s", e)
            return 1

        self.reporter.write_preamble(self.config, binary)
        runner = BenchmarkRunner(self.config, binary, self.log_files, self.logger)
        try:
            result = runner.run()
        except BenchmarkRunError as e:
            self.logger.error("❌ %s", e)
            result = ExecutionResult(
                mode=self.config.test_mode,
                exit_code=e.exit_code,
                log_file=self.log_files.test_log,
                duration_seconds=e.duration_seconds,
                finished_at=datetime.now(tz=UTC).isoformat(),
                subscriber_log=self.log_files.subscriber_log,
            )

        self.reporter.write_summary(self.config, result)
        self.log_files.prune(logger=self.logger)
        return result.exit_code

    def _prepare_environment(self) -> Path:
        package_manager = (
            AptPackageManager(self.logger) if AptPackageManager.available() else None
        )
        return EnvironmentPreparer(self.config, package_manager, self.logger).prepare()


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Install emqtt-bench and run an MQTT stress test from instance metadata",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Configuration sources, highest precedence first:
  1. instance metadata attributes (mqtt-host, test-type, ...)
  2. environment variables (MQTT_HOST, TEST_TYPE, ...)
  3. the --env-file file
  4. built-in defaults

Test types: {TYPE_CHOICES}
        """,
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file with fallback settings")
    parser.add_argument(
        "--no-metadata", action="store_true", help="do not query the instance metadata service"
    )
    parser.add_argument("--binary", help="use an existing emqtt_bench binary, skip installation")
    parser.add_argument("--skip-tuning", action="store_true", help="leave host limits unchanged")
    parser.add_argument(
        "--install-service",
        action="store_true",
        help="install and start a systemd service that runs this test, then exit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    return parser.parse_args(argv)


def build_resolver(args: argparse.Namespace, logger: logging.Logger) -> ConfigResolver:
    """Create the resolver over the sources selected on the command line.

    Returns:
        The configuration resolver.
    """
    metadata = None if args.no_metadata else MetadataSource(logger=logger)
    return ConfigResolver(metadata, EnvironmentSource(env_file=args.env_file), logger)


def resolve_config(resolver: ConfigResolver, logger: logging.Logger) -> BenchConfig:
    """Resolve configuration from metadata, environment and defaults.

    Returns:
        The resolved configuration.
    """
    config = resolver.resolve()
    for key, source in resolver.sources.items():
        logger.debug("  %s resolved from %s", key, source)
    return config


def service_arguments(args: argparse.Namespace) -> list[str]:
    """Rebuild the run flags for the installed service, minus ``--install-service``.

    Returns:
        Flags with file paths made absolute.
    """
    arguments = ["--env-file", str(Path(args.env_file).resolve())]
    if args.no_metadata:
        arguments.append("--no-metadata")
    if args.binary:
        arguments += ["--binary", str(Path(args.binary).resolve())]
    if args.skip_tuning:
        arguments.append("--skip-tuning")
    if args.verbose:
        arguments.append("--verbose")
    return arguments


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the stress-test orchestrator.

    Raises:
        SystemExit: With the run's exit code, or 1 on any setup failure.
    """
    args = parse_arguments(argv)
    logger = create_run_logger(verbose=args.verbose)
    resolver = build_resolver(args, logger)

    try:
        config = resolve_config(resolver, logger)
    except ConfigurationError as e:
        # log-dir resolves independently of the option that failed
        log_dir = Path(resolver.lookup(OPTIONS_BY_KEY["log-dir"]))
        attach_file_handler(logger, RunLogFiles(log_dir).startup_log)
        logger.error("❌ Configuration error: %s", e)
        raise SystemExit(1) from e

    log_files = RunLogFiles(config.log_path)
    try:
        log_files.prepare()
    except OSError as e:
        logger.error("❌ Cannot create log directory %s: %s", config.log_path, e)
        raise SystemExit(1) from e
    attach_file_handler(logger, log_files.startup_log)

    try:
        if args.install_service:
            command = service_command(Path(__file__), service_arguments(args))
            ServiceInstaller(logger).install(command, config.log_path)
            return
        orchestrator = StressTestOrchestrator(
            config, log_files, logger, binary=args.binary, tune_host=not args.skip_tuning
        )
        exit_code = orchestrator.run()
    except MqttStressError as e:
        # Known errors are reported without traceback spam
        logger.error("❌ %s", e)
        raise SystemExit(1) from e
    except Exception as e:
        logger.exception("💥 Unexpected error in main")
        raise SystemExit(1) from e

    if exit_code == 0:
        logger.info("🎉 Setup and test execution finished successfully")
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
