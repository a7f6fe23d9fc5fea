"""emqtt-bench command-line construction.

Maps a resolved configuration and a single-phase test mode to the argument
vector for emqtt-bench. Everything here is a pure function of its inputs.

Flags follow emqtt-bench's own option set: ``-i`` is the interval between
new connections, ``-I`` the interval between published messages, and ``sub``
accepts neither a payload size nor a message interval.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import TestMode

if TYPE_CHECKING:
    from .models import BenchConfig

SUBCOMMANDS = {
    TestMode.CONNECT: "conn",
    TestMode.PUBLISH: "pub",
    TestMode.SUBSCRIBE: "sub",
}


def message_count(config: BenchConfig) -> int:
    """Approximate the number of messages a publisher sends in the test duration.

    Returns:
        ``floor(duration * 1000 / interval)``, never less than 1.
    """
    return max(1, config.duration_seconds * 1000 // config.interval_ms)


def base_arguments(config: BenchConfig) -> list[str]:
    """Build the flags shared by every sub-command.

    Returns:
        Host, port and client count, followed by auth, TLS and transport flags.
    """
    args = [
        "-h", config.mqtt_host,
        "-p", str(config.mqtt_port),
        "-c", str(config.connections),
    ]  # fmt: skip

    if config.has_credentials:
        args += ["-u", config.mqtt_username, "-P", config.mqtt_password]

    if config.use_ssl:
        args.append("--ssl")
        for flag, path in (
            ("--certfile", config.ssl_cert_file),
            ("--keyfile", config.ssl_key_file),
            ("--cacertfile", config.ssl_ca_file),
        ):
            if path:
                args += [flag, path]

    if config.use_websocket:
        args.append("--ws")

    return args


def mode_arguments(config: BenchConfig, mode: TestMode) -> list[str]:
    """Build the flags specific to one sub-command.

    Returns:
        The mode-specific flags.

    Raises:
        ValueError: For ``full`` mode, which is run as separate subscribe and
            publish phases.
    """
    if mode is TestMode.CONNECT:
        return ["-i", str(config.interval_ms)]
    if mode is TestMode.PUBLISH:
        return [
            "-t", config.topic,
            "-I", str(config.interval_ms),
            "-s", str(config.payload_size),
            "-q", str(config.qos),
            "-L", str(message_count(config)),
        ]  # fmt: skip
    if mode is TestMode.SUBSCRIBE:
        return [
            "-t", config.topic,
            "-i", str(config.interval_ms),
            "-q", str(config.qos),
        ]  # fmt: skip
    msg = f"{mode.value} mode has no single command; build its subscribe and publish phases"
    raise ValueError(msg)


def build_command(binary: str, config: BenchConfig, mode: TestMode) -> list[str]:
    """Build the full argument vector for one emqtt-bench invocation.

    Returns:
        ``[binary, subcommand, *flags]``.

    Raises:
        ValueError: If ``mode`` is ``full``.
    """
    mode_flags = mode_arguments(config, mode)
    return [binary, SUBCOMMANDS[mode], *base_arguments(config), *mode_flags]
