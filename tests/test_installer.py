import io
import os
import subprocess
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests
from bench_fixtures import capture_logger

from mqtt_stress.errors import EnvironmentSetupError
from mqtt_stress.installer import (
    BUILD_TOOLS,
    SOURCE_BINARY,
    VERSION_MARKER,
    EnvironmentPreparer,
    ReleaseInstaller,
    SourceBuilder,
    candidate_urls,
)
from mqtt_stress.models import BenchConfig, InstallMethod


def release_archive(member="bin/emqtt_bench"):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        payload = b"#!/bin/sh\necho bench\n"
        info = tarfile.TarInfo(member)
        info.size = len(payload)
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def http_response(status=200, body=b""):
    response = mock.MagicMock()
    response.__enter__.return_value = response
    response.status_code = status
    response.content = body
    response.iter_content.return_value = [body]
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} Client Error")
    return response


def session_returning(*responses):
    session = mock.Mock()
    session.get.side_effect = list(responses)
    return session


class CandidateUrlTests(unittest.TestCase):
    def test_detected_tag_before_fallback(self):
        urls = candidate_urls("0.4.25", "debian12", "arm64")
        self.assertEqual(len(urls), 4)
        self.assertTrue(urls[0].endswith("/0.4.25/emqtt-bench-0.4.25-debian12-arm64.tar.gz"))
        self.assertTrue(urls[1].endswith("/v0.4.25/emqtt-bench-0.4.25-debian12-arm64.tar.gz"))
        self.assertIn("ubuntu20.04-arm64", urls[2])

    def test_fallback_tag_not_repeated(self):
        urls = candidate_urls("0.4.25", "ubuntu20.04", "amd64")
        self.assertEqual(len(urls), 2)

    def test_custom_mirror_first_with_placeholders(self):
        urls = candidate_urls(
            "0.4.25", "el9", "amd64", "https://mirror.local/{version}/{os_tag}-{arch}.tar.gz"
        )
        self.assertEqual(urls[0], "https://mirror.local/0.4.25/el9-amd64.tar.gz")
        self.assertEqual(len(urls), 5)


class ReleaseInstallerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.install_dir = Path(self.tmp.name) / "emqtt-bench"

    def tearDown(self):
        self.tmp.cleanup()

    def installer(self, session):
        return ReleaseInstaller(self.install_dir, "0.4.25", capture_logger(), session)

    def test_failed_candidate_advances_to_next(self):
        session = session_returning(http_response(404), http_response(200, release_archive()))
        with self.assertLogs("tests.mqtt_stress", level="WARNING"):
            binary = self.installer(session).install(["https://a/x.tar.gz", "https://b/x.tar.gz"])

        self.assertEqual(binary, self.install_dir / "bin" / "emqtt_bench")
        self.assertTrue(os.access(binary, os.X_OK))
        self.assertEqual((self.install_dir / VERSION_MARKER).read_text().strip(), "0.4.25")
        self.assertFalse((self.install_dir / "emqtt-bench.tar.gz").exists())
        self.assertEqual(session.get.call_count, 2)

    def test_network_error_advances_to_next(self):
        session = session_returning(
            requests.ConnectionError("reset"), http_response(200, release_archive("emqtt_bench"))
        )
        binary = self.installer(session).install(["https://a", "https://b"])
        self.assertEqual(binary, self.install_dir / "emqtt_bench")

    def test_corrupt_archive_advances_to_next(self):
        session = session_returning(
            http_response(200, b"not a tarball"), http_response(200, release_archive())
        )
        binary = self.installer(session).install(["https://a", "https://b"])
        self.assertTrue(binary.is_file())

    def test_all_candidates_failing_is_fatal(self):
        session = session_returning(http_response(404), http_response(500))
        with self.assertRaises(EnvironmentSetupError):
            self.installer(session).install(["https://a", "https://b"])

    def test_archive_without_binary_is_fatal(self):
        session = session_returning(http_response(200, release_archive("README.md")))
        with self.assertRaises(EnvironmentSetupError):
            self.installer(session).install(["https://a"])

    def test_archive_without_binary_advances_to_next(self):
        session = session_returning(
            http_response(200, release_archive("README.md")), http_response(200, release_archive())
        )
        with self.assertLogs("tests.mqtt_stress", level="WARNING"):
            binary = self.installer(session).install(["https://a", "https://b"])
        self.assertEqual(binary, self.install_dir / "bin" / "emqtt_bench")
        self.assertEqual(session.get.call_count, 2)

    def test_matching_install_is_reused(self):
        (self.install_dir / "bin").mkdir(parents=True)
        (self.install_dir / "bin" / "emqtt_bench").write_text("#!/bin/sh\n")
        (self.install_dir / VERSION_MARKER).write_text("0.4.25\n")
        session = session_returning()
        binary = self.installer(session).install(["https://a"])
        self.assertEqual(binary, self.install_dir / "bin" / "emqtt_bench")
        session.get.assert_not_called()

    def test_other_version_is_reinstalled(self):
        (self.install_dir / "bin").mkdir(parents=True)
        (self.install_dir / "bin" / "emqtt_bench").write_text("#!/bin/sh\n")
        (self.install_dir / VERSION_MARKER).write_text("0.4.5\n")
        session = session_returning(http_response(200, release_archive()))
        self.installer(session).install(["https://a"])
        session.get.assert_called_once()


class SourceBuilderTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.install_dir = Path(self.tmp.name)
        self.commands = []
        self.make_produces_binary = True
        self.make_exit_code = 0

    def tearDown(self):
        self.tmp.cleanup()

    def run_command(self, command, **kwargs):
        self.commands.append(command)
        if command == ["make"]:
            if self.make_produces_binary:
                binary = kwargs["cwd"] / SOURCE_BINARY
                binary.parent.mkdir(parents=True, exist_ok=True)
                binary.write_text("#!/bin/sh\n")
            return subprocess.CompletedProcess(command, self.make_exit_code, "", "make: *** error")
        if command[:2] == ["git", "clone"]:
            Path(command[-1]).mkdir(parents=True)
        return subprocess.CompletedProcess(command, 0, "", "")

    def builder(self, package_manager=None):
        return SourceBuilder(
            self.install_dir,
            "0.4.25",
            package_manager,
            logger=capture_logger(),
            run=self.run_command,
        )

    def test_fresh_build_clones_and_makes(self):
        package_manager = mock.Mock()
        with mock.patch("mqtt_stress.installer.shutil.which", return_value="/usr/bin/rebar3"):
            binary = self.builder(package_manager).build()

        package_manager.ensure_commands.assert_called_once_with(BUILD_TOOLS)
        clone = ["git", "clone", "--depth", "1", "--branch", "0.4.25"]
        self.assertEqual(self.commands[0][:6], clone)
        self.assertEqual(self.commands[-1], ["make"])
        self.assertEqual(binary, self.install_dir / "src" / SOURCE_BINARY)

    def test_existing_checkout_is_updated(self):
        (self.install_dir / "src" / ".git").mkdir(parents=True)
        with mock.patch("mqtt_stress.installer.shutil.which", return_value="/usr/bin/rebar3"):
            self.builder().build()
        self.assertEqual(self.commands[0], ["git", "fetch", "--tags", "--force", "origin"])
        self.assertEqual(self.commands[1], ["git", "checkout", "--force", "0.4.25"])

    def test_missing_output_binary_is_fatal(self):
        self.make_produces_binary = False
        with (
            mock.patch("mqtt_stress.installer.shutil.which", return_value="/usr/bin/rebar3"),
            self.assertRaises(EnvironmentSetupError),
        ):
            self.builder().build()

    def test_failed_make_is_fatal(self):
        self.make_exit_code = 2
        with (
            mock.patch("mqtt_stress.installer.shutil.which", return_value="/usr/bin/rebar3"),
            self.assertRaises(EnvironmentSetupError),
        ):
            self.builder().build()

    def test_rebar3_downloaded_when_missing(self):
        tools_dir = self.install_dir / "tools"
        session = mock.Mock()
        session.get.return_value = http_response(200, b"#!/usr/bin/env escript\n")
        builder = SourceBuilder(
            self.install_dir, "0.4.25", None, capture_logger(), session, self.run_command, tools_dir
        )
        with mock.patch("mqtt_stress.installer.shutil.which", return_value=None):
            builder.ensure_rebar3()
        self.assertTrue(os.access(tools_dir / "rebar3", os.X_OK))


class EnvironmentPreparerTests(unittest.TestCase):
    def test_binary_method_downloads_for_detected_platform(self):
        config = BenchConfig(mqtt_host="broker", emqtt_version="0.4.25", install_dir="/tmp/eb")
        package_manager = mock.Mock()
        with (
            mock.patch("mqtt_stress.installer.detect_arch", return_value="arm64"),
            mock.patch("mqtt_stress.installer.detect_os", return_value="debian12"),
            mock.patch.object(
                ReleaseInstaller, "install", return_value=Path("/tmp/eb/bin/x")
            ) as install,
        ):
            binary = EnvironmentPreparer(config, package_manager, capture_logger()).prepare()

        self.assertEqual(binary, Path("/tmp/eb/bin/x"))
        package_manager.update.assert_called_once()
        package_manager.install.assert_called_once()
        urls = install.call_args.args[0]
        self.assertIn("debian12-arm64", urls[0])

    def test_source_method_builds(self):
        config = BenchConfig(mqtt_host="broker", install_method=InstallMethod.SOURCE)
        with mock.patch.object(SourceBuilder, "build", return_value=Path("/x")) as build:
            EnvironmentPreparer(config, None, capture_logger()).prepare()
        build.assert_called_once()

    def test_unsupported_architecture_is_fatal(self):
        config = BenchConfig(mqtt_host="broker")
        with (
            mock.patch("mqtt_stress.host.platform.machine", return_value="mips"),
            self.assertRaises(EnvironmentSetupError),
        ):
            EnvironmentPreparer(config, None, capture_logger()).prepare()


if __name__ == "__main__":
    unittest.main()
