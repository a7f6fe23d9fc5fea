import tempfile
import unittest
from pathlib import Path

from bench_fixtures import FakeSource, capture_logger

from mqtt_stress.config_resolver import ConfigResolver
from mqtt_stress.errors import ConfigurationError
from mqtt_stress.metadata import EnvironmentSource
from mqtt_stress.models import OPTIONS, InstallMethod, TestMode


def resolve(metadata=None, environ=None):
    resolver = ConfigResolver(
        FakeSource(metadata), EnvironmentSource(environ=environ or {}), capture_logger()
    )
    return resolver, resolver.resolve()


class PrecedenceTests(unittest.TestCase):
    def test_metadata_wins_over_environment(self):
        _, config = resolve({"mqtt-host": "meta.example"}, {"MQTT_HOST": "env.example"})
        self.assertEqual(config.mqtt_host, "meta.example")

    def test_environment_used_when_metadata_empty(self):
        resolver, config = resolve({"mqtt-host": ""}, {"MQTT_HOST": "env.example"})
        self.assertEqual(config.mqtt_host, "env.example")
        self.assertEqual(resolver.sources["mqtt-host"], "environment")

    def test_defaults_fill_everything_else(self):
        resolver, config = resolve({"mqtt-host": "broker"})
        self.assertEqual(config.connections, 100)
        self.assertEqual(config.interval_ms, 1000)
        self.assertEqual(config.topic, "bench/%i")
        self.assertEqual(config.payload_size, 256)
        self.assertEqual(config.qos, 0)
        self.assertEqual(config.duration_seconds, 60)
        self.assertEqual(config.test_mode, TestMode.CONNECT)
        self.assertEqual(config.install_method, InstallMethod.BINARY)
        self.assertFalse(config.use_ssl)
        self.assertFalse(config.use_websocket)
        self.assertEqual(resolver.sources["connections"], "default")

    def test_every_option_resolved_exactly_once(self):
        metadata = FakeSource({"mqtt-host": "broker"})
        ConfigResolver(metadata, None, capture_logger()).resolve()
        self.assertEqual(sorted(metadata.calls), sorted(option.key for option in OPTIONS))

    def test_environment_variable_names(self):
        environ = {
            "MQTT_HOST": "broker",
            "PAYLOAD_SIZE": "1024",
            "TEST_TYPE": "publish",
            "USE_WEBSOCKET": "true",
        }
        _, config = resolve(environ=environ)
        self.assertEqual(config.payload_size, 1024)
        self.assertEqual(config.test_mode, TestMode.PUBLISH)
        self.assertTrue(config.use_websocket)


class PortDefaultTests(unittest.TestCase):
    def test_plain_default_port(self):
        _, config = resolve({"mqtt-host": "broker"})
        self.assertEqual(config.mqtt_port, 1883)

    def test_ssl_changes_default_port(self):
        _, config = resolve({"mqtt-host": "broker", "use-ssl": "true"})
        self.assertEqual(config.mqtt_port, 8883)

    def test_explicit_port_wins_over_ssl_default(self):
        _, config = resolve({"mqtt-host": "broker", "use-ssl": "true", "mqtt-port": "9001"})
        self.assertEqual(config.mqtt_port, 9001)

    def test_invalid_port_with_ssl_falls_back_to_ssl_default(self):
        _, config = resolve({"mqtt-host": "broker", "use-ssl": "yes", "mqtt-port": "99999"})
        self.assertEqual(config.mqtt_port, 8883)


class ParsingTests(unittest.TestCase):
    def test_unparsable_numbers_fall_back_with_warning(self):
        with self.assertLogs("tests.mqtt_stress", level="WARNING") as captured:
            _, config = resolve({"mqtt-host": "broker", "connections": "lots", "interval": "0"})
        self.assertEqual(config.connections, 100)
        self.assertEqual(config.interval_ms, 1000)
        self.assertEqual(len(captured.records), 2)

    def test_qos_out_of_range_falls_back(self):
        _, config = resolve({"mqtt-host": "broker", "qos": "3"})
        self.assertEqual(config.qos, 0)

    def test_boolean_spellings(self):
        _, config = resolve({"mqtt-host": "broker", "use-ssl": "ON", "use-websocket": "maybe"})
        self.assertTrue(config.use_ssl)
        self.assertFalse(config.use_websocket)

    def test_test_type_is_case_insensitive(self):
        _, config = resolve({"mqtt-host": "broker", "test-type": "FULL"})
        self.assertEqual(config.test_mode, TestMode.FULL)

    def test_unknown_test_type_is_fatal(self):
        with self.assertRaises(ConfigurationError) as ctx:
            resolve({"mqtt-host": "broker", "test-type": "stress"})
        self.assertIn("connect, publish, subscribe, full", str(ctx.exception))

    def test_unknown_install_method_falls_back(self):
        _, config = resolve({"mqtt-host": "broker", "install-method": "docker"})
        self.assertEqual(config.install_method, InstallMethod.BINARY)


class MissingHostTests(unittest.TestCase):
    def test_missing_host_aborts(self):
        with self.assertRaises(ConfigurationError):
            resolve({"mqtt-host": ""}, {"MQTT_HOST": ""})

    def test_missing_host_aborts_before_other_options(self):
        metadata = FakeSource({})
        with self.assertRaises(ConfigurationError):
            ConfigResolver(metadata, None, capture_logger()).resolve()
        self.assertEqual(metadata.calls, ["mqtt-host"])


class EnvironmentSourceTests(unittest.TestCase):
    def test_dotenv_file_is_consulted_after_process_environment(self):
        with tempfile.TemporaryDirectory() as td:
            env_file = Path(td) / ".env"
            env_file.write_text("MQTT_HOST=file.example\nQOS=2\n", encoding="utf-8")
            source = EnvironmentSource(environ={"MQTT_HOST": "proc.example"}, env_file=env_file)
            self.assertEqual(source.get("MQTT_HOST"), "proc.example")
            self.assertEqual(source.get("QOS"), "2")
            self.assertIsNone(source.get("TOPIC"))

    def test_missing_dotenv_file_is_ignored(self):
        source = EnvironmentSource(environ={}, env_file="/nonexistent/.env")
        self.assertIsNone(source.get("MQTT_HOST"))

    def test_whitespace_only_value_counts_as_unset(self):
        source = EnvironmentSource(environ={"MQTT_HOST": "   "})
        self.assertIsNone(source.get("MQTT_HOST"))


if __name__ == "__main__":
    unittest.main()
