import logging
import os
import unittest
from unittest import mock

from bluebridge.config import BridgeConfig, load_config_from_env
from bluebridge.daemon_client import DaemonClient
from bluebridge.logs import RecentLogHandler, configure_logging, recent_log_lines


class ConfigFromEnvTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()
        self.assertEqual(config.password, "")
        self.assertEqual(config.daemon_url, "http://localhost:8081")
        self.assertEqual(config.port, 8000)
        self.assertEqual(config.poll_interval_s, 1.0)
        self.assertTrue(config.polling_enabled)
        self.assertTrue(config.daemon_events)
        self.assertEqual(config.webhook_urls, ())

    def test_overrides_from_env(self):
        env = {
            "PASSWORD": " pw ",
            "DAEMON_URL": "http://daemon:9000",
            "BRIDGE_PORT": "9001",
            "POLL_INTERVAL_S": "0",
            "DAEMON_EVENTS": "0",
            "WEBHOOK_URLS": "http://a/hook, ,http://b/hook",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()
        self.assertEqual(config.password, "pw")
        self.assertEqual(config.daemon_url, "http://daemon:9000")
        self.assertEqual(config.port, 9001)
        self.assertFalse(config.polling_enabled)
        self.assertFalse(config.daemon_events)
        self.assertEqual(config.webhook_urls, ("http://a/hook", "http://b/hook"))
        self.assertEqual(config.log_level, "DEBUG")

    def test_server_password_wins_over_password(self):
        with mock.patch.dict(os.environ, {"SERVER_PASSWORD": "one", "PASSWORD": "two"}, clear=True):
            self.assertEqual(load_config_from_env().password, "one")

    def test_malformed_values_name_the_variable(self):
        cases = {
            "BRIDGE_PORT": "eighty",
            "DAEMON_TIMEOUT_S": "-1",
            "DAEMON_EVENTS": "yes",
            "ENCRYPT_COMS": "maybe",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaisesRegex(ValueError, name):
                        load_config_from_env()

    def test_zero_timeouts_are_rejected(self):
        for name in ("DAEMON_TIMEOUT_S", "DAEMON_ATTACHMENT_TIMEOUT_S"):
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: "0"}, clear=True):
                    with self.assertRaisesRegex(ValueError, name):
                        load_config_from_env()
        with self.assertRaises(ValueError):
            DaemonClient("http://daemon", timeout_s=0)

    def test_encryption_settings(self):
        env = {"ENCRYPT_COMMS": "TRUE", "SOCKET_ENCRYPTION_KEY": "k3y", "FCM_GOOGLE_SERVICES_PATH": "/etc/gs.json"}
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()
        self.assertTrue(config.encrypt_coms)
        self.assertEqual(config.encryption_passphrase, "k3y")
        self.assertEqual(config.fcm_google_services_path, "/etc/gs.json")
        self.assertEqual(config.with_overrides(password="pw").encryption_passphrase, "pw")

    def test_with_overrides_ignores_none(self):
        config = BridgeConfig(port=1234).with_overrides(port=None, host="0.0.0.0")
        self.assertEqual(config.port, 1234)
        self.assertEqual(config.host, "0.0.0.0")


class ConfigureLoggingTests(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        before = list(root.handlers)
        previous_level = root.level

        def restore():
            for handler in root.handlers[:]:
                if handler not in before:
                    root.removeHandler(handler)
            root.setLevel(previous_level)

        self.addCleanup(restore)
        self.before = before

    def test_handlers_installed_once(self):
        root = logging.getLogger()
        configure_logging("DEBUG")
        configure_logging("INFO")
        added = [handler for handler in root.handlers if handler not in self.before]
        self.assertLessEqual(len(added), 2)
        self.assertEqual(root.level, logging.INFO)
        self.assertGreaterEqual(logging.getLogger("aiohttp.access").level, logging.WARNING)

    def test_recent_lines_are_kept(self):
        configure_logging("INFO")
        logging.getLogger("bluebridge.test").info("first line")
        logging.getLogger("bluebridge.test").warning("second line")
        lines = recent_log_lines(2)
        self.assertEqual(len(lines), 2)
        self.assertIn("first line", lines[0])
        self.assertIn("[WARNING] bluebridge.test: second line", lines[1])
        self.assertEqual(recent_log_lines(0), [])

    def test_recent_handler_is_bounded(self):
        handler = RecentLogHandler(capacity=2)
        for index in range(3):
            handler.emit(logging.makeLogRecord({"msg": f"line {index}"}))
        self.assertEqual(handler.tail(5), ["line 1", "line 2"])


if __name__ == "__main__":
    unittest.main()
