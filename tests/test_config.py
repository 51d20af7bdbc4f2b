"""
Test Suite for Configuration and Logging Setup
"""

import logging
import os
import tempfile
import unittest
from unittest.mock import patch

from serverfn import ExecutionMode, Runtime
from serverfn import config as config_module
from serverfn.config import Config, setup_logging


class TestConfig(unittest.TestCase):
    """Test configuration loading from the environment."""

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        """Test defaults when nothing is set."""
        settings = Config(env_file="")
        self.assertEqual(settings.network.default_port, 8080)
        self.assertEqual(settings.network.dispatch_path, "/_serverfn")
        self.assertEqual(settings.rpc.timeout_seconds, 30.0)
        self.assertEqual(settings.runtime.mode, "client")
        self.assertFalse(settings.security.expose_tracebacks)
        self.assertEqual(settings.endpoint_url(), "http://127.0.0.1:8080/_serverfn")

    @patch.dict(os.environ, {
        "DEFAULT_PORT": "9001",
        "DEFAULT_HOST": "10.0.0.5",
        "DISPATCH_PATH": "/rpc",
        "RPC_TIMEOUT_SECONDS": "2.5",
        "SERVERFN_MODE": "server",
        "EXPOSE_TRACEBACKS": "yes",
        "ENABLE_CONSOLE_LOGGING": "false"
    }, clear=True)
    def test_environment_overrides(self):
        """Test environment variables override the defaults."""
        settings = Config(env_file="")
        self.assertEqual(settings.network.default_port, 9001)
        self.assertEqual(settings.rpc.timeout_seconds, 2.5)
        self.assertTrue(settings.security.expose_tracebacks)
        self.assertFalse(settings.logging.enable_console_logging)
        self.assertEqual(settings.endpoint_url(), "http://10.0.0.5:9001/rpc")
        self.assertIs(ExecutionMode.from_role(settings.runtime.mode), ExecutionMode.LOCAL)

    @patch.dict(os.environ, {"DEFAULT_PORT": "not-a-port"}, clear=True)
    def test_bad_values_fall_back(self):
        """Test values that cannot be cast keep the default."""
        self.assertEqual(Config(env_file="").network.default_port, 8080)

    @patch.dict(os.environ, {"SERVERFN_ENDPOINT": "https://api.example.com/_serverfn"}, clear=True)
    def test_explicit_endpoint(self):
        """Test an explicit endpoint wins over host and port."""
        self.assertEqual(Config(env_file="").endpoint_url(), "https://api.example.com/_serverfn")

    @patch.dict(os.environ, {}, clear=True)
    def test_env_file(self):
        """Test values are read from a .env file."""
        with tempfile.TemporaryDirectory() as tmp:
            env_file = os.path.join(tmp, ".env")
            with open(env_file, "w") as f:
                f.write("DEFAULT_PORT=7100\nCONTEXT_ENVIRONMENT_PREFIX=APP_\n")
            settings = Config(env_file=env_file)

        self.assertEqual(settings.network.default_port, 7100)
        self.assertEqual(settings.context.environment_prefix, "APP_")

    @patch.dict(os.environ, {}, clear=True)
    def test_to_dict(self):
        """Test every section is listed."""
        sections = Config(env_file="").to_dict()
        self.assertEqual(set(sections), {"network", "rpc", "runtime", "context", "logging", "security"})

    def test_convenience_getters(self):
        """Test the module-level getters read the global configuration."""
        self.assertEqual(config_module.get_default_port(), config_module.config.network.default_port)
        self.assertEqual(config_module.get_default_host(), config_module.config.network.default_host)
        self.assertEqual(config_module.get_rpc_timeout(), config_module.config.rpc.timeout_seconds)
        self.assertEqual(config_module.get_endpoint_url(), config_module.config.endpoint_url())

    @patch.dict(os.environ, {"SERVERFN_MODE": "server"}, clear=True)
    def test_runtime_reads_mode(self):
        """Test a runtime without an explicit mode uses the configured one."""
        runtime = Runtime(settings=Config(env_file=""))
        self.assertIs(runtime.mode, ExecutionMode.LOCAL)

    @patch.dict(os.environ, {"SERVERFN_MODE": "sideways"}, clear=True)
    def test_unknown_mode(self):
        """Test an unknown mode is rejected."""
        with self.assertRaises(ValueError):
            Runtime(settings=Config(env_file=""))


class TestSetupLogging(unittest.TestCase):
    """Test logging configuration."""

    def setUp(self):
        root = logging.getLogger()
        self.saved_handlers = root.handlers[:]
        self.saved_level = root.level

    def tearDown(self):
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self.saved_handlers:
                handler.close()
        root.handlers = self.saved_handlers
        root.setLevel(self.saved_level)

    @patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}, clear=True)
    def test_level_and_logger(self):
        """Test the level is applied and the package logger is returned."""
        logger = setup_logging(Config(env_file=""))
        self.assertEqual(logger.name, "serverfn")
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_file_logging(self):
        """Test log records reach the configured file."""
        with tempfile.TemporaryDirectory() as tmp:
            log_file = os.path.join(tmp, "logs", "serverfn.log")
            with patch.dict(os.environ, {"LOG_FILE_PATH": log_file, "ENABLE_CONSOLE_LOGGING": "false"},
                            clear=True):
                logger = setup_logging(Config(env_file=""))

            logger.info("written to file")
            for handler in logging.getLogger().handlers:
                handler.flush()
                handler.close()

            with open(log_file) as f:
                self.assertIn("written to file", f.read())


if __name__ == "__main__":
    unittest.main(verbosity=2)
