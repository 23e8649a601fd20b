import os
import unittest
from unittest import mock

import config


class AppConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = config.AppConfig.from_env()
        self.assertEqual((cfg.host, cfg.port), ("127.0.0.1", 5173))
        self.assertFalse(cfg.debug)
        self.assertEqual(cfg.log_level, "INFO")
        self.assertEqual(cfg.catch_up, 120)
        self.assertTrue(cfg.save_dir.endswith("saves"))

    def test_environment_overrides(self):
        env = {
            "FORGE_SAVE_DIR": "/tmp/forge-saves",
            "FORGE_HOST": "0.0.0.0",
            "FORGE_PORT": "8080",
            "FORGE_DEBUG": "yes",
            "FORGE_LOG_LEVEL": "debug",
            "FORGE_CATCH_UP": "0",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            cfg = config.AppConfig.from_env()
        self.assertEqual(cfg.save_dir, "/tmp/forge-saves")
        self.assertEqual((cfg.host, cfg.port), ("0.0.0.0", 8080))
        self.assertTrue(cfg.debug)
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertEqual(cfg.catch_up, 1)

    def test_env_flag(self):
        with mock.patch.dict(os.environ, {"X_FLAG": "off"}, clear=True):
            self.assertFalse(config.env_flag("X_FLAG", True))
            self.assertTrue(config.env_flag("MISSING", True))


if __name__ == "__main__":
    unittest.main()
