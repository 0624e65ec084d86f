import os
import unittest
from pathlib import Path

from oneshare.config import (
    DEFAULT_MAX_AGE_SECONDS,
    DEFAULT_MAX_UPLOAD_SIZE,
    DEFAULT_SHORT_URL_SERVICE,
    load_config,
)

ENV_KEYS = [
    "MAX_AGE",
    "MAX_UPLOAD_SIZE",
    "SHORT_URL_SERVICE",
    "ONESHARE_STORAGE_ROOT",
    "ONESHARE_SHORT_URL_ENABLED",
    "ONESHARE_DELETE_DELAY_MS",
    "LOG_LEVEL",
]


class LoadConfigTests(unittest.TestCase):
    def setUp(self):
        self._saved = {key: os.environ.pop(key, None) for key in ENV_KEYS}

    def tearDown(self):
        for key, value in self._saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_defaults(self):
        config = load_config()
        self.assertEqual(config["max_age_seconds"], DEFAULT_MAX_AGE_SECONDS)
        self.assertEqual(config["max_upload_size"], DEFAULT_MAX_UPLOAD_SIZE)
        self.assertEqual(config["max_upload_size"], 5368709120)
        self.assertEqual(config["short_url_service"], DEFAULT_SHORT_URL_SERVICE)
        self.assertTrue(config["short_url_enabled"])
        self.assertEqual(config["delete_delay_ms"], 100)
        self.assertEqual(config["log_level"], "INFO")

    def test_environment_values_are_read(self):
        os.environ["MAX_AGE"] = "60"
        os.environ["MAX_UPLOAD_SIZE"] = "1024"
        os.environ["SHORT_URL_SERVICE"] = "https://short.example/api"
        os.environ["LOG_LEVEL"] = "debug"
        config = load_config()
        self.assertEqual(config["max_age_seconds"], 60)
        self.assertEqual(config["max_upload_size"], 1024)
        self.assertEqual(config["short_url_service"], "https://short.example/api")
        self.assertEqual(config["log_level"], "DEBUG")

    def test_invalid_numbers_fall_back_to_defaults(self):
        os.environ["MAX_AGE"] = "an hour"
        os.environ["MAX_UPLOAD_SIZE"] = "0"
        with self.assertLogs("oneshare.config", level="WARNING"):
            config = load_config()
        self.assertEqual(config["max_age_seconds"], DEFAULT_MAX_AGE_SECONDS)
        self.assertEqual(config["max_upload_size"], DEFAULT_MAX_UPLOAD_SIZE)

    def test_zero_is_a_valid_delete_delay(self):
        os.environ["ONESHARE_DELETE_DELAY_MS"] = "0"
        self.assertEqual(load_config()["delete_delay_ms"], 0)

    def test_boolean_parsing(self):
        os.environ["ONESHARE_SHORT_URL_ENABLED"] = "off"
        self.assertFalse(load_config()["short_url_enabled"])
        os.environ["ONESHARE_SHORT_URL_ENABLED"] = "maybe"
        with self.assertLogs("oneshare.config", level="WARNING"):
            self.assertTrue(load_config()["short_url_enabled"])

    def test_storage_paths_follow_root(self):
        os.environ["ONESHARE_STORAGE_ROOT"] = "/tmp/oneshare-config-test"
        config = load_config()
        root = Path("/tmp/oneshare-config-test").resolve()
        self.assertEqual(config["objects_dir"], root / "objects")
        self.assertEqual(config["logs_dir"], root / "logs")

    def test_overrides_win(self):
        self.assertEqual(load_config({"max_age_seconds": 5})["max_age_seconds"], 5)


if __name__ == "__main__":
    unittest.main()
