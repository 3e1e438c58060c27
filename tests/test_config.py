"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from prep_chat.config import DEFAULT_CONFIG, load_config


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def _load(self, text: str | None) -> dict:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            if text is not None:
                config_path.write_text(text.strip(), encoding="utf-8")
            return load_config(config_path=config_path)

    def test_missing_config_uses_defaults(self) -> None:
        config = self._load(None)
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertEqual(config["app"]["user_id"], "local-user")
        self.assertEqual(config["title"]["provisional_length"], 40)
        self.assertEqual(config["title"]["max_length"], 60)
        self.assertEqual(config["persistence"]["backend"], "memory")

    def test_partial_config_overrides_selected_values(self) -> None:
        config = self._load(
            """
[app]
user_id = "candidate-7"
require_model_selection = true

[transport]
endpoint = "https://prep.example.com/api/ai-assistant"

[transport.headers]
Authorization = "Bearer token"

[persistence]
backend = "JSON"
            """
        )
        self.assertEqual(config["app"]["user_id"], "candidate-7")
        self.assertTrue(config["app"]["require_model_selection"])
        self.assertEqual(
            config["transport"]["endpoint"], "https://prep.example.com/api/ai-assistant"
        )
        self.assertEqual(config["transport"]["headers"], {"Authorization": "Bearer token"})
        self.assertEqual(config["persistence"]["backend"], "json")
        self.assertEqual(config["title"], DEFAULT_CONFIG["title"])

    def test_invalid_values_fallback_to_defaults(self) -> None:
        with self.assertLogs("prep_chat.config", level="WARNING") as logs:
            config = self._load(
                """
[title]
provisional_length = 100
max_length = 50
                """
            )
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertTrue(any("config.invalid" in line for line in logs.output))

    def test_bad_urls_are_rejected(self) -> None:
        with self.assertLogs("prep_chat.config", level="WARNING"):
            config = self._load(
                """
[transport]
endpoint = "ftp://example.com/chat"
                """
            )
        self.assertEqual(config["transport"]["endpoint"], DEFAULT_CONFIG["transport"]["endpoint"])

    def test_compare_endpoint_is_configurable(self) -> None:
        config = self._load(
            """
[transport]
compare_endpoint = "https://prep.example.com/api/ai-assistant/multi"
            """
        )
        self.assertEqual(
            config["transport"]["compare_endpoint"],
            "https://prep.example.com/api/ai-assistant/multi",
        )
        self.assertEqual(config["transport"]["endpoint"], DEFAULT_CONFIG["transport"]["endpoint"])

    def test_unparseable_toml_falls_back(self) -> None:
        with self.assertLogs("prep_chat.config", level="WARNING") as logs:
            config = self._load("[transport\nendpoint = ")
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertTrue(any("config.parse_failed" in line for line in logs.output))

    def test_log_level_is_normalized(self) -> None:
        config = self._load('[logging]\nlevel = "debug"')
        self.assertEqual(config["logging"]["level"], "DEBUG")


if __name__ == "__main__":
    unittest.main()
