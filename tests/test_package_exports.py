"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import prep_chat


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        self.assertTrue(callable(prep_chat.load_config))
        self.assertTrue(callable(prep_chat.ensure_config_dir))
        for name in prep_chat.__all__:
            with self.subTest(name=name):
                self.assertIsNotNone(getattr(prep_chat, name))
        self.assertTrue(issubclass(prep_chat.ChatRateLimitError, prep_chat.PrepChatError))

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(prep_chat, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
