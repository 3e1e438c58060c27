"""Tests for the exception hierarchy and failure classification."""

from __future__ import annotations

import unittest

from prep_chat.exceptions import (
    ChatNetworkError,
    ChatProviderError,
    ChatRateLimitError,
    ChatValidationError,
    ConfigValidationError,
    ConversationNotFoundError,
    ErrorKind,
    PersistenceFormatError,
    PrepChatError,
    classify_error,
    kind_from_code,
    looks_rate_limited,
)


class ExceptionHierarchyTests(unittest.TestCase):
    def test_domain_errors_share_a_base(self) -> None:
        for exc_type in (
            ChatValidationError,
            ChatNetworkError,
            ChatRateLimitError,
            ChatProviderError,
            ConversationNotFoundError,
            ConfigValidationError,
            PersistenceFormatError,
        ):
            self.assertTrue(issubclass(exc_type, PrepChatError))
        self.assertTrue(issubclass(PrepChatError, RuntimeError))


class ClassificationTests(unittest.TestCase):
    def test_typed_exceptions_keep_their_kind(self) -> None:
        self.assertEqual(classify_error(ChatNetworkError("x")), ErrorKind.NETWORK)
        self.assertEqual(classify_error(ChatValidationError("x")), ErrorKind.VALIDATION)
        self.assertEqual(classify_error(ChatRateLimitError("x")), ErrorKind.RATE_LIMIT)
        self.assertEqual(
            classify_error(ConversationNotFoundError("x")), ErrorKind.NOT_FOUND
        )

    def test_rate_limit_markers_in_text(self) -> None:
        for text in (
            "Error 429 from upstream",
            "Rate limit exceeded",
            "You hit the rate-limit",
            "RESOURCE_EXHAUSTED: quota",
            "Too Many Requests",
        ):
            with self.subTest(text=text):
                self.assertTrue(looks_rate_limited(text))
                self.assertEqual(classify_error(text), ErrorKind.RATE_LIMIT)

    def test_generic_failures_are_provider_errors(self) -> None:
        self.assertEqual(classify_error("model exploded"), ErrorKind.PROVIDER)
        self.assertEqual(classify_error(ValueError("bad payload")), ErrorKind.PROVIDER)
        self.assertFalse(looks_rate_limited(None))

    def test_codes_drive_classification(self) -> None:
        self.assertEqual(classify_error("failed", "RATE_LIMIT"), ErrorKind.RATE_LIMIT)
        self.assertEqual(classify_error("failed", "NETWORK_ERROR"), ErrorKind.NETWORK)
        self.assertEqual(kind_from_code("STREAM_ERROR"), ErrorKind.PROVIDER)
        self.assertEqual(kind_from_code(None), ErrorKind.PROVIDER)
        self.assertEqual(kind_from_code("NETWORK_ERROR"), ErrorKind.NETWORK)


if __name__ == "__main__":
    unittest.main()
