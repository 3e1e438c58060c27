"""Tests for forward-only tool call lifecycle tracking."""

from __future__ import annotations

import unittest

from prep_chat.message import Message, ToolCallState, get_tool_calls
from prep_chat.tool_tracker import ToolInvocationTracker


class ToolInvocationTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.message = Message.assistant()
        self.tracker = ToolInvocationTracker(self.message)

    def test_full_success_lifecycle(self) -> None:
        self.tracker.start("call-1", "web-search")
        self.assertEqual(self.tracker.get("call-1").state, ToolCallState.INPUT_STREAMING)

        self.assertTrue(self.tracker.merge_input("call-1", {"query": "closures"}))
        self.assertEqual(self.tracker.get("call-1").state, ToolCallState.INPUT_AVAILABLE)

        self.assertTrue(self.tracker.set_output("call-1", {"results": ["a", "b"]}))
        calls = get_tool_calls(self.message)
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].state, ToolCallState.OUTPUT_AVAILABLE)
        self.assertEqual(calls[0].output, {"results": ["a", "b"]})
        self.assertEqual(calls[0].input, {"query": "closures"})

    def test_terminal_call_rejects_further_events(self) -> None:
        self.tracker.start("call-1", "web-search")
        self.tracker.set_error("call-1", "provider exploded")

        with self.assertLogs("prep_chat.tool_tracker", level="WARNING") as logs:
            self.assertFalse(self.tracker.set_output("call-1", {"late": True}))
            self.assertFalse(self.tracker.merge_input("call-1", {"q": 1}))
            self.assertFalse(self.tracker.complete_input("call-1", {"q": 2}))

        part = self.tracker.get("call-1")
        self.assertEqual(part.state, ToolCallState.OUTPUT_ERROR)
        self.assertEqual(part.error_text, "provider exploded")
        self.assertIsNone(part.output)
        self.assertTrue(any("tool.transition.rejected" in line for line in logs.output))

    def test_unknown_id_on_terminal_event_fabricates_part(self) -> None:
        self.assertTrue(self.tracker.set_output("orphan", "done", name="lookup"))
        part = self.tracker.get("orphan")
        self.assertEqual(part.name, "lookup")
        self.assertEqual(part.state, ToolCallState.OUTPUT_AVAILABLE)
        self.assertEqual(len(self.message.parts), 1)

    def test_concurrent_calls_are_tracked_independently(self) -> None:
        self.tracker.start("a", "search")
        self.tracker.start("b", "calculator")
        self.tracker.set_output("b", 42)
        self.tracker.merge_input("a", {"q": "x"})

        self.assertEqual(self.tracker.get("a").state, ToolCallState.INPUT_AVAILABLE)
        self.assertEqual(self.tracker.get("b").state, ToolCallState.OUTPUT_AVAILABLE)
        self.assertEqual(self.tracker.tool_names(), ["search", "calculator"])

    def test_string_deltas_accumulate_and_parse(self) -> None:
        self.tracker.start("c", "search")
        self.tracker.merge_input("c", '{"query": ')
        self.assertIsNone(self.tracker.get("c").input)
        self.tracker.merge_input("c", '"closures"}')
        self.tracker.complete_input("c")
        self.assertEqual(self.tracker.get("c").input, {"query": "closures"})

    def test_dict_deltas_shallow_merge_and_complete_replaces(self) -> None:
        self.tracker.start("d", "search")
        self.tracker.merge_input("d", {"query": "x"})
        self.tracker.merge_input("d", {"limit": 3})
        self.assertEqual(self.tracker.get("d").input, {"query": "x", "limit": 3})
        self.tracker.complete_input("d", {"query": "final"})
        self.assertEqual(self.tracker.get("d").input, {"query": "final"})

    def test_duplicate_start_keeps_existing_state(self) -> None:
        self.tracker.start("e", "search")
        self.tracker.merge_input("e", {"q": 1})
        self.tracker.start("e", "search")
        self.assertEqual(self.tracker.get("e").state, ToolCallState.INPUT_AVAILABLE)
        self.assertEqual(len(self.message.parts), 1)


if __name__ == "__main__":
    unittest.main()
