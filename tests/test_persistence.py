"""Tests for the in-memory and JSON conversation gateways."""

from __future__ import annotations

import json
import os
from pathlib import Path
import stat
import tempfile
import unittest

from prep_chat.conversation import ConversationContext
from prep_chat.exceptions import (
    ConversationNotFoundError,
    PersistenceError,
    PersistenceFormatError,
)
from prep_chat.message import Message, TextPart, get_text
from prep_chat.persistence import InMemoryConversationGateway, JsonConversationGateway


class _GatewayContract:
    """Behavior shared by every gateway implementation."""

    def make_gateway(self):
        raise NotImplementedError

    async def asyncSetUp(self) -> None:
        self.gateway = self.make_gateway()

    async def test_create_and_find(self) -> None:
        created = await self.gateway.create(
            "u1", context=ConversationContext(interview_id="iv1")
        )
        found = await self.gateway.find_by_id(created.id)
        self.assertEqual(found.title, "New Chat")
        self.assertEqual(found.user_id, "u1")
        self.assertEqual(found.context.interview_id, "iv1")
        self.assertIsNone(await self.gateway.find_by_id("missing"))

    async def test_reads_are_copies(self) -> None:
        created = await self.gateway.create("u1")
        await self.gateway.add_message(created.id, Message.user("hi"))
        first = await self.gateway.find_by_id(created.id)
        first.messages.clear()
        second = await self.gateway.find_by_id(created.id)
        self.assertEqual(len(second.messages), 1)

    async def test_add_message_replaces_same_id(self) -> None:
        created = await self.gateway.create("u1")
        reply = Message.assistant()
        reply.append_part(TextPart("draft"))
        await self.gateway.add_message(created.id, reply)
        reply.parts[0].content = "final"
        await self.gateway.add_message(created.id, reply)
        stored = await self.gateway.find_by_id(created.id)
        self.assertEqual(len(stored.messages), 1)
        self.assertEqual(get_text(stored.messages[0]), "final")

    async def test_missing_conversation_raises(self) -> None:
        with self.assertRaises(ConversationNotFoundError):
            await self.gateway.add_message("missing", Message.user("hi"))
        with self.assertRaises(ConversationNotFoundError):
            await self.gateway.update_title("missing", "x")

    async def test_delete_messages_from(self) -> None:
        created = await self.gateway.create("u1")
        for text in ("a", "b", "c", "d"):
            await self.gateway.add_message(created.id, Message.user(text))
        await self.gateway.delete_messages_from(created.id, 2)
        stored = await self.gateway.find_by_id(created.id)
        self.assertEqual([get_text(m) for m in stored.messages], ["a", "b"])
        with self.assertRaises(PersistenceError):
            await self.gateway.delete_messages_from(created.id, -1)

    async def test_branch_copies_messages_and_context(self) -> None:
        source = await self.gateway.create("u1")
        messages = [Message.user("a"), Message.user("b")]
        branch = await self.gateway.create_branch(
            source.id,
            messages[-1].id,
            "u1",
            "New Chat (Branch)",
            messages,
            ConversationContext(learning_path_id="lp1"),
        )
        self.assertNotEqual(branch.id, source.id)
        stored = await self.gateway.find_by_id(branch.id)
        self.assertEqual(stored.title, "New Chat (Branch)")
        self.assertEqual([m.id for m in stored.messages], [m.id for m in messages])
        self.assertEqual(stored.context.learning_path_id, "lp1")
        untouched = await self.gateway.find_by_id(source.id)
        self.assertEqual(untouched.messages, [])

    async def test_tools_title_pin_archive(self) -> None:
        created = await self.gateway.create("u1")
        await self.gateway.record_tools_used(created.id, ["web-search", "web-search"])
        await self.gateway.update_title(created.id, "Closures in JS")
        self.assertTrue(await self.gateway.toggle_pin(created.id))
        await self.gateway.archive(created.id)
        stored = await self.gateway.find_by_id(created.id)
        self.assertEqual(stored.context.tools_used, ["web-search"])
        self.assertEqual(stored.title, "Closures in JS")
        self.assertTrue(stored.is_pinned)
        self.assertTrue(stored.is_archived)
        await self.gateway.restore(created.id)
        self.assertFalse((await self.gateway.find_by_id(created.id)).is_archived)

    async def test_list_by_user_orders_pinned_then_recent(self) -> None:
        older = await self.gateway.create("u1")
        newer = await self.gateway.create("u1")
        pinned = await self.gateway.create("u1")
        archived = await self.gateway.create("u1")
        await self.gateway.create("someone-else")
        await self.gateway.add_message(older.id, Message.user("a"))
        await self.gateway.add_message(newer.id, Message.user("b"))
        await self.gateway.toggle_pin(pinned.id)
        await self.gateway.archive(archived.id)

        rows = await self.gateway.list_by_user("u1")
        self.assertEqual([row.id for row in rows], [pinned.id, newer.id, older.id])
        with_archived = await self.gateway.list_by_user("u1", include_archived=True)
        self.assertEqual(len(with_archived), 4)

    async def test_delete(self) -> None:
        created = await self.gateway.create("u1")
        self.assertTrue(await self.gateway.delete(created.id))
        self.assertFalse(await self.gateway.delete(created.id))
        self.assertIsNone(await self.gateway.find_by_id(created.id))


class InMemoryGatewayTests(_GatewayContract, unittest.IsolatedAsyncioTestCase):
    def make_gateway(self):
        return InMemoryConversationGateway()


class JsonGatewayTests(_GatewayContract, unittest.IsolatedAsyncioTestCase):
    def make_gateway(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.directory = Path(self._tmp.name) / "conversations"
        return JsonConversationGateway(self.directory)

    async def test_files_are_private(self) -> None:
        if os.name != "posix":
            self.skipTest("POSIX permissions only")
        created = await self.gateway.create("u1")
        path = self.directory / f"{created.id}.json"
        self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)
        self.assertEqual(stat.S_IMODE(self.directory.stat().st_mode), 0o700)

    async def test_unsafe_ids_are_not_resolved(self) -> None:
        self.assertIsNone(await self.gateway.find_by_id("../etc/passwd"))

    async def test_corrupt_file_raises_on_load_and_is_skipped_on_list(self) -> None:
        created = await self.gateway.create("u1")
        (self.directory / "broken.json").write_text("{not json", encoding="utf-8")
        with self.assertRaises(PersistenceFormatError):
            await self.gateway.find_by_id("broken")
        with self.assertLogs("prep_chat.persistence", level="WARNING"):
            rows = await self.gateway.list_by_user("u1")
        self.assertEqual([row.id for row in rows], [created.id])

    async def test_document_layout(self) -> None:
        created = await self.gateway.create("u1")
        payload = json.loads(
            (self.directory / f"{created.id}.json").read_text(encoding="utf-8")
        )
        self.assertEqual(payload["_id"], created.id)
        self.assertEqual(payload["userId"], "u1")
        self.assertEqual(payload["messages"], [])


if __name__ == "__main__":
    unittest.main()
