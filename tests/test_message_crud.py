import re
import unittest
from datetime import timedelta

from redis_session.crud.message import MessageCRUD, generate_message_id
from redis_session.crud.session import SessionCRUD
from redis_session.models import Message, Page, utc_now
from tests.fakes import FakeRedis, connected_store


class TestGenerateMessageId(unittest.TestCase):
    def test_format_and_uniqueness(self):
        ids = {generate_message_id() for _ in range(200)}
        self.assertEqual(len(ids), 200)
        for message_id in ids:
            self.assertRegex(message_id, re.compile(r"^msg_\d{13}_[0-9a-f]{9}$"))


class TestMessageCRUD(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.fake = FakeRedis()
        self.store = await connected_store(self.fake)
        self.sessions = SessionCRUD(self.store)
        self.messages = MessageCRUD(self.store)
        await self.sessions.create_session("abc")

    async def test_create_requires_existing_session(self):
        result = await self.messages.create_message("nope", "user", "hi")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Session 'nope' not found")

    async def test_create_writes_record_list_and_index(self):
        created = await self.messages.create_message("abc", "user", "hi", {"lang": "en"})
        message = created.data
        self.assertIsInstance(message, Message)

        self.assertIn(f"s:abc:m:{message.message_id}", self.fake.data)
        self.assertEqual(self.fake.data["s:abc:ms"], [message.message_id])
        self.assertEqual(self.fake.data["s:abc:ms:index"], {message.message_id})

        fetched = await self.messages.get_message("abc", message.message_id)
        self.assertEqual(fetched.data.content, "hi")

    async def test_get_missing(self):
        result = await self.messages.get_message("abc", "msg_0_000000000")
        self.assertFalse(result.success)
        self.assertIn("not found", result.error)

    async def test_pagination_newest_first(self):
        pushed = []
        for i in range(120):
            pushed.append((await self.messages.create_message("abc", "user", f"m{i}")).data.message_id)
        newest_first = list(reversed(pushed))

        first = (await self.messages.get_messages("abc", limit=50, offset=0)).data
        self.assertIsInstance(first, Page)
        self.assertEqual(first.total, 120)
        self.assertTrue(first.has_more)
        self.assertEqual([m.message_id for m in first.items], newest_first[:50])

        last = (await self.messages.get_messages("abc", limit=50, offset=100)).data
        self.assertEqual(len(last.items), 20)
        self.assertFalse(last.has_more)
        self.assertEqual([m.message_id for m in last.items], newest_first[100:])

    async def test_exact_final_page_has_no_more(self):
        for i in range(4):
            await self.messages.create_message("abc", "user", f"m{i}")
        page = (await self.messages.get_messages("abc", limit=2, offset=2)).data
        self.assertEqual(len(page.items), 2)
        self.assertFalse(page.has_more)

    async def test_zero_limit_means_default_page_size(self):
        for i in range(55):
            await self.messages.create_message("abc", "user", f"m{i}")
        page = (await self.messages.get_messages("abc", limit=0)).data
        self.assertEqual(page.limit, 50)
        self.assertEqual(len(page.items), 50)
        self.assertTrue(page.has_more)

    async def test_negative_offset_starts_at_newest(self):
        pushed = []
        for i in range(5):
            pushed.append((await self.messages.create_message("abc", "user", f"m{i}")).data.message_id)
        page = (await self.messages.get_messages("abc", limit=2, offset=-3)).data
        self.assertEqual(page.offset, 0)
        self.assertEqual([m.message_id for m in page.items], list(reversed(pushed))[:2])
        self.assertTrue(page.has_more)

    async def test_page_cache_is_invalidated_by_new_messages(self):
        await self.messages.create_message("abc", "user", "one")
        self.assertEqual((await self.messages.get_messages("abc")).data.total, 1)
        await self.messages.create_message("abc", "user", "two")
        self.assertEqual((await self.messages.get_messages("abc")).data.total, 2)

    async def test_get_messages_for_missing_session(self):
        self.assertFalse((await self.messages.get_messages("nope")).success)

    async def test_search_matches_content_role_and_metadata(self):
        await self.messages.create_message("abc", "user", "Where is my ORDER?")
        await self.messages.create_message("abc", "assistant", "Let me check")
        await self.messages.create_message("abc", "user", "thanks", {"topic": "Billing"})

        self.assertEqual((await self.messages.search_messages("abc", "order")).count, 1)
        self.assertEqual((await self.messages.search_messages("abc", "ASSISTANT")).count, 1)
        self.assertEqual((await self.messages.search_messages("abc", "billing")).count, 1)
        self.assertEqual((await self.messages.search_messages("abc", "e", limit=2)).count, 2)

    async def test_update_overrides_and_merges(self):
        created = (await self.messages.create_message("abc", "user", "draft", {"a": 1})).data

        updated = await self.messages.update_message(
            "abc", created.message_id, {"content": "final", "metadata": {"b": 2}}
        )

        self.assertTrue(updated.success)
        self.assertEqual(updated.data.content, "final")
        self.assertEqual(updated.data.role, "user")
        self.assertEqual(updated.data.metadata, {"a": 1, "b": 2})
        self.assertEqual((await self.messages.get_message("abc", created.message_id)).data.content, "final")

    async def test_update_missing(self):
        self.assertFalse((await self.messages.update_message("abc", "msg_x", {"content": "x"})).success)

    async def test_delete_removes_from_list_and_index(self):
        keep = (await self.messages.create_message("abc", "user", "keep")).data
        drop = (await self.messages.create_message("abc", "user", "drop")).data

        self.assertTrue((await self.messages.delete_message("abc", drop.message_id)).success)

        self.assertEqual(self.fake.data["s:abc:ms"], [keep.message_id])
        self.assertEqual(self.fake.data["s:abc:ms:index"], {keep.message_id})
        self.assertFalse((await self.messages.delete_message("abc", drop.message_id)).success)

    async def test_delete_all_and_count(self):
        for i in range(3):
            await self.messages.create_message("abc", "user", f"m{i}")
        self.assertEqual((await self.messages.get_message_count("abc")).data, 3)

        deleted = await self.messages.delete_all_messages("abc")

        self.assertEqual(deleted.data, 3)
        self.assertEqual((await self.messages.get_message_count("abc")).data, 0)
        self.assertEqual([key for key in self.fake.data if key.startswith("s:abc:")], [])
        self.assertIn("s:abc", self.fake.data)

    async def test_recent_messages_window_and_order(self):
        old = Message(
            message_id="msg_old",
            session_id="abc",
            role="user",
            content="ancient",
            created_at=utc_now() - timedelta(hours=30),
        )
        self.fake.data["s:abc:m:msg_old"] = old.model_dump_json()
        self.fake.data.setdefault("s:abc:ms:index", set()).add("msg_old")
        first = (await self.messages.create_message("abc", "user", "first")).data
        second = (await self.messages.create_message("abc", "user", "second")).data

        recent = await self.messages.get_recent_messages("abc", hours=24)

        ids = [m.message_id for m in recent.data]
        self.assertNotIn("msg_old", ids)
        self.assertEqual(set(ids), {first.message_id, second.message_id})
        self.assertGreaterEqual(recent.data[0].created_at, recent.data[1].created_at)

        wide = await self.messages.get_recent_messages("abc", hours=48)
        self.assertEqual(wide.count, 3)


if __name__ == "__main__":
    unittest.main()
