import unittest
from unittest.mock import patch

from redis.exceptions import ConnectionError as RedisConnectionError

from redis_session import check_store as cs
from redis_session.check_store import get_store_status
from redis_session.config import Settings
from tests.fakes import FakeRedis


class TestCheckStore(unittest.IsolatedAsyncioTestCase):
    async def test_get_store_status_ok(self):
        status = await get_store_status(Settings(password="pw"), client=FakeRedis())
        self.assertTrue(status["reachable"])
        self.assertTrue(status["ok"])
        self.assertEqual(status["redis_version"], "7.2.4")
        self.assertEqual(status["url"], "redis://:***@localhost:6379/0")
        self.assertIsNone(status["error"])

    async def test_get_store_status_unreachable(self):
        fake = FakeRedis()
        fake.ping_error = RedisConnectionError("Connection refused")
        status = await get_store_status(Settings(), client=fake)
        self.assertFalse(status["reachable"])
        self.assertFalse(status["ok"])
        self.assertIn("Connection refused", status["error"])


class TestHardCheck(unittest.TestCase):
    def test_check_store_exits_when_unreachable(self):
        async def unreachable(settings=None):
            return {"ok": False, "reachable": False, "url": "redis://localhost:6379/0", "redis_version": None,
                    "error": "Connection refused"}

        with patch.object(cs, "get_store_status", unreachable):
            with self.assertRaises(SystemExit) as ctx:
                cs.check_store(Settings())
        self.assertEqual(ctx.exception.code, 1)

    def test_check_store_passes_when_reachable(self):
        async def reachable(settings=None):
            return {"ok": True, "reachable": True, "url": "redis://localhost:6379/0", "redis_version": "7.2.4",
                    "error": None}

        with patch.object(cs, "get_store_status", reachable):
            cs.check_store(Settings())


if __name__ == "__main__":
    unittest.main()
