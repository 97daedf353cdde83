import os
import unittest

from pydantic import ValidationError

from redis_session.config import Settings


class TestConfig(unittest.TestCase):
    def setUp(self):
        self._saved = {key: value for key, value in os.environ.items() if key.startswith("REDIS_")}
        for key in self._saved:
            os.environ.pop(key)

    def tearDown(self):
        for key in [key for key in os.environ if key.startswith("REDIS_")]:
            os.environ.pop(key)
        os.environ.update(self._saved)

    def test_settings_defaults(self):
        s = Settings()
        self.assertEqual(s.host, "localhost")
        self.assertEqual(s.port, 6379)
        self.assertEqual(s.cache_ttl, 3600)
        self.assertEqual(s.batch_size, 100)
        self.assertEqual(s.connection_url(), "redis://localhost:6379/0")

    def test_settings_env_override(self):
        os.environ["REDIS_HOST"] = "cache.internal"
        os.environ["REDIS_PORT"] = "6380"
        os.environ["REDIS_DB"] = "2"
        s = Settings()
        self.assertEqual(s.connection_url(), "redis://cache.internal:6380/2")

    def test_url_overrides_host_and_port(self):
        os.environ["REDIS_URL"] = "redis://:pw@elsewhere:7000/1"
        os.environ["REDIS_HOST"] = "ignored"
        s = Settings()
        self.assertEqual(s.connection_url(), "redis://:pw@elsewhere:7000/1")

    def test_blank_password_is_treated_as_unset(self):
        os.environ["REDIS_PASSWORD"] = "   "
        s = Settings()
        self.assertIsNone(s.password)
        self.assertEqual(s.connection_url(), "redis://localhost:6379/0")

    def test_masked_url_hides_password(self):
        os.environ["REDIS_PASSWORD"] = "hunter2"
        s = Settings()
        self.assertIn("hunter2", s.connection_url())
        self.assertEqual(s.masked_url(), "redis://:***@localhost:6379/0")

    def test_batch_size_must_be_positive(self):
        os.environ["REDIS_BATCH_SIZE"] = "0"
        with self.assertRaises(ValidationError):
            Settings()


if __name__ == "__main__":
    unittest.main()
