import unittest

from redis_session import keyspace
from redis_session.errors import InvalidKeyError


class TestKeyspace(unittest.TestCase):
    def test_info_key_round_trip(self):
        for category, key in [("docs", "readme"), ("cfg", "a:b:c"), ("x", "1")]:
            with self.subTest(category=category, key=key):
                redis_key = keyspace.info_key(category, key)
                self.assertEqual(keyspace.parse_info_key(redis_key), (category, key))

    def test_info_key_layout(self):
        self.assertEqual(keyspace.info_key("docs", "readme"), "i:docs:readme")
        self.assertEqual(keyspace.category_key("docs"), "c:docs")

    def test_category_with_separator_is_rejected(self):
        with self.assertRaises(InvalidKeyError):
            keyspace.info_key("a:b", "k")
        with self.assertRaises(InvalidKeyError):
            keyspace.category_key("")

    def test_invalid_key_error_is_a_value_error(self):
        with self.assertRaises(ValueError):
            keyspace.session_key("bad:id")

    def test_parse_info_key_rejects_other_keys(self):
        for bad in ["s:abc", "i:docs", "i::k", "docs:readme"]:
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidKeyError):
                    keyspace.parse_info_key(bad)

    def test_session_and_message_keys(self):
        self.assertEqual(keyspace.session_key("abc"), "s:abc")
        self.assertEqual(keyspace.message_key("abc", "msg_1"), "s:abc:m:msg_1")
        self.assertEqual(keyspace.session_messages_key("abc"), "s:abc:ms")
        self.assertEqual(keyspace.session_messages_index_key("abc"), "s:abc:ms:index")

    def test_is_session_key_only_matches_primary_keys(self):
        self.assertTrue(keyspace.is_session_key("s:abc"))
        self.assertFalse(keyspace.is_session_key("s:abc:ms"))
        self.assertFalse(keyspace.is_session_key("s:abc:m:msg_1"))
        self.assertFalse(keyspace.is_session_key("sessions:index"))
        self.assertEqual(keyspace.session_id_from_key("s:abc"), "abc")

    def test_is_message_key(self):
        self.assertTrue(keyspace.is_message_key("s:abc:m:msg_1"))
        self.assertFalse(keyspace.is_message_key("s:abc:ms:index"))
        self.assertFalse(keyspace.is_message_key("s:abc"))

    def test_scan_patterns(self):
        self.assertEqual(keyspace.info_pattern(), "i:*")
        self.assertEqual(keyspace.info_pattern("read"), "i:*read*")
        self.assertEqual(keyspace.info_pattern("read", "docs"), "i:docs:*read*")
        self.assertEqual(keyspace.session_pattern("ab"), "s:*ab*")

    def test_cache_scopes_do_not_overlap_between_categories(self):
        scope = keyspace.info_cache_scope("docs")
        self.assertTrue(keyspace.info_cache_key("docs", "a").startswith(scope))
        self.assertNotIn(scope, keyspace.info_cache_key("docs2", "a"))

    def test_session_cache_key_cannot_collide_with_active_listing(self):
        self.assertNotEqual(keyspace.session_cache_key("active"), keyspace.active_sessions_cache_key())

    def test_session_owned_keys(self):
        self.assertEqual(
            keyspace.session_owned_keys("abc", ["m1", "m2"]),
            ["s:abc", "s:abc:m:m1", "s:abc:m:m2", "s:abc:ms", "s:abc:ms:index"],
        )


if __name__ == "__main__":
    unittest.main()
