"""
Tests for the table schema cache.
"""

import unittest

from schema_cache import SchemaCache


class TestSchemaCache(unittest.TestCase):

    def test_get_set_case_insensitive(self):
        cache = SchemaCache()
        cache.set("dbo", "Orders", ["OrderID"])
        self.assertEqual(cache.get("DBO", "orders"), ["OrderID"])
        self.assertIsNone(cache.get("dbo", "Customers"))

        stats = cache.get_stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate"], 0.5)

    def test_expired_entry_is_a_miss(self):
        cache = SchemaCache()
        cache.set("dbo", "Orders", ["OrderID"], ttl=-1)
        self.assertIsNone(cache.get("dbo", "Orders"))
        self.assertEqual(cache.get_stats()["expirations"], 1)
        self.assertEqual(len(cache), 0)

    def test_lru_eviction(self):
        cache = SchemaCache(max_size=2)
        cache.set("dbo", "A", 1)
        cache.set("dbo", "B", 2)
        cache.get("dbo", "A")
        cache.set("dbo", "C", 3)

        self.assertEqual(cache.get("dbo", "A"), 1)
        self.assertIsNone(cache.get("dbo", "B"))
        self.assertEqual(cache.get_stats()["evictions"], 1)

    def test_get_or_load_calls_loader_once(self):
        cache = SchemaCache()
        calls = []

        def loader():
            calls.append(1)
            return ["OrderID", "Freight"]

        self.assertEqual(cache.get_or_load("dbo", "Orders", loader), ["OrderID", "Freight"])
        self.assertEqual(cache.get_or_load("dbo", "Orders", loader), ["OrderID", "Freight"])
        self.assertEqual(len(calls), 1)

    def test_failed_load_not_cached(self):
        cache = SchemaCache()

        def failing_loader():
            raise RuntimeError("connection lost")

        with self.assertRaises(RuntimeError):
            cache.get_or_load("dbo", "Orders", failing_loader)
        self.assertEqual(len(cache), 0)
        self.assertEqual(cache.get_or_load("dbo", "Orders", lambda: ["OrderID"]), ["OrderID"])

    def test_invalidate_and_clear(self):
        cache = SchemaCache()
        cache.set("dbo", "Orders", 1)
        cache.set("dbo", "Products", 2)
        cache.invalidate("dbo", "orders")
        self.assertIsNone(cache.get("dbo", "Orders"))
        self.assertEqual(len(cache), 1)
        cache.clear()
        self.assertEqual(len(cache), 0)

    def test_cleanup_expired(self):
        cache = SchemaCache()
        cache.set("dbo", "Old", 1, ttl=-1)
        cache.set("dbo", "Fresh", 2)
        self.assertEqual(cache.cleanup_expired(), 1)
        self.assertEqual(cache.get("dbo", "Fresh"), 2)


if __name__ == "__main__":
    unittest.main()
