"""
Tests for the key-value persistence layer.
PostgresKVStore runs against a mocked psycopg2 pool, no live database.
"""
import unittest
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.extras
import pytest

from memory.kv_store import MemoryKVStore, PostgresKVStore, StorageError, get_store


# ------------------------------------------------------------
# MemoryKVStore
# ------------------------------------------------------------

def test_memory_missing_key_returns_default():
    store = MemoryKVStore()
    assert store.get("nope") is None
    assert store.get("nope", []) == []


def test_memory_values_are_copied():
    store = MemoryKVStore()
    value = {"heroes": ["Attila"]}
    store.set("k", value)
    value["heroes"].append("Cid")
    read = store.get("k")
    assert read == {"heroes": ["Attila"]}
    read["heroes"].clear()
    assert store.get("k") == {"heroes": ["Attila"]}


def test_memory_rejects_non_json_values():
    store = MemoryKVStore()
    with pytest.raises(StorageError):
        store.set("k", {"when": object()})


def test_memory_delete_and_keys():
    store = MemoryKVStore({"b": 1, "a": 2})
    assert store.keys() == ["a", "b"]
    store.delete("a")
    store.delete("missing")
    assert store.keys() == ["b"]


def test_get_store_backends():
    assert isinstance(get_store("memory"), MemoryKVStore)
    with pytest.raises(ValueError):
        get_store("redis")


# ------------------------------------------------------------
# PostgresKVStore
# ------------------------------------------------------------

class TestPostgresKVStore(unittest.TestCase):

    def setUp(self):
        self.pool = MagicMock()
        self.conn = self.pool.getconn.return_value
        self.cur = self.conn.cursor.return_value
        self.store = PostgresKVStore(table="kv_test", pool=self.pool)

    def test_table_created_on_init(self):
        sql = self.cur.execute.call_args_list[0].args[0]
        self.assertIn("CREATE TABLE IF NOT EXISTS kv_test", sql)
        self.conn.commit.assert_called()
        self.pool.putconn.assert_called_with(self.conn)

    def test_get_returns_decoded_jsonb(self):
        self.cur.fetchone.return_value = ([{"id": "acct_1"}],)
        self.assertEqual(self.store.get("oracle_accounts"), [{"id": "acct_1"}])
        self.assertEqual(self.cur.execute.call_args.args[1], ("oracle_accounts",))

    def test_get_missing_key_returns_default(self):
        self.cur.fetchone.return_value = None
        self.assertEqual(self.store.get("missing", []), [])

    def test_get_decodes_json_text(self):
        self.cur.fetchone.return_value = ('{"a": 1}',)
        self.assertEqual(self.store.get("k"), {"a": 1})

    def test_set_upserts_json(self):
        self.store.set("k", {"a": 1})
        sql, params = self.cur.execute.call_args.args
        self.assertIn("ON CONFLICT (key) DO UPDATE", sql)
        self.assertEqual(params[0], "k")
        self.assertIsInstance(params[1], psycopg2.extras.Json)
        self.conn.commit.assert_called()

    def test_set_failure_raises_and_rolls_back(self):
        self.cur.execute.side_effect = psycopg2.OperationalError("server closed the connection")
        with self.assertRaises(StorageError):
            self.store.set("k", {"a": 1})
        self.conn.rollback.assert_called()
        self.pool.putconn.assert_called_with(self.conn)

    def test_delete(self):
        self.store.delete("k")
        sql, params = self.cur.execute.call_args.args
        self.assertIn("DELETE FROM kv_test", sql)
        self.assertEqual(params, ("k",))

    def test_keys(self):
        self.cur.fetchall.return_value = [("a",), ("b",)]
        self.assertEqual(self.store.keys(), ["a", "b"])


def test_postgres_unreachable_raises_storage_error():
    with patch("memory.kv_store.psycopg2.pool.SimpleConnectionPool",
               side_effect=psycopg2.OperationalError("could not connect")):
        with pytest.raises(StorageError):
            PostgresKVStore(table="kv_test")
