"""
Oracle — Key-Value Document Store
The persistence layer: key → JSON document, single-key atomic writes,
no transactions across keys.

Two backends:
  MemoryKVStore    — in-process dict (tests, throwaway sessions)
  PostgresKVStore  — one kv_documents table (JSONB), psycopg2 SimpleConnectionPool

Reads of a missing key return the caller's default.
Write failures raise StorageError so callers can retry.
"""
import copy
import json
import logging
import threading
from typing import Any

import psycopg2
import psycopg2.extras
import psycopg2.pool

from config.settings import config

logger = logging.getLogger("oracle.kv_store")


class StorageError(Exception):
    """The persistence layer rejected a read or write."""


class KeyValueStore:
    """Interface shared by every backend."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list:
        raise NotImplementedError


class MemoryKVStore(KeyValueStore):
    """Dict-backed store. Values are deep-copied in and out, like a real round-trip."""

    def __init__(self, initial: dict = None):
        self._data = {}
        self._lock = threading.Lock()
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key, default=None):
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key, value):
        try:
            # Same constraint as the JSONB column: value must be JSON-serializable
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {e}") from e
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return sorted(self._data)


class PostgresKVStore(KeyValueStore):
    """JSONB documents in PostgreSQL, one row per key, upserted on write."""

    _instance = None

    @classmethod
    def _get_global_instance(cls):
        """Return the module-level singleton. Lazy-init if needed."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self, table: str = None, pool=None):
        self.table = table or config.storage.table
        self._pool = pool
        if self._pool is None:
            self._init_pool()
        self._ensure_table()

    # -------------------------------------------------------
    # Connection pool management
    # -------------------------------------------------------

    def _init_pool(self):
        """Initialize psycopg2 connection pool."""
        try:
            self._pool = psycopg2.pool.SimpleConnectionPool(
                minconn=1,
                maxconn=5,
                **config.postgres.dsn_params,
            )
            logger.info("PostgreSQL connection pool initialized")
        except psycopg2.Error as e:
            logger.warning(f"PostgreSQL pool init failed (non-fatal): {e}")
            self._pool = None

    def _get_conn(self):
        """Get a connection from pool. Raises StorageError if the database is unreachable."""
        if self._pool is None:
            self._init_pool()
        if self._pool is None:
            raise StorageError("PostgreSQL unavailable")
        try:
            return self._pool.getconn()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to get PostgreSQL connection: {e}") from e

    def _put_conn(self, conn):
        """Return connection to pool."""
        if self._pool and conn:
            try:
                self._pool.putconn(conn)
            except psycopg2.Error as e:
                logger.warning(f"putconn failed (non-fatal): {e}")

    def _ensure_table(self):
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key         TEXT PRIMARY KEY,
                    value       JSONB NOT NULL,
                    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            conn.commit()
            cur.close()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"Could not create {self.table}: {e}") from e
        finally:
            self._put_conn(conn)

    # -------------------------------------------------------
    # Key-value operations
    # -------------------------------------------------------

    def get(self, key, default=None):
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT value FROM {self.table} WHERE key = %s", (key,))
            row = cur.fetchone()
            cur.close()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"get({key!r}) failed: {e}") from e
        finally:
            self._put_conn(conn)

        if row is None:
            return default
        value = row[0]
        # psycopg2 decodes JSONB already; plain JSON text when the column type differs
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Stored value for {key!r} is not JSON — returning default")
                return default
        return value

    def set(self, key, value):
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                INSERT INTO {self.table} (key, value, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (key, psycopg2.extras.Json(value)),
            )
            conn.commit()
            cur.close()
            logger.debug(f"Stored {key}")
        except (psycopg2.Error, TypeError) as e:
            conn.rollback()
            logger.error(f"set({key!r}) failed: {e}")
            raise StorageError(f"set({key!r}) failed: {e}") from e
        finally:
            self._put_conn(conn)

    def delete(self, key):
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"DELETE FROM {self.table} WHERE key = %s", (key,))
            conn.commit()
            cur.close()
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"delete({key!r}) failed: {e}") from e
        finally:
            self._put_conn(conn)

    def keys(self):
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT key FROM {self.table} ORDER BY key")
            rows = cur.fetchall()
            cur.close()
            return [r[0] for r in rows]
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"keys() failed: {e}") from e
        finally:
            self._put_conn(conn)

    def close(self):
        if self._pool:
            self._pool.closeall()
            logger.info("PostgreSQL pool closed")


def get_store(backend: str = None) -> KeyValueStore:
    """Store selected by ORACLE_STORAGE (postgres | memory)."""
    backend = (backend or config.storage.backend).lower()
    if backend == "memory":
        return MemoryKVStore()
    if backend == "postgres":
        return PostgresKVStore._get_global_instance()
    raise ValueError(f"Unknown storage backend: {backend!r}")
