"""
Durable Request Store
=====================

[PERSISTENCE] Key/value store shared by every context of the wallet.

Holds:
- one slot per request class (pending approval records)
- the saved credential list and saved soulbound list
- the wallet lock flag

Values are JSON documents. The store itself has no notion of request
classes: callers choose the keys.

[CONSISTENCY] Only the background orchestrator writes; other contexts read.
Writes are serialized by an asyncio lock so a read-modify-write from one
coroutine cannot interleave with another write.

[STORAGE] Table:
    kv (key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at REAL NOT NULL)
"""

import asyncio
import json
import time
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class StoreNotInitialized(RuntimeError):
    """Raised when the store is used before ``initialize()`` or after ``close()``."""


class DurableRequestStore:
    """
    SQLite-backed key/value store.

    [USAGE]
        store = DurableRequestStore("data/wallet_state.db")
        await store.initialize()

        await store.set("pendingAddressRequest", {...})
        record = await store.get("pendingAddressRequest")
        await store.remove("pendingAddressRequest")
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create the table if needed."""
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)

        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        await self._db.commit()

        logger.info(f"[STORE] Opened {self.db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("[STORE] Closed")

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreNotInitialized("DurableRequestStore is not initialized")
        return self._db

    async def get(self, key: str, default: Any = None) -> Any:
        cursor = await self._conn().execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return default
        return json.loads(row[0])

    async def get_many(self, keys: List[str]) -> Dict[str, Any]:
        """Return only the keys that exist (like ``storage.get([...])``)."""
        result: Dict[str, Any] = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                result[key] = value
        return result

    async def set(self, key: str, value: Any) -> None:
        data = json.dumps(value, separators=(",", ":"), sort_keys=True)
        async with self._lock:
            db = self._conn()
            await db.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, data, time.time()),
            )
            await db.commit()

    async def remove(self, *keys: str) -> int:
        """Delete keys. Returns how many existed."""
        if not keys:
            return 0
        async with self._lock:
            db = self._conn()
            placeholders = ",".join("?" for _ in keys)
            cursor = await db.execute(f"DELETE FROM kv WHERE key IN ({placeholders})", keys)
            removed = cursor.rowcount
            await cursor.close()
            await db.commit()
        return removed

    async def remove_if(self, key: str, predicate: Callable[[Any], bool]) -> bool:
        """Delete ``key`` only if its current value satisfies ``predicate``, atomically w.r.t. writes."""
        async with self._lock:
            db = self._conn()
            cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = await cursor.fetchone()
            await cursor.close()
            if row is None or not predicate(json.loads(row[0])):
                return False
            await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
        return True

    async def keys(self) -> List[str]:
        cursor = await self._conn().execute("SELECT key FROM kv ORDER BY key")
        rows = await cursor.fetchall()
        await cursor.close()
        return [row[0] for row in rows]

    async def contains(self, key: str) -> bool:
        cursor = await self._conn().execute("SELECT 1 FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
        return row is not None

    async def clear(self) -> None:
        async with self._lock:
            db = self._conn()
            await db.execute("DELETE FROM kv")
            await db.commit()
