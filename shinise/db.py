import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Key -> JSON document store on SQLite, one row per (collection, key)."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS documents(
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                );
                CREATE INDEX IF NOT EXISTS idx_documents_created ON documents(collection, created_at);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def get_doc(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone(
            "SELECT data_json, created_at FROM documents WHERE collection=? AND key=?",
            (collection, key),
        )
        if not row:
            return None
        return {"data": json.loads(row["data_json"]), "created_at": from_iso(row["created_at"])}

    async def set_doc(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> None:
        # Last write wins; no version check.
        await self.execute(
            "INSERT INTO documents(collection, key, data_json, created_at) VALUES (?,?,?,?) "
            "ON CONFLICT(collection, key) DO UPDATE SET data_json=excluded.data_json, created_at=excluded.created_at",
            (collection, key, json.dumps(data, ensure_ascii=False), to_iso(created_at or utc_now())),
        )
