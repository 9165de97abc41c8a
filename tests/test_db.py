from datetime import datetime, timezone
from pathlib import Path

import pytest

from shinise.db import Database, from_iso, to_iso


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    assert "documents" in {row["name"] for row in rows}


@pytest.mark.asyncio
async def test_set_doc_upserts_last_write_wins(tmp_path: Path):
    db = Database(str(tmp_path / "docs.db"))
    await db.init()
    first = datetime(2025, 1, 1, tzinfo=timezone.utc)
    second = datetime(2025, 2, 1, tzinfo=timezone.utc)
    await db.set_doc("shops", "place1", {"name": "一号店"}, created_at=first)
    await db.set_doc("shops", "place1", {"name": "二号店"}, created_at=second)

    doc = await db.get_doc("shops", "place1")
    assert doc["data"] == {"name": "二号店"}
    assert doc["created_at"] == second
    row = await db.fetchone("SELECT COUNT(*) AS cnt FROM documents")
    assert row["cnt"] == 1


@pytest.mark.asyncio
async def test_get_doc_is_scoped_by_collection(tmp_path: Path):
    db = Database(str(tmp_path / "docs.db"))
    await db.init()
    await db.set_doc("searches", "k", {"shops": []})
    assert await db.get_doc("shops", "k") is None
    assert await db.get_doc("searches", "missing") is None


def test_iso_helpers_use_utc_z_suffix():
    value = datetime(2025, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    assert to_iso(value) == "2025-05-06T07:08:09Z"
    assert from_iso("2025-05-06T07:08:09Z") == value
    assert from_iso("2025-05-06T07:08:09").tzinfo is not None
