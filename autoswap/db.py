from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS records (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def get_record(self, key: str) -> Optional[Any]:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("SELECT value_json FROM records WHERE key = ?", (key,))
            row = await cur.fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return None

    async def set_records(self, items: dict[str, Any]) -> None:
        if not items:
            return
        now = utc_now_iso()
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO records(key, value_json, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at
                """,
                [(key, json.dumps(value), now) for key, value in items.items()],
            )
            await db.commit()
