import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT,
                    prompt TEXT,
                    concurrency_key TEXT,
                    status TEXT,
                    answer TEXT,
                    turns INTEGER DEFAULT 0,
                    error_text TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_run_seq ON events(run_id, seq);
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
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

    async def insert_run(
        self,
        run_id: str,
        prompt: str,
        concurrency_key: Optional[str] = None,
        status: str = "running",
    ) -> None:
        created_at = utc_now()
        await self.execute(
            "INSERT OR REPLACE INTO runs(run_id, created_at, updated_at, prompt, concurrency_key, status) "
            "VALUES (?,?,?,?,?,?)",
            (run_id, created_at, created_at, prompt, concurrency_key or "", status),
        )

    async def finalize_run(
        self,
        run_id: str,
        status: str,
        answer: Optional[str],
        turns: int,
        error_text: str = "",
    ) -> None:
        await self.execute(
            "UPDATE runs SET status=?, answer=?, turns=?, error_text=?, updated_at=? WHERE run_id=?",
            (status, answer, turns, error_text, utc_now(), run_id),
        )

    async def update_run_status(self, run_id: str, status: str) -> None:
        await self.execute(
            "UPDATE runs SET status=?, updated_at=? WHERE run_id=?", (status, utc_now(), run_id)
        )

    async def get_run_summary(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT run_id, created_at, updated_at, prompt, concurrency_key, status, answer, turns, error_text "
            "FROM runs WHERE run_id=?",
            (run_id,),
        )
        if not row:
            return None
        return {
            "run_id": row["run_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "prompt": row["prompt"],
            "concurrency_key": row["concurrency_key"],
            "status": row["status"],
            "answer": row["answer"],
            "turns": row["turns"] or 0,
            "error_text": row["error_text"] or "",
        }

    async def next_event_seq(self, run_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE run_id=?", (run_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(run_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (run_id, seq, event_type, json.dumps(payload, default=str), created_at),
        )
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
