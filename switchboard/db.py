import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS threads(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    title TEXT,
                    agent TEXT,
                    metadata_json TEXT,
                    version INTEGER DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT,
                    user_id TEXT,
                    role TEXT,
                    content TEXT,
                    agent TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, id);
                CREATE TABLE IF NOT EXISTS memories(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    memory_type TEXT,
                    content TEXT,
                    importance REAL DEFAULT 0.5,
                    source_thread_id TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS documents(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    title TEXT,
                    content TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS routing_telemetry(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    thread_id TEXT,
                    message_id INTEGER,
                    agent TEXT,
                    routing_source TEXT,
                    confidence REAL,
                    rationale TEXT,
                    latency_ms INTEGER,
                    tools_used_json TEXT,
                    fallback_used INTEGER DEFAULT 0,
                    success INTEGER DEFAULT 1,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS response_quality(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    thread_id TEXT,
                    message_id TEXT,
                    agent TEXT,
                    quality_overall REAL,
                    quality_relevance REAL,
                    quality_completeness REAL,
                    quality_clarity REAL,
                    quality_helpfulness REAL,
                    latency_ms INTEGER,
                    has_code INTEGER,
                    has_citations INTEGER,
                    is_structured INTEGER,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS response_feedback(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    message_id TEXT,
                    agent TEXT,
                    feedback_type TEXT,
                    feedback_signal TEXT,
                    feedback_source TEXT,
                    strength REAL,
                    created_at TEXT
                );
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

    async def _insert(self, query: str, params: Tuple[Any, ...]) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    # Threads

    def _thread_row(self, row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "agent": row["agent"],
            "metadata": _json_loads(row["metadata_json"], {}),
            "version": row["version"] or 0,
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def create_thread(self, user_id: str, title: Optional[str] = None, thread_id: Optional[str] = None) -> dict:
        tid = thread_id or uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO threads(id, user_id, title, agent, metadata_json, version, created_at, updated_at) "
            "VALUES (?,?,?,?,?,0,?,?)",
            (tid, user_id, title or "New chat", None, _json_dumps({}), created_at, created_at),
        )
        return {
            "id": tid,
            "user_id": user_id,
            "title": title or "New chat",
            "agent": None,
            "metadata": {},
            "version": 0,
            "created_at": created_at,
            "updated_at": created_at,
        }

    async def get_thread(self, thread_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, user_id, title, agent, metadata_json, version, created_at, updated_at FROM threads WHERE id=?",
            (thread_id,),
        )
        return self._thread_row(row) if row else None

    async def list_threads(self, user_id: str, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, user_id, title, agent, metadata_json, version, created_at, updated_at FROM threads "
            "WHERE user_id=? ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._thread_row(r) for r in rows]

    async def update_thread_metadata(
        self,
        thread_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
        agent: Optional[str] = None,
    ) -> bool:
        """Merge `patch` into the thread metadata.

        With `expected_version` the write only lands if the stored version still matches
        (returns False otherwise). Without it the write is last-write-wins.
        """
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT metadata_json, version FROM threads WHERE id=?", (thread_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                return False
            current_version = row["version"] or 0
            if expected_version is not None and current_version != expected_version:
                return False
            metadata = _json_loads(row["metadata_json"], {})
            metadata.update(patch)
            cursor = await db.execute(
                "UPDATE threads SET metadata_json=?, version=version+1, agent=COALESCE(?, agent), updated_at=? "
                "WHERE id=? AND version=?",
                (_json_dumps(metadata), agent, utc_now(), thread_id, current_version),
            )
            updated = cursor.rowcount
            await db.commit()
            return updated == 1

    async def touch_thread(self, thread_id: str, agent: Optional[str] = None) -> None:
        await self.execute(
            "UPDATE threads SET updated_at=?, agent=COALESCE(?, agent) WHERE id=?",
            (utc_now(), agent, thread_id),
        )

    # Messages

    async def add_message(
        self,
        thread_id: str,
        user_id: str,
        role: str,
        content: str,
        agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        created_at = utc_now()
        message_id = await self._insert(
            "INSERT INTO messages(thread_id, user_id, role, content, agent, metadata_json, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (thread_id, user_id, role, content, agent, _json_dumps(metadata or {}), created_at),
        )
        await self.touch_thread(thread_id, agent if role == "assistant" else None)
        return {"id": message_id, "created_at": created_at}

    async def list_messages(self, thread_id: str, limit: int = 200) -> List[dict]:
        """Oldest first; `limit` keeps the most recent rows."""
        rows = await self.fetchall(
            "SELECT * FROM (SELECT id, thread_id, role, content, agent, metadata_json, created_at FROM messages "
            "WHERE thread_id=? ORDER BY id DESC LIMIT ?) ORDER BY id ASC",
            (thread_id, limit),
        )
        return [
            {
                "id": r["id"],
                "thread_id": r["thread_id"],
                "role": r["role"],
                "content": r["content"],
                "agent": r["agent"],
                "metadata": _json_loads(r["metadata_json"], {}),
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    async def get_last_assistant_message(self, thread_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, content, agent, created_at FROM messages WHERE thread_id=? AND role='assistant' "
            "ORDER BY id DESC LIMIT 1",
            (thread_id,),
        )
        return dict(row) if row else None

    # Memories and documents

    async def add_memory(
        self,
        user_id: str,
        memory_type: str,
        content: str,
        importance: float = 0.5,
        source_thread_id: Optional[str] = None,
    ) -> int:
        return await self._insert(
            "INSERT INTO memories(user_id, memory_type, content, importance, source_thread_id, created_at) "
            "VALUES (?,?,?,?,?,?)",
            (user_id, memory_type, content, importance, source_thread_id, utc_now()),
        )

    async def list_memories(self, user_id: str, limit: int = 10) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, memory_type, content, importance, source_thread_id, created_at FROM memories "
            "WHERE user_id=? ORDER BY importance DESC, created_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        )
        return [dict(r) for r in rows]

    async def delete_memory(self, user_id: str, memory_id: int) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM memories WHERE id=? AND user_id=?", (memory_id, user_id))
            await db.commit()
            return cursor.rowcount > 0

    async def add_document(self, user_id: str, title: str, content: str) -> int:
        return await self._insert(
            "INSERT INTO documents(user_id, title, content, created_at) VALUES (?,?,?,?)",
            (user_id, title, content, utc_now()),
        )

    async def search_documents(self, user_id: str, terms: List[str], limit: int = 5) -> List[dict]:
        if not terms:
            return []
        clauses = " OR ".join(["content LIKE ? OR title LIKE ?"] * len(terms))
        params: List[Any] = [user_id]
        for term in terms:
            params.extend([f"%{term}%", f"%{term}%"])
        params.append(limit)
        rows = await self.fetchall(
            f"SELECT id, title, content, created_at FROM documents WHERE user_id=? AND ({clauses}) "
            "ORDER BY created_at DESC LIMIT ?",
            tuple(params),
        )
        return [dict(r) for r in rows]

    # Telemetry and quality

    async def add_routing_telemetry(
        self,
        user_id: str,
        thread_id: str,
        message_id: Optional[int],
        decision: dict,
        latency_ms: int,
        tools_used: List[str],
        fallback_used: bool,
        success: bool = True,
    ) -> int:
        return await self._insert(
            "INSERT INTO routing_telemetry(user_id, thread_id, message_id, agent, routing_source, confidence, rationale, "
            "latency_ms, tools_used_json, fallback_used, success, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                user_id,
                thread_id,
                message_id,
                decision.get("agent"),
                decision.get("source"),
                decision.get("confidence"),
                decision.get("rationale"),
                latency_ms,
                _json_dumps(tools_used),
                1 if fallback_used else 0,
                1 if success else 0,
                utc_now(),
            ),
        )

    async def list_routing_telemetry(self, thread_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM routing_telemetry WHERE thread_id=? ORDER BY id ASC",
            (thread_id,),
        )
        return [{**dict(r), "tools_used": _json_loads(r["tools_used_json"], [])} for r in rows]

    async def add_response_quality(
        self,
        user_id: str,
        thread_id: str,
        message_id: Optional[str],
        agent: str,
        score: dict,
        latency_ms: int,
    ) -> int:
        dims = score.get("dimensions") or {}
        flags = score.get("flags") or {}
        return await self._insert(
            "INSERT INTO response_quality(user_id, thread_id, message_id, agent, quality_overall, quality_relevance, "
            "quality_completeness, quality_clarity, quality_helpfulness, latency_ms, has_code, has_citations, "
            "is_structured, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                user_id,
                thread_id,
                str(message_id) if message_id is not None else None,
                agent,
                score.get("overall"),
                dims.get("relevance"),
                dims.get("completeness"),
                dims.get("clarity"),
                dims.get("helpfulness"),
                latency_ms,
                1 if flags.get("contains_code") else 0,
                1 if flags.get("contains_citations") else 0,
                1 if flags.get("is_structured") else 0,
                utc_now(),
            ),
        )

    async def list_response_quality(self, agent: str, since: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT quality_overall, latency_ms, created_at FROM response_quality "
            "WHERE agent=? AND created_at>=? ORDER BY created_at ASC, id ASC",
            (agent, since),
        )
        return [dict(r) for r in rows]

    async def add_response_feedback(
        self,
        user_id: str,
        message_id: Optional[str],
        agent: Optional[str],
        feedback: dict,
    ) -> int:
        return await self._insert(
            "INSERT INTO response_feedback(user_id, message_id, agent, feedback_type, feedback_signal, "
            "feedback_source, strength, created_at) VALUES (?,?,?,?,?,?,?,?)",
            (
                user_id,
                str(message_id) if message_id is not None else None,
                agent,
                feedback.get("type"),
                feedback.get("signal"),
                feedback.get("source"),
                feedback.get("strength"),
                utc_now(),
            ),
        )

    async def list_response_feedback(self, agent: str, since: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT feedback_type, feedback_signal, feedback_source, strength, created_at FROM response_feedback "
            "WHERE agent=? AND created_at>=? ORDER BY id ASC",
            (agent, since),
        )
        return [dict(r) for r in rows]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
