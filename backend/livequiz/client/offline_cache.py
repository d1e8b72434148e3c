"""Durable queue of answers the server has not acknowledged yet.

Entries live in a local SQLite file. If that storage cannot be opened or
fails later, the cache moves to memory for the rest of its lifetime and keeps
working; only durability across restarts is lost.
"""

import asyncio
import logging
import sqlite3
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from livequiz.client.events import EventEmitter
from livequiz.client.options import ClientOptions
from livequiz.exceptions import LiveQuizError, PermanentSubmissionFailure

logger = logging.getLogger(__name__)

PENDING = "pending"
SUBMITTED = "submitted"
FAILED = "failed"

# Server error codes a retry can never fix.
PERMANENT_ERROR_CODES = frozenset(
    {
        "duplicate",
        "session_not_found",
        "session_not_active",
        "session_closed",
        "question_not_found",
        "invalid_answer_format",
    }
)

_COLUMNS = (
    "id",
    "session_id",
    "question_id",
    "answer",
    "client_timestamp",
    "created_at",
    "retry_count",
    "status",
    "last_error",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS offline_responses (
    id TEXT PRIMARY KEY,
    session_id INTEGER NOT NULL,
    question_id INTEGER NOT NULL,
    answer TEXT NOT NULL,
    client_timestamp REAL,
    created_at REAL NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT
)
"""

Sender = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def is_permanent_failure(error_code: Optional[str]) -> bool:
    return bool(error_code) and error_code in PERMANENT_ERROR_CODES


class OfflineResponseCache:
    def __init__(
        self,
        options: Optional[ClientOptions] = None,
        *,
        path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventEmitter] = None,
    ):
        self.options = options or ClientOptions()
        self.path = path or self.options.cache_path or ":memory:"
        self._clock = clock
        self.events = events or EventEmitter()
        self.counters = {"stored": 0, "submitted": 0, "failed": 0, "dropped": 0}
        self._memory: Optional[Dict[str, Dict[str, Any]]] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._retry_lock = asyncio.Lock()
        try:
            self._conn = sqlite3.connect(self.path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute(_SCHEMA)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_offline_responses_status ON offline_responses (status, created_at)"
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._use_memory(exc)

    @property
    def using_memory(self) -> bool:
        return self._memory is not None

    def _use_memory(self, exc: Exception) -> None:
        logger.warning("Offline cache storage unavailable (%s); keeping entries in memory", exc)
        rows: Dict[str, Dict[str, Any]] = {}
        if self._conn is not None:
            try:
                for row in self._conn.execute("SELECT * FROM offline_responses"):
                    rows[row["id"]] = dict(row)
            except sqlite3.Error as copy_exc:
                logger.warning("Cached answers could not be recovered: %s", copy_exc)
            try:
                self._conn.close()
            except sqlite3.Error as close_exc:
                logger.debug("Closing offline cache storage failed: %s", close_exc)
        self._conn = None
        self._memory = rows

    def _write(self, sql: str, params: tuple = ()) -> int:
        if self._memory is None:
            try:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
                return cursor.rowcount
            except sqlite3.Error as exc:
                self._use_memory(exc)
        return -1

    def _rows(self, sql: str, params: tuple = ()) -> Optional[List[Dict[str, Any]]]:
        if self._memory is None:
            try:
                return [dict(row) for row in self._conn.execute(sql, params)]
            except sqlite3.Error as exc:
                self._use_memory(exc)
        return None

    async def store(
        self,
        session_id: int,
        question_id: int,
        answer: Any,
        client_timestamp: Optional[float] = None,
    ) -> Dict[str, Any]:
        entry = {
            "id": uuid.uuid4().hex,
            "session_id": int(session_id),
            "question_id": int(question_id),
            "answer": str(answer),
            "client_timestamp": client_timestamp if client_timestamp is not None else self._clock(),
            "created_at": self._clock(),
            "retry_count": 0,
            "status": PENDING,
            "last_error": None,
        }
        placeholders = ", ".join("?" for _ in _COLUMNS)
        if self._write(
            f"INSERT INTO offline_responses ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            tuple(entry[column] for column in _COLUMNS),
        ) < 0:
            self._memory[entry["id"]] = dict(entry)
        self.counters["stored"] += 1
        await self.events.emit("stored", dict(entry))
        return entry

    def entries(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status is None:
            rows = self._rows("SELECT * FROM offline_responses ORDER BY created_at, rowid")
        else:
            rows = self._rows(
                "SELECT * FROM offline_responses WHERE status = ? ORDER BY created_at, rowid", (status,)
            )
        if rows is None:
            rows = [
                dict(entry)
                for entry in self._memory.values()
                if status is None or entry["status"] == status
            ]
            rows.sort(key=lambda entry: entry["created_at"])
        return rows

    def pending(self) -> List[Dict[str, Any]]:
        return self.entries(PENDING)

    def pending_for_session(self, session_id: int) -> List[Dict[str, Any]]:
        return [entry for entry in self.pending() if entry["session_id"] == int(session_id)]

    def has_pending(self) -> bool:
        return bool(self.pending())

    def _remove(self, entry_id: str) -> None:
        if self._write("DELETE FROM offline_responses WHERE id = ?", (entry_id,)) < 0:
            self._memory.pop(entry_id, None)

    def _update(self, entry: Dict[str, Any]) -> None:
        if self._write(
            "UPDATE offline_responses SET retry_count = ?, status = ?, last_error = ? WHERE id = ?",
            (entry["retry_count"], entry["status"], entry["last_error"], entry["id"]),
        ) < 0:
            if entry["id"] in self._memory:
                self._memory[entry["id"]].update(
                    retry_count=entry["retry_count"], status=entry["status"], last_error=entry["last_error"]
                )

    def stats(self) -> Dict[str, int]:
        return {**self.counters, "pending": len(self.pending())}

    async def retry_all(self, send: Sender) -> List[Dict[str, Any]]:
        """Resubmit every pending entry through ``send``.

        ``send`` gets the entry and returns the server envelope. Success removes
        the entry. A permanent rejection removes it too, with no further
        retries. Anything else counts a retry; at ``max_retries`` the entry is
        marked failed and leaves the pending count.
        """
        async with self._retry_lock:
            entries = self.pending()
            if not entries:
                return []
            await self.events.emit("retrying", {"count": len(entries)})
            results = [await self._retry_one(entry, send) for entry in entries]
            await self.events.emit("retry_complete", {"results": results})
            return results

    async def _retry_one(self, entry: Dict[str, Any], send: Sender) -> Dict[str, Any]:
        try:
            body = await send(dict(entry))
        except PermanentSubmissionFailure as exc:
            body = {"success": False, "error": exc.message, "error_code": exc.code, "_permanent": True}
        except (LiveQuizError, asyncio.TimeoutError, OSError) as exc:
            body = {"success": False, "error": str(exc) or exc.__class__.__name__, "error_code": "transient"}

        if body.get("success"):
            self._remove(entry["id"])
            self.counters["submitted"] += 1
            data = body.get("data") or {}
            await self.events.emit("submitted", {"id": entry["id"], "response": data})
            return {"id": entry["id"], "success": True, "is_late": bool(data.get("is_late"))}

        error_code = body.get("error_code")
        error = body.get("error") or "Submission failed"
        if body.get("_permanent") or is_permanent_failure(error_code):
            self._remove(entry["id"])
            self.counters["dropped"] += 1
            logger.info("Dropping cached answer %s: %s", entry["id"], error)
            await self.events.emit("failed", {"id": entry["id"], "error": error, "permanent": True})
            return {"id": entry["id"], "success": False, "error": error, "error_code": error_code, "permanent": True}

        entry["retry_count"] = int(entry["retry_count"]) + 1
        entry["last_error"] = error
        if entry["retry_count"] >= self.options.max_retries:
            entry["status"] = FAILED
            self.counters["failed"] += 1
            await self.events.emit("failed", {"id": entry["id"], "error": error, "permanent": False})
        self._update(entry)
        return {"id": entry["id"], "success": False, "error": error, "error_code": error_code, "permanent": False}

    async def cleanup(self) -> int:
        """Drop entries older than ``max_cache_age`` seconds, whatever their status."""
        cutoff = self._clock() - self.options.max_cache_age
        removed = self._write("DELETE FROM offline_responses WHERE created_at < ?", (cutoff,))
        if removed < 0:
            stale = [key for key, entry in self._memory.items() if entry["created_at"] < cutoff]
            for key in stale:
                del self._memory[key]
            removed = len(stale)
        if removed:
            logger.info("Removed %s expired cached answers", removed)
        return removed

    async def clear(self) -> None:
        if self._write("DELETE FROM offline_responses") < 0:
            self._memory.clear()
        self.counters = {"stored": 0, "submitted": 0, "failed": 0, "dropped": 0}
        await self.events.emit("cleared", {})

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
