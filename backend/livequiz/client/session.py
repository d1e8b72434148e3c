"""Student-side facade tying transport, countdown and offline cache together."""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Set

from livequiz.client.api import LiveQuizApi
from livequiz.client.events import EventEmitter
from livequiz.client.offline_cache import OfflineResponseCache
from livequiz.client.options import ClientOptions
from livequiz.client.timer import TimerCorrector
from livequiz.client.transport import TransportManager
from livequiz.exceptions import TransientNetworkFailure

logger = logging.getLogger(__name__)

# Rejections worth another try later; everything else unknown is final.
RETRYABLE_ERROR_CODES = {"rate_limit_exceeded", "http_429", "http_408"}


class StudentSession:
    """One student's view of one live session.

    Submissions give immediate feedback: ``answer_pending`` right away, then
    ``answer_confirmed``, ``answer_rejected`` or ``answer_cached`` once the
    outcome is known. Cached answers are resent after every (re)attach.
    """

    def __init__(
        self,
        session_id: int,
        token: str,
        options: Optional[ClientOptions] = None,
        *,
        api: Optional[LiveQuizApi] = None,
        transport: Optional[TransportManager] = None,
        timer: Optional[TimerCorrector] = None,
        cache: Optional[OfflineResponseCache] = None,
        events: Optional[EventEmitter] = None,
        clock=time.time,
    ):
        self.session_id = session_id
        self.options = options or ClientOptions()
        self.events = events or EventEmitter()
        self.api = api or LiveQuizApi(self.options.base_url, token, timeout=self.options.request_timeout)
        self.transport = transport or TransportManager(self.api, session_id, self.options, events=self.events)
        self.timer = timer or TimerCorrector(self.options, events=self.events)
        self.cache = cache or OfflineResponseCache(self.options, events=self.events)
        self._clock = clock

        self.snapshot: Dict[str, Any] = {}
        self.question_id: Optional[int] = None
        self._syncing = False
        self._tasks: Set[asyncio.Task] = set()

        self.events.on("snapshot", self._on_snapshot)
        self.events.on("event", self._on_event)
        self.events.on("connected", self._on_attached)
        self.events.on("reconnected", self._on_attached)
        self.events.on("tick", self._on_tick)

    @property
    def status(self) -> Optional[str]:
        return self.snapshot.get("status")

    @property
    def remaining(self) -> float:
        return self.timer.remaining()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        await self.cache.cleanup()
        await self.transport.connect()

    def apply_snapshot(self, snapshot: Dict[str, Any]) -> None:
        if not snapshot:
            return
        question = snapshot.get("question") or {}
        question_id = question.get("id")
        new_question = question_id is not None and question_id != self.question_id
        self.snapshot = snapshot
        self.question_id = question_id
        self.timer.apply_snapshot(snapshot, new_question=new_question)

    async def _on_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.apply_snapshot(snapshot)

    async def _on_event(self, message: Dict[str, Any]) -> None:
        self.apply_snapshot(message.get("data") or {})

    async def _on_attached(self, _data: Dict[str, Any]) -> None:
        if self.cache.has_pending():
            self._spawn(self.flush_offline())

    async def _on_tick(self, _data: Dict[str, Any]) -> None:
        if self._syncing or not self.transport.is_connected or not self.timer.needs_sync():
            return
        self._syncing = True
        self._spawn(self._periodic_sync())

    async def _periodic_sync(self) -> None:
        try:
            await self.transport.request_snapshot()
        finally:
            self._syncing = False

    async def _resend(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "question_id": entry["question_id"],
            "answer": entry["answer"],
            "client_timestamp": entry["client_timestamp"],
        }
        return await asyncio.wait_for(
            self.api.send(entry["session_id"], "submit_answer", payload, connection_id=self.transport.connection_id),
            timeout=self.options.request_timeout,
        )

    async def flush_offline(self):
        return await self.cache.retry_all(self._resend)

    async def submit_answer(self, answer: Any, question_id: Optional[int] = None) -> Dict[str, Any]:
        question_id = question_id if question_id is not None else self.question_id
        if question_id is None:
            raise ValueError("No current question to answer")
        client_timestamp = self._clock()
        pending = {"question_id": question_id, "answer": answer, "client_timestamp": client_timestamp}
        await self.events.emit("answer_pending", pending)

        if not self.transport.is_connected:
            return await self._cache(pending, "not connected")

        try:
            body = await self.transport.send("submit_answer", pending)
        except (TransientNetworkFailure, asyncio.TimeoutError) as exc:
            return await self._cache(pending, str(exc) or "timeout")

        if body.get("success"):
            await self.events.emit("answer_confirmed", {**pending, "result": body.get("data") or {}})
            return body

        error_code = body.get("error_code")
        if error_code == "duplicate":
            # Already counted on the server; the earlier attempt went through.
            await self.events.emit("answer_confirmed", {**pending, "duplicate": True, "result": body.get("data") or {}})
            return body
        if error_code in RETRYABLE_ERROR_CODES:
            return await self._cache(pending, body.get("error") or error_code)

        await self.events.emit("answer_rejected", {**pending, "error": body.get("error"), "error_code": error_code})
        return body

    async def _cache(self, pending: Dict[str, Any], reason: str) -> Dict[str, Any]:
        entry = await self.cache.store(
            self.session_id, pending["question_id"], pending["answer"], pending["client_timestamp"]
        )
        logger.info("Cached answer for question %s offline: %s", pending["question_id"], reason)
        await self.events.emit("answer_cached", {**pending, "cache_id": entry["id"], "reason": reason})
        return {"success": False, "cached": True, "error": reason, "error_code": "cached"}

    async def close(self) -> None:
        self.timer.stop()
        await self.transport.aclose()
        for task in list(self._tasks):
            task.cancel()
        self.cache.close()
        await self.api.aclose()
