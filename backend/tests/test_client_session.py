import asyncio

import pytest

from livequiz.client.events import EventEmitter
from livequiz.client.offline_cache import OfflineResponseCache
from livequiz.client.options import ClientOptions
from livequiz.client.session import StudentSession
from livequiz.client.timer import TimerCorrector
from livequiz.exceptions import TransientNetworkFailure


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeTransport:
    def __init__(self, events, responses=()):
        self.events = events
        self.responses = list(responses)
        self.is_connected = True
        self.connection_id = "conn-1"
        self.sent = []
        self.connected = 0
        self.snapshot_requested = asyncio.Event()

    async def connect(self):
        self.connected += 1
        await self.events.emit("connected", {"transport": "push", "connection_id": self.connection_id})

    async def send(self, action, payload=None):
        self.sent.append((action, payload))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def request_snapshot(self):
        self.snapshot_requested.set()
        return {}

    async def aclose(self):
        self.is_connected = False


class FakeApi:
    def __init__(self):
        self.calls = []

    async def send(self, session_id, action, payload=None, connection_id=None):
        self.calls.append((session_id, action, payload, connection_id))
        return {"success": True, "data": {"is_late": False}}

    async def aclose(self):
        pass


def make_session(responses=()):
    events = EventEmitter()
    clock = FakeClock()
    options = ClientOptions()
    session = StudentSession(
        1,
        "token",
        options,
        api=FakeApi(),
        transport=FakeTransport(events, responses),
        timer=TimerCorrector(options, clock=clock, events=events),
        cache=OfflineResponseCache(options, clock=clock, events=events),
        events=events,
        clock=clock,
    )
    return session, clock


def record(session, *names):
    seen = []
    for name in names:
        session.events.on(name, lambda data, name=name: seen.append((name, data)))
    return seen


SNAPSHOT = {
    "session_id": 1,
    "status": "active",
    "remaining_seconds": 20,
    "question": {"id": 7, "question_type": "multichoice"},
    "sequence_id": 2,
}


def test_snapshot_tracks_question_and_countdown():
    session, clock = make_session()

    session.apply_snapshot(SNAPSHOT)
    clock.now += 5

    assert session.question_id == 7
    assert session.status == "active"
    assert session.remaining == pytest.approx(15)

    session.apply_snapshot({**SNAPSHOT, "status": "paused", "remaining_seconds": 15})
    clock.now += 30
    assert session.remaining == pytest.approx(15)

    session.apply_snapshot({**SNAPSHOT, "question": {"id": 8}, "remaining_seconds": 30})
    assert session.question_id == 8
    assert session.remaining == pytest.approx(30)


def test_empty_snapshot_is_ignored():
    session, _ = make_session()
    session.apply_snapshot(SNAPSHOT)
    session.apply_snapshot({})
    assert session.question_id == 7


async def test_sequenced_event_updates_state():
    session, _ = make_session()
    await session.events.emit("event", {"type": "question_broadcast", "seq": 3, "data": SNAPSHOT})
    assert session.question_id == 7
    await session.close()


async def test_confirmed_submission():
    session, _ = make_session([{"success": True, "data": {"is_correct": True}}])
    seen = record(session, "answer_pending", "answer_confirmed")

    body = await session.submit_answer("B", question_id=7)

    assert body["success"] is True
    assert session.transport.sent[0][0] == "submit_answer"
    assert session.transport.sent[0][1]["answer"] == "B"
    assert [name for name, _ in seen] == ["answer_pending", "answer_confirmed"]
    assert seen[1][1]["result"] == {"is_correct": True}


async def test_disconnected_submission_is_cached():
    session, _ = make_session()
    session.transport.is_connected = False
    seen = record(session, "answer_pending", "answer_cached")

    body = await session.submit_answer("B", question_id=7)

    assert body == {"success": False, "cached": True, "error": "not connected", "error_code": "cached"}
    assert session.transport.sent == []
    assert [name for name, _ in seen] == ["answer_pending", "answer_cached"]
    [entry] = session.cache.pending()
    assert (entry["session_id"], entry["question_id"], entry["answer"]) == (1, 7, "B")


@pytest.mark.parametrize(
    "response",
    [
        TransientNetworkFailure("offline"),
        asyncio.TimeoutError(),
        {"success": False, "error": "Rate limit exceeded", "error_code": "rate_limit_exceeded"},
    ],
)
async def test_retryable_failures_are_cached(response):
    session, _ = make_session([response])

    body = await session.submit_answer("B", question_id=7)

    assert body["cached"] is True
    assert len(session.cache.pending()) == 1


async def test_duplicate_counts_as_confirmed():
    session, _ = make_session([{"success": False, "error": "Already answered", "error_code": "duplicate"}])
    seen = record(session, "answer_confirmed", "answer_rejected")

    await session.submit_answer("B", question_id=7)

    assert [name for name, _ in seen] == ["answer_confirmed"]
    assert seen[0][1]["duplicate"] is True


async def test_final_rejection_is_not_cached():
    session, _ = make_session([{"success": False, "error": "Session is completed", "error_code": "session_closed"}])
    seen = record(session, "answer_rejected")

    body = await session.submit_answer("B", question_id=7)

    assert body["error_code"] == "session_closed"
    assert seen[0][1]["error_code"] == "session_closed"
    assert session.cache.pending() == []


async def test_submit_defaults_to_current_question():
    session, _ = make_session([{"success": True, "data": {}}])
    with pytest.raises(ValueError):
        await session.submit_answer("B")

    session.apply_snapshot({**SNAPSHOT, "status": "paused"})
    await session.submit_answer("B")
    assert session.transport.sent[0][1]["question_id"] == 7


async def test_reattach_flushes_cached_answers():
    session, _ = make_session()
    done = asyncio.Event()
    session.events.on("retry_complete", lambda data: done.set())
    await session.cache.store(1, 7, "B", client_timestamp=990.0)

    await session.events.emit("reconnected", {"transport": "poll", "connection_id": "conn-2"})
    await asyncio.wait_for(done.wait(), timeout=2)

    assert session.api.calls == [
        (1, "submit_answer", {"question_id": 7, "answer": "B", "client_timestamp": 990.0}, "conn-1")
    ]
    assert session.cache.pending() == []


async def test_start_cleans_cache_then_connects():
    session, clock = make_session()
    await session.cache.store(1, 7, "B")
    clock.now += 7200

    await session.start()

    assert session.transport.connected == 1
    assert session.cache.entries() == []


async def test_tick_triggers_periodic_sync():
    session, _ = make_session()

    await session.events.emit("tick", {"remaining": 10.0, "paused": False})
    await asyncio.wait_for(session.transport.snapshot_requested.wait(), timeout=2)


async def test_close_releases_everything():
    session, _ = make_session()
    await session.close()
    assert not session.transport.is_connected
    assert not session.timer.running
