from livequiz.services.auth_service import create_access_token
from livequiz.services.broadcaster import Subscriber
from livequiz.services.rate_limiter import RateLimiter
from livequiz.tasks import drain_response_queue

from conftest import INSTRUCTOR_ID, QUESTIONS


def auth(token):
    return {"Authorization": f"Bearer {token}"}


async def create_quiz(client, token, **overrides):
    body = {"title": "Friday quiz", "time_limit_seconds": 30, "questions": QUESTIONS}
    body.update(overrides)
    response = await client.post("/api/v1/sessions", json=body, headers=auth(token))
    assert response.status_code == 201, response.text
    return response.json()


async def started_quiz(client, token):
    quiz = await create_quiz(client, token)
    response = await client.post(f"/api/v1/sessions/{quiz['id']}/start", headers=auth(token))
    assert response.status_code == 200, response.text
    return quiz


async def act(client, token, session_id, action, payload=None, connection_id=None):
    response = await client.post(
        f"/api/v1/live/{session_id}/actions",
        json={"action": action, "payload": payload or {}, "connection_id": connection_id},
        headers=auth(token),
    )
    assert response.status_code == 200, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["push_subscribers"] == 0


async def test_root(client):
    response = await client.get("/")
    assert response.json()["status"] == "online"


async def test_create_session_requires_instructor(client, student_token):
    response = await client.post("/api/v1/sessions", json={"title": "x", "questions": QUESTIONS})
    assert response.status_code == 401

    response = await client.post(
        "/api/v1/sessions", json={"title": "x", "questions": QUESTIONS}, headers=auth(student_token)
    )
    assert response.status_code == 403


async def test_create_and_fetch_session(client, instructor_token, student_token):
    quiz = await create_quiz(client, instructor_token)

    assert quiz["status"] == "pending"
    assert quiz["instructor_id"] == INSTRUCTOR_ID
    assert [question["position"] for question in quiz["questions"]] == [0, 1, 2]

    response = await client.get(f"/api/v1/sessions/{quiz['id']}", headers=auth(student_token))
    assert response.status_code == 200
    assert response.json()["title"] == "Friday quiz"

    response = await client.get("/api/v1/sessions/999", headers=auth(student_token))
    assert response.status_code == 404


async def test_create_session_validates_questions(client, instructor_token):
    bad = [{"question_type": "multichoice", "question_text": "?", "options": {"A": "1"}, "correct_answer": "A"}]
    response = await client.post(
        "/api/v1/sessions", json={"title": "x", "questions": bad}, headers=auth(instructor_token)
    )
    assert response.status_code == 400


async def test_transitions(client, instructor_token):
    quiz = await create_quiz(client, instructor_token)
    base = f"/api/v1/sessions/{quiz['id']}"

    started = await client.post(f"{base}/start", headers=auth(instructor_token))
    body = started.json()
    assert body["success"] is True
    assert body["events"] == 1
    assert body["snapshot"]["status"] == "active"
    assert body["snapshot"]["question"]["position"] == 0

    assert (await client.post(f"{base}/pause", headers=auth(instructor_token))).status_code == 200
    conflict = await client.post(f"{base}/pause", headers=auth(instructor_token))
    assert conflict.status_code == 409

    assert (await client.post(f"{base}/resume", headers=auth(instructor_token))).status_code == 200
    assert (await client.post(f"{base}/rewind", headers=auth(instructor_token))).status_code == 404


async def test_other_instructor_cannot_drive_session(client, instructor_token):
    quiz = await create_quiz(client, instructor_token)
    intruder = create_access_token(2, "INSTRUCTOR")

    response = await client.post(f"/api/v1/sessions/{quiz['id']}/start", headers=auth(intruder))
    assert response.status_code == 403


async def test_transition_is_published_after_commit(client, app, instructor_token):
    quiz = await create_quiz(client, instructor_token)
    received = []

    async def send(message):
        received.append(message)

    await app.state.broadcaster.add(quiz["id"], Subscriber("c-1", 100, send=send))
    await client.post(f"/api/v1/sessions/{quiz['id']}/start", headers=auth(instructor_token))

    assert [(message["type"], message["seq"]) for message in received] == [("session_started", 1)]
    assert received[0]["data"]["status"] == "active"


async def test_submit_answer_and_duplicate(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)
    question_id = quiz["questions"][0]["id"]

    first = await act(client, student_token, quiz["id"], "submit_answer", {"question_id": question_id, "answer": "b"})
    assert first["success"] is True
    assert first["data"]["is_correct"] is True
    assert first["data"]["outcome"] == "accepted"

    again = await act(client, student_token, quiz["id"], "submit_answer", {"question_id": question_id, "answer": "c"})
    assert again["success"] is False
    assert again["error_code"] == "duplicate"

    snapshot = await act(client, student_token, quiz["id"], "snapshot")
    assert snapshot["data"]["has_answered"] is True
    assert snapshot["data"]["user_answer"] == "B"


async def test_submit_rejections_use_the_envelope(client, instructor_token, student_token):
    quiz = await create_quiz(client, instructor_token)
    question_id = quiz["questions"][0]["id"]

    not_active = await act(client, student_token, quiz["id"], "submit_answer", {"question_id": question_id, "answer": "A"})
    assert not_active["error_code"] == "session_not_active"

    unknown = await act(client, student_token, quiz["id"], "teleport")
    assert unknown["error_code"] == "unknown_action"

    invalid = await act(client, student_token, quiz["id"], "submit_answer", {"answer": "A"})
    assert invalid["error_code"] == "invalid_payload"


async def test_submit_batch_uses_callers_identity(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)
    question_id = quiz["questions"][0]["id"]

    body = await act(
        client,
        student_token,
        quiz["id"],
        "submit_batch",
        {"responses": [{"question_id": question_id, "answer": "B", "user_id": 555}]},
    )
    assert body["data"]["processed_count"] == 1

    # The forged user id was replaced by the caller's own, so this is a duplicate.
    retry = await act(client, student_token, quiz["id"], "submit_answer", {"question_id": question_id, "answer": "B"})
    assert retry["error_code"] == "duplicate"


async def test_rate_limited_writes(client, app, instructor_token, student_token):
    app.state.rate_limiter = RateLimiter(max_requests=1, window_seconds=60)
    quiz = await started_quiz(client, instructor_token)
    payload = {"question_id": quiz["questions"][0]["id"], "answer": "B"}

    await act(client, student_token, quiz["id"], "submit_answer", payload)
    limited = await act(client, student_token, quiz["id"], "submit_answer", payload)

    assert limited["success"] is False
    assert limited["error_code"] == "rate_limit_exceeded"
    assert limited["data"]["retry_after"] >= 1


async def test_connection_lifecycle_actions(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)

    missing = await act(client, student_token, quiz["id"], "heartbeat")
    assert missing["error_code"] == "connection_required"

    attached = await act(client, student_token, quiz["id"], "reconnect", {"transport": "poll"})
    connection_id = attached["data"]["connection_id"]
    assert attached["data"]["snapshot"]["status"] == "active"

    beat = await act(client, student_token, quiz["id"], "heartbeat", connection_id=connection_id)
    assert beat["data"]["status"] == "alive"

    gone = await act(client, student_token, quiz["id"], "disconnect", connection_id=connection_id)
    assert gone["data"]["disconnected"] is True


async def test_poll_transport(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)

    response = await client.get(f"/api/v1/live/{quiz['id']}/poll", headers=auth(student_token))
    assert response.status_code == 200
    body = response.json()
    assert body["caught_up"] is False
    assert body["snapshot"]["sequence_id"] == 1

    response = await client.get(
        f"/api/v1/live/{quiz['id']}/poll",
        params={"connection_id": body["connection_id"], "last_sequence_id": 1},
        headers=auth(student_token),
    )
    assert response.json()["caught_up"] is True

    response = await client.get("/api/v1/live/999/poll", headers=auth(student_token))
    assert response.status_code == 404


async def test_stats_for_instructor(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)
    await client.get(f"/api/v1/live/{quiz['id']}/poll", headers=auth(student_token))
    await act(client, student_token, quiz["id"], "submit_answer", {"question_id": quiz["questions"][0]["id"], "answer": "A"})

    response = await client.get(f"/api/v1/sessions/{quiz['id']}/stats", headers=auth(instructor_token))
    assert response.status_code == 200
    body = response.json()
    assert (body["connected"], body["answered"], body["pending"]) == (1, 1, 0)
    assert body["students"][0]["user_id"] == 100
    assert body["connections"]["total"] == 1

    forbidden = await client.get(f"/api/v1/sessions/{quiz['id']}/stats", headers=auth(student_token))
    assert forbidden.status_code == 403


async def test_instructor_actions_on_unified_endpoint(client, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)

    denied = await act(client, student_token, quiz["id"], "advance")
    assert denied["error_code"] == "forbidden"

    advanced = await act(client, instructor_token, quiz["id"], "advance")
    assert advanced["success"] is True
    assert advanced["data"]["snapshot"]["current_question_index"] == 1

    paused = await act(client, instructor_token, quiz["id"], "pause")
    paused_again = await act(client, instructor_token, quiz["id"], "pause")
    assert paused["success"] is True
    assert paused_again["error_code"] == "invalid_transition"


async def test_other_instructor_gets_envelope_on_unified_endpoint(client, instructor_token):
    quiz = await started_quiz(client, instructor_token)
    intruder = create_access_token(INSTRUCTOR_ID + 1, "INSTRUCTOR")

    denied = await act(client, intruder, quiz["id"], "pause")

    assert denied["success"] is False
    assert denied["error_code"] == "forbidden"
    snapshot = await act(client, instructor_token, quiz["id"], "snapshot")
    assert snapshot["data"]["status"] == "active"


async def test_queued_answers_are_drained(client, session_factory, instructor_token, student_token):
    quiz = await started_quiz(client, instructor_token)
    question_id = quiz["questions"][0]["id"]

    queued = await act(client, student_token, quiz["id"], "queue_answer", {"question_id": question_id, "answer": "B"})
    assert queued["data"]["queued"] is True

    report = await drain_response_queue(session_factory=session_factory)
    assert report.processed == 1

    snapshot = await act(client, student_token, quiz["id"], "snapshot")
    assert snapshot["data"]["has_answered"] is True
