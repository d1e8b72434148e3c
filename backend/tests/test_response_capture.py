from datetime import timedelta

import pytest
from sqlalchemy import func, select

from livequiz.config import settings
from livequiz.exceptions import BatchTooLarge, InvalidAnswerFormat
from livequiz.models.response import QueuedSubmission, QuizResponse
from livequiz.services import connection_registry
from livequiz.services.response_capture import (
    SubmissionOutcome,
    check_answer,
    drain_queue,
    enqueue_submission,
    submit_answer,
    submit_batch,
    validate_answer,
)
from livequiz.services.session_state import advance_session, pause_session, start_session

from conftest import T0


def at(seconds):
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
async def live(db, quiz, question_ids):
    await start_session(db, quiz.id, now=T0)
    await db.commit()
    return quiz


async def count_responses(db, session_id):
    result = await db.execute(select(func.count(QuizResponse.id)).where(QuizResponse.session_id == session_id))
    return result.scalar_one()


@pytest.mark.parametrize(
    "answer, question_type, expected",
    [
        ("b", "multichoice", "B"),
        (" D ", "multichoice", "D"),
        ("t", "truefalse", "TRUE"),
        ("0", "truefalse", "FALSE"),
        ("  Paris ", "shortanswer", "Paris"),
    ],
)
def test_validate_answer_normalizes(answer, question_type, expected):
    assert validate_answer(answer, question_type) == expected


@pytest.mark.parametrize(
    "answer, question_type",
    [
        ("E", "multichoice"),
        ("maybe", "truefalse"),
        ("", "shortanswer"),
        (None, "multichoice"),
        (["A"], "multichoice"),
        ("x" * 300, "shortanswer"),
    ],
)
def test_validate_answer_rejects(answer, question_type):
    with pytest.raises(InvalidAnswerFormat):
        validate_answer(answer, question_type)


def test_check_answer():
    assert check_answer("paris", "Paris", "shortanswer")
    assert check_answer("TRUE", "t", "truefalse")
    assert not check_answer("A", "B", "multichoice")


async def test_submit_scores_and_times_the_answer(db, live, question_ids):
    result = await submit_answer(
        db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="b", now=at(4.5)
    )

    assert result.success
    assert result.outcome == SubmissionOutcome.ACCEPTED
    assert result.is_correct is True
    assert result.correct_answer == "B"
    assert result.is_late is False
    assert result.response_id is not None

    stored = await db.get(QuizResponse, result.response_id)
    assert stored.answer == "B"
    assert stored.response_time_ms == 4500


async def test_duplicate_is_a_classification_not_an_error(db, live, question_ids):
    first = await submit_answer(db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="A", now=at(2))
    second = await submit_answer(db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="B", now=at(3))

    assert first.success
    assert not second.success
    assert second.is_duplicate
    assert second.to_dict()["error_code"] == "duplicate"
    assert await count_responses(db, live.id) == 1


async def test_invalid_answer_has_no_side_effect(db, live, question_ids):
    result = await submit_answer(db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="Z", now=at(1))

    assert result.outcome == SubmissionOutcome.INVALID_ANSWER
    assert await count_responses(db, live.id) == 0


async def test_future_question_is_rejected(db, live, question_ids):
    result = await submit_answer(db, session_id=live.id, question_id=question_ids[2], user_id=11, answer="Paris", now=at(1))
    assert result.outcome == SubmissionOutcome.QUESTION_NOT_FOUND


async def test_earlier_question_is_accepted_as_late(db, live, question_ids):
    await advance_session(db, live.id, now=at(10))

    result = await submit_answer(db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="B", now=at(12))

    assert result.success
    assert result.is_late is True


async def test_answer_past_the_deadline_is_flagged_late(db, live, question_ids):
    result = await submit_answer(db, session_id=live.id, question_id=question_ids[0], user_id=11, answer="B", now=at(45))
    assert result.success
    assert result.is_late is True


async def test_session_state_gates_submissions(db, quiz, question_ids):
    pending = await submit_answer(db, session_id=quiz.id, question_id=question_ids[0], user_id=11, answer="B", now=T0)
    assert pending.outcome == SubmissionOutcome.SESSION_NOT_ACTIVE

    await start_session(db, quiz.id, now=T0)
    await pause_session(db, quiz.id, now=at(3))
    paused = await submit_answer(db, session_id=quiz.id, question_id=question_ids[0], user_id=11, answer="B", now=at(4))
    assert paused.outcome == SubmissionOutcome.SESSION_NOT_ACTIVE

    missing = await submit_answer(db, session_id=999, question_id=question_ids[0], user_id=11, answer="B", now=at(4))
    assert missing.outcome == SubmissionOutcome.SESSION_NOT_FOUND


async def test_completed_session_is_closed(db, live, question_ids):
    for step in (10, 20, 30):
        await advance_session(db, live.id, now=at(step))

    result = await submit_answer(db, session_id=live.id, question_id=question_ids[2], user_id=11, answer="Paris", now=at(31))
    assert result.outcome == SubmissionOutcome.SESSION_CLOSED


async def test_batch_of_two_hundred(db, live, question_ids):
    items = [
        {"session_id": live.id, "question_id": question_ids[0], "user_id": 1000 + index, "answer": "ABCD"[index % 4]}
        for index in range(200)
    ]

    report = await submit_batch(db, items, now=at(5))

    assert report.processed_count == 200
    assert report.failed_count == 0
    assert sum(1 for result in report.results if result.is_correct) == 50
    assert await count_responses(db, live.id) == 200


async def test_mixed_batch_reports_every_item(db, live, question_ids):
    items = [
        {"session_id": live.id, "question_id": question_ids[0], "user_id": 1, "answer": "B"},
        {"session_id": live.id, "question_id": question_ids[0], "user_id": 1, "answer": "C"},
        {"session_id": live.id, "question_id": question_ids[0], "user_id": 2, "answer": "nope"},
        {"session_id": live.id, "question_id": question_ids[0]},
        {"session_id": 999, "question_id": question_ids[0], "user_id": 3, "answer": "A"},
        {"session_id": live.id, "question_id": question_ids[0], "user_id": 4, "answer": "a"},
    ]

    report = await submit_batch(db, items, now=at(5))

    assert report.processed_count + report.failed_count == len(items)
    assert report.processed_count == 2
    assert report.duplicate_count == 1
    assert [result.outcome.value for result in report.results] == [
        "accepted",
        "duplicate",
        "invalid_answer_format",
        "invalid_answer_format",
        "session_not_found",
        "accepted",
    ]
    body = report.to_dict()
    assert body["processed_count"] == 2
    assert len(body["results"]) == 6


async def test_batch_size_is_capped(db, live, question_ids):
    items = [
        {"session_id": live.id, "question_id": question_ids[0], "user_id": index, "answer": "A"}
        for index in range(settings.MAX_BATCH_SIZE + 1)
    ]
    with pytest.raises(BatchTooLarge):
        await submit_batch(db, items)
    assert await count_responses(db, live.id) == 0


async def test_drain_is_idempotent(db, live, question_ids):
    for user_id, answer in [(21, "B"), (22, "A"), (21, "C")]:
        await enqueue_submission(
            db, session_id=live.id, question_id=question_ids[0], user_id=user_id, answer=answer, now=at(1)
        )
    await db.commit()

    report = await drain_queue(db, now=at(2))
    assert (report.claimed, report.processed, report.duplicates, report.failed) == (3, 2, 1, 0)

    again = await drain_queue(db, now=at(3))
    assert again.claimed == 0

    result = await db.execute(select(QueuedSubmission.processed, QueuedSubmission.outcome))
    assert sorted(result.all()) == [(True, "accepted"), (True, "accepted"), (True, "duplicate")]
    assert await count_responses(db, live.id) == 2
    assert (await connection_registry.stats(db, live.id))["answered"] == 2


async def test_enqueue_rejects_blank_answers(db, live, question_ids):
    with pytest.raises(InvalidAnswerFormat):
        await enqueue_submission(db, session_id=live.id, question_id=question_ids[0], user_id=1, answer="  ")


async def test_queued_answer_gets_the_same_validation(db, live, question_ids):
    await advance_session(db, live.id, now=at(1))
    await advance_session(db, live.id, now=at(2))
    await db.commit()
    too_long = "x" * (settings.SHORT_ANSWER_MAX_LENGTH + 45)

    direct = await submit_answer(
        db, session_id=live.id, question_id=question_ids[2], user_id=31, answer=too_long, now=at(3)
    )
    assert direct.outcome == SubmissionOutcome.INVALID_ANSWER

    entry = await enqueue_submission(
        db, session_id=live.id, question_id=question_ids[2], user_id=32, answer=too_long, now=at(3)
    )
    assert entry.answer == too_long
    await db.commit()

    report = await drain_queue(db, now=at(4))

    assert (report.claimed, report.processed, report.failed) == (1, 0, 1)
    outcome = await db.execute(select(QueuedSubmission.outcome))
    assert outcome.scalar_one() == "invalid_answer_format"
    assert await count_responses(db, live.id) == 0
