"""Response capture: validation, idempotency guard, scoring, batches and the
asynchronous submission backlog."""

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.config import settings
from livequiz.exceptions import BatchTooLarge, InvalidAnswerFormat
from livequiz.models.response import QueuedSubmission, QuizResponse
from livequiz.models.session import QuestionType, QuizSession, SessionQuestion, SessionStatus
from livequiz.services.connection_registry import mark_answered
from livequiz.services.event_log import EventType, log_audit_event
from livequiz.services.session_state import question_deadline_passed
from livequiz.services.timekeeping import parse_client_timestamp, seconds_between, utcnow

logger = logging.getLogger(__name__)

MULTICHOICE_KEYS = ("A", "B", "C", "D")
TRUE_VALUES = ("TRUE", "T", "1")
FALSE_VALUES = ("FALSE", "F", "0")


class SubmissionOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    INVALID_ANSWER = "invalid_answer_format"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_NOT_ACTIVE = "session_not_active"
    SESSION_CLOSED = "session_closed"
    QUESTION_NOT_FOUND = "question_not_found"
    ERROR = "error"


# Outcomes that a retry can never turn into an acceptance.
PERMANENT_OUTCOMES = frozenset(
    {
        SubmissionOutcome.DUPLICATE,
        SubmissionOutcome.INVALID_ANSWER,
        SubmissionOutcome.SESSION_NOT_FOUND,
        SubmissionOutcome.SESSION_NOT_ACTIVE,
        SubmissionOutcome.SESSION_CLOSED,
        SubmissionOutcome.QUESTION_NOT_FOUND,
    }
)


@dataclass
class SubmissionResult:
    success: bool
    outcome: SubmissionOutcome
    error: Optional[str] = None
    is_correct: Optional[bool] = None
    correct_answer: Optional[str] = None
    response_id: Optional[int] = None
    is_late: bool = False
    latency_ms: int = 0

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == SubmissionOutcome.DUPLICATE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["error_code"] = None if self.success else self.outcome.value
        return data


@dataclass
class BatchReport:
    processed_count: int = 0
    failed_count: int = 0
    duplicate_count: int = 0
    results: List[SubmissionResult] = field(default_factory=list)
    total_ms: int = 0

    @property
    def average_latency_ms(self) -> float:
        if not self.results:
            return 0.0
        return round(self.total_ms / len(self.results), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "duplicate_count": self.duplicate_count,
            "average_latency_ms": self.average_latency_ms,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass
class DrainReport:
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    duplicates: int = 0


@dataclass
class _Submission:
    session_id: int
    question_id: int
    user_id: int
    answer: Any
    client_timestamp: Optional[datetime] = None


def validate_answer(answer: Any, question_type: str, max_length: Optional[int] = None) -> str:
    """Normalize ``answer`` for ``question_type`` or raise InvalidAnswerFormat.

    multichoice accepts A-D in either case, truefalse accepts TRUE/FALSE/T/F/1/0
    (normalized to TRUE or FALSE), shortanswer accepts any non-empty text up to
    ``max_length`` characters.
    """
    if answer is None or isinstance(answer, (dict, list)):
        raise InvalidAnswerFormat("Answer is required")
    text = str(answer).strip()
    if not text:
        raise InvalidAnswerFormat("Answer is required")

    if question_type == QuestionType.MULTICHOICE.value:
        value = text.upper()
        if value not in MULTICHOICE_KEYS:
            raise InvalidAnswerFormat(f"Multiple choice answer must be one of {', '.join(MULTICHOICE_KEYS)}")
        return value
    if question_type == QuestionType.TRUEFALSE.value:
        value = text.upper()
        if value in TRUE_VALUES:
            return "TRUE"
        if value in FALSE_VALUES:
            return "FALSE"
        raise InvalidAnswerFormat("True/false answer must be TRUE or FALSE")
    if question_type == QuestionType.SHORTANSWER.value:
        limit = max_length or settings.SHORT_ANSWER_MAX_LENGTH
        if len(text) > limit:
            raise InvalidAnswerFormat(f"Short answer must be at most {limit} characters")
        return text
    raise InvalidAnswerFormat(f"Unknown question type: {question_type}")


def check_answer(answer: str, correct_answer: str, question_type: str) -> bool:
    if question_type == QuestionType.TRUEFALSE.value:
        expected = correct_answer.strip().upper()
        expected = "TRUE" if expected in TRUE_VALUES else "FALSE" if expected in FALSE_VALUES else expected
        return answer == expected
    return answer.strip().lower() == correct_answer.strip().lower()


async def is_duplicate(db: AsyncSession, session_id: int, question_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(QuizResponse.id).where(
            QuizResponse.session_id == session_id,
            QuizResponse.question_id == question_id,
            QuizResponse.user_id == user_id,
        )
    )
    return result.first() is not None


def _failure(outcome: SubmissionOutcome, error: str, started: float) -> SubmissionResult:
    return SubmissionResult(
        success=False,
        outcome=outcome,
        error=error,
        latency_ms=int((time.perf_counter() - started) * 1000),
    )


def _precheck(
    item: _Submission,
    session: Optional[QuizSession],
    question: Optional[SessionQuestion],
    started: float,
) -> Tuple[Optional[SubmissionResult], Optional[str]]:
    """Everything that can be decided without writing. Returns (failure, normalized answer)."""
    if session is None:
        return _failure(SubmissionOutcome.SESSION_NOT_FOUND, "Session not found", started), None
    if session.status == SessionStatus.COMPLETED.value:
        return _failure(SubmissionOutcome.SESSION_CLOSED, "Session is completed", started), None
    if session.status != SessionStatus.ACTIVE.value:
        return _failure(SubmissionOutcome.SESSION_NOT_ACTIVE, f"Session is {session.status}", started), None
    if question is None or question.session_id != session.id:
        return _failure(SubmissionOutcome.QUESTION_NOT_FOUND, "Question not found in this session", started), None
    if question.position > session.current_question_index:
        return _failure(SubmissionOutcome.QUESTION_NOT_FOUND, "Question has not been asked yet", started), None
    try:
        return None, validate_answer(item.answer, question.question_type)
    except InvalidAnswerFormat as exc:
        return _failure(SubmissionOutcome.INVALID_ANSWER, exc.message, started), None


async def _persist(
    db: AsyncSession,
    item: _Submission,
    session: QuizSession,
    question: SessionQuestion,
    answer: str,
    now: datetime,
    started: float,
) -> SubmissionResult:
    client_timestamp = parse_client_timestamp(item.client_timestamp)
    answered_at = client_timestamp or now
    response_time_ms = 0
    is_current = question.position == session.current_question_index
    if is_current and session.question_started_at is not None:
        elapsed = seconds_between(answered_at, session.question_started_at) - float(session.accumulated_pause_seconds or 0.0)
        response_time_ms = max(0, int(elapsed * 1000))
    is_correct = check_answer(answer, question.correct_answer, question.question_type)
    # Answers to an earlier question arrive after its deadline by definition.
    is_late = question_deadline_passed(session, answered_at) if is_current else True

    response = QuizResponse(
        session_id=session.id,
        question_id=question.id,
        user_id=item.user_id,
        answer=answer,
        is_correct=is_correct,
        is_late=is_late,
        response_time_ms=response_time_ms,
        client_timestamp=client_timestamp,
        server_timestamp=now,
    )
    try:
        async with db.begin_nested():
            db.add(response)
    except IntegrityError:
        # Lost a race against a concurrent submission of the same triple.
        return _failure(SubmissionOutcome.DUPLICATE, "Answer already submitted", started)

    return SubmissionResult(
        success=True,
        outcome=SubmissionOutcome.ACCEPTED,
        is_correct=is_correct,
        correct_answer=question.correct_answer,
        response_id=response.id,
        is_late=is_late,
        latency_ms=int((time.perf_counter() - started) * 1000),
    )


async def submit_answer(
    db: AsyncSession,
    *,
    session_id: int,
    question_id: int,
    user_id: int,
    answer: Any,
    client_timestamp: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> SubmissionResult:
    """Validate, dedup, score and persist one answer.

    A repeated (session, question, user) is reported as DUPLICATE with
    ``success=False``; it is a classification, not an exception.
    """
    started = time.perf_counter()
    now = now or utcnow()
    item = _Submission(session_id, question_id, user_id, answer, client_timestamp)

    session = await db.get(QuizSession, session_id)
    question = await db.get(SessionQuestion, question_id)
    failure, normalized = _precheck(item, session, question, started)
    if failure is not None:
        return failure
    if await is_duplicate(db, session_id, question_id, user_id):
        return _failure(SubmissionOutcome.DUPLICATE, "Answer already submitted", started)
    result = await _persist(db, item, session, question, normalized, now, started)
    if result.success:
        logger.debug("Response %s recorded for user %s in session %s", result.response_id, user_id, session_id)
    return result


def _coerce_item(raw: Any) -> _Submission:
    if isinstance(raw, _Submission):
        return raw
    if not isinstance(raw, dict):
        raise ValueError("Batch item must be an object")
    try:
        return _Submission(
            session_id=int(raw["session_id"]),
            question_id=int(raw["question_id"]),
            user_id=int(raw["user_id"]),
            answer=raw.get("answer"),
            client_timestamp=parse_client_timestamp(raw.get("client_timestamp")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Malformed batch item: {exc}") from exc


async def submit_batch(
    db: AsyncSession,
    items: Iterable[Any],
    *,
    now: Optional[datetime] = None,
) -> BatchReport:
    """Process every item on its own; one bad item never aborts the batch.

    Sessions, questions and existing responses are loaded once for the whole
    batch and each insert runs in its own savepoint, so items do not lock
    against each other. ``processed_count + failed_count == len(items)``.
    """
    items = list(items)
    if len(items) > settings.MAX_BATCH_SIZE:
        raise BatchTooLarge(f"Batch of {len(items)} exceeds the maximum of {settings.MAX_BATCH_SIZE}")

    now = now or utcnow()
    report = BatchReport()
    batch_started = time.perf_counter()

    parsed: List[Optional[_Submission]] = []
    for raw in items:
        try:
            parsed.append(_coerce_item(raw))
        except ValueError:
            parsed.append(None)

    valid = [item for item in parsed if item is not None]
    session_ids = {item.session_id for item in valid}
    question_ids = {item.question_id for item in valid}
    sessions: Dict[int, QuizSession] = {}
    questions: Dict[int, SessionQuestion] = {}
    existing = set()
    if session_ids:
        rows = await db.execute(select(QuizSession).where(QuizSession.id.in_(session_ids)))
        sessions = {row.id: row for row in rows.scalars().all()}
    if question_ids:
        rows = await db.execute(select(SessionQuestion).where(SessionQuestion.id.in_(question_ids)))
        questions = {row.id: row for row in rows.scalars().all()}
        rows = await db.execute(
            select(QuizResponse.session_id, QuizResponse.question_id, QuizResponse.user_id).where(
                QuizResponse.session_id.in_(session_ids),
                QuizResponse.question_id.in_(question_ids),
            )
        )
        existing = {tuple(row) for row in rows.all()}

    for item in parsed:
        started = time.perf_counter()
        if item is None:
            result = _failure(SubmissionOutcome.INVALID_ANSWER, "Malformed batch item", started)
        else:
            try:
                failure, normalized = _precheck(
                    item, sessions.get(item.session_id), questions.get(item.question_id), started
                )
                key = (item.session_id, item.question_id, item.user_id)
                if failure is not None:
                    result = failure
                elif key in existing:
                    result = _failure(SubmissionOutcome.DUPLICATE, "Answer already submitted", started)
                else:
                    result = await _persist(
                        db, item, sessions[item.session_id], questions[item.question_id], normalized, now, started
                    )
                    if result.success:
                        existing.add(key)
            except Exception as exc:
                logger.exception("Batch item failed for user %s", item.user_id)
                result = _failure(SubmissionOutcome.ERROR, str(exc), started)

        report.results.append(result)
        report.total_ms += result.latency_ms
        if result.success:
            report.processed_count += 1
        else:
            report.failed_count += 1
            if result.is_duplicate:
                report.duplicate_count += 1

    elapsed_ms = int((time.perf_counter() - batch_started) * 1000)
    for session_id in session_ids & set(sessions):
        await log_audit_event(
            db,
            session_id,
            EventType.RESPONSE_BATCH,
            data={
                "items": len(items),
                "processed": report.processed_count,
                "failed": report.failed_count,
            },
            latency_ms=elapsed_ms,
            now=now,
        )
    logger.info(
        "Batch of %s: %s processed, %s failed (%s duplicates), avg %.2f ms/item",
        len(items),
        report.processed_count,
        report.failed_count,
        report.duplicate_count,
        report.average_latency_ms,
    )
    return report


async def enqueue_submission(
    db: AsyncSession,
    *,
    session_id: int,
    question_id: int,
    user_id: int,
    answer: Any,
    client_timestamp: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> QueuedSubmission:
    """Fire-and-forget path: store the raw submission for a later drain."""
    now = now or utcnow()
    if answer is None or not str(answer).strip():
        raise InvalidAnswerFormat("Answer is required")
    entry = QueuedSubmission(
        session_id=session_id,
        question_id=question_id,
        user_id=user_id,
        answer=str(answer),
        client_timestamp=parse_client_timestamp(client_timestamp),
        server_timestamp=now,
        processed=False,
    )
    db.add(entry)
    await db.flush()
    await db.refresh(entry)
    return entry


async def drain_queue(
    db: AsyncSession,
    *,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DrainReport:
    """Claim up to ``limit`` unprocessed backlog entries, then process them.

    The claim is committed before processing, so concurrent drains never pick
    the same entry. A claim older than QUEUE_CLAIM_TIMEOUT_SECONDS is treated as
    abandoned and may be re-claimed. Commits on ``db``; call it from a job that
    owns its session, not from a request.
    """
    now = now or utcnow()
    limit = limit or settings.QUEUE_DRAIN_LIMIT
    claim_cutoff = now - timedelta(seconds=settings.QUEUE_CLAIM_TIMEOUT_SECONDS)
    token = uuid.uuid4().hex
    report = DrainReport()

    candidates = await db.execute(
        select(QueuedSubmission.id)
        .where(
            QueuedSubmission.processed.is_(False),
            or_(QueuedSubmission.claimed_at.is_(None), QueuedSubmission.claimed_at < claim_cutoff),
        )
        .order_by(QueuedSubmission.server_timestamp.asc(), QueuedSubmission.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    ids = [row[0] for row in candidates.all()]
    if not ids:
        return report

    # Re-check the claim condition in the UPDATE so that a racing drain on a
    # backend without row locks still cannot steal a fresh claim.
    await db.execute(
        update(QueuedSubmission)
        .where(
            QueuedSubmission.id.in_(ids),
            QueuedSubmission.processed.is_(False),
            or_(QueuedSubmission.claimed_at.is_(None), QueuedSubmission.claimed_at < claim_cutoff),
        )
        .values(claim_token=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    claimed = await db.execute(
        select(QueuedSubmission)
        .where(and_(QueuedSubmission.claim_token == token, QueuedSubmission.processed.is_(False)))
        .order_by(QueuedSubmission.id.asc())
        .execution_options(populate_existing=True)
    )
    entries = list(claimed.scalars().all())
    report.claimed = len(entries)

    for entry in entries:
        try:
            result = await submit_answer(
                db,
                session_id=entry.session_id,
                question_id=entry.question_id,
                user_id=entry.user_id,
                answer=entry.answer,
                client_timestamp=entry.client_timestamp,
                now=now,
            )
        except Exception as exc:
            logger.exception("Queued submission %s failed", entry.id)
            result = _failure(SubmissionOutcome.ERROR, str(exc), time.perf_counter())

        entry.processed = True
        entry.processed_at = now
        entry.outcome = result.outcome.value
        entry.error = (result.error or "")[:255] or None
        if result.success:
            report.processed += 1
            await mark_answered(db, entry.session_id, entry.user_id, now=now)
        elif result.is_duplicate:
            report.duplicates += 1
        else:
            report.failed += 1
    await db.commit()

    logger.info(
        "Drained %s queued submissions: %s processed, %s duplicates, %s failed",
        report.claimed,
        report.processed,
        report.duplicates,
        report.failed,
    )
    return report
