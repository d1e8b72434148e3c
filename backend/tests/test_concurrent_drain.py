import asyncio

import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from livequiz import tasks
from livequiz.database import Base
from livequiz.models.response import QueuedSubmission, QuizResponse
from livequiz.services.response_capture import enqueue_submission
from livequiz.services.session_state import create_session, get_question_at, start_session
from livequiz.services.timekeeping import utcnow

from conftest import INSTRUCTOR_ID, QUESTIONS

USERS = range(200, 220)


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    # One connection per session, so overlapping drains really run side by side.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'drain.db'}", connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def backlog(file_engine):
    session_factory = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as db:
        session = await create_session(db, instructor_id=INSTRUCTOR_ID, title="Drain race", questions=QUESTIONS)
        await start_session(db, session.id, now=utcnow())
        question = await get_question_at(db, session.id, 0)
        for user_id in USERS:
            await enqueue_submission(db, session_id=session.id, question_id=question.id, user_id=user_id, answer="B")
        await db.commit()
    return session_factory


async def test_overlapping_drains_process_each_entry_once(backlog):
    reports = await asyncio.gather(
        *(tasks.drain_response_queue(limit=5, session_factory=backlog) for _ in range(4))
    )

    assert sum(report.claimed for report in reports) == len(USERS)
    assert sum(report.processed for report in reports) == len(USERS)
    assert sum(report.duplicates + report.failed for report in reports) == 0

    async with backlog() as db:
        per_user = await db.execute(
            select(QuizResponse.user_id, func.count(QuizResponse.id)).group_by(QuizResponse.user_id)
        )
        assert dict(per_user.all()) == {user_id: 1 for user_id in USERS}
        unprocessed = await db.execute(
            select(func.count(QueuedSubmission.id)).where(QueuedSubmission.processed.is_(False))
        )
        assert unprocessed.scalar_one() == 0


async def test_overlapping_drains_with_room_to_spare(backlog):
    reports = await asyncio.gather(
        *(tasks.drain_response_queue(limit=len(USERS), session_factory=backlog) for _ in range(3))
    )

    assert sorted(report.claimed for report in reports) == [0, 0, len(USERS)]
    assert sum(report.processed for report in reports) == len(USERS)
