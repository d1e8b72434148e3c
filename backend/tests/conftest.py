import os
from datetime import datetime, timezone

# Must be set before livequiz.config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DEBUG", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import livequiz.models  # noqa: F401  registers the tables on Base.metadata
from livequiz.database import Base, get_db
from livequiz.main import create_app
from livequiz.middleware.identity import INSTRUCTOR, STUDENT
from livequiz.services.auth_service import create_access_token
from livequiz.services.session_state import create_session, get_question_at

T0 = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)

INSTRUCTOR_ID = 1
STUDENT_ID = 100

QUESTIONS = [
    {
        "question_type": "multichoice",
        "question_text": "2 + 2 = ?",
        "options": {"A": "3", "B": "4", "C": "5", "D": "22"},
        "correct_answer": "B",
    },
    {
        "question_type": "truefalse",
        "question_text": "The sun is a star.",
        "correct_answer": "TRUE",
    },
    {
        "question_type": "shortanswer",
        "question_text": "Capital of France?",
        "correct_answer": "Paris",
    },
]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; issue BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def quiz(db):
    """A pending three-question session owned by INSTRUCTOR_ID."""
    session = await create_session(
        db,
        instructor_id=INSTRUCTOR_ID,
        title="Weekly check-in",
        questions=QUESTIONS,
        time_limit_seconds=30,
    )
    await db.commit()
    return session


@pytest_asyncio.fixture
async def question_ids(db, quiz):
    ids = []
    for position in range(len(QUESTIONS)):
        question = await get_question_at(db, quiz.id, position)
        ids.append(question.id)
    return ids


@pytest.fixture
def instructor_token():
    return create_access_token(INSTRUCTOR_ID, INSTRUCTOR)


@pytest.fixture
def student_token():
    return create_access_token(STUDENT_ID, STUDENT)


@pytest.fixture
def app(session_factory):
    application = create_app()

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = override_get_db
    application.state.session_factory = session_factory
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client
