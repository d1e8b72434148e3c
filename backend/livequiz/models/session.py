"""Live quiz session, question and event log models."""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from livequiz.database import Base


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class QuestionType(str, enum.Enum):
    MULTICHOICE = "multichoice"
    TRUEFALSE = "truefalse"
    SHORTANSWER = "shortanswer"


class QuizSession(Base):
    __tablename__ = "live_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instructor_id = Column(Integer, nullable=True, index=True)
    title = Column(String(200), nullable=False)

    status = Column(String(20), default=SessionStatus.PENDING.value, nullable=False, index=True)
    current_question_index = Column(Integer, default=0, nullable=False)
    num_questions = Column(Integer, default=0, nullable=False)
    time_limit_seconds = Column(Integer, default=30, nullable=False)

    question_started_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    timer_remaining_at_pause = Column(Float, nullable=True)
    accumulated_pause_seconds = Column(Float, default=0.0, nullable=False)

    # Sequence number of the last broadcastable event, scoped to this session.
    last_event_seq = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    questions = relationship(
        "SessionQuestion",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SessionQuestion.position",
    )

    __table_args__ = (
        Index("ix_live_sessions_instructor_status", "instructor_id", "status"),
    )


class SessionQuestion(Base):
    __tablename__ = "session_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # 0-based

    question_type = Column(String(20), nullable=False)
    question_text = Column(String(1000), nullable=False)
    options = Column(JSON, nullable=True)  # {"A": "...", "B": "..."}
    correct_answer = Column(String(255), nullable=False)

    session = relationship("QuizSession", back_populates="questions")

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_session_question_position"),
    )


class SessionEvent(Base):
    __tablename__ = "session_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    # Null for audit-only events that are never broadcast.
    seq = Column(Integer, nullable=True)
    event_type = Column(String(40), nullable=False)
    user_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_session_event_seq"),
        Index("ix_session_events_session_created", "session_id", "created_at"),
    )
