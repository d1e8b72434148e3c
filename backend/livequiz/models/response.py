"""Captured responses and the asynchronous submission backlog."""

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
)

from livequiz.database import Base


class QuizResponse(Base):
    __tablename__ = "quiz_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("session_questions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    answer = Column(String(255), nullable=False)
    is_correct = Column(Boolean, nullable=False)
    is_late = Column(Boolean, default=False, nullable=False)
    response_time_ms = Column(Integer, nullable=False)

    client_timestamp = Column(DateTime(timezone=True), nullable=True)
    server_timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", "user_id", name="uq_response_session_question_user"),
    )


class QueuedSubmission(Base):
    __tablename__ = "response_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, nullable=False, index=True)
    question_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False)
    # Unvalidated; the drain applies the same checks as a direct submission.
    answer = Column(Text, nullable=False)

    client_timestamp = Column(DateTime(timezone=True), nullable=True)
    server_timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    processed = Column(Boolean, default=False, nullable=False)
    claim_token = Column(String(40), nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(String(30), nullable=True)
    error = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_response_queue_processed_claimed", "processed", "claimed_at"),
    )
