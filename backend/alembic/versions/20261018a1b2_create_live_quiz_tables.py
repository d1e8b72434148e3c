"""Create live quiz sessions, questions, event log, connections and responses.

Revision ID: 20261018a1b2
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018a1b2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "live_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instructor_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("current_question_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("num_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("time_limit_seconds", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("question_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timer_remaining_at_pause", sa.Float(), nullable=True),
        sa.Column("accumulated_pause_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_event_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_live_sessions_instructor_id", "live_sessions", ["instructor_id"])
    op.create_index("ix_live_sessions_status", "live_sessions", ["status"])
    op.create_index("ix_live_sessions_instructor_status", "live_sessions", ["instructor_id", "status"])

    op.create_table(
        "session_questions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("question_type", sa.String(length=20), nullable=False),
        sa.Column("question_text", sa.String(length=1000), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("correct_answer", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("session_id", "position", name="uq_session_question_position"),
    )
    op.create_index("ix_session_questions_session_id", "session_questions", ["session_id"])

    op.create_table(
        "session_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=40), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "seq", name="uq_session_event_seq"),
    )
    op.create_index("ix_session_events_session_id", "session_events", ["session_id"])
    op.create_index("ix_session_events_created_at", "session_events", ["created_at"])
    op.create_index("ix_session_events_session_created", "session_events", ["session_id", "created_at"])

    op.create_table(
        "session_connections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("connection_id", sa.String(length=100), nullable=False),
        sa.Column("transport", sa.String(length=10), nullable=False, server_default="poll"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="connected"),
        sa.Column("current_question_answered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_session_connections_connection_id", "session_connections", ["connection_id"], unique=True)
    op.create_index("ix_session_connections_session_id", "session_connections", ["session_id"])
    op.create_index("ix_session_connections_user_id", "session_connections", ["user_id"])
    op.create_index("ix_session_connections_last_heartbeat_at", "session_connections", ["last_heartbeat_at"])
    op.create_index("ix_session_connections_session_status", "session_connections", ["session_id", "status"])
    op.create_index("ix_session_connections_session_user", "session_connections", ["session_id", "user_id"])

    op.create_table(
        "quiz_responses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("live_sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("question_id", sa.Integer(), sa.ForeignKey("session_questions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("answer", sa.String(length=255), nullable=False),
        sa.Column("is_correct", sa.Boolean(), nullable=False),
        sa.Column("is_late", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("response_time_ms", sa.Integer(), nullable=False),
        sa.Column("client_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("server_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "question_id", "user_id", name="uq_response_session_question_user"),
    )
    op.create_index("ix_quiz_responses_session_id", "quiz_responses", ["session_id"])
    op.create_index("ix_quiz_responses_question_id", "quiz_responses", ["question_id"])
    op.create_index("ix_quiz_responses_user_id", "quiz_responses", ["user_id"])

    op.create_table(
        "response_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("question_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("client_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("server_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claim_token", sa.String(length=40), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(length=30), nullable=True),
        sa.Column("error", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_response_queue_session_id", "response_queue", ["session_id"])
    op.create_index("ix_response_queue_server_timestamp", "response_queue", ["server_timestamp"])
    op.create_index("ix_response_queue_claim_token", "response_queue", ["claim_token"])
    op.create_index("ix_response_queue_processed_claimed", "response_queue", ["processed", "claimed_at"])


def downgrade() -> None:
    op.drop_table("response_queue")
    op.drop_table("quiz_responses")
    op.drop_table("session_connections")
    op.drop_table("session_events")
    op.drop_table("session_questions")
    op.drop_table("live_sessions")
