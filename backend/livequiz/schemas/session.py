"""Pydantic schemas for quiz sessions."""

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, ConfigDict, field_validator


class QuestionCreate(BaseModel):
    question_type: str = Field(..., description="multichoice, truefalse or shortanswer")
    question_text: str = Field(..., min_length=1, max_length=1000)
    options: Optional[Dict[str, str]] = None
    correct_answer: str = Field(..., min_length=1, max_length=255)

    @field_validator("question_type")
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower()


class SessionCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    time_limit_seconds: Optional[int] = Field(None, ge=1)
    questions: List[QuestionCreate] = Field(..., min_length=1)


class QuestionResponse(BaseModel):
    id: int
    position: int
    question_type: str
    question_text: str
    options: Optional[Dict[str, str]] = None

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    id: int
    instructor_id: Optional[int] = None
    title: str
    status: str
    current_question_index: int
    num_questions: int
    time_limit_seconds: int
    last_event_seq: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    questions: List[QuestionResponse] = []

    model_config = ConfigDict(from_attributes=True)


class SnapshotQuestion(BaseModel):
    id: int
    position: int
    question_type: str
    text: str
    options: List[Dict[str, str]] = []


class SnapshotResponse(BaseModel):
    session_id: int
    status: str
    current_question_index: int
    num_questions: int
    time_limit_seconds: int
    question: Optional[SnapshotQuestion] = None
    remaining_seconds: Optional[float] = None
    sequence_id: int
    server_timestamp: float
    has_answered: Optional[bool] = None
    user_answer: Optional[str] = None


class SessionTransitionResponse(BaseModel):
    success: bool = True
    events: int
    snapshot: SnapshotResponse


class ConnectedStudent(BaseModel):
    user_id: int
    connection_id: str
    transport: str
    status: str
    answered: bool
    last_heartbeat_at: Optional[float] = None


class SessionStatsResponse(BaseModel):
    session_id: int
    status: str
    connected: int
    answered: int
    pending: int
    students: List[ConnectedStudent]
    connections: Dict[str, Any]
