"""Pydantic schemas for the unified write endpoint and the poll transport."""

from datetime import datetime
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, Field


class LiveAction(BaseModel):
    action: str = Field(..., min_length=1, max_length=40)
    connection_id: Optional[str] = Field(None, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)


class LiveActionResponse(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class AnswerPayload(BaseModel):
    question_id: int
    answer: Any = None
    client_timestamp: Optional[Union[datetime, float]] = None


class BatchPayload(BaseModel):
    responses: List[Dict[str, Any]] = Field(default_factory=list)


class ReconnectPayload(BaseModel):
    transport: str = "poll"
    last_sequence_id: Optional[int] = None


class PollResponse(BaseModel):
    connection_id: str
    caught_up: bool
    snapshot: Dict[str, Any]
