"""Shared route dependencies and error translation."""

from fastapi import HTTPException, Request

from livequiz.exceptions import (
    BatchTooLarge,
    InvalidAnswerFormat,
    InvalidTransition,
    LiveQuizError,
    QuestionNotFound,
    RateLimitExceeded,
    SessionClosed,
    SessionNotFound,
)
from livequiz.services.broadcaster import EventBroadcaster
from livequiz.services.rate_limiter import RateLimiter

_STATUS_BY_ERROR = {
    SessionNotFound: 404,
    QuestionNotFound: 404,
    InvalidTransition: 409,
    SessionClosed: 409,
    InvalidAnswerFormat: 422,
    BatchTooLarge: 413,
    RateLimitExceeded: 429,
}


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def http_error(exc: LiveQuizError) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    return HTTPException(
        status_code=_STATUS_BY_ERROR.get(type(exc), 400),
        detail=exc.message,
        headers=headers,
    )
