"""Error taxonomy shared by the server services and the client library."""

from typing import Optional


class LiveQuizError(Exception):
    """Base class for every error raised by livequiz."""

    code = "error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class SessionNotFound(LiveQuizError):
    """Session not found"""

    code = "session_not_found"


class QuestionNotFound(LiveQuizError):
    """Question not found"""

    code = "question_not_found"


class InvalidTransition(LiveQuizError):
    """Operation is not allowed in the current session status"""

    code = "invalid_transition"

    def __init__(self, operation: str, status: str):
        super().__init__(f"Cannot {operation} a session that is {status}")
        self.operation = operation
        self.status = status


class SessionClosed(LiveQuizError):
    """Session is completed"""

    code = "session_closed"


class InvalidAnswerFormat(LiveQuizError):
    """Invalid answer format"""

    code = "invalid_answer_format"


class BatchTooLarge(LiveQuizError):
    """Batch size exceeds the configured maximum"""

    code = "batch_too_large"


class RateLimitExceeded(LiveQuizError):
    """Rate limit exceeded. Please wait before trying again."""

    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int):
        super().__init__()
        self.retry_after = retry_after


class TransientNetworkFailure(LiveQuizError):
    """Request failed before the server produced an answer"""

    code = "transient_network_failure"


class PermanentSubmissionFailure(LiveQuizError):
    """Submission can never succeed and must not be retried"""

    code = "permanent_submission_failure"


class ConnectivityError(LiveQuizError):
    """No transport could be established"""

    code = "connectivity_error"
