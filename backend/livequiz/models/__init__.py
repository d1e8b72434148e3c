from livequiz.models.session import (
    QuizSession,
    SessionQuestion,
    SessionEvent,
    SessionStatus,
    QuestionType,
)
from livequiz.models.connection import SessionConnection, ConnectionStatus, TransportKind
from livequiz.models.response import QuizResponse, QueuedSubmission
