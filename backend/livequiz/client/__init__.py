from livequiz.client.api import LiveQuizApi
from livequiz.client.channels import FallbackPolicy, PollChannel, PushChannel, PushOnlyPolicy
from livequiz.client.events import EventEmitter
from livequiz.client.offline_cache import OfflineResponseCache
from livequiz.client.options import ClientOptions
from livequiz.client.session import StudentSession
from livequiz.client.timer import TimerCorrector
from livequiz.client.transport import ConnectionState, TransportManager

__all__ = [
    "ClientOptions",
    "ConnectionState",
    "EventEmitter",
    "FallbackPolicy",
    "LiveQuizApi",
    "OfflineResponseCache",
    "PollChannel",
    "PushChannel",
    "PushOnlyPolicy",
    "StudentSession",
    "TimerCorrector",
    "TransportManager",
]
