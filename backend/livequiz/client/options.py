"""Client tuning knobs. Plain dataclass: the client runs outside the server process."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ClientOptions:
    base_url: str = "http://localhost:8000"
    # Push channel: attempts before the policy decides, and the pause between them.
    push_retry_attempts: int = 3
    push_retry_delay: float = 1.0
    connect_timeout: float = 10.0
    # Reconnect backoff after a transport failure.
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    request_timeout: float = 10.0
    poll_interval: float = 2.0
    heartbeat_interval: float = 5.0
    # Local countdown.
    timer_tick: float = 0.25
    timer_sync_interval: float = 30.0
    drift_threshold: float = 2.0
    # Offline cache.
    max_retries: int = 5
    retry_delay: float = 1.0
    max_cache_age: float = 3600.0
    cache_path: Optional[str] = None
    # "fallback" (push, then poll) or "push_only".
    transport_policy: str = "fallback"
