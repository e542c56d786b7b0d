from collections import defaultdict, deque
from datetime import datetime, timedelta, UTC
from threading import Lock


class LoginRateLimiter:
    """Sliding-window counter of failed logins keyed by client address."""

    def __init__(self, max_attempts: int, window_seconds: int) -> None:
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.attempts: dict[str, deque[datetime]] = defaultdict(deque)
        self._lock = Lock()

    def is_limited(self, key: str) -> bool:
        with self._lock:
            queue = self.attempts[key]
            self._purge(queue, datetime.now(UTC))
            return len(queue) >= self.max_attempts

    def add_attempt(self, key: str) -> None:
        with self._lock:
            queue = self.attempts[key]
            now = datetime.now(UTC)
            self._purge(queue, now)
            queue.append(now)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self.attempts.clear()
            else:
                self.attempts.pop(key, None)

    def _purge(self, queue: deque[datetime], now: datetime) -> None:
        while queue and now - queue[0] > self.window:
            queue.popleft()
