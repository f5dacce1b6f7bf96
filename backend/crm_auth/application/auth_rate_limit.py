import hashlib
import time
from collections import defaultdict
from typing import DefaultDict, List

from ..errors import RateLimitError

AUTH_RATE_LIMIT_MAX_ATTEMPTS = 5
AUTH_RATE_LIMIT_WINDOW_SECONDS = 60
IDENTIFIER_HASH_LENGTH = 16


class SoftRateLimiter:
    """Per-process sliding window of failed attempts."""

    def __init__(self, max_attempts: int, window_seconds: int) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._failures: DefaultDict[str, List[float]] = defaultdict(list)

    def _recent(self, key: str, now: float) -> List[float]:
        cutoff = now - self.window_seconds
        recent = [ts for ts in self._failures.get(key, []) if ts >= cutoff]
        if recent:
            self._failures[key] = recent
        else:
            self._failures.pop(key, None)
        return recent

    def is_limited(self, key: str, now: float | None = None) -> bool:
        return len(self._recent(key, now or time.time())) >= self.max_attempts

    def record_failure(self, key: str, now: float | None = None) -> None:
        current = now or time.time()
        recent = self._recent(key, current)
        recent.append(current)
        self._failures[key] = recent

    def reset(self, key: str) -> None:
        self._failures.pop(key, None)

    def clear(self) -> None:
        self._failures.clear()


auth_rate_limiter = SoftRateLimiter(
    max_attempts=AUTH_RATE_LIMIT_MAX_ATTEMPTS,
    window_seconds=AUTH_RATE_LIMIT_WINDOW_SECONDS,
)


def rate_limit_key(scope: str, client_ip: str | None, identifier: str | None = None) -> str:
    key = f"{scope}:{client_ip or 'unknown-ip'}"
    if identifier:
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
        key = f"{key}:{digest[:IDENTIFIER_HASH_LENGTH]}"
    return key


def ensure_not_limited(key: str) -> str:
    if auth_rate_limiter.is_limited(key):
        raise RateLimitError()
    return key


def record_failure(key: str) -> None:
    auth_rate_limiter.record_failure(key)


def reset_limit(key: str) -> None:
    auth_rate_limiter.reset(key)
