from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional


class SignInThrottle:
    """
    In-memory throttle for admin sign-in.

    Only failed attempts count. After `max_failures` failures inside `window_seconds`
    the identifier is locked until the oldest failure leaves the window.
    """

    def __init__(self, max_failures: int = 5, window_seconds: int = 300):
        self._failures: Dict[str, List[datetime]] = defaultdict(list)
        self._max_failures = max_failures
        self._window = timedelta(seconds=window_seconds)
        self._lock = threading.Lock()

    def _prune(self, identifier: str, now: datetime) -> List[datetime]:
        recent = [t for t in self._failures.get(identifier, []) if now - t < self._window]
        if recent:
            self._failures[identifier] = recent
        else:
            self._failures.pop(identifier, None)
        return recent

    def _sweep(self, now: datetime) -> None:
        for identifier in list(self._failures):
            self._prune(identifier, now)

    def is_locked(self, identifier: str, *, now: Optional[datetime] = None) -> bool:
        with self._lock:
            return len(self._prune(identifier, now or datetime.now())) >= self._max_failures

    def record_failure(self, identifier: str, *, now: Optional[datetime] = None) -> int:
        """Record a failed attempt and return how many attempts remain."""
        current = now or datetime.now()
        with self._lock:
            # Drop identifiers whose failures have all left the window.
            self._sweep(current)
            recent = self._prune(identifier, current)
            recent.append(current)
            self._failures[identifier] = recent
            return max(0, self._max_failures - len(recent))

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._failures.pop(identifier, None)


_global_throttle: SignInThrottle | None = None


def get_sign_in_throttle() -> SignInThrottle:
    global _global_throttle
    if _global_throttle is None:
        _global_throttle = SignInThrottle(max_failures=5, window_seconds=300)
    return _global_throttle
