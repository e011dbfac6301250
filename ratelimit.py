import threading
import time
from typing import Dict, Optional, Tuple


class RateLimiter:
    """Fixed-window request counter per client key, kept in process memory.

    Expired windows are dropped by ``hit`` itself, at most once per window,
    so the map stays bounded by the keys seen in the last window.
    """

    def __init__(self, window: float, max_requests: int):
        self.window = window
        self.max_requests = max_requests
        self._hits: Dict[str, Dict[str, float]] = {}
        self._next_sweep: Optional[float] = None
        self._lock = threading.Lock()

    def hit(self, key: str, now: Optional[float] = None) -> Tuple[bool, int, float]:
        """Count one request for ``key``.

        Returns ``(allowed, remaining, reset_at)`` where ``reset_at`` is the
        time the current window ends.
        """
        now = time.time() if now is None else now
        with self._lock:
            if self._next_sweep is None:
                self._next_sweep = now + self.window
            elif now >= self._next_sweep:
                self._drop_expired(now)
                self._next_sweep = now + self.window
            entry = self._hits.get(key)
            if entry is None or now >= entry["reset"]:
                entry = {"count": 0, "reset": now + self.window}
                self._hits[key] = entry
            entry["count"] += 1
            allowed = entry["count"] <= self.max_requests
            remaining = max(self.max_requests - int(entry["count"]), 0)
            return allowed, remaining, entry["reset"]

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, entry in self._hits.items() if now >= entry["reset"]]
        for key in expired:
            del self._hits[key]
        return len(expired)

    def __len__(self):
        return len(self._hits)
