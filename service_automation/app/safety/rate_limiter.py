"""
Sliding-window rate limiter for rule executions.
"""

import asyncio
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from shared.logging import get_logger


class SlidingWindowRateLimiter:
    """Per-rule admission control over a sliding time window.

    Windows are process-local and rebuilt empty on restart. The
    prune-count-append sequence for one rule runs under that rule's lock so
    concurrent invocations cannot both observe "under limit".
    """

    def __init__(self, max_executions: int = 10, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_executions = max_executions
        self.window_seconds = window_seconds
        self.clock = clock
        self.logger = get_logger("automation.rate_limiter")
        self._windows: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._window_lengths: Dict[str, float] = {}

    def _lock_for(self, rule_id: str) -> asyncio.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            lock = self._locks[rule_id] = asyncio.Lock()
        return lock

    def _prune(self, window: Deque[float], now: float, window_seconds: float):
        while window and now - window[0] >= window_seconds:
            window.popleft()

    async def try_acquire(self, rule_id: str, limit: Optional[int] = None,
                          window_seconds: Optional[float] = None) -> bool:
        """Admit one execution of ``rule_id`` if it is under its limit."""
        limit = self.max_executions if limit is None else limit
        window_seconds = self.window_seconds if window_seconds is None else window_seconds

        async with self._lock_for(rule_id):
            now = self.clock()
            window = self._windows.setdefault(rule_id, deque())
            self._window_lengths[rule_id] = window_seconds
            self._prune(window, now, window_seconds)

            if len(window) >= limit:
                self.logger.warning(
                    "Rate limit exceeded",
                    rule_id=rule_id,
                    current_count=len(window),
                    limit=limit,
                    window_seconds=window_seconds
                )
                return False

            window.append(now)
            return True

    def status(self, rule_id: str, limit: Optional[int] = None,
               window_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Current usage of a rule's window."""
        limit = self.max_executions if limit is None else limit
        if window_seconds is None:
            window_seconds = self._window_lengths.get(rule_id, self.window_seconds)
        now = self.clock()
        live = [ts for ts in self._windows.get(rule_id, ()) if now - ts < window_seconds]
        current = len(live)
        reset_in = window_seconds - (now - live[0]) if live else 0.0
        return {
            "rule_id": rule_id,
            "current_count": current,
            "limit": limit,
            "remaining": max(0, limit - current),
            "window_seconds": window_seconds,
            "reset_in_seconds": max(0.0, round(reset_in, 3)),
        }

    def reset(self, rule_id: str):
        """Forget a rule's window."""
        self._windows.pop(rule_id, None)
        self._window_lengths.pop(rule_id, None)
        self.logger.info("Rate limit reset", rule_id=rule_id)

    def cleanup(self) -> int:
        """Drop windows with no live timestamps; returns how many were dropped."""
        now = self.clock()
        dropped = 0
        for rule_id in list(self._windows):
            lock = self._locks.get(rule_id)
            if lock is not None and lock.locked():
                continue
            window = self._windows[rule_id]
            self._prune(window, now, self._window_lengths.get(rule_id, self.window_seconds))
            if not window:
                del self._windows[rule_id]
                self._locks.pop(rule_id, None)
                self._window_lengths.pop(rule_id, None)
                dropped += 1
        return dropped
