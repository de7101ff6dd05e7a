"""
Loop detection for rules that re-trigger themselves.
"""

import asyncio
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, FrozenSet, Iterator, List, Optional

from shared.logging import get_logger
from ..rules.models import Rule, utcnow

# Rules whose actions are running in the current call chain
_active_rules: ContextVar[FrozenSet[str]] = ContextVar("automation_active_rules", default=frozenset())


@dataclass(frozen=True)
class LoopCheck:
    """Result of ``LoopGuard.record_and_check``.

    ``should_disable`` is true exactly once per trip: on the execution that
    crossed the threshold.
    """
    ok: bool
    should_disable: bool = False
    count: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class TrippedRule:
    rule: Optional[Rule]
    tripped_at: datetime
    reason: str


class LoopGuard:
    """Counts executions per rule in a short window and trips on bursts.

    A tripped rule stays tripped for the life of the process until
    ``reset`` is called or the rule store reports the rule active again
    with an ``updated_at`` later than the trip (a human re-enable).
    """

    def __init__(self, threshold: int = 5, window_seconds: float = 5.0,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.clock = clock
        self.logger = get_logger("automation.loop_guard")
        self._history: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tripped: Dict[str, TrippedRule] = {}

    def _lock_for(self, rule_id: str) -> asyncio.Lock:
        lock = self._locks.get(rule_id)
        if lock is None:
            lock = self._locks[rule_id] = asyncio.Lock()
        return lock

    async def record_and_check(self, rule_id: str, rule: Optional[Rule] = None) -> LoopCheck:
        """Record one execution of ``rule_id`` and report whether it may run.

        Crossing the threshold trips the rule under the same lock, so
        concurrent callers see ``should_disable`` only once.
        """
        async with self._lock_for(rule_id):
            if rule_id in self._tripped:
                return LoopCheck(ok=False, reason=self._tripped[rule_id].reason)

            now = self.clock()
            history = self._history.setdefault(rule_id, deque())
            while history and now - history[0] >= self.window_seconds:
                history.popleft()
            history.append(now)

            if len(history) > self.threshold:
                reason = (
                    f"{len(history)} executions within {self.window_seconds}s "
                    f"(threshold {self.threshold})"
                )
                self.logger.error(
                    "Automation loop detected",
                    rule_id=rule_id,
                    count=len(history),
                    threshold=self.threshold,
                    window_seconds=self.window_seconds
                )
                self._tripped[rule_id] = TrippedRule(rule=rule, tripped_at=utcnow(), reason=reason)
                return LoopCheck(ok=False, should_disable=True, count=len(history), reason=reason)

            return LoopCheck(ok=True, count=len(history))

    def is_tripped(self, rule_id: str) -> bool:
        return rule_id in self._tripped

    def tripped_rules(self, workspace_id: str, trigger_type: str) -> List[Rule]:
        """Tripped rules that would match an event of this workspace and type."""
        return [
            t.rule for t in self._tripped.values()
            if t.rule is not None
            and t.rule.workspace_id == workspace_id and t.rule.trigger_type == trigger_type
        ]

    def observe_active(self, rule: Rule) -> bool:
        """Clear a trip when the store shows the rule re-enabled after it.

        Returns true when a trip was cleared.
        """
        tripped = self._tripped.get(rule.id)
        if tripped is None or not rule.is_active or rule.updated_at <= tripped.tripped_at:
            return False
        self.reset(rule.id)
        self.logger.info("Loop trip cleared by re-enable", rule_id=rule.id)
        return True

    def reset(self, rule_id: str):
        """Forget a rule's trip and history."""
        self._tripped.pop(rule_id, None)
        self._history.pop(rule_id, None)

    @contextmanager
    def running(self, rule_id: str) -> Iterator[None]:
        """Mark ``rule_id`` as executing actions in the current call chain."""
        token = _active_rules.set(_active_rules.get() | {rule_id})
        try:
            yield
        finally:
            _active_rules.reset(token)

    def is_reentrant(self, rule_id: str) -> bool:
        """True when ``rule_id`` is already executing further up the call chain."""
        return rule_id in _active_rules.get()

    def cleanup(self) -> int:
        """Drop idle histories; returns how many were dropped."""
        now = self.clock()
        dropped = 0
        for rule_id in list(self._history):
            lock = self._locks.get(rule_id)
            if lock is not None and lock.locked():
                continue
            history = self._history[rule_id]
            while history and now - history[0] >= self.window_seconds:
                history.popleft()
            if not history:
                del self._history[rule_id]
                if rule_id not in self._tripped:
                    self._locks.pop(rule_id, None)
                dropped += 1
        return dropped
