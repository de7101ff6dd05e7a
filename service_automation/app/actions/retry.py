"""
Bounded retry around the action executor.
"""

import asyncio
from typing import List, Optional, Sequence

from shared.logging import get_logger
from shared.retry import RetryConfig, calculate_delay
from ..rules.models import ActionSpec, Event
from .executor import ActionExecutor
from .models import ActionResult, AttemptRecord, RunOutcome


class RetryCoordinator:
    """Runs a rule's actions in declared order, retrying transient failures.

    Each action gets up to ``config.max_attempts`` attempts (or the action's
    own ``max_attempts``), with exponential backoff between attempts and a
    timeout on every attempt. Permanent failures stop after one attempt.
    Backoff is a plain ``asyncio.sleep``; no lock is held while waiting.
    """

    def __init__(self, executor: ActionExecutor, config: Optional[RetryConfig] = None,
                 attempt_timeout: Optional[float] = 10.0):
        self.executor = executor
        self.config = config or RetryConfig()
        self.attempt_timeout = attempt_timeout
        self.logger = get_logger("automation.retry")

    async def run(self, actions: Sequence[ActionSpec], event: Event) -> RunOutcome:
        outcome = RunOutcome()
        for index, spec in enumerate(actions):
            result = await self.run_action(spec, event, index)
            if result.success:
                outcome.succeeded.append(result)
            else:
                outcome.failed.append(result)
        return outcome

    async def run_action(self, spec: ActionSpec, event: Event, index: int = 0) -> ActionResult:
        max_attempts = spec.max_attempts or self.config.max_attempts
        attempts: List[AttemptRecord] = []
        result: Optional[ActionResult] = None

        for attempt in range(1, max_attempts + 1):
            result = await self.executor.execute(spec, event, index=index, timeout=self.attempt_timeout)
            attempts.extend(result.attempts)

            if result.success or not result.transient:
                break

            if attempt < max_attempts:
                delay = calculate_delay(attempt, self.config)
                self.logger.warning(
                    "Transient action failure, retrying",
                    kind=spec.kind.value,
                    action_index=index,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=result.error
                )
                await asyncio.sleep(delay)
            else:
                self.logger.error(
                    "All action attempts exhausted",
                    kind=spec.kind.value,
                    action_index=index,
                    attempts=attempt,
                    error=result.error
                )

        return ActionResult(
            action_index=index,
            kind=spec.kind.value,
            success=result.success,
            attempts=tuple(attempts),
            error=result.error,
            transient=result.transient,
            data=result.data,
        )
