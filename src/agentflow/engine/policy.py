# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Error policy: maps failure signals to retry, fallback or abort.

The policy is a pure function of the descriptor's error table, the failure
classification and the attempt bookkeeping the engine passes in. It never
performs I/O; the engine sleeps and re-dispatches according to the decision.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from agentflow.config.schema import ErrorAction, ErrorCodeDef, ErrorHandlingDef
from agentflow.exceptions import FailureSignal


@dataclass(frozen=True)
class PolicyDecision:
    """What to do after a failed invocation.

    Attributes:
        action: RETRY, FALLBACK or ABORT.
        reason: Human-readable explanation, used in logs and reports.
        delay: Seconds to wait before the retry (RETRY only).
        fallback_agent_id: Agent to switch to (FALLBACK only).
    """

    action: ErrorAction
    reason: str
    delay: float = 0.0
    fallback_agent_id: str | None = None


class ErrorPolicy:
    """Decides how the engine reacts to a failure signal.

    Lookup rules:
    - The signal's error code is matched exactly against the error table.
      Unmatched codes abort.
    - 'retry' re-invokes the same agent until the code's attempt budget
      (the entry's maxAttempts, else the table default) is spent. The
      budget counts every invocation, including the first.
    - Once retries are exhausted the step falls back when
      fallbackAfterRetries is set and a fallback is available, else aborts.
    - 'fallback' switches to the fallback agent when one is available,
      else aborts. A fallback agent never falls back to itself and a step
      falls back at most maxFallbackHops times.

    Example:
        >>> policy = ErrorPolicy(config.error_handling)
        >>> decision = policy.resolve(signal, agent_id="agent-qa", attempt=1, hops=0)
        >>> decision.action
        <ErrorAction.RETRY: 'retry'>
    """

    def __init__(self, error_handling: ErrorHandlingDef, rng: random.Random | None = None) -> None:
        """Initialize the policy.

        Args:
            error_handling: The descriptor's errorHandling section.
            rng: Random source for backoff jitter. Defaults to the module RNG.
        """
        self.config = error_handling
        self._table: dict[str, ErrorCodeDef] = {e.code: e for e in error_handling.error_codes}
        self._rng = rng or random.Random()

    @property
    def fallback_agent_id(self) -> str | None:
        return self.config.fallback_agent_id

    def lookup(self, code: str) -> ErrorCodeDef | None:
        """Return the error table entry for a code, if any."""
        return self._table.get(code)

    def action_for(self, code: str) -> ErrorAction:
        """Return the configured action for a code. Unmatched codes abort."""
        entry = self.lookup(code)
        return entry.action if entry is not None else ErrorAction.ABORT

    def attempts_for(self, code: str) -> int:
        """Return the total invocation budget for a retried code."""
        entry = self.lookup(code)
        if entry is not None and entry.max_attempts is not None:
            return entry.max_attempts
        return self.config.max_attempts

    def can_fall_back(self, agent_id: str, hops: int) -> bool:
        """Check whether a step running `agent_id` may fall back.

        Args:
            agent_id: Agent the step is currently using.
            hops: Fallbacks the step has already taken.
        """
        fallback = self.config.fallback_agent_id
        return (
            fallback is not None
            and fallback != agent_id
            and hops < self.config.max_fallback_hops
        )

    def resolve(
        self,
        signal: FailureSignal,
        *,
        agent_id: str,
        attempt: int,
        hops: int = 0,
    ) -> PolicyDecision:
        """Decide the reaction to a failed invocation.

        Args:
            signal: The classified failure.
            agent_id: Agent whose invocation failed.
            attempt: Invocations made with this agent so far, including the
                failed one (1-indexed).
            hops: Fallbacks the step has already taken.

        Returns:
            The decision.
        """
        code = signal.error_code
        action = self.action_for(code)

        if action is ErrorAction.RETRY:
            budget = self.attempts_for(code)
            if attempt < budget:
                return PolicyDecision(
                    action=ErrorAction.RETRY,
                    reason=f"{code}: retry {attempt + 1}/{budget}",
                    delay=self.backoff_delay(attempt, signal.retry_after),
                )
            return self.after_retries_exhausted(code, agent_id, hops, budget)

        if action is ErrorAction.FALLBACK:
            if self.can_fall_back(agent_id, hops):
                return self._fallback(f"{code}: falling back")
            return PolicyDecision(
                action=ErrorAction.ABORT,
                reason=f"{code}: no fallback available for agent '{agent_id}'",
            )

        if self.lookup(code) is None:
            return PolicyDecision(action=ErrorAction.ABORT, reason=f"{code}: not in error table")
        return PolicyDecision(action=ErrorAction.ABORT, reason=f"{code}: configured to abort")

    def after_retries_exhausted(
        self, code: str, agent_id: str, hops: int, budget: int
    ) -> PolicyDecision:
        """Decide what happens once a code's retry budget is spent."""
        if self.config.fallback_after_retries and self.can_fall_back(agent_id, hops):
            return self._fallback(f"{code}: {budget} attempt(s) exhausted, falling back")
        return PolicyDecision(
            action=ErrorAction.ABORT,
            reason=f"{code}: {budget} attempt(s) exhausted",
        )

    def _fallback(self, reason: str) -> PolicyDecision:
        return PolicyDecision(
            action=ErrorAction.FALLBACK,
            reason=reason,
            fallback_agent_id=self.config.fallback_agent_id,
        )

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Calculate delay with exponential backoff and jitter.

        A server-provided retry-after value overrides the calculated delay.
        Both are capped at the configured maximum.

        Args:
            attempt: Attempt number that just failed (1-indexed).
            retry_after: Optional server-provided delay in seconds.

        Returns:
            Delay in seconds before the next attempt.
        """
        backoff = self.config.backoff

        if retry_after is not None:
            return min(max(retry_after, 0.0), backoff.max_delay)

        # Exponential backoff: base * 2^(attempt-1)
        delay = backoff.base_delay * (2 ** (attempt - 1))
        delay = min(delay, backoff.max_delay)

        if backoff.jitter > 0:
            delay += delay * backoff.jitter * self._rng.random()

        return delay
