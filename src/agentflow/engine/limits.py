# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Deadline and per-call timeout enforcement for workflow runs.

This module provides the LimitEnforcer class for tracking the overall run
deadline and deriving the effective timeout of each backend call.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from agentflow.exceptions import WorkflowTimeoutError


@dataclass
class LimitEnforcer:
    """Enforces the run deadline and per-call timeouts.

    Attributes:
        deadline_seconds: Maximum wall-clock time for the run. None means unlimited.
        call_timeout_seconds: Default timeout of a single backend call.
        start_time: Run start timestamp (monotonic).
        in_flight: Returns the ids of steps currently executing, for error reports.

    Example:
        >>> enforcer = LimitEnforcer(deadline_seconds=60, call_timeout_seconds=30)
        >>> enforcer.start()
        >>> enforcer.call_timeout(step_timeout=None, binding_timeout=10)
        10
    """

    deadline_seconds: float | None = None
    """Maximum wall-clock time for the run. None means unlimited."""

    call_timeout_seconds: float = 60.0
    """Default timeout of a single backend call."""

    start_time: float | None = None
    """Run start timestamp."""

    in_flight: Callable[[], list[str]] = field(default=list)
    """Returns the ids of steps currently executing."""

    def start(self) -> None:
        """Mark run start for deadline tracking."""
        self.start_time = time.monotonic()

    def get_elapsed_time(self) -> float:
        """Get the elapsed time since run start.

        Returns:
            Elapsed time in seconds, or 0 if not started.
        """
        if self.start_time is None:
            return 0.0
        return time.monotonic() - self.start_time

    def get_remaining_time(self) -> float | None:
        """Get the remaining time before the deadline.

        Returns:
            Remaining time in seconds, the full deadline if not started,
            or None if no deadline is set.
        """
        if self.deadline_seconds is None:
            return None
        if self.start_time is None:
            return float(self.deadline_seconds)
        return max(0.0, self.deadline_seconds - self.get_elapsed_time())

    def call_timeout(
        self,
        step_timeout: float | None = None,
        binding_timeout: float | None = None,
    ) -> float:
        """Return the effective timeout for one backend call.

        A step timeout overrides the binding timeout, which overrides the
        runtime default. The result never exceeds the time left before the
        run deadline.

        Args:
            step_timeout: The step's timeoutSeconds, if set.
            binding_timeout: The LLM binding's timeoutSeconds, if set.

        Returns:
            Timeout in seconds.
        """
        if step_timeout is not None:
            timeout = step_timeout
        elif binding_timeout is not None:
            timeout = binding_timeout
        else:
            timeout = self.call_timeout_seconds

        remaining = self.get_remaining_time()
        if remaining is not None:
            timeout = min(timeout, remaining)
        return timeout

    def _timeout_error(self) -> WorkflowTimeoutError:
        deadline = float(self.deadline_seconds or 0)
        return WorkflowTimeoutError(
            f"Workflow exceeded its deadline ({deadline:g}s)",
            elapsed_seconds=self.get_elapsed_time(),
            deadline_seconds=deadline,
            in_flight=self.in_flight(),
        )

    @asynccontextmanager
    async def timeout_context(self) -> AsyncIterator[None]:
        """Async context manager for deadline enforcement.

        Uses asyncio.timeout() to enforce the deadline. If it fires, the
        asyncio TimeoutError is converted to a WorkflowTimeoutError that
        names the steps still executing.

        Usage:
            async with enforcer.timeout_context():
                await schedule_steps()

        Raises:
            WorkflowTimeoutError: If the deadline is exceeded.
        """
        if self.start_time is None:
            self.start()

        if self.deadline_seconds is None:
            yield
            return

        try:
            async with asyncio.timeout(self.remaining_or_zero()):
                yield
        except TimeoutError:
            raise self._timeout_error() from None

    def remaining_or_zero(self) -> float:
        remaining = self.get_remaining_time()
        return 0.0 if remaining is None else remaining
