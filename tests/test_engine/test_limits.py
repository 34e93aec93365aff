"""Tests for LimitEnforcer.

Tests cover:
- Timeout precedence between step, binding and runtime defaults
- Capping call timeouts by the remaining deadline
- Deadline enforcement through timeout_context()
"""

from __future__ import annotations

import asyncio
import time

import pytest

from agentflow.engine.limits import LimitEnforcer
from agentflow.exceptions import WorkflowTimeoutError


class TestCallTimeout:
    """Tests for per-call timeout resolution."""

    def test_runtime_default(self) -> None:
        assert LimitEnforcer(call_timeout_seconds=45).call_timeout() == 45

    def test_binding_overrides_default(self) -> None:
        enforcer = LimitEnforcer(call_timeout_seconds=45)

        assert enforcer.call_timeout(binding_timeout=10) == 10

    def test_step_overrides_binding(self) -> None:
        enforcer = LimitEnforcer(call_timeout_seconds=45)

        assert enforcer.call_timeout(step_timeout=5, binding_timeout=10) == 5

    def test_capped_by_remaining_deadline(self) -> None:
        enforcer = LimitEnforcer(deadline_seconds=20, call_timeout_seconds=45)
        enforcer.start_time = time.monotonic() - 15

        timeout = enforcer.call_timeout()

        assert 0 < timeout <= 5


class TestDeadline:
    """Tests for deadline tracking."""

    def test_unstarted(self) -> None:
        enforcer = LimitEnforcer(deadline_seconds=30)

        assert enforcer.get_elapsed_time() == 0.0
        assert enforcer.get_remaining_time() == 30.0

    def test_no_deadline(self) -> None:
        enforcer = LimitEnforcer()
        enforcer.start()

        assert enforcer.get_remaining_time() is None
        assert enforcer.remaining_or_zero() == 0.0

    @pytest.mark.asyncio
    async def test_timeout_context_fires(self) -> None:
        enforcer = LimitEnforcer(deadline_seconds=0.05, in_flight=lambda: ["slow"])

        with pytest.raises(WorkflowTimeoutError) as exc_info:
            async with enforcer.timeout_context():
                await asyncio.sleep(5)

        assert exc_info.value.in_flight == ["slow"]
        assert "slow" in exc_info.value.suggestion

    @pytest.mark.asyncio
    async def test_timeout_context_without_deadline(self) -> None:
        enforcer = LimitEnforcer()

        async with enforcer.timeout_context():
            await asyncio.sleep(0)

        assert enforcer.start_time is not None
