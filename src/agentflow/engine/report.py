# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Run report types.

A RunReport is returned by every WorkflowEngine.run() call. It records the
terminal status of every step, the attempts each step made, the final
context values and, for failed runs, the error that ended the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentflow.exceptions import AgentflowError


class StepStatus(str, Enum):
    """Terminal status of a step."""

    SUCCEEDED = "succeeded"
    FALLEN_BACK = "fallen_back"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def produced_outputs(self) -> bool:
        """Whether a step in this status wrote its outputs to the context."""
        return self in (StepStatus.SUCCEEDED, StepStatus.FALLEN_BACK)


class RunStatus(str, Enum):
    """Terminal status of a workflow run."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AttemptRecord:
    """One backend invocation made on behalf of a step.

    Attributes:
        agent_id: Agent used for this attempt.
        llm_id: LLM binding invoked.
        error_code: Error code of the failure, or None on success.
        message: Failure message, or None on success.
        elapsed_seconds: Wall-clock duration of the invocation.
    """

    agent_id: str
    llm_id: str
    error_code: str | None = None
    message: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error_code is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "llmId": self.llm_id,
            "errorCode": self.error_code,
            "message": self.message,
            "elapsedSeconds": round(self.elapsed_seconds, 6),
        }


@dataclass
class StepResult:
    """Terminal outcome of one step.

    Attributes:
        step_id: The step identifier.
        status: Terminal status.
        agent_id: Agent that produced the outputs (the fallback agent when
            the step fell back), or None if the step never ran.
        outputs: Values the step wrote to the context.
        attempts: Every backend invocation made for the step, in order.
        error_code: Error code of the final failure, if any.
        error: Human-readable description of why the step skipped or failed.
        elapsed_seconds: Time from dispatch to terminal status. Zero for
            steps that were skipped without running.
    """

    step_id: str
    status: StepStatus
    agent_id: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    attempts: list[AttemptRecord] = field(default_factory=list)
    error_code: str | None = None
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def attempt_count(self) -> int:
        """Total backend invocations made for the step."""
        return len(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "status": self.status.value,
            "agentId": self.agent_id,
            "outputs": self.outputs,
            "attempts": [a.to_dict() for a in self.attempts],
            "errorCode": self.error_code,
            "error": self.error,
            "elapsedSeconds": round(self.elapsed_seconds, 6),
        }


@dataclass
class RunReport:
    """Outcome of a workflow run.

    Attributes:
        workflow_id: The workflow identifier.
        status: Terminal run status.
        steps: Step results in declared order. Steps that never reached a
            terminal status (cancelled or timed out runs) are absent.
        completion_order: Step ids in the order they reached a terminal status.
        outputs: Declared workflow outputs, or the whole context when the
            workflow declares none.
        context: Final context values.
        error: The error that ended a failed or cancelled run.
        elapsed_seconds: Wall-clock duration of the run.
    """

    workflow_id: str
    status: RunStatus
    steps: list[StepResult] = field(default_factory=list)
    completion_order: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    error: AgentflowError | None = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """Whether the run completed."""
        return self.status is RunStatus.COMPLETED

    def step(self, step_id: str) -> StepResult:
        """Return the result for a step.

        Raises:
            KeyError: If the step has no result.
        """
        for result in self.steps:
            if result.step_id == step_id:
                return result
        raise KeyError(step_id)

    def raise_for_status(self) -> None:
        """Re-raise the error that ended the run, if any."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        """Convert the report to a JSON-serializable dict."""
        error: dict[str, Any] | None = None
        if self.error is not None:
            error = {
                "type": self.error.error_type,
                "message": self.error.message,
                "suggestion": self.error.suggestion,
            }
            step_id = getattr(self.error, "step_id", None)
            if step_id:
                error["stepId"] = step_id
            blocked = getattr(self.error, "blocked", None)
            if blocked:
                error["blocked"] = blocked

        return {
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "elapsedSeconds": round(self.elapsed_seconds, 6),
            "outputs": self.outputs,
            "steps": [s.to_dict() for s in self.steps],
            "completionOrder": self.completion_order,
            "error": error,
        }
