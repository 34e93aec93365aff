# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Execution context management for Agentflow.

This module provides the ExecutionContext class: the key-value store a run
accumulates, together with the terminal result of every step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentflow.engine.conditions import build_expression_names, expression_safe_name
from agentflow.engine.report import StepResult, StepStatus
from agentflow.exceptions import ExecutionError

if TYPE_CHECKING:
    from agentflow.config.schema import StepDef


@dataclass
class ExecutionContext:
    """Key-value store shared by the steps of one run.

    Keys are written once: by the run inputs or by the single step that
    declares them as output. Steps only see the values of their declared
    input keys. The context is mutated only by the scheduler, never by
    concurrently running steps, so merges are atomic with respect to
    eligibility evaluation.

    Example:
        >>> ctx = ExecutionContext()
        >>> ctx.seed({"question": "What is Python?"})
        >>> ctx.record(StepResult("step-1", StepStatus.SUCCEEDED, outputs={"answer": "A language"}))
        >>> ctx.get("answer")
        'A language'
    """

    values: dict[str, Any] = field(default_factory=dict)
    """Context key → value."""

    writers: dict[str, str] = field(default_factory=dict)
    """Context key → id of the step that wrote it. Run inputs are absent."""

    results: dict[str, StepResult] = field(default_factory=dict)
    """Step id → terminal result."""

    completion_order: list[str] = field(default_factory=list)
    """Step ids in the order they reached a terminal status."""

    def seed(self, inputs: dict[str, Any]) -> None:
        """Store the run inputs.

        Args:
            inputs: Values supplied by the caller when starting the run.
        """
        self.values.update(inputs)

    def has(self, key: str) -> bool:
        """Check whether a key has been written."""
        return key in self.values

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for a key, or a default."""
        return self.values.get(key, default)

    def merge(self, step_id: str, outputs: dict[str, Any]) -> None:
        """Merge a step's outputs into the context.

        Args:
            step_id: The step that produced the outputs.
            outputs: Output key → value.

        Raises:
            ExecutionError: If a key was already written.
        """
        for key in outputs:
            if key in self.values:
                writer = self.writers.get(key, "the run inputs")
                raise ExecutionError(
                    f"Step '{step_id}' cannot write '{key}': already written by {writer}",
                    step_id=step_id,
                )
        self.values.update(outputs)
        for key in outputs:
            self.writers[key] = step_id

    def record(self, result: StepResult) -> None:
        """Record a step's terminal result, merging its outputs if it produced any.

        Args:
            result: The step's terminal result.

        Raises:
            ExecutionError: If the step already has a result.
        """
        if result.step_id in self.results:
            raise ExecutionError(
                f"Step '{result.step_id}' already reached a terminal status",
                step_id=result.step_id,
            )
        if result.status.produced_outputs:
            self.merge(result.step_id, result.outputs)
        self.results[result.step_id] = result
        self.completion_order.append(result.step_id)

    def status_of(self, step_id: str | None) -> StepStatus | None:
        """Return a step's terminal status, or None if it has not terminated."""
        if step_id is None:
            return None
        result = self.results.get(step_id)
        return result.status if result is not None else None

    def build_for_step(self, step: StepDef) -> dict[str, Any]:
        """Build the template variables for a step's prompt.

        Only the step's declared input keys are visible. Each key is
        available under its own name, under an identifier-safe name
        ('final-answer' → 'final_answer') and in the 'inputs' mapping.
        Absent optional inputs resolve to None.

        Args:
            step: The step about to run.

        Returns:
            Template variables.

        Raises:
            KeyError: If a required input is missing.
        """
        inputs: dict[str, Any] = {}
        for key in step.required_inputs:
            if key not in self.values:
                raise KeyError(f"Missing required input '{key}' for step '{step.step_id}'")
            inputs[key] = self.values[key]
        for key in step.optional_inputs:
            inputs[key] = self.values.get(key)

        variables: dict[str, Any] = {}
        for key, value in inputs.items():
            variables[key] = value
            variables[expression_safe_name(key)] = value
        variables["inputs"] = inputs
        variables["step_id"] = step.step_id
        return variables

    def expression_names(self) -> dict[str, Any]:
        """Build the names visible to condition expressions."""
        statuses = {step_id: r.status.value for step_id, r in self.results.items()}
        return build_expression_names(self.values, statuses)

    def snapshot(self) -> dict[str, Any]:
        """Return a shallow copy of the context values."""
        return dict(self.values)
