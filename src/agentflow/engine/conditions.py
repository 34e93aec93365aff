# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Step eligibility evaluation.

This module parses step conditions and decides, for a step and the current
execution context, whether the step may run now, must wait, or can never run.

Condition forms:
- ``start`` (or omitted): always satisfied.
- ``After step-1`` / ``After step-1, step-2``: satisfied once every listed
  step succeeded or fell back; the step is skipped if any of them failed
  or was skipped.
- An expression: a Jinja2 template (``{{ score > 0.5 }}``) or a simpleeval
  expression (``score > 0.5``) over the context values. Expressions are
  wait-until conditions: false or undefined means "not yet", unless the
  step that writes a name the expression reads failed or was skipped.

Eligibility is recomputed from scratch every scheduling round.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from simpleeval import NameNotDefined, simple_eval

from agentflow.engine.report import StepStatus
from agentflow.exceptions import ConditionError, TemplateError
from agentflow.executor.template import TemplateRenderer, is_template

if TYPE_CHECKING:
    from agentflow.config.schema import StepDef
    from agentflow.engine.context import ExecutionContext
    from agentflow.engine.graph import WorkflowGraph

START_MARKERS = frozenset({"", "start", "$start"})

AFTER_PATTERN = re.compile(r"^after\s+(?P<steps>.+)$", re.IGNORECASE)

# Step lists may be separated by commas or 'and'
_STEP_SEPARATOR = re.compile(r"\s*,\s*|\s+and\s+", re.IGNORECASE)


class ConditionKind(str, Enum):
    """Parsed form of a step condition."""

    START = "start"
    AFTER = "after"
    EXPRESSION = "expression"


class Eligibility(str, Enum):
    """Whether a step may be dispatched."""

    ELIGIBLE = "eligible"
    NOT_YET_ELIGIBLE = "not_yet_eligible"
    PERMANENTLY_SKIPPED = "permanently_skipped"


@dataclass(frozen=True)
class Condition:
    """A parsed step condition.

    Attributes:
        kind: The condition form.
        after: Step ids referenced by an 'After' condition.
        expression: Expression text for expression conditions.
    """

    kind: ConditionKind
    after: tuple[str, ...] = ()
    expression: str | None = None

    def __str__(self) -> str:
        if self.kind is ConditionKind.AFTER:
            return f"After {', '.join(self.after)}"
        if self.kind is ConditionKind.EXPRESSION:
            return self.expression or ""
        return "start"


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of evaluating a step's eligibility.

    Attributes:
        eligibility: The verdict.
        reason: Why the step is waiting or skipped, if it is.
    """

    eligibility: Eligibility
    reason: str | None = None

    @property
    def is_eligible(self) -> bool:
        return self.eligibility is Eligibility.ELIGIBLE

    @property
    def is_skipped(self) -> bool:
        return self.eligibility is Eligibility.PERMANENTLY_SKIPPED


ELIGIBLE = ConditionResult(Eligibility.ELIGIBLE)


def parse_condition(text: str | None) -> Condition:
    """Parse a step condition string.

    Args:
        text: The condition as written in the descriptor.

    Returns:
        The parsed condition.

    Raises:
        ValueError: If an expression condition has invalid syntax.

    Example:
        >>> parse_condition("After step-1, step-2").after
        ('step-1', 'step-2')
    """
    stripped = (text or "").strip()

    if stripped.lower() in START_MARKERS:
        return Condition(kind=ConditionKind.START)

    match = AFTER_PATTERN.match(stripped)
    if match:
        steps = tuple(s for s in _STEP_SEPARATOR.split(match.group("steps").strip()) if s)
        if not steps:
            raise ValueError(f"Condition '{stripped}' does not name any step")
        return Condition(kind=ConditionKind.AFTER, after=steps)

    check_expression_syntax(stripped)
    return Condition(kind=ConditionKind.EXPRESSION, expression=stripped)


def check_expression_syntax(expression: str) -> None:
    """Fail early on expressions that can never be evaluated.

    Raises:
        ValueError: If the expression has invalid syntax.
    """
    if is_template(expression):
        try:
            TemplateRenderer().check_syntax(expression)
        except TemplateError as e:
            raise ValueError(f"Invalid template condition '{expression}': {e.message}") from e
        return

    try:
        ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid condition expression '{expression}': {e.msg}") from e


class ConditionEvaluator:
    """Decides whether a step is eligible given the current context.

    A step is eligible when its condition holds and every required input key
    is present in the context. It is permanently skipped when any step it
    waits on failed or was skipped, including the writer of a key its
    expression condition reads.

    Example:
        >>> evaluator = ConditionEvaluator(graph)
        >>> evaluator.evaluate(graph.step("step-1"), context).eligibility
        <Eligibility.ELIGIBLE: 'eligible'>
    """

    def __init__(self, graph: WorkflowGraph) -> None:
        self._graph = graph
        self.renderer = TemplateRenderer()

    def evaluate(self, step: StepDef, context: ExecutionContext) -> ConditionResult:
        """Evaluate a step's eligibility against the context.

        Args:
            step: The step to evaluate.
            context: The run's execution context.

        Returns:
            The eligibility verdict with a reason when not eligible.

        Raises:
            ConditionError: If an expression condition fails to evaluate.
        """
        condition = self._graph.condition(step.step_id)

        pending_steps: list[str] = []
        if condition.kind is ConditionKind.AFTER:
            for upstream in condition.after:
                status = context.status_of(upstream)
                if status in (StepStatus.FAILED, StepStatus.SKIPPED):
                    return ConditionResult(
                        Eligibility.PERMANENTLY_SKIPPED,
                        f"Upstream step '{upstream}' {status.value}",
                    )
                if status is None:
                    pending_steps.append(upstream)

        missing: list[str] = []
        for key in step.required_inputs:
            if context.has(key):
                continue
            producer = self._graph.producer_of(key)
            status = context.status_of(producer) if producer else None
            if status in (StepStatus.FAILED, StepStatus.SKIPPED):
                return ConditionResult(
                    Eligibility.PERMANENTLY_SKIPPED,
                    f"Input '{key}' will never be produced: step '{producer}' {status.value}",
                )
            missing.append(key)

        for key in step.optional_inputs:
            producer = self._graph.producer_of(key)
            if producer and not context.has(key) and context.status_of(producer) is None:
                missing.append(f"{key}?")

        if pending_steps:
            return ConditionResult(
                Eligibility.NOT_YET_ELIGIBLE,
                f"Waiting for step(s): {', '.join(pending_steps)}",
            )
        if missing:
            return ConditionResult(
                Eligibility.NOT_YET_ELIGIBLE,
                f"Waiting for input(s): {', '.join(missing)}",
            )

        if condition.kind is ConditionKind.EXPRESSION and condition.expression:
            for key, producer in self._graph.condition_inputs(step.step_id).items():
                status = context.status_of(producer)
                if not context.has(key) and status in (StepStatus.FAILED, StepStatus.SKIPPED):
                    return ConditionResult(
                        Eligibility.PERMANENTLY_SKIPPED,
                        f"Condition input '{key}' will never be produced: "
                        f"step '{producer}' {status.value}",
                    )
            if not self._evaluate_expression(step, condition.expression, context):
                return ConditionResult(
                    Eligibility.NOT_YET_ELIGIBLE,
                    f"Condition '{condition.expression}' is not satisfied",
                )

        return ELIGIBLE

    def _evaluate_expression(
        self, step: StepDef, expression: str, context: ExecutionContext
    ) -> bool:
        """Evaluate an expression condition.

        Undefined names count as false: the value may be produced later.
        """
        names = context.expression_names()

        if is_template(expression):
            try:
                return self.renderer.evaluate_condition(expression, names)
            except TemplateError as e:
                if e.undefined_variable is not None:
                    return False
                raise ConditionError(
                    f"Condition of step '{step.step_id}' failed to evaluate: {e.message}",
                    step_id=step.step_id,
                ) from e

        try:
            return bool(simple_eval(expression, names=names))
        except (NameNotDefined, KeyError):
            return False
        except Exception as e:
            raise ConditionError(
                f"Condition of step '{step.step_id}' failed to evaluate: {e}",
                step_id=step.step_id,
                suggestion="Check the expression syntax and the types of the values it uses",
            ) from e


def expression_safe_name(key: str) -> str:
    """Map a context key to a name usable inside expressions ('final-answer' → 'final_answer')."""
    return re.sub(r"\W", "_", key)


def build_expression_names(values: dict[str, Any], statuses: dict[str, str]) -> dict[str, Any]:
    """Build the names visible to condition expressions.

    Args:
        values: Context key → value.
        statuses: Step id → terminal status value.

    Returns:
        Identifier-safe value names plus 'values' and 'status' mappings.
    """
    names: dict[str, Any] = {expression_safe_name(k): v for k, v in values.items()}
    names["values"] = dict(values)
    names["status"] = dict(statuses)
    return names
