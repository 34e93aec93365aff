# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Exception hierarchy for Agentflow.

This module defines all custom exceptions used throughout the application.
All exceptions inherit from AgentflowError and support optional suggestions
to help users resolve issues.

Load-time errors (ConfigurationError, ReferenceError, CycleError) are raised
before any step is dispatched. Run-time workflow failures (WorkflowAbort,
DeadlockError, WorkflowTimeoutError, WorkflowCancelledError) are attached to
the run report instead of propagating out of the engine. FailureSignal is the
per-call failure contract between backend adapters and the error policy.
"""

from __future__ import annotations

from enum import Enum


class AgentflowError(Exception):
    """Base exception for all Agentflow errors.

    All custom exceptions in the application inherit from this class.
    Supports optional file path, line number, and suggestion to help
    users understand what went wrong and how to fix it.

    Attributes:
        suggestion: Optional actionable advice for resolving the error.
        file_path: Optional path to the file where the error occurred.
        line_number: Optional line number where the error occurred.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        file_path: str | None = None,
        line_number: int | None = None,
    ) -> None:
        """Initialize an AgentflowError.

        Args:
            message: The error message describing what went wrong.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the file where the error occurred.
            line_number: Optional line number where the error occurred.
        """
        self.suggestion = suggestion
        self.file_path = file_path
        self.line_number = line_number
        super().__init__(message)

    @property
    def message(self) -> str:
        """Return the bare error message without location or suggestion."""
        return self.args[0] if self.args else ""

    def _details(self) -> list[str]:
        """Return the extra lines shown after the message."""
        details = []
        if self.file_path or self.line_number:
            location = []
            if self.file_path:
                location.append(f"File: {self.file_path}")
            if self.line_number:
                location.append(f"Line: {self.line_number}")
            details.append(f"📍 Location: {', '.join(location)}")
        if self.suggestion:
            details.append(f"💡 Suggestion: {self.suggestion}")
        return details

    def __str__(self) -> str:
        return "\n\n".join([self.message, *self._details()])

    @property
    def error_type(self) -> str:
        """Return the type name for display purposes."""
        return self.__class__.__name__


class ConfigurationError(AgentflowError):
    """Raised when a workflow descriptor is invalid.

    This includes unreadable files, malformed YAML/JSON, schema violations,
    duplicate identifiers, and capability mismatches.

    Attributes:
        field_path: Optional path to the invalid field (e.g., 'errorHandling.maxAttempts').
        violations: Individual violations reported by schema validation.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        file_path: str | None = None,
        line_number: int | None = None,
        field_path: str | None = None,
        violations: list[str] | None = None,
    ) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: The error message describing what went wrong.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the file where the error occurred.
            line_number: Optional line number where the error occurred.
            field_path: Optional path to the invalid descriptor field.
            violations: Optional list of individual violations.
        """
        self.field_path = field_path
        self.violations = violations or []

        if suggestion is None:
            suggestion = self._generate_suggestion(message, field_path)

        super().__init__(message, suggestion, file_path, line_number)

    def _generate_suggestion(self, message: str, field_path: str | None) -> str | None:
        """Generate helpful suggestions based on error message and field."""
        msg_lower = message.lower()

        if "required" in msg_lower or "missing" in msg_lower:
            return f"Add the missing required field{' at ' + field_path if field_path else ''}"

        if "duplicate" in msg_lower:
            return "Identifiers and output keys must be unique within a workflow"

        if "capabilit" in msg_lower:
            return "Add the capability to the LLM binding or remove it from the agent"

        if "type" in msg_lower or "validation" in msg_lower:
            return "Check the field type matches the expected schema type"

        return None

    def _details(self) -> list[str]:
        details = super()._details()
        if self.field_path:
            details.insert(0, f"📋 Field: {self.field_path}")
        return details


class ReferenceError(ConfigurationError):  # noqa: A001
    """Raised when a descriptor cross-reference points at nothing.

    Covers step → agent, agent → LLM binding, fallback → agent and
    ``After <step>`` condition references.

    Attributes:
        dangling: One human-readable entry per dangling reference.
    """

    def __init__(
        self,
        message: str,
        *,
        dangling: list[str] | None = None,
        suggestion: str | None = None,
        file_path: str | None = None,
    ) -> None:
        """Initialize a ReferenceError.

        Args:
            message: The error message describing what went wrong.
            dangling: The dangling references that were found.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the descriptor file.
        """
        self.dangling = dangling or []
        if suggestion is None:
            suggestion = (
                "Check that every agentId, llmId, fallbackAgentId and 'After' "
                "condition refers to an entry defined in the descriptor"
            )
        super().__init__(message, suggestion, file_path, violations=self.dangling)


class CycleError(ConfigurationError):
    """Raised when the inferred step dependency graph contains a cycle.

    Attributes:
        cycle: Step identifiers forming the cycle, first node repeated last.
    """

    def __init__(
        self,
        message: str,
        *,
        cycle: list[str] | None = None,
        suggestion: str | None = None,
        file_path: str | None = None,
    ) -> None:
        """Initialize a CycleError.

        Args:
            message: The error message describing what went wrong.
            cycle: Step identifiers forming the cycle.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the descriptor file.
        """
        self.cycle = cycle or []
        if suggestion is None:
            suggestion = (
                "Break the cycle by removing an input key or 'After' condition "
                "from one of the steps involved"
            )
        super().__init__(message, suggestion, file_path)


class TemplateError(AgentflowError):
    """Raised when Jinja2 template rendering fails.

    This includes undefined variables, syntax errors, and filter errors
    in prompt templates and condition expressions.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        file_path: str | None = None,
        line_number: int | None = None,
        template_string: str | None = None,
        undefined_variable: str | None = None,
    ) -> None:
        """Initialize a TemplateError.

        Args:
            message: The error message describing what went wrong.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the file where the error occurred.
            line_number: Optional line number where the error occurred.
            template_string: Optional original template string.
            undefined_variable: Optional name of the undefined variable.
        """
        self.template_string = template_string
        self.undefined_variable = undefined_variable

        if suggestion is None:
            if undefined_variable:
                suggestion = (
                    f"Variable '{undefined_variable}' is not defined. "
                    "Templates can use the step's declared input keys and 'inputs'"
                )
            elif "syntax" in message.lower():
                suggestion = (
                    "Check Jinja2 template syntax: ensure {{ }} are balanced "
                    "and filters use | correctly"
                )

        super().__init__(message, suggestion, file_path, line_number)


class SecretResolutionError(AgentflowError):
    """Raised when an LLM credential reference cannot be resolved.

    Attributes:
        reference: The credential reference that failed to resolve.
    """

    def __init__(self, message: str, reference: str, suggestion: str | None = None) -> None:
        """Initialize a SecretResolutionError.

        Args:
            message: The error message describing what went wrong.
            reference: The credential reference that failed to resolve.
            suggestion: Optional advice for resolving the error.
        """
        self.reference = reference
        if suggestion is None:
            suggestion = f"Provide the secret referenced by '{reference}' to the secret store"
        super().__init__(message, suggestion)


class FailureKind(str, Enum):
    """Classification of a failed backend invocation."""

    TIMEOUT = "timeout"
    BACKEND_ERROR = "backend_error"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"

    @property
    def error_code(self) -> str:
        """Return the descriptor error code this classification maps to."""
        return _ERROR_CODES[self]


_ERROR_CODES = {
    FailureKind.TIMEOUT: "LLM_TIMEOUT",
    FailureKind.BACKEND_ERROR: "LLM_ERROR",
    FailureKind.RATE_LIMITED: "LLM_RATE_LIMITED",
    FailureKind.INVALID_RESPONSE: "LLM_INVALID_RESPONSE",
}


class FailureSignal(AgentflowError):
    """Raised by backend adapters when an invocation fails.

    The classification is the contract consumed by the error policy; the
    engine never inspects vendor-specific exception types.

    Attributes:
        kind: Failure classification.
        llm_id: Optional LLM binding that produced the failure.
        status_code: Optional HTTP status code reported by the backend.
        retry_after: Optional server-provided delay before retrying, in seconds.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        llm_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        suggestion: str | None = None,
    ) -> None:
        """Initialize a FailureSignal.

        Args:
            kind: Failure classification.
            message: The error message describing what went wrong.
            llm_id: Optional LLM binding that produced the failure.
            status_code: Optional HTTP status code reported by the backend.
            retry_after: Optional server-provided delay before retrying.
            suggestion: Optional advice for resolving the error.
        """
        self.kind = kind
        self.llm_id = llm_id
        self.status_code = status_code
        self.retry_after = retry_after

        if suggestion is None:
            suggestion = self._generate_suggestion(kind, status_code)

        super().__init__(message, suggestion)

    @property
    def error_code(self) -> str:
        """Return the descriptor error code for this failure."""
        return self.kind.error_code

    @staticmethod
    def _generate_suggestion(kind: FailureKind, status_code: int | None) -> str | None:
        """Generate helpful suggestions based on classification and status code."""
        if status_code == 401:
            return "Check the LLM binding's credentialRef and the secret it resolves to"
        if status_code == 403:
            return "Check your access permissions for this model"
        if status_code == 404:
            return "The model or endpoint was not found. Check the LLM binding"
        if kind is FailureKind.TIMEOUT:
            return "Increase timeoutSeconds on the LLM binding or step"
        if kind is FailureKind.RATE_LIMITED:
            return "Rate limit exceeded. Map LLM_RATE_LIMITED to 'retry' in errorHandling"
        if kind is FailureKind.INVALID_RESPONSE:
            return "Check that the model returns every output key the step declares"
        return None


class ExecutionError(AgentflowError):
    """Raised when workflow execution fails.

    Base class for run-time errors. More specific execution errors inherit
    from this class.
    """

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        file_path: str | None = None,
        line_number: int | None = None,
        step_id: str | None = None,
    ) -> None:
        """Initialize an ExecutionError.

        Args:
            message: The error message describing what went wrong.
            suggestion: Optional advice for resolving the error.
            file_path: Optional path to the file where the error occurred.
            line_number: Optional line number where the error occurred.
            step_id: Optional identifier of the step where the error occurred.
        """
        self.step_id = step_id
        super().__init__(message, suggestion, file_path, line_number)


class ConditionError(ExecutionError):
    """Raised when a step's condition expression cannot be evaluated."""


class WorkflowAbort(ExecutionError):
    """Raised when a step failure is not absorbed by retry, fallback or skip.

    Attributes:
        signal: The failure that triggered the abort, if it came from a backend.
        attempts: Total backend invocations made for the step.
    """

    def __init__(
        self,
        message: str,
        *,
        step_id: str,
        signal: FailureSignal | None = None,
        attempts: int = 0,
        suggestion: str | None = None,
    ) -> None:
        """Initialize a WorkflowAbort.

        Args:
            message: The error message describing what went wrong.
            step_id: The step whose failure aborted the workflow.
            signal: The triggering failure signal, if any.
            attempts: Total backend invocations made for the step.
            suggestion: Optional advice for resolving the error.
        """
        self.signal = signal
        self.attempts = attempts

        if suggestion is None:
            if signal is not None:
                suggestion = (
                    f"Map {signal.error_code} to 'retry' or 'fallback' in errorHandling, "
                    f"or mark step '{step_id}' as optional"
                )
            else:
                suggestion = f"Mark step '{step_id}' as optional to let the workflow continue"

        super().__init__(message, suggestion, step_id=step_id)

    @property
    def classification(self) -> FailureKind | None:
        """Return the classification of the triggering signal, if any."""
        return self.signal.kind if self.signal is not None else None


class DeadlockError(ExecutionError):
    """Raised when no step can make progress but some never terminated.

    Distinct from CycleError: a deadlock can arise from conditions that never
    become true or from inputs that are never supplied.

    Attributes:
        blocked: Mapping of blocked step id to the reason it cannot run.
    """

    def __init__(
        self,
        message: str,
        *,
        blocked: dict[str, str] | None = None,
        suggestion: str | None = None,
    ) -> None:
        """Initialize a DeadlockError.

        Args:
            message: The error message describing what went wrong.
            blocked: Mapping of blocked step id to the reason it cannot run.
            suggestion: Optional advice for resolving the error.
        """
        self.blocked = blocked or {}
        if suggestion is None:
            suggestion = (
                "Supply the missing workflow inputs or fix conditions that can "
                "never become true"
            )
        super().__init__(message, suggestion)


class WorkflowTimeoutError(ExecutionError):
    """Raised when a workflow exceeds its overall deadline.

    Attributes:
        elapsed_seconds: The time elapsed before the deadline fired.
        deadline_seconds: The configured deadline.
        in_flight: Steps that were running when the deadline fired.
    """

    def __init__(
        self,
        message: str,
        *,
        elapsed_seconds: float,
        deadline_seconds: float,
        in_flight: list[str] | None = None,
        suggestion: str | None = None,
    ) -> None:
        """Initialize a WorkflowTimeoutError.

        Args:
            message: The error message describing what went wrong.
            elapsed_seconds: The time elapsed before the deadline fired.
            deadline_seconds: The configured deadline.
            in_flight: Steps that were running when the deadline fired.
            suggestion: Optional advice for resolving the error.
        """
        self.elapsed_seconds = elapsed_seconds
        self.deadline_seconds = deadline_seconds
        self.in_flight = in_flight or []

        if suggestion is None:
            suggestion = f"Increase runtime.deadlineSeconds (currently {deadline_seconds:g}s)"
            if self.in_flight:
                suggestion += f". Steps still running: {', '.join(self.in_flight)}"

        super().__init__(message, suggestion)


class WorkflowCancelledError(ExecutionError):
    """Raised when a workflow run is cancelled by its caller.

    Attributes:
        in_flight: Steps that were running when the run was cancelled.
    """

    def __init__(self, message: str, *, in_flight: list[str] | None = None) -> None:
        """Initialize a WorkflowCancelledError.

        Args:
            message: The error message describing what went wrong.
            in_flight: Steps that were running when the run was cancelled.
        """
        self.in_flight = in_flight or []
        super().__init__(message)
