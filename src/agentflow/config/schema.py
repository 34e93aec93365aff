# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Pydantic models for workflow descriptors.

This module defines the Pydantic models that validate the structure of a
workflow descriptor. Descriptor keys are camelCase (``workflowId``,
``workflowSequence``); the models expose them as snake_case attributes.

Structural validation happens here. Cross-references and the step dependency
graph are checked when the descriptor is turned into a WorkflowGraph.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Prefixes of literal API keys that must never appear in credentialRef
_LITERAL_SECRET_PREFIXES = ("sk-", "sk_", "hf_", "xoxb-", "ghp_")


class DescriptorModel(BaseModel):
    """Base model for descriptor entities.

    Accepts camelCase keys from the document and snake_case keys from Python
    callers. Instances are frozen once validated.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ErrorAction(str, Enum):
    """Action taken when a backend invocation fails."""

    RETRY = "retry"
    FALLBACK = "fallback"
    ABORT = "abort"


def _as_key_list(value: Any) -> Any:
    """Accept a single key or a list of keys."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class LLMDef(DescriptorModel):
    """Metadata and connection info for one backend model."""

    llm_id: str = Field(min_length=1)
    """Unique identifier for this binding."""

    provider: Literal["anthropic", "openai", "huggingface", "echo"] | None = None
    """Adapter that serves this binding. Inferred from the model name when omitted."""

    model: str = Field(min_length=1)
    """Model name sent to the backend."""

    version: str | None = None
    """Optional model version label."""

    endpoint: str | None = None
    """Endpoint URL. Adapters fall back to the vendor default when omitted."""

    credential_ref: str | None = None
    """Reference to a secret (e.g. 'env:OPENAI_API_KEY'). Never the secret itself."""

    input_format: str = "text/plain"
    """Content type the model accepts."""

    output_format: str = "text/plain"
    """Content type the model produces."""

    capabilities: list[str] = Field(default_factory=list)
    """Capability tags this model offers (e.g. 'text-generation')."""

    timeout_seconds: float | None = Field(default=None, gt=0)
    """Per-call timeout for this binding. Overrides runtime.callTimeoutSeconds."""

    @field_validator("credential_ref")
    @classmethod
    def validate_credential_ref(cls, v: str | None) -> str | None:
        """Reject values that look like literal API keys."""
        if v is not None and v.startswith(_LITERAL_SECRET_PREFIXES):
            raise ValueError(
                "credentialRef must reference a secret (e.g. 'env:API_KEY'), "
                "not contain the secret itself"
            )
        return v


class AgentDef(DescriptorModel):
    """A named role bound to one LLM backend and a set of invocation parameters."""

    agent_id: str = Field(min_length=1)
    """Unique identifier for this agent."""

    role: str = "assistant"
    """Semantic task label (e.g. 'question-answering')."""

    description: str | None = None
    """Human-readable description of the agent's purpose."""

    capabilities: list[str] = Field(default_factory=list)
    """Capability tags this agent needs from its backend."""

    llm_id: str = Field(min_length=1)
    """LLM binding used by this agent."""

    parameters: dict[str, Any] = Field(default_factory=dict)
    """Backend-call parameters.

    Recognized keys: prompt (Jinja2 template), system_prompt, temperature,
    max_tokens, timeout. Unknown keys are passed to the adapter unchanged.
    """


class StepDef(DescriptorModel):
    """One unit of workflow execution."""

    step_id: str = Field(min_length=1)
    """Unique identifier for this step."""

    agent_id: str = Field(min_length=1)
    """Agent that executes this step."""

    description: str | None = None
    """Human-readable description of the step."""

    input: list[str] = Field(default_factory=list)
    """Context keys consumed by this step. Suffix with '?' for optional keys."""

    output: list[str] = Field(default_factory=list)
    """Context keys produced by this step."""

    condition: str = "start"
    """'start', 'After <stepId>[, <stepId>...]', or an expression over the context."""

    optional: bool = False
    """When True, an aborted step is skipped instead of failing the workflow."""

    timeout_seconds: float | None = Field(default=None, gt=0)
    """Per-call timeout for this step. Overrides the binding and runtime timeouts."""

    @field_validator("input", "output", mode="before")
    @classmethod
    def coerce_key_list(cls, v: Any) -> Any:
        """Accept a single key or a list of keys."""
        return _as_key_list(v)

    @field_validator("output")
    @classmethod
    def validate_output_keys(cls, v: list[str]) -> list[str]:
        """Output keys must be plain, unique names."""
        for key in v:
            if not key or key.endswith("?"):
                raise ValueError(f"Invalid output key '{key}': output keys cannot be optional")
        if len(set(v)) != len(v):
            raise ValueError("Output keys must be unique within a step")
        return v

    @field_validator("condition", mode="before")
    @classmethod
    def default_condition(cls, v: Any) -> Any:
        """Treat a missing condition as the start marker."""
        return "start" if v is None else v

    @property
    def required_inputs(self) -> list[str]:
        """Input keys that must be present before the step can run."""
        return [key for key in self.input if not key.endswith("?")]

    @property
    def optional_inputs(self) -> list[str]:
        """Input keys (without the '?' suffix) that may be absent."""
        return [key[:-1] for key in self.input if key.endswith("?")]

    @property
    def input_keys(self) -> list[str]:
        """All input keys with any '?' suffix removed."""
        return [key.rstrip("?") for key in self.input]


class ErrorCodeDef(DescriptorModel):
    """Maps one error code to the action taken when it occurs."""

    code: str = Field(min_length=1)
    """Error code (e.g. 'LLM_TIMEOUT'). Matched exactly."""

    action: ErrorAction
    """Action taken for this code."""

    max_attempts: int | None = Field(default=None, ge=1, le=20)
    """Retry budget for this code, including the first attempt."""

    description: str | None = None
    """Human-readable description of the error code."""

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        """Accept 'Retry', 'RETRY' and 'retry'."""
        return v.lower() if isinstance(v, str) else v


class BackoffConfig(DescriptorModel):
    """Exponential backoff between retry attempts."""

    base_delay: float = Field(default=1.0, ge=0)
    """Delay in seconds before the first retry."""

    max_delay: float = Field(default=30.0, ge=0)
    """Upper bound on the delay between retries."""

    jitter: float = Field(default=0.25, ge=0, le=1)
    """Maximum random jitter as a fraction of the delay."""


class ErrorHandlingDef(DescriptorModel):
    """Error table and fallback configuration."""

    error_codes: list[ErrorCodeDef] = Field(default_factory=list)
    """Ordered error code → action mappings."""

    fallback_agent_id: str | None = None
    """Agent substituted for a step's agent when the action is 'fallback'."""

    max_attempts: int = Field(default=3, ge=1, le=20)
    """Default retry budget, including the first attempt."""

    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    """Backoff between retry attempts."""

    max_fallback_hops: int = Field(default=1, ge=0, le=5)
    """How many times a single step may fall back."""

    fallback_after_retries: bool = True
    """Fall back (when possible) instead of aborting once retries are exhausted."""

    @field_validator("error_codes")
    @classmethod
    def validate_unique_codes(cls, v: list[ErrorCodeDef]) -> list[ErrorCodeDef]:
        """Each error code may be mapped only once."""
        seen: set[str] = set()
        for entry in v:
            if entry.code in seen:
                raise ValueError(f"Duplicate error code '{entry.code}' in errorCodes")
            seen.add(entry.code)
        return v


class SecurityDef(DescriptorModel):
    """Security metadata carried with the workflow. Not enforced by the engine."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    authentication: str | None = None
    """Authentication scheme used for backends (e.g. 'api-key', 'oauth2')."""

    encryption: str | None = None
    """Transport or at-rest encryption description."""

    data_privacy: str | None = None
    """Data privacy policy label."""


class DataFormatsDef(DescriptorModel):
    """Content types of the workflow's input and output."""

    input_format: str = "application/json"
    output_format: str = "application/json"


class RuntimeDef(DescriptorModel):
    """Scheduling and timeout settings for a run."""

    max_concurrency: int = Field(default=4, ge=1, le=64)
    """Maximum number of steps executing at the same time."""

    call_timeout_seconds: float = Field(default=60.0, gt=0)
    """Default per-call timeout for backend invocations."""

    deadline_seconds: float | None = Field(default=None, gt=0)
    """Overall wall-clock deadline for a run. None means unlimited."""


class WorkflowConfig(DescriptorModel):
    """Complete workflow descriptor."""

    workflow_id: str = Field(min_length=1)
    """Unique workflow identifier."""

    description: str | None = None
    """Human-readable workflow description."""

    version: str | None = None
    """Descriptor version string."""

    agents: list[AgentDef] = Field(min_length=1)
    """Agent definitions."""

    llms: list[LLMDef] = Field(min_length=1)
    """LLM binding definitions."""

    workflow_sequence: list[StepDef] = Field(min_length=1)
    """Steps in declared order. Declared order breaks scheduling ties."""

    data_formats: DataFormatsDef = Field(default_factory=DataFormatsDef)
    """Content types of the workflow's input and output."""

    error_handling: ErrorHandlingDef = Field(default_factory=ErrorHandlingDef)
    """Error table and fallback configuration."""

    security: SecurityDef | None = None
    """Security metadata."""

    runtime: RuntimeDef = Field(default_factory=RuntimeDef)
    """Scheduling and timeout settings."""

    outputs: list[str] = Field(default_factory=list)
    """Context keys reported as workflow outputs. Empty means the whole context."""

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> WorkflowConfig:
        """Ensure the backoff cap is not below the base delay."""
        backoff = self.error_handling.backoff
        if backoff.max_delay < backoff.base_delay:
            raise ValueError("errorHandling.backoff.maxDelay must be >= baseDelay")
        return self
