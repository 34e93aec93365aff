# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Abstract base class for LLM backend adapters.

This module defines the BackendAdapter ABC and the request/response types
every adapter implementation must use, so the engine is written once against
a single interface and never against a vendor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from agentflow.exceptions import FailureKind, FailureSignal

if TYPE_CHECKING:
    from agentflow.config.schema import LLMDef

logger = logging.getLogger(__name__)


@dataclass
class BackendRequest:
    """A single backend invocation.

    Attributes:
        step_id: Step on whose behalf the call is made.
        agent_id: Agent making the call.
        prompt: Rendered user prompt.
        inputs: Resolved input values of the step.
        parameters: Agent parameters other than the prompt templates
            (temperature, max_tokens and any backend-specific keys).
        system_prompt: Rendered system prompt, if the agent has one.
        credential: Secret resolved from the binding's credentialRef. Lives
            only for this call and is never included in repr or logs.
    """

    step_id: str
    agent_id: str
    prompt: str
    inputs: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None
    credential: str | None = field(default=None, repr=False)

    @property
    def temperature(self) -> float | None:
        value = self.parameters.get("temperature")
        return float(value) if value is not None else None

    @property
    def max_tokens(self) -> int | None:
        value = self.parameters.get("max_tokens")
        return int(value) if value is not None else None


@dataclass
class BackendResponse:
    """Normalized output from any backend adapter.

    Attributes:
        text: The response text the step's outputs are mapped from.
        raw_response: Adapter-specific raw response for debugging.
        latency_seconds: Wall-clock duration of the call, set by invoke().
        model: Model that served the call, if reported.
        input_tokens: Prompt tokens used, if reported.
        output_tokens: Completion tokens generated, if reported.
    """

    text: str
    raw_response: Any = None
    latency_seconds: float = 0.0
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


class BackendAdapter(ABC):
    """Abstract base class for LLM backend adapters.

    One adapter instance serves one LLM binding. Implementations provide
    ``_invoke()`` and translate vendor failures into FailureSignal; the base
    class enforces the per-call timeout, measures latency and classifies
    anything an implementation lets escape.

    Implementations must provide:
    - _invoke(): Perform the backend call
    - validate_connection(): Verify backend connectivity
    - close(): Clean up resources

    Example:
        >>> class MyAdapter(BackendAdapter):
        ...     name = "mine"
        ...     async def _invoke(self, request, timeout):
        ...         return BackendResponse(text="ok")
        ...     async def validate_connection(self):
        ...         return True
        ...     async def close(self):
        ...         pass
    """

    name: ClassVar[str] = "base"

    def __init__(self, binding: LLMDef) -> None:
        """Initialize the adapter.

        Args:
            binding: The LLM binding this adapter serves.
        """
        self.binding = binding

    @property
    def llm_id(self) -> str:
        return self.binding.llm_id

    def describe_capabilities(self) -> set[str]:
        """Return the capability tags this backend offers."""
        return set(self.binding.capabilities)

    async def invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        """Invoke the backend under a timeout.

        Args:
            request: The invocation.
            timeout: Seconds before the call is abandoned.

        Returns:
            The normalized response with latency set.

        Raises:
            FailureSignal: On any failure, classified.
        """
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(self._invoke(request, timeout), timeout=timeout)
        except FailureSignal as e:
            if e.llm_id is None:
                e.llm_id = self.llm_id
            raise
        except asyncio.TimeoutError as e:
            raise FailureSignal(
                FailureKind.TIMEOUT,
                f"LLM '{self.llm_id}' did not respond within {timeout:g}s",
                llm_id=self.llm_id,
            ) from e
        except Exception as e:
            logger.debug("Unclassified %s failure for '%s': %r", self.name, self.llm_id, e)
            raise FailureSignal(
                FailureKind.BACKEND_ERROR,
                f"LLM '{self.llm_id}' failed: {e}",
                llm_id=self.llm_id,
            ) from e

        response.latency_seconds = time.monotonic() - start
        return response

    @abstractmethod
    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        """Perform the backend call.

        Args:
            request: The invocation.
            timeout: Seconds the call may take, for clients that accept one.

        Returns:
            The normalized response.

        Raises:
            FailureSignal: For failures the adapter can classify.
        """
        ...

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Verify the adapter can reach its backend.

        Returns:
            True if connection successful, False otherwise.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release adapter resources and close connections."""
        ...


def status_to_kind(status_code: int | None) -> FailureKind:
    """Classify an HTTP status code.

    429 is rate limiting, 408 and 504 are timeouts, everything else is a
    backend error.
    """
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if status_code in (408, 504):
        return FailureKind.TIMEOUT
    return FailureKind.BACKEND_ERROR


def parse_retry_after(headers: Any) -> float | None:
    """Extract a retry-after delay in seconds from response headers."""
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
