# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Anthropic Claude backend adapter.

This module provides the ClaudeAdapter class for invoking Claude models
through the Anthropic Messages API.

Error classification:
- APITimeoutError → Timeout
- RateLimitError → RateLimited (with the retry-after header, if any)
- APIStatusError → by status code (429 RateLimited, 408/504 Timeout,
  anything else BackendError)
- APIConnectionError → BackendError
- A response without text → InvalidResponse

Retries are never performed inside the adapter; the error policy owns them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import anthropic
from anthropic import AsyncAnthropic

from agentflow.exceptions import FailureKind, FailureSignal
from agentflow.providers.base import (
    BackendAdapter,
    BackendRequest,
    BackendResponse,
    parse_retry_after,
    status_to_kind,
)

if TYPE_CHECKING:
    from agentflow.config.schema import LLMDef
    from agentflow.config.secrets import SecretStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 8192

# Agent parameters consumed by the adapter itself rather than passed through
_RESERVED_PARAMETERS = frozenset(
    {"temperature", "max_tokens", "timeout", "prompt", "system_prompt"}
)


class ClaudeAdapter(BackendAdapter):
    """Anthropic Claude adapter.

    A client is created per invocation so the call-scoped credential is
    never stored on the adapter.

    Example:
        >>> adapter = ClaudeAdapter(binding)
        >>> response = await adapter.invoke(request, timeout=30)
        >>> response.text
        'Paris'
    """

    name = "anthropic"

    def __init__(self, binding: LLMDef, secrets: SecretStore | None = None) -> None:
        """Initialize the Claude adapter.

        Args:
            binding: The LLM binding this adapter serves.
            secrets: Secret store used by validate_connection(). When None,
                the SDK falls back to the ANTHROPIC_API_KEY environment variable.
        """
        super().__init__(binding)
        self._secrets = secrets
        self._sdk_version = getattr(anthropic, "__version__", "unknown")
        logger.debug(
            "Initialized Claude adapter for '%s' with SDK version %s",
            binding.llm_id,
            self._sdk_version,
        )

    def _client(self, credential: str | None, timeout: float | None = None) -> AsyncAnthropic:
        kwargs: dict[str, Any] = {"api_key": credential, "max_retries": 0}
        if self.binding.endpoint:
            kwargs["base_url"] = self.binding.endpoint
        if timeout is not None:
            kwargs["timeout"] = timeout
        return AsyncAnthropic(**kwargs)

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        kwargs: dict[str, Any] = {
            "model": self.binding.model,
            "messages": self._build_messages(request.prompt),
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        for key, value in request.parameters.items():
            if key not in _RESERVED_PARAMETERS:
                kwargs[key] = value

        logger.debug(
            "Executing Claude API call: model=%s, max_tokens=%s, timeout=%ss",
            kwargs["model"],
            kwargs["max_tokens"],
            timeout,
        )

        try:
            async with self._client(request.credential, timeout) as client:
                response = await client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise self._classify(e) from e

        text = self._extract_text_from_response(response)
        if not text:
            raise FailureSignal(
                FailureKind.INVALID_RESPONSE,
                f"Claude returned no text content for step '{request.step_id}'",
                llm_id=self.llm_id,
            )

        usage = getattr(response, "usage", None)
        return BackendResponse(
            text=text,
            raw_response=response,
            model=getattr(response, "model", None),
            input_tokens=getattr(usage, "input_tokens", None),
            output_tokens=getattr(usage, "output_tokens", None),
        )

    def _classify(self, exception: Exception) -> FailureSignal:
        """Translate an Anthropic SDK exception into a FailureSignal."""
        if isinstance(exception, anthropic.APITimeoutError):
            return FailureSignal(
                FailureKind.TIMEOUT,
                f"Claude request timed out: {exception}",
                llm_id=self.llm_id,
            )

        if isinstance(exception, anthropic.APIStatusError):
            status_code = exception.status_code
            retry_after = None
            if isinstance(exception, anthropic.RateLimitError):
                retry_after = parse_retry_after(getattr(exception.response, "headers", None))
            return FailureSignal(
                status_to_kind(status_code),
                f"Claude API error ({status_code}): {exception.message}",
                llm_id=self.llm_id,
                status_code=status_code,
                retry_after=retry_after,
            )

        return FailureSignal(
            FailureKind.BACKEND_ERROR,
            f"Claude API call failed: {exception}",
            llm_id=self.llm_id,
        )

    @staticmethod
    def _build_messages(rendered_prompt: str) -> list[dict[str, str]]:
        return [{"role": "user", "content": rendered_prompt}]

    @staticmethod
    def _extract_text_from_response(response: Any) -> str:
        """Combine the text content blocks of a Claude response."""
        text_parts = []
        for block in getattr(response, "content", None) or []:
            if getattr(block, "type", None) == "text":
                text_parts.append(block.text)
        return "".join(text_parts).strip()

    async def validate_connection(self) -> bool:
        """Verify the credentials by listing models."""
        credential = None
        if self._secrets is not None and self.binding.credential_ref:
            credential = self._secrets.resolve(self.binding.credential_ref)
        try:
            async with self._client(credential) as client:
                models_page = await client.models.list()
        except Exception as e:
            logger.error("Connection validation failed for '%s': %s", self.llm_id, e)
            return False

        available = [model.id for model in models_page.data]
        if self.binding.model not in available:
            logger.warning(
                "Requested model '%s' is not in the list of available models. "
                "API calls may fail.",
                self.binding.model,
            )
        return True

    async def close(self) -> None:
        """Nothing to release: clients live for a single call."""
