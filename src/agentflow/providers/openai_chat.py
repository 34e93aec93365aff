# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""OpenAI Chat Completions backend adapter.

Serves GPT-family bindings. Any OpenAI-compatible endpoint (Azure OpenAI,
local gateways) can be used by setting the binding's endpoint.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import openai
from openai import AsyncOpenAI

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

_RESERVED_PARAMETERS = frozenset(
    {"temperature", "max_tokens", "timeout", "prompt", "system_prompt"}
)


class OpenAIChatAdapter(BackendAdapter):
    """OpenAI chat completion adapter.

    Example:
        >>> adapter = OpenAIChatAdapter(binding)
        >>> response = await adapter.invoke(request, timeout=30)
    """

    name = "openai"

    def __init__(self, binding: LLMDef, secrets: SecretStore | None = None) -> None:
        """Initialize the OpenAI adapter.

        Args:
            binding: The LLM binding this adapter serves.
            secrets: Secret store used by validate_connection(). When None,
                the SDK falls back to the OPENAI_API_KEY environment variable.
        """
        super().__init__(binding)
        self._secrets = secrets

    def _client(self, credential: str | None, timeout: float | None = None) -> AsyncOpenAI:
        kwargs: dict[str, Any] = {"api_key": credential, "max_retries": 0}
        if self.binding.endpoint:
            kwargs["base_url"] = self.binding.endpoint
        if timeout is not None:
            kwargs["timeout"] = timeout
        return AsyncOpenAI(**kwargs)

    def _build_messages(self, request: BackendRequest) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return messages

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        kwargs: dict[str, Any] = {
            "model": self.binding.model,
            "messages": self._build_messages(request),
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        for key, value in request.parameters.items():
            if key not in _RESERVED_PARAMETERS:
                kwargs[key] = value

        logger.debug(
            "Executing OpenAI chat completion: model=%s, timeout=%ss", kwargs["model"], timeout
        )

        try:
            async with self._client(request.credential, timeout) as client:
                response = await client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise self._classify(e) from e

        choices = getattr(response, "choices", None) or []
        text = (choices[0].message.content or "").strip() if choices else ""
        if not text:
            raise FailureSignal(
                FailureKind.INVALID_RESPONSE,
                f"OpenAI returned no message content for step '{request.step_id}'",
                llm_id=self.llm_id,
            )

        usage = getattr(response, "usage", None)
        return BackendResponse(
            text=text,
            raw_response=response,
            model=getattr(response, "model", None),
            input_tokens=getattr(usage, "prompt_tokens", None),
            output_tokens=getattr(usage, "completion_tokens", None),
        )

    def _classify(self, exception: openai.APIError) -> FailureSignal:
        """Translate an OpenAI SDK exception into a FailureSignal."""
        if isinstance(exception, openai.APITimeoutError):
            return FailureSignal(
                FailureKind.TIMEOUT,
                f"OpenAI request timed out: {exception}",
                llm_id=self.llm_id,
            )

        if isinstance(exception, openai.APIStatusError):
            status_code = exception.status_code
            retry_after = None
            if status_code == 429:
                retry_after = parse_retry_after(getattr(exception.response, "headers", None))
            return FailureSignal(
                status_to_kind(status_code),
                f"OpenAI API error ({status_code}): {exception.message}",
                llm_id=self.llm_id,
                status_code=status_code,
                retry_after=retry_after,
            )

        return FailureSignal(
            FailureKind.BACKEND_ERROR,
            f"OpenAI API call failed: {exception}",
            llm_id=self.llm_id,
        )

    async def validate_connection(self) -> bool:
        """Verify the credentials by listing models."""
        credential = None
        if self._secrets is not None and self.binding.credential_ref:
            credential = self._secrets.resolve(self.binding.credential_ref)
        try:
            async with self._client(credential) as client:
                await client.models.list()
        except Exception as e:
            logger.error("Connection validation failed for '%s': %s", self.llm_id, e)
            return False
        return True

    async def close(self) -> None:
        """Nothing to release: clients live for a single call."""
