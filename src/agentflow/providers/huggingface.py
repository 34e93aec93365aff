# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Hugging Face Inference API backend adapter.

Serves encoder models such as BERT and RoBERTa (question answering,
classification, fill-mask) as well as text-generation models hosted on the
Hugging Face Inference API or a compatible Inference Endpoint.

Agent parameters:
- ``task``: 'question-answering' sends ``{"question", "context"}`` built from
  the step inputs; any other value (or none) sends the rendered prompt.
- ``temperature`` / ``max_tokens``: forwarded as generation parameters.
- Other keys are forwarded unchanged in the request's ``parameters``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

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

DEFAULT_ENDPOINT = "https://api-inference.huggingface.co/models/{model}"

_RESERVED_PARAMETERS = frozenset(
    {"temperature", "max_tokens", "timeout", "prompt", "system_prompt", "task"}
)


class HuggingFaceAdapter(BackendAdapter):
    """Hugging Face Inference API adapter.

    One httpx.AsyncClient is shared by every call of the adapter and closed
    with it. The credential travels in the per-request Authorization header.

    Example:
        >>> adapter = HuggingFaceAdapter(binding)
        >>> response = await adapter.invoke(request, timeout=30)
        >>> await adapter.close()
    """

    name = "huggingface"

    def __init__(
        self,
        binding: LLMDef,
        secrets: SecretStore | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            binding: The LLM binding this adapter serves.
            secrets: Secret store used by validate_connection().
            client: Optional HTTP client, mainly for tests. Owned by the caller.
        """
        super().__init__(binding)
        self._secrets = secrets
        self._client = client
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return self.binding.endpoint or DEFAULT_ENDPOINT.format(model=self.binding.model)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    @staticmethod
    def _headers(credential: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def build_payload(self, request: BackendRequest) -> dict[str, Any]:
        """Build the Inference API request body."""
        task = request.parameters.get("task")
        payload: dict[str, Any]
        if task == "question-answering":
            question = request.inputs.get("question") or request.prompt
            context = request.inputs.get("context") or request.system_prompt or ""
            payload = {"inputs": {"question": question, "context": context}}
        else:
            payload = {"inputs": request.prompt}

        parameters = {
            k: v for k, v in request.parameters.items() if k not in _RESERVED_PARAMETERS
        }
        if request.temperature is not None:
            parameters["temperature"] = request.temperature
        if request.max_tokens is not None:
            parameters["max_new_tokens"] = request.max_tokens
        if parameters:
            payload["parameters"] = parameters
        return payload

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        payload = self.build_payload(request)
        logger.debug("POST %s (timeout=%ss)", self.endpoint, timeout)

        try:
            response = await self._get_client().post(
                self.endpoint,
                json=payload,
                headers=self._headers(request.credential),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise FailureSignal(
                FailureKind.TIMEOUT,
                f"Hugging Face request timed out: {e}",
                llm_id=self.llm_id,
            ) from e
        except httpx.HTTPError as e:
            raise FailureSignal(
                FailureKind.BACKEND_ERROR,
                f"Hugging Face request failed: {e}",
                llm_id=self.llm_id,
            ) from e

        if response.status_code >= 400:
            raise self._status_failure(response)

        try:
            body = response.json()
        except ValueError as e:
            raise FailureSignal(
                FailureKind.INVALID_RESPONSE,
                f"Hugging Face returned a non-JSON body: {response.text[:200]}",
                llm_id=self.llm_id,
            ) from e

        if isinstance(body, dict) and "error" in body:
            raise FailureSignal(
                FailureKind.BACKEND_ERROR,
                f"Hugging Face error: {body['error']}",
                llm_id=self.llm_id,
                retry_after=body.get("estimated_time"),
            )

        text = self.extract_text(body)
        if not text:
            raise FailureSignal(
                FailureKind.INVALID_RESPONSE,
                f"Hugging Face returned no usable output for step '{request.step_id}'",
                llm_id=self.llm_id,
            )
        return BackendResponse(text=text, raw_response=body, model=self.binding.model)

    def _status_failure(self, response: httpx.Response) -> FailureSignal:
        retry_after = parse_retry_after(response.headers)
        detail = response.text[:200]
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = str(body.get("error", detail))
            if retry_after is None and body.get("estimated_time") is not None:
                retry_after = float(body["estimated_time"])
        return FailureSignal(
            status_to_kind(response.status_code),
            f"Hugging Face API error ({response.status_code}): {detail}",
            llm_id=self.llm_id,
            status_code=response.status_code,
            retry_after=retry_after,
        )

    @staticmethod
    def extract_text(body: Any) -> str:
        """Extract the answer text from an Inference API response.

        Handles question answering (``answer``), text generation
        (``generated_text``), fill-mask (``sequence``) and classification
        (``label``) shapes. Anything else is returned as JSON.
        """
        if isinstance(body, str):
            return body.strip()
        if isinstance(body, list):
            if not body:
                return ""
            first = body[0]
            # Classification responses nest a list of labels per input
            if isinstance(first, list) and first:
                first = first[0]
            body = first
        if isinstance(body, dict):
            for key in ("answer", "generated_text", "sequence", "label", "summary_text"):
                value = body.get(key)
                if isinstance(value, str):
                    return value.strip()
        return json.dumps(body)

    async def validate_connection(self) -> bool:
        """Verify the endpoint is reachable and the credential accepted."""
        credential = None
        if self._secrets is not None and self.binding.credential_ref:
            credential = self._secrets.resolve(self.binding.credential_ref)
        try:
            response = await self._get_client().get(
                self.endpoint, headers=self._headers(credential), timeout=10.0
            )
        except httpx.HTTPError as e:
            logger.error("Connection validation failed for '%s': %s", self.llm_id, e)
            return False
        # The Inference API answers GET on model URLs with 405 for valid models
        return response.status_code not in (401, 403, 404)

    async def close(self) -> None:
        """Close the HTTP client if the adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            logger.debug("Hugging Face adapter for '%s' closed", self.llm_id)
        self._client = None
