# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Factory for creating backend adapters.

This module provides the create_adapter factory function for instantiating
the adapter that serves an LLM binding.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Literal

from agentflow.exceptions import ConfigurationError
from agentflow.providers.base import BackendAdapter
from agentflow.providers.claude import ClaudeAdapter
from agentflow.providers.echo import EchoAdapter
from agentflow.providers.huggingface import HuggingFaceAdapter
from agentflow.providers.openai_chat import OpenAIChatAdapter

if TYPE_CHECKING:
    from agentflow.config.schema import LLMDef
    from agentflow.config.secrets import SecretStore

ProviderType = Literal["anthropic", "openai", "huggingface", "echo"]

# Model-name patterns used when a binding omits its provider
_INFERENCE_RULES: list[tuple[re.Pattern[str], ProviderType]] = [
    (re.compile(r"^(gpt-|o\d|text-davinci|chatgpt)", re.IGNORECASE), "openai"),
    (re.compile(r"^claude", re.IGNORECASE), "anthropic"),
    (re.compile(r"(bert|roberta|distil|deberta|/)", re.IGNORECASE), "huggingface"),
    (re.compile(r"^echo", re.IGNORECASE), "echo"),
]


def infer_provider(binding: LLMDef) -> ProviderType:
    """Determine which adapter serves a binding.

    Uses the binding's provider when set, otherwise the model name
    ('gpt-4' → openai, 'claude-…' → anthropic, 'roberta-base' or
    'org/model' → huggingface).

    Raises:
        ConfigurationError: If the provider cannot be inferred.
    """
    if binding.provider is not None:
        return binding.provider
    for pattern, provider in _INFERENCE_RULES:
        if pattern.search(binding.model):
            return provider
    raise ConfigurationError(
        f"Cannot infer the provider of LLM '{binding.llm_id}' from model '{binding.model}'",
        suggestion="Set 'provider' on the LLM binding (anthropic, openai, huggingface or echo)",
        field_path=f"llms.{binding.llm_id}.provider",
    )


def create_adapter(binding: LLMDef, secrets: SecretStore | None = None) -> BackendAdapter:
    """Factory function to create the adapter for an LLM binding.

    Args:
        binding: The LLM binding.
        secrets: Secret store handed to adapters for validate_connection().

    Returns:
        A new adapter instance.

    Raises:
        ConfigurationError: If the provider is unknown or cannot be inferred.

    Example:
        >>> adapter = create_adapter(graph.llm("llm-gpt4"))
        >>> adapter.name
        'openai'
    """
    provider = infer_provider(binding)
    match provider:
        case "anthropic":
            return ClaudeAdapter(binding, secrets)
        case "openai":
            return OpenAIChatAdapter(binding, secrets)
        case "huggingface":
            return HuggingFaceAdapter(binding, secrets)
        case "echo":
            return EchoAdapter(binding)
        case _:
            raise ConfigurationError(
                f"Unknown provider: {provider}",
                suggestion="Valid providers are: anthropic, openai, huggingface, echo",
            )
