"""Unit tests for adapter creation and provider inference."""

from __future__ import annotations

import pytest

from agentflow.config.schema import LLMDef
from agentflow.exceptions import ConfigurationError
from agentflow.providers.claude import ClaudeAdapter
from agentflow.providers.echo import EchoAdapter
from agentflow.providers.factory import create_adapter, infer_provider
from agentflow.providers.huggingface import HuggingFaceAdapter
from agentflow.providers.openai_chat import OpenAIChatAdapter


@pytest.mark.parametrize(
    ("model", "provider"),
    [
        ("gpt-4", "openai"),
        ("GPT-4o-mini", "openai"),
        ("o1-preview", "openai"),
        ("claude-sonnet-4-20250514", "anthropic"),
        ("roberta-base", "huggingface"),
        ("deepset/roberta-base-squad2", "huggingface"),
        ("distilbert-base-uncased", "huggingface"),
        ("meta-llama/Llama-3.1-8B-Instruct", "huggingface"),
        ("echo-1", "echo"),
    ],
)
def test_infer_provider_from_model(model, provider) -> None:
    assert infer_provider(LLMDef(llm_id="llm", model=model)) == provider


def test_explicit_provider_wins() -> None:
    binding = LLMDef(llm_id="llm", model="gpt-4", provider="echo")

    assert infer_provider(binding) == "echo"


def test_uninferable_provider() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        infer_provider(LLMDef(llm_id="llm-x", model="mystery"))

    assert exc_info.value.field_path == "llms.llm-x.provider"


@pytest.mark.parametrize(
    ("model", "adapter_type"),
    [
        ("gpt-4", OpenAIChatAdapter),
        ("claude-3-5-haiku-latest", ClaudeAdapter),
        ("deepset/roberta-base-squad2", HuggingFaceAdapter),
        ("echo-1", EchoAdapter),
    ],
)
def test_create_adapter(model, adapter_type) -> None:
    adapter = create_adapter(LLMDef(llm_id="llm", model=model))

    assert isinstance(adapter, adapter_type)
    assert adapter.binding.model == model
