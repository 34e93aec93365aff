# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Providers module for Agentflow.

This module defines the backend adapter abstraction and implementations
for different LLM vendors (Anthropic, OpenAI, Hugging Face).
"""

from agentflow.providers.base import BackendAdapter, BackendRequest, BackendResponse
from agentflow.providers.claude import ClaudeAdapter
from agentflow.providers.echo import EchoAdapter
from agentflow.providers.factory import create_adapter, infer_provider
from agentflow.providers.huggingface import HuggingFaceAdapter
from agentflow.providers.openai_chat import OpenAIChatAdapter
from agentflow.providers.registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "BackendAdapter",
    "BackendRequest",
    "BackendResponse",
    "ClaudeAdapter",
    "EchoAdapter",
    "HuggingFaceAdapter",
    "OpenAIChatAdapter",
    "create_adapter",
    "infer_provider",
]
