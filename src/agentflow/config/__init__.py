# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Descriptor loading and validation for Agentflow."""

from agentflow.config.loader import ConfigLoader, load_config, load_config_string
from agentflow.config.schema import (
    AgentDef,
    ErrorAction,
    ErrorCodeDef,
    ErrorHandlingDef,
    LLMDef,
    RuntimeDef,
    StepDef,
    WorkflowConfig,
)
from agentflow.config.secrets import EnvSecretStore, SecretStore, StaticSecretStore
from agentflow.config.validator import validate_workflow_config

__all__ = [
    "AgentDef",
    "ConfigLoader",
    "EnvSecretStore",
    "ErrorAction",
    "ErrorCodeDef",
    "ErrorHandlingDef",
    "LLMDef",
    "RuntimeDef",
    "SecretStore",
    "StaticSecretStore",
    "StepDef",
    "WorkflowConfig",
    "load_config",
    "load_config_string",
    "validate_workflow_config",
]
