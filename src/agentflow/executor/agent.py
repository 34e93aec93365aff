# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Agent execution for Agentflow.

This module provides the AgentExecutor class for running one step with one
agent: render the prompt, resolve the credential, invoke the backend and map
the response onto the step's output keys.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agentflow.executor.output import map_outputs
from agentflow.executor.template import TemplateRenderer
from agentflow.providers.base import BackendRequest, BackendResponse

if TYPE_CHECKING:
    from agentflow.config.schema import AgentDef, LLMDef, StepDef
    from agentflow.config.secrets import SecretStore
    from agentflow.providers.registry import AdapterRegistry

logger = logging.getLogger(__name__)

# Agent parameters consumed while building the request
_TEMPLATE_PARAMETERS = ("prompt", "system_prompt")


@dataclass
class AgentResult:
    """Outputs of a successful step invocation.

    Attributes:
        outputs: Output key → value, ready to merge into the context.
        response: The backend response the outputs were mapped from.
    """

    outputs: dict[str, Any]
    response: BackendResponse


def default_prompt(inputs: dict[str, Any]) -> str:
    """Build a prompt for agents without a prompt template.

    A single input is sent as-is; several inputs are sent one per line.
    """
    if len(inputs) == 1:
        value = next(iter(inputs.values()))
        return value if isinstance(value, str) else json.dumps(value, default=str)
    lines = []
    for key, value in inputs.items():
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        lines.append(f"{key}: {text}")
    return "\n".join(lines)


class AgentExecutor:
    """Executes a single step with a given agent.

    The AgentExecutor handles one backend invocation:
    1. Render the agent's prompt templates with the step's inputs
    2. Resolve the binding's credential reference for this call only
    3. Invoke the backend through the binding's adapter
    4. Map the response onto the step's output keys

    Failures surface as FailureSignal (backend or response problems),
    TemplateError (prompt rendering) or SecretResolutionError.

    Example:
        >>> executor = AgentExecutor(registry, secrets=EnvSecretStore())
        >>> result = await executor.execute(step, agent, binding, variables, timeout=30)
        >>> result.outputs
        {'answer': 'Paris'}
    """

    def __init__(self, registry: AdapterRegistry, secrets: SecretStore | None = None) -> None:
        """Initialize the AgentExecutor.

        Args:
            registry: Registry providing the adapter of each binding.
            secrets: Store resolving credential references. None sends no credential.
        """
        self.registry = registry
        self.secrets = secrets
        self.renderer = TemplateRenderer()

    def render_prompt(self, agent: AgentDef, variables: dict[str, Any]) -> str:
        """Render an agent's prompt, or build the default one.

        Raises:
            TemplateError: If prompt rendering fails.
        """
        template = agent.parameters.get("prompt")
        if template:
            return self.renderer.render(str(template), variables)
        return default_prompt(variables.get("inputs", {}))

    def build_request(
        self,
        step: StepDef,
        agent: AgentDef,
        binding: LLMDef,
        variables: dict[str, Any],
    ) -> BackendRequest:
        """Build the backend request for a step.

        Args:
            step: The step being executed.
            agent: The agent executing it (the fallback agent after a fallback).
            binding: The agent's LLM binding.
            variables: Template variables built from the step's inputs.

        Returns:
            The request, carrying the call-scoped credential.

        Raises:
            TemplateError: If prompt rendering fails.
            SecretResolutionError: If the credential reference cannot be resolved.
        """
        prompt = self.render_prompt(agent, variables)

        system_prompt = None
        system_template = agent.parameters.get("system_prompt")
        if system_template:
            system_prompt = self.renderer.render(str(system_template), variables)

        parameters = {
            k: v for k, v in agent.parameters.items() if k not in _TEMPLATE_PARAMETERS
        }

        credential = None
        if binding.credential_ref and self.secrets is not None:
            credential = self.secrets.resolve(binding.credential_ref)

        return BackendRequest(
            step_id=step.step_id,
            agent_id=agent.agent_id,
            prompt=prompt,
            inputs=dict(variables.get("inputs", {})),
            parameters=parameters,
            system_prompt=system_prompt,
            credential=credential,
        )

    async def execute(
        self,
        step: StepDef,
        agent: AgentDef,
        binding: LLMDef,
        variables: dict[str, Any],
        timeout: float,
    ) -> AgentResult:
        """Run one backend invocation for a step.

        Args:
            step: The step being executed.
            agent: The agent executing it.
            binding: The agent's LLM binding.
            variables: Template variables built from the step's inputs.
            timeout: Per-call timeout in seconds.

        Returns:
            The mapped outputs and the backend response.

        Raises:
            FailureSignal: If the invocation fails or the response cannot be mapped.
            TemplateError: If prompt rendering fails.
            SecretResolutionError: If the credential reference cannot be resolved.
        """
        request = self.build_request(step, agent, binding, variables)
        adapter = self.registry.get_adapter(binding)

        logger.debug(
            "Invoking LLM '%s' (%s) for step '%s' with agent '%s', timeout=%.3gs",
            binding.llm_id,
            adapter.name,
            step.step_id,
            agent.agent_id,
            timeout,
        )
        response = await adapter.invoke(request, timeout)

        outputs = map_outputs(
            response.text,
            step.output,
            step_id=step.step_id,
            llm_id=binding.llm_id,
            output_format=binding.output_format,
        )
        return AgentResult(outputs=outputs, response=response)
