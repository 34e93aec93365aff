# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Cross-field validators for workflow descriptors.

This module provides validation beyond the Pydantic schema and the graph
checks: it builds the workflow graph (references, single writers, cycles,
capabilities), checks that every binding has a usable provider, and reports
non-fatal issues such as unused agents or bindings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from agentflow.exceptions import ConfigurationError, TemplateError
from agentflow.executor.template import TemplateRenderer
from agentflow.providers.factory import infer_provider

if TYPE_CHECKING:
    from agentflow.config.schema import WorkflowConfig

# Providers that call a hosted API and need a credential
_CREDENTIALED_PROVIDERS = frozenset({"anthropic", "openai"})


def validate_workflow_config(
    config: WorkflowConfig, source_path: str | None = None
) -> list[str]:
    """Perform comprehensive validation of a workflow descriptor.

    Args:
        config: The WorkflowConfig to validate.
        source_path: Descriptor path used in error messages.

    Returns:
        A list of warning messages (non-fatal issues).

    Raises:
        ConfigurationError: If the graph is invalid or a binding has no
            usable provider. ReferenceError and CycleError are raised for
            dangling references and dependency cycles.
    """
    # Imported here: the engine imports this package
    from agentflow.engine.conditions import expression_safe_name
    from agentflow.engine.graph import WorkflowGraph

    graph = WorkflowGraph(config, source_path=source_path)

    errors: list[str] = []
    warnings: list[str] = []

    for binding in graph.llms:
        try:
            provider = infer_provider(binding)
        except ConfigurationError as e:
            errors.append(e.message)
            continue
        if provider in _CREDENTIALED_PROVIDERS and not binding.credential_ref:
            warnings.append(
                f"LLM '{binding.llm_id}' ({provider}) has no credentialRef; "
                "the vendor SDK will fall back to its own environment variable"
            )

    used_agents = {step.agent_id for step in graph.steps}
    fallback = graph.error_handling.fallback_agent_id
    if fallback:
        used_agents.add(fallback)
    for agent in graph.agents:
        if agent.agent_id not in used_agents:
            warnings.append(f"Agent '{agent.agent_id}' is not used by any step")

    used_llms = {graph.agent(agent_id).llm_id for agent_id in used_agents}
    for binding in graph.llms:
        if binding.llm_id not in used_llms:
            warnings.append(f"LLM '{binding.llm_id}' is not used by any agent")

    if fallback and graph.error_handling.max_fallback_hops == 0:
        warnings.append(
            f"Fallback agent '{fallback}' is configured but maxFallbackHops is 0; "
            "fallbacks will never happen"
        )

    for step in graph.steps:
        if not step.output:
            warnings.append(f"Step '{step.step_id}' declares no output keys")

    external = set(graph.external_inputs())
    for key in graph.outputs:
        if graph.producer_of(key) is None and key not in external:
            warnings.append(
                f"Workflow output '{key}' is not produced by any step and must be a run input"
            )

    renderer = TemplateRenderer()
    for step in graph.steps:
        agent = graph.agent(step.agent_id)
        readable = {"inputs", "step_id"}
        for key in step.input_keys:
            readable.update((key, expression_safe_name(key)))
        for parameter in ("prompt", "system_prompt"):
            template = agent.parameters.get(parameter)
            if not isinstance(template, str):
                continue
            try:
                names = renderer.referenced_names(template)
            except TemplateError as e:
                errors.append(f"Agent '{agent.agent_id}' {parameter}: {e.message}")
                continue
            for name in sorted(names - readable):
                warnings.append(
                    f"Step '{step.step_id}': {parameter} of agent '{agent.agent_id}' "
                    f"reads '{name}', which is not an input of the step"
                )

    if errors:
        raise ConfigurationError(
            "Workflow descriptor validation failed:\n  - " + "\n  - ".join(errors),
            suggestion="Fix the validation errors listed above and try again.",
            file_path=source_path,
        )

    return warnings
