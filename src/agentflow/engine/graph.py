# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow entity graph.

A WorkflowGraph is built once from a validated WorkflowConfig. Construction
checks every cross-reference, infers the step dependency graph from input and
output keys plus 'After' and expression conditions, and rejects cycles. The
graph is read-only afterwards; runs share it freely.
"""

from __future__ import annotations

import ast
import graphlib
import logging
from typing import Any

from agentflow.config.schema import (
    AgentDef,
    ErrorHandlingDef,
    LLMDef,
    RuntimeDef,
    StepDef,
    WorkflowConfig,
)
from agentflow.engine.conditions import (
    Condition,
    ConditionKind,
    expression_safe_name,
    parse_condition,
)
from agentflow.exceptions import ConfigurationError, CycleError, ReferenceError
from agentflow.executor.template import TemplateRenderer, is_template

logger = logging.getLogger(__name__)


def _expression_names(expression: str) -> set[str]:
    """Return the free names an expression condition reads."""
    if is_template(expression):
        return TemplateRenderer().referenced_names(expression)
    tree = ast.parse(expression, mode="eval")
    return {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}


class WorkflowGraph:
    """Immutable, cross-checked view of a workflow descriptor.

    Raises at construction:
        ConfigurationError: Duplicate identifiers, two steps writing the same
            output key, capability mismatches or invalid conditions.
        ReferenceError: A step, agent, fallback or 'After' reference dangles.
        CycleError: The inferred step dependency graph has a cycle.

    Example:
        >>> graph = WorkflowGraph(load_config("qa.yaml"))
        >>> graph.dependencies("step-2")
        frozenset({'step-1'})
        >>> graph.execution_levels()
        [['step-1'], ['step-2']]
    """

    def __init__(self, config: WorkflowConfig, source_path: str | None = None) -> None:
        """Build and check the graph.

        Args:
            config: A schema-validated workflow descriptor.
            source_path: Descriptor path, used in error messages.
        """
        self.config = config
        self.source_path = source_path

        self._agents = self._index(config.agents, "agent_id", "agentId", "agents")
        self._llms = self._index(config.llms, "llm_id", "llmId", "llms")
        self._steps = self._index(
            config.workflow_sequence, "step_id", "stepId", "workflowSequence"
        )
        self._order = {step_id: i for i, step_id in enumerate(self._steps)}

        self._conditions = self._parse_conditions()
        self._check_references()
        self._producers = self._index_producers()
        self._check_capabilities()
        self._condition_inputs = self._index_condition_inputs()
        self._dependencies = self._infer_dependencies()
        self._check_cycles()

        logger.debug(
            "Built graph for workflow '%s': %d step(s), %d agent(s), %d LLM binding(s)",
            config.workflow_id,
            len(self._steps),
            len(self._agents),
            len(self._llms),
        )

    def _index(self, items: list[Any], attr: str, key: str, section: str) -> dict[str, Any]:
        index: dict[str, Any] = {}
        duplicates: list[str] = []
        for item in items:
            identifier = getattr(item, attr)
            if identifier in index:
                duplicates.append(identifier)
            index[identifier] = item
        if duplicates:
            raise ConfigurationError(
                f"Duplicate {key} in {section}: {', '.join(sorted(set(duplicates)))}",
                file_path=self.source_path,
                field_path=section,
            )
        return index

    def _parse_conditions(self) -> dict[str, Condition]:
        conditions: dict[str, Condition] = {}
        for i, step in enumerate(self._steps.values()):
            try:
                conditions[step.step_id] = parse_condition(step.condition)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid condition for step '{step.step_id}': {e}",
                    suggestion="Use 'start', 'After <stepId>' or a valid expression",
                    file_path=self.source_path,
                    field_path=f"workflowSequence[{i}].condition",
                ) from e
        return conditions

    def _check_references(self) -> None:
        dangling: list[str] = []

        for step in self._steps.values():
            if step.agent_id not in self._agents:
                dangling.append(f"step '{step.step_id}' → unknown agent '{step.agent_id}'")
            for upstream in self._conditions[step.step_id].after:
                if upstream not in self._steps:
                    dangling.append(
                        f"step '{step.step_id}' condition → unknown step '{upstream}'"
                    )

        for agent in self._agents.values():
            if agent.llm_id not in self._llms:
                dangling.append(f"agent '{agent.agent_id}' → unknown LLM '{agent.llm_id}'")

        fallback = self.config.error_handling.fallback_agent_id
        if fallback is not None and fallback not in self._agents:
            dangling.append(f"errorHandling.fallbackAgentId → unknown agent '{fallback}'")

        if dangling:
            raise ReferenceError(
                f"{len(dangling)} dangling reference(s) in workflow "
                f"'{self.config.workflow_id}':\n" + "\n".join(f"  - {d}" for d in dangling),
                dangling=dangling,
                file_path=self.source_path,
            )

    def _index_producers(self) -> dict[str, str]:
        producers: dict[str, str] = {}
        for step in self._steps.values():
            for key in step.output:
                if key in producers:
                    raise ConfigurationError(
                        f"Duplicate output key '{key}': written by both "
                        f"'{producers[key]}' and '{step.step_id}'",
                        suggestion="Each context key must be produced by exactly one step",
                        file_path=self.source_path,
                        field_path=f"{step.step_id}.output",
                    )
                producers[key] = step.step_id
        return producers

    def _check_capabilities(self) -> None:
        mismatches: list[str] = []
        for agent in self._agents.values():
            llm = self._llms[agent.llm_id]
            missing = sorted(set(agent.capabilities) - set(llm.capabilities))
            if missing:
                mismatches.append(
                    f"agent '{agent.agent_id}' needs {missing} but LLM "
                    f"'{llm.llm_id}' offers {sorted(llm.capabilities)}"
                )
        if mismatches:
            raise ConfigurationError(
                "Capability mismatch:\n" + "\n".join(f"  - {m}" for m in mismatches),
                file_path=self.source_path,
                violations=mismatches,
            )

    def _index_condition_inputs(self) -> dict[str, dict[str, str]]:
        safe_keys = {expression_safe_name(key): key for key in self._producers}
        condition_inputs: dict[str, dict[str, str]] = {}

        for step in self._steps.values():
            keys: dict[str, str] = {}
            condition = self._conditions[step.step_id]
            if condition.kind is ConditionKind.EXPRESSION and condition.expression:
                for name in _expression_names(condition.expression):
                    key = name if name in self._producers else safe_keys.get(name)
                    if key is not None:
                        keys[key] = self._producers[key]
            condition_inputs[step.step_id] = keys
        return condition_inputs

    def _infer_dependencies(self) -> dict[str, frozenset[str]]:
        dependencies: dict[str, frozenset[str]] = {}

        for step in self._steps.values():
            deps: set[str] = set()
            for key in step.input_keys:
                producer = self._producers.get(key)
                if producer is not None:
                    deps.add(producer)

            condition = self._conditions[step.step_id]
            deps.update(condition.after)
            deps.update(self._condition_inputs[step.step_id].values())

            dependencies[step.step_id] = frozenset(deps)
        return dependencies

    def _check_cycles(self) -> None:
        sorter = graphlib.TopologicalSorter(self._dependencies)
        try:
            sorter.prepare()
        except graphlib.CycleError as e:
            cycle = list(e.args[1])
            raise CycleError(
                f"Step dependency cycle in workflow '{self.config.workflow_id}': "
                + " → ".join(cycle),
                cycle=cycle,
                file_path=self.source_path,
            ) from e

    @property
    def workflow_id(self) -> str:
        return self.config.workflow_id

    @property
    def steps(self) -> tuple[StepDef, ...]:
        """Steps in declared order."""
        return tuple(self._steps.values())

    @property
    def agents(self) -> tuple[AgentDef, ...]:
        return tuple(self._agents.values())

    @property
    def llms(self) -> tuple[LLMDef, ...]:
        return tuple(self._llms.values())

    @property
    def error_handling(self) -> ErrorHandlingDef:
        return self.config.error_handling

    @property
    def runtime(self) -> RuntimeDef:
        return self.config.runtime

    @property
    def outputs(self) -> list[str]:
        """Declared workflow output keys. Empty means the whole context."""
        return list(self.config.outputs)

    def step(self, step_id: str) -> StepDef:
        return self._steps[step_id]

    def agent(self, agent_id: str) -> AgentDef:
        return self._agents[agent_id]

    def llm(self, llm_id: str) -> LLMDef:
        return self._llms[llm_id]

    def binding_for(self, agent_id: str) -> LLMDef:
        """Return the LLM binding an agent is bound to."""
        return self._llms[self._agents[agent_id].llm_id]

    def condition(self, step_id: str) -> Condition:
        return self._conditions[step_id]

    def order_of(self, step_id: str) -> int:
        """Return the step's position in the declared sequence."""
        return self._order[step_id]

    def dependencies(self, step_id: str) -> frozenset[str]:
        """Return the steps that must terminate before this step can run."""
        return self._dependencies[step_id]

    def producer_of(self, key: str) -> str | None:
        """Return the step that writes a context key, or None for run inputs."""
        return self._producers.get(key)

    def condition_inputs(self, step_id: str) -> dict[str, str]:
        """Return the context keys a step's expression condition reads.

        Maps each key to the step that writes it. Identifier-safe names
        ('final_answer') resolve to the key they stand for ('final-answer').
        Run inputs are not listed.
        """
        return dict(self._condition_inputs[step_id])

    def external_inputs(self) -> list[str]:
        """Return required input keys no step produces, in first-use order.

        These must be supplied as run inputs.
        """
        keys: list[str] = []
        for step in self._steps.values():
            for key in step.required_inputs:
                if key not in self._producers and key not in keys:
                    keys.append(key)
        return keys

    def check_run_inputs(self, inputs: dict[str, Any]) -> None:
        """Reject run inputs that collide with step outputs.

        Raises:
            ConfigurationError: If a run input key is produced by a step.
        """
        collisions = sorted(k for k in inputs if k in self._producers)
        if collisions:
            raise ConfigurationError(
                f"Run inputs {collisions} are produced by workflow steps",
                suggestion="Remove these keys from the run inputs; steps write them",
                field_path="inputs",
            )

    def execution_levels(self) -> list[list[str]]:
        """Group steps into levels that may run concurrently.

        Each level holds steps whose dependencies are all in earlier levels,
        ordered by declared position. Conditions may still hold steps back at
        run time; levels describe the dependency structure only.

        Returns:
            Step ids grouped by level.
        """
        sorter = graphlib.TopologicalSorter(self._dependencies)
        sorter.prepare()
        levels: list[list[str]] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready(), key=self.order_of)
            levels.append(ready)
            sorter.done(*ready)
        return levels
