"""Implementation of the 'agentflow run' command.

This module provides helper functions for executing workflow files.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentflow.config.loader import load_config
from agentflow.engine.graph import WorkflowGraph
from agentflow.engine.report import RunReport
from agentflow.engine.workflow import ExecutionPlan, WorkflowEngine

logger = logging.getLogger(__name__)


def parse_input_flags(raw_inputs: list[str]) -> dict[str, Any]:
    """Parse --input key=value flags into a dictionary.

    Supports type coercion for common types:
    - "true"/"false" -> bool
    - numeric strings -> int/float
    - JSON arrays/objects -> parsed JSON
    - everything else -> string

    Args:
        raw_inputs: List of "key=value" strings from CLI.

    Returns:
        Dictionary of parsed run inputs.

    Raises:
        typer.BadParameter: If input format is invalid.
    """
    inputs: dict[str, Any] = {}

    for raw in raw_inputs:
        if "=" not in raw:
            raise typer.BadParameter(f"Invalid input format: '{raw}'. Expected format: key=value")

        name, value = raw.split("=", 1)
        name = name.strip()

        if not name:
            raise typer.BadParameter(f"Empty input key in: '{raw}'")

        inputs[name] = coerce_value(value.strip())

    return inputs


def coerce_value(value: str) -> Any:
    """Coerce a string value to an appropriate Python type.

    Args:
        value: The string value to coerce.

    Returns:
        The coerced value (bool, int, float, list, dict, None or str).
    """
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    if value.lower() == "null":
        return None

    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    return value


def load_graph(workflow_path: Path) -> WorkflowGraph:
    """Load a descriptor and build its checked graph.

    Raises:
        ConfigurationError: If loading, validation or graph checks fail.
    """
    load_start = time.monotonic()
    config = load_config(workflow_path)
    graph = WorkflowGraph(config, source_path=str(workflow_path))
    logger.debug(
        "Loaded workflow '%s' from %s in %.2fs (%d step(s), %d agent(s), %d LLM(s))",
        graph.workflow_id,
        workflow_path,
        time.monotonic() - load_start,
        len(graph.steps),
        len(graph.agents),
        len(graph.llms),
    )
    return graph


async def run_workflow_async(
    workflow_path: Path,
    inputs: dict[str, Any],
    max_concurrency: int | None = None,
    deadline_seconds: float | None = None,
) -> RunReport:
    """Execute a workflow asynchronously.

    Args:
        workflow_path: Path to the workflow descriptor.
        inputs: Run input values.
        max_concurrency: Optional override of runtime.maxConcurrency.
        deadline_seconds: Optional override of runtime.deadlineSeconds.

    Returns:
        The run report.

    Raises:
        ConfigurationError: If the descriptor is invalid or the inputs
            collide with step outputs.
    """
    graph = load_graph(workflow_path)

    if inputs:
        logger.debug("Run inputs: %s", json.dumps(inputs, default=str))

    async with WorkflowEngine(
        graph,
        max_concurrency=max_concurrency,
        deadline_seconds=deadline_seconds,
    ) as engine:
        return await engine.run(inputs)


def build_dry_run_plan(
    workflow_path: Path,
    max_concurrency: int | None = None,
    deadline_seconds: float | None = None,
) -> ExecutionPlan:
    """Build an execution plan for dry-run mode.

    Loads the descriptor and builds the plan without creating any adapter
    or invoking any LLM.

    Args:
        workflow_path: Path to the workflow descriptor.
        max_concurrency: Optional override of runtime.maxConcurrency.
        deadline_seconds: Optional override of runtime.deadlineSeconds.

    Returns:
        ExecutionPlan showing the workflow structure.
    """
    graph = load_graph(workflow_path)
    engine = WorkflowEngine(
        graph, max_concurrency=max_concurrency, deadline_seconds=deadline_seconds
    )
    return engine.build_execution_plan()


def display_execution_plan(plan: ExecutionPlan, console: Console | None = None) -> None:
    """Display execution plan with Rich formatting.

    Renders the workflow limits, the steps with their agents, bindings and
    conditions, and the levels of steps that may run concurrently.

    Args:
        plan: The execution plan to display.
        console: Optional Rich console. Creates one if not provided.
    """
    output_console = console if console is not None else Console()

    deadline_display = f"{plan.deadline_seconds:g}s" if plan.deadline_seconds else "unlimited"
    header_content = (
        f"[bold]Workflow:[/bold] {plan.workflow_id}\n"
        f"[bold]Max Concurrency:[/bold] {plan.max_concurrency}\n"
        f"[bold]Deadline:[/bold] {deadline_display}\n"
        f"[bold]Fallback Agent:[/bold] {plan.fallback_agent_id or '[dim]none[/dim]'}"
    )
    if plan.external_inputs:
        header_content += f"\n[bold]Run Inputs:[/bold] {', '.join(plan.external_inputs)}"
    output_console.print(Panel(header_content, title="[cyan]Execution Plan (Dry Run)[/cyan]"))

    table = Table(title="Workflow Sequence", show_lines=True)
    table.add_column("Step", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("LLM")
    table.add_column("Condition")
    table.add_column("Input")
    table.add_column("Output")

    for step in plan.steps:
        optional_marker = " [yellow](optional)[/yellow]" if step.optional else ""
        condition = step.condition
        if len(condition) > 40:
            condition = condition[:37] + "..."
        table.add_row(
            f"{step.step_id}{optional_marker}",
            step.agent_id,
            f"{step.llm_id} [dim]({step.provider})[/dim]",
            condition,
            ", ".join(step.inputs) or "[dim]none[/dim]",
            ", ".join(step.outputs) or "[dim]none[/dim]",
        )

    output_console.print(table)

    output_console.print()
    for i, level in enumerate(plan.levels, 1):
        output_console.print(f"[dim]Level {i}:[/dim] {', '.join(level)}")
    output_console.print(
        f"[dim]Total steps:[/dim] {len(plan.steps)} | [dim]Levels:[/dim] {len(plan.levels)}"
    )
