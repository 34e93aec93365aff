"""Implementation of the 'agentflow validate' command.

This module provides functionality to validate workflow descriptors
without executing them, displaying detailed error information.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentflow.config.loader import load_config
from agentflow.config.validator import validate_workflow_config
from agentflow.exceptions import AgentflowError

if TYPE_CHECKING:
    from agentflow.config.schema import WorkflowConfig


def validate_workflow(
    workflow_path: Path,
    console: Console | None = None,
) -> tuple[bool, WorkflowConfig | None, list[str]]:
    """Validate a workflow descriptor.

    Attempts to load the descriptor and build its graph, reporting any
    errors encountered during the process.

    Args:
        workflow_path: Path to the workflow descriptor.
        console: Optional Rich console for output.

    Returns:
        A tuple of (is_valid, config_or_none, warnings).
    """
    output_console = console if console is not None else Console()

    try:
        config = load_config(workflow_path)
        warnings = validate_workflow_config(config, source_path=str(workflow_path))
        return True, config, warnings
    except AgentflowError as e:
        display_validation_error(e, workflow_path, output_console)
        return False, None, []


def display_validation_error(
    error: AgentflowError,
    workflow_path: Path,
    console: Console,
) -> None:
    """Display a validation error with Rich formatting.

    Args:
        error: The AgentflowError that occurred.
        workflow_path: Path to the workflow file.
        console: Rich console for output.
    """
    content = f"[bold red]{error.error_type}[/bold red]\n\n"
    content += f"[dim]File:[/dim] {workflow_path}\n\n"
    content += error.message

    if error.suggestion:
        content += f"\n\n[yellow]💡 Suggestion:[/yellow] {error.suggestion}"

    console.print(
        Panel(
            content,
            title="[red]Validation Failed[/red]",
            border_style="red",
        )
    )


def display_validation_success(
    config: WorkflowConfig,
    workflow_path: Path,
    warnings: list[str],
    console: Console,
) -> None:
    """Display validation success with a workflow summary.

    Args:
        config: The validated workflow descriptor.
        workflow_path: Path to the workflow file.
        warnings: Non-fatal issues found during validation.
        console: Rich console for output.
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Workflow", config.workflow_id)
    if config.version:
        table.add_row("Version", config.version)
    if config.description:
        table.add_row("Description", config.description)
    table.add_row("File", str(workflow_path))
    table.add_row("Steps", str(len(config.workflow_sequence)))
    table.add_row("Agents", str(len(config.agents)))
    table.add_row("LLMs", str(len(config.llms)))
    table.add_row("Error Codes", str(len(config.error_handling.error_codes)))
    if config.error_handling.fallback_agent_id:
        table.add_row("Fallback Agent", config.error_handling.fallback_agent_id)
    table.add_row("Max Concurrency", str(config.runtime.max_concurrency))

    console.print(
        Panel(
            table,
            title="[green]Validation Successful[/green]",
            border_style="green",
        )
    )

    step_table = Table(title="Steps", show_lines=True)
    step_table.add_column("Step", style="cyan")
    step_table.add_column("Agent")
    step_table.add_column("Condition")
    step_table.add_column("Output")

    for step in config.workflow_sequence:
        step_table.add_row(
            step.step_id,
            step.agent_id,
            step.condition,
            ", ".join(step.output) or "[dim]none[/dim]",
        )

    console.print(step_table)

    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
