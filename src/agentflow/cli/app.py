"""Typer application definition for the Agentflow CLI.

This module defines the main Typer app and global options.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.text import Text

from agentflow import __version__

# Create the main Typer app
app = typer.Typer(
    name="agentflow",
    help="Agentflow - Run multi-LLM agent workflows described in YAML or JSON.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console(stderr=True)
output_console = Console()


def configure_logging(verbose: bool) -> None:
    """Route library logging through a RichHandler on stderr.

    Args:
        verbose: Log at DEBUG when True, otherwise WARNING.
    """
    root = logging.getLogger("agentflow")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


def format_error(error: Exception) -> Panel:
    """Format an exception for Rich console display.

    The panel shows the message, then whichever of location, descriptor
    field, step and suggestion the error carries.

    Args:
        error: The exception to format.

    Returns:
        Rich Panel with formatted error content.
    """
    from agentflow.exceptions import AgentflowError

    content = Text()

    if isinstance(error, AgentflowError):
        content.append(error.message, style="bold red")

        if error.file_path or error.line_number:
            content.append("\n\n")
            content.append("📍 Location: ", style="yellow")
            if error.file_path:
                content.append(error.file_path, style="cyan")
            if error.line_number:
                if error.file_path:
                    content.append(":", style="yellow")
                content.append(f"line {error.line_number}", style="cyan")

        field_path = getattr(error, "field_path", None)
        if field_path:
            content.append("\n📋 Field: ", style="yellow")
            content.append(field_path, style="cyan")

        step_id = getattr(error, "step_id", None)
        if step_id:
            content.append("\n🔗 Step: ", style="yellow")
            content.append(step_id, style="cyan")

        if error.suggestion:
            content.append("\n\n")
            content.append("💡 Suggestion: ", style="green")
            content.append(error.suggestion, style="white")

        error_type = error.error_type
    else:
        content.append(str(error), style="red")
        error_type = type(error).__name__

    return Panel(
        content,
        title=f"[bold red]❌ {error_type}[/bold red]",
        border_style="red",
        padding=(1, 2),
    )


def print_error(error: Exception) -> None:
    """Print a formatted error to stderr."""
    console.print(format_error(error))


def version_callback(value: bool) -> None:
    """Display version information and exit."""
    if value:
        output_console.print(f"Agentflow v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-V",
            help="Log step dispatch, retries and fallbacks to stderr.",
        ),
    ] = False,
) -> None:
    """Agentflow - Run multi-LLM agent workflows described in YAML or JSON."""
    configure_logging(verbose)


@app.command()
def run(
    workflow: Annotated[
        Path,
        typer.Argument(
            help="Path to the workflow descriptor (YAML or JSON).",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ],
    raw_inputs: Annotated[
        list[str] | None,
        typer.Option(
            "--input",
            "-i",
            help="Run inputs in key=value format. Can be repeated.",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Show the execution plan without invoking any LLM.",
        ),
    ] = False,
    max_concurrency: Annotated[
        int | None,
        typer.Option(
            "--max-concurrency",
            "-c",
            min=1,
            help="Override runtime.maxConcurrency.",
        ),
    ] = None,
    deadline: Annotated[
        float | None,
        typer.Option(
            "--deadline",
            "-d",
            min=0.001,
            help="Override runtime.deadlineSeconds.",
        ),
    ] = None,
) -> None:
    """Run a workflow from a descriptor file.

    Prints the run report as JSON to stdout. Exits with code 0 when the run
    completed and 1 otherwise.

    \b
    Examples:
        agentflow run qa.yaml --input question="What is the capital of France?"
        agentflow run qa.yaml -i question="Hello" --max-concurrency 2
        agentflow run qa.yaml --dry-run
    """
    import asyncio
    import json

    from agentflow.cli.run import (
        build_dry_run_plan,
        display_execution_plan,
        parse_input_flags,
        run_workflow_async,
    )
    from agentflow.exceptions import AgentflowError

    if dry_run:
        try:
            plan = build_dry_run_plan(workflow, max_concurrency, deadline)
        except AgentflowError as e:
            print_error(e)
            raise typer.Exit(code=1) from None
        display_execution_plan(plan, output_console)
        return

    inputs = parse_input_flags(raw_inputs or [])

    try:
        report = asyncio.run(run_workflow_async(workflow, inputs, max_concurrency, deadline))
    except AgentflowError as e:
        print_error(e)
        raise typer.Exit(code=1) from None

    output_console.print_json(json.dumps(report.to_dict(), default=str))

    if not report.succeeded:
        if report.error is not None:
            print_error(report.error)
        raise typer.Exit(code=1)


@app.command()
def validate(
    workflow: Annotated[
        Path,
        typer.Argument(
            help="Path to the workflow descriptor to validate.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            resolve_path=True,
        ),
    ],
) -> None:
    """Validate a workflow descriptor without executing it.

    Checks the descriptor for:
    - Valid YAML or JSON syntax
    - Valid schema structure
    - Resolvable agent, LLM and step references
    - Single writer per context key and no dependency cycles

    \b
    Examples:
        agentflow validate qa.yaml
    """
    from agentflow.cli.validate import display_validation_success, validate_workflow

    is_valid, config, warnings = validate_workflow(workflow, output_console)

    if is_valid and config is not None:
        display_validation_success(config, workflow, warnings, output_console)
    else:
        raise typer.Exit(code=1)
