"""CLI module for Agentflow.

This module provides the command-line interface using Typer.
"""

from agentflow.cli.app import app

__all__ = ["app"]
