"""Entry point for running agentflow as a module.

Usage:
    python -m agentflow
"""

from agentflow.cli.app import app


def main() -> None:
    """Main entry point for the agentflow CLI."""
    app()


if __name__ == "__main__":
    main()
