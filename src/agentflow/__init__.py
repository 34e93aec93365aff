# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Agentflow - Run multi-agent LLM workflows described by a workflow descriptor.

A workflow descriptor binds agents to LLM backends and arranges them into
steps that exchange named values. Agentflow loads the descriptor, checks its
references and dependency graph, then executes the steps concurrently in
dependency order while applying the descriptor's retry and fallback rules.

Example:
    Run a workflow from the command line::

        $ agentflow run qa.yaml --input question="What is Python?"

    Or use the library programmatically::

        from agentflow.config.loader import load_config
        from agentflow.engine.graph import WorkflowGraph
        from agentflow.engine.workflow import WorkflowEngine

        graph = WorkflowGraph(load_config("qa.yaml"))
        async with WorkflowEngine(graph) as engine:
            report = await engine.run({"question": "What is Python?"})

Modules:
    config: Descriptor loading, schema validation, and secret resolution.
    engine: Descriptor graph, conditions, error policy, and the scheduler.
    executor: Request building, prompt rendering, and output mapping.
    providers: Backend adapter interface and vendor adapters.
    cli: Command-line interface commands.
    exceptions: Custom exception hierarchy.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
