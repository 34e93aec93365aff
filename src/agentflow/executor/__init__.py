"""Executor module for Agentflow.

This module handles step invocation, template rendering,
and response output mapping.
"""

from agentflow.executor.agent import AgentExecutor, AgentResult
from agentflow.executor.output import map_outputs, parse_json_output
from agentflow.executor.template import TemplateRenderer

__all__ = [
    "AgentExecutor",
    "AgentResult",
    "TemplateRenderer",
    "map_outputs",
    "parse_json_output",
]
