"""Pytest configuration and shared fixtures for Agentflow tests.

This module contains fixtures used across multiple test modules.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agentflow.config.loader import ConfigLoader
from agentflow.config.schema import LLMDef, WorkflowConfig
from agentflow.engine.graph import WorkflowGraph
from agentflow.exceptions import FailureKind, FailureSignal
from agentflow.providers.base import BackendAdapter, BackendRequest, BackendResponse

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class ScriptedAdapter(BackendAdapter):
    """Adapter that replays a script of outcomes, for engine tests.

    Each script item is a response text, a mapping (sent as JSON), a
    FailureKind or an exception. Once the script is exhausted every call
    returns ``default``, or the prompt when no default is set.
    """

    name = "scripted"

    def __init__(
        self,
        binding: LLMDef,
        script: list[Any] | None = None,
        default: Any = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(binding)
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.calls: list[BackendRequest] = []
        self.timeouts: list[float] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        self.calls.append(request)
        self.timeouts.append(timeout)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.script.pop(0) if self.script else self.default
        finally:
            self.active -= 1

        if isinstance(outcome, FailureKind):
            raise FailureSignal(outcome, f"scripted {outcome.value}")
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            outcome = request.prompt
        if isinstance(outcome, (dict, list)):
            outcome = json.dumps(outcome)
        return BackendResponse(text=str(outcome), model=self.binding.model)

    async def validate_connection(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the path to the test fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def qa_workflow_file() -> Path:
    """Return the path to the question-answering example descriptor."""
    return FIXTURES_DIR / "qa-workflow.yaml"


@pytest.fixture
def echo_workflow_file() -> Path:
    """Return the path to the offline fan-out/join descriptor."""
    return FIXTURES_DIR / "echo-pipeline.yaml"


@pytest.fixture
def qa_workflow_data(qa_workflow_file: Path) -> dict[str, Any]:
    """Return the example descriptor as a mutable dict."""
    from ruamel.yaml import YAML

    return YAML(typ="safe").load(qa_workflow_file.read_text())


@pytest.fixture
def echo_workflow_data() -> dict[str, Any]:
    """Return a minimal all-echo descriptor as a mutable dict.

    Tests extend ``workflowSequence`` and ``errorHandling`` as needed.
    """
    return {
        "workflowId": "echo-workflow",
        "agents": [
            {"agentId": "agent-a", "llmId": "llm-a"},
            {"agentId": "agent-b", "llmId": "llm-b"},
        ],
        "llms": [
            {"llmId": "llm-a", "provider": "echo", "model": "echo-a"},
            {"llmId": "llm-b", "provider": "echo", "model": "echo-b"},
        ],
        "workflowSequence": [
            {"stepId": "step-1", "agentId": "agent-a", "input": "question", "output": "answer"},
        ],
    }


@pytest.fixture
def load_descriptor() -> Callable[[dict[str, Any]], WorkflowConfig]:
    """Return a function validating a descriptor dict."""

    def _load(data: dict[str, Any]) -> WorkflowConfig:
        return ConfigLoader().load_dict(copy.deepcopy(data))

    return _load


@pytest.fixture
def build_graph(
    load_descriptor: Callable[[dict[str, Any]], WorkflowConfig],
) -> Callable[[dict[str, Any]], WorkflowGraph]:
    """Return a function building a checked graph from a descriptor dict."""

    def _build(data: dict[str, Any]) -> WorkflowGraph:
        return WorkflowGraph(load_descriptor(data))

    return _build


@pytest.fixture
def scripted_adapter() -> type[ScriptedAdapter]:
    """Return the ScriptedAdapter class."""
    return ScriptedAdapter


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    """Return a sleep replacement that records delays without waiting."""
    return SleepRecorder()
