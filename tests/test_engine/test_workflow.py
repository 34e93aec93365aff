"""Tests for WorkflowEngine.

Tests cover:
- Fallback on the example descriptor
- Retry budgets, backoff delays and retry-then-fallback
- Optional steps and skip propagation
- Order independence, determinism and concurrency limits
- Deadlock, deadline and cancellation
- Template, secret and input errors
- Execution plans
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from agentflow.config.loader import load_config
from agentflow.config.secrets import EnvSecretStore, StaticSecretStore
from agentflow.engine.graph import WorkflowGraph
from agentflow.engine.report import RunStatus, StepStatus
from agentflow.engine.workflow import WorkflowEngine
from agentflow.exceptions import (
    ConfigurationError,
    DeadlockError,
    FailureKind,
    FailureSignal,
    ReferenceError,
    SecretResolutionError,
    TemplateError,
    WorkflowAbort,
    WorkflowCancelledError,
    WorkflowTimeoutError,
)
from agentflow.providers.base import BackendAdapter, BackendRequest, BackendResponse
from agentflow.providers.registry import AdapterRegistry

QA_SECRETS = StaticSecretStore(
    {"env:OPENAI_API_KEY": "test-openai-key", "env:HF_API_TOKEN": "test-hf-token"}
)


class HangingAdapter(BackendAdapter):
    """Adapter whose calls never finish on their own."""

    name = "hanging"

    def __init__(self, binding: Any) -> None:
        super().__init__(binding)
        self.started = asyncio.Event()
        self.cancelled = False

    async def invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return BackendResponse(text="too late")

    async def _invoke(self, request: BackendRequest, timeout: float) -> BackendResponse:
        raise NotImplementedError

    async def validate_connection(self) -> bool:
        return True

    async def close(self) -> None:
        pass


def make_engine(
    graph: WorkflowGraph,
    adapters: dict[str, BackendAdapter],
    sleep: Any = None,
    **kwargs: Any,
) -> WorkflowEngine:
    return WorkflowEngine(
        graph,
        AdapterRegistry(adapters=adapters),
        secrets=kwargs.pop("secrets", QA_SECRETS),
        rng=random.Random(0),
        sleep=sleep,
        **kwargs,
    )


def step(step_id: str, agent_id: str = "agent-a", **fields: Any) -> dict[str, Any]:
    return {"stepId": step_id, "agentId": agent_id, **fields}


class TestExampleDescriptor:
    """Tests running the question-answering example."""

    @pytest.mark.asyncio
    async def test_primary_agent_answers(
        self, qa_workflow_file, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a healthy primary backend succeeds without fallback."""
        graph = WorkflowGraph(load_config(qa_workflow_file))
        gpt4 = scripted_adapter(graph.llm("llm-gpt4"), default="Paris")
        roberta = scripted_adapter(graph.llm("llm-roberta"))
        engine = make_engine(graph, {"llm-gpt4": gpt4, "llm-roberta": roberta}, sleep_recorder)

        report = await engine.run({"question": "What is the capital of France?"})

        assert report.status is RunStatus.COMPLETED
        result = report.step("step-1")
        assert result.status is StepStatus.SUCCEEDED
        assert result.agent_id == "agent-qa"
        assert report.outputs == {"answer": "Paris"}
        assert gpt4.calls[0].prompt == "Answer the question: What is the capital of France?"
        assert gpt4.calls[0].credential == "test-openai-key"
        assert gpt4.calls[0].temperature == 0.2
        assert roberta.calls == []

    @pytest.mark.asyncio
    async def test_failing_primary_falls_back(
        self, qa_workflow_file, scripted_adapter, sleep_recorder
    ) -> None:
        """Test the fallback agent answers when the primary backend always fails."""
        graph = WorkflowGraph(load_config(qa_workflow_file))
        gpt4 = scripted_adapter(graph.llm("llm-gpt4"), default=FailureKind.BACKEND_ERROR)
        roberta = scripted_adapter(graph.llm("llm-roberta"), default="Paris")
        engine = make_engine(graph, {"llm-gpt4": gpt4, "llm-roberta": roberta}, sleep_recorder)

        report = await engine.run({"question": "What is the capital of France?"})

        assert report.status is RunStatus.COMPLETED
        assert report.error is None
        result = report.step("step-1")
        assert result.status is StepStatus.FALLEN_BACK
        assert result.agent_id == "agent-fallback"
        assert result.outputs == {"answer": "Paris"}
        assert [a.llm_id for a in result.attempts] == ["llm-gpt4", "llm-roberta"]
        assert result.attempts[0].error_code == "LLM_ERROR"
        assert result.attempts[1].succeeded
        assert roberta.calls[0].credential == "test-hf-token"
        assert roberta.calls[0].inputs == {"question": "What is the capital of France?"}
        assert report.outputs == {"answer": "Paris"}

    @pytest.mark.asyncio
    async def test_timeouts_retry_then_fall_back(
        self, qa_workflow_file, scripted_adapter, sleep_recorder
    ) -> None:
        """Test LLM_TIMEOUT retries up to its budget before falling back."""
        graph = WorkflowGraph(load_config(qa_workflow_file))
        gpt4 = scripted_adapter(graph.llm("llm-gpt4"), default=FailureKind.TIMEOUT)
        roberta = scripted_adapter(graph.llm("llm-roberta"), default="Paris")
        engine = make_engine(graph, {"llm-gpt4": gpt4, "llm-roberta": roberta}, sleep_recorder)

        report = await engine.run({"question": "What is the capital of France?"})

        assert report.step("step-1").status is StepStatus.FALLEN_BACK
        assert len(gpt4.calls) == 3
        assert len(roberta.calls) == 1
        assert len(sleep_recorder.delays) == 2


class TestRetryPolicy:
    """Tests for retry budgets and backoff."""

    @pytest.mark.parametrize("max_attempts", [1, 2, 4])
    @pytest.mark.asyncio
    async def test_exactly_n_invocations_then_abort(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder, max_attempts
    ) -> None:
        """Test a permanently timing-out backend is invoked exactly maxAttempts times."""
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_TIMEOUT", "action": "retry", "maxAttempts": max_attempts}]
        }
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), default=FailureKind.TIMEOUT)
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert len(adapter.calls) == max_attempts
        assert len(sleep_recorder.delays) == max_attempts - 1
        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, WorkflowAbort)
        assert report.error.step_id == "step-1"
        assert report.error.attempts == max_attempts
        assert report.error.classification is FailureKind.TIMEOUT
        result = report.step("step-1")
        assert result.status is StepStatus.FAILED
        assert result.error_code == "LLM_TIMEOUT"
        assert result.attempt_count == max_attempts

    @pytest.mark.asyncio
    async def test_retry_recovers(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a transient failure is absorbed by a retry."""
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_TIMEOUT", "action": "retry"}]
        }
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), script=[FailureKind.TIMEOUT, "42"])
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        result = report.step("step-1")
        assert result.status is StepStatus.SUCCEEDED
        assert result.outputs == {"answer": "42"}
        assert result.attempt_count == 2
        assert [a.error_code for a in result.attempts] == ["LLM_TIMEOUT", None]

    @pytest.mark.asyncio
    async def test_backoff_delays(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test retries wait with exponential backoff."""
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_ERROR", "action": "retry", "maxAttempts": 3}],
            "backoff": {"baseDelay": 0.5, "maxDelay": 10, "jitter": 0},
        }
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        await engine.run({"question": "q"})

        assert sleep_recorder.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a server-provided retry-after delay is honored."""
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_RATE_LIMITED", "action": "retry"}],
            "backoff": {"baseDelay": 0.5, "jitter": 0},
        }
        graph = build_graph(echo_workflow_data)
        throttled = FailureSignal(FailureKind.RATE_LIMITED, "slow down", retry_after=2.0)
        adapter = scripted_adapter(graph.llm("llm-a"), script=[throttled, "ok"])
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.succeeded
        assert sleep_recorder.delays == [2.0]

    @pytest.mark.asyncio
    async def test_unmatched_code_aborts_immediately(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test error codes missing from the table abort on the first failure."""
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_TIMEOUT", "action": "retry"}]
        }
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), default=FailureKind.RATE_LIMITED)
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert len(adapter.calls) == 1
        assert report.status is RunStatus.FAILED
        assert report.step("step-1").error_code == "LLM_RATE_LIMITED"


class TestFallback:
    """Tests for fallback behavior."""

    @pytest.fixture
    def fallback_data(self, echo_workflow_data) -> dict[str, Any]:
        echo_workflow_data["errorHandling"] = {
            "errorCodes": [{"code": "LLM_ERROR", "action": "fallback"}],
            "fallbackAgentId": "agent-b",
        }
        return echo_workflow_data

    @pytest.mark.asyncio
    async def test_failing_fallback_does_not_chain(
        self, fallback_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a failing fallback agent aborts instead of falling back again."""
        graph = build_graph(fallback_data)
        primary = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        fallback = scripted_adapter(graph.llm("llm-b"), default=FailureKind.BACKEND_ERROR)
        engine = make_engine(graph, {"llm-a": primary, "llm-b": fallback}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.FAILED
        assert len(primary.calls) == 1
        assert len(fallback.calls) == 1
        result = report.step("step-1")
        assert result.status is StepStatus.FAILED
        assert result.agent_id == "agent-b"
        assert result.attempt_count == 2

    @pytest.mark.asyncio
    async def test_fallback_failure_uses_its_own_action(
        self, fallback_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test the fallback agent's failures are looked up independently."""
        fallback_data["errorHandling"]["errorCodes"].append(
            {"code": "LLM_TIMEOUT", "action": "retry", "maxAttempts": 2}
        )
        graph = build_graph(fallback_data)
        primary = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        fallback = scripted_adapter(graph.llm("llm-b"), script=[FailureKind.TIMEOUT, "done"])
        engine = make_engine(graph, {"llm-a": primary, "llm-b": fallback}, sleep_recorder)

        report = await engine.run({"question": "q"})

        result = report.step("step-1")
        assert result.status is StepStatus.FALLEN_BACK
        assert result.outputs == {"answer": "done"}
        assert [a.error_code for a in result.attempts] == ["LLM_ERROR", "LLM_TIMEOUT", None]

    @pytest.mark.asyncio
    async def test_zero_fallback_hops_aborts(
        self, fallback_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test maxFallbackHops=0 disables fallback."""
        fallback_data["errorHandling"]["maxFallbackHops"] = 0
        graph = build_graph(fallback_data)
        primary = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        fallback = scripted_adapter(graph.llm("llm-b"))
        engine = make_engine(graph, {"llm-a": primary, "llm-b": fallback}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.FAILED
        assert fallback.calls == []

    @pytest.mark.asyncio
    async def test_fallback_substitutes_only_for_failing_step(
        self, fallback_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test later steps keep using their own agent after a fallback."""
        fallback_data["workflowSequence"].append(
            step("step-2", input="answer", output="summary")
        )
        graph = build_graph(fallback_data)
        primary = scripted_adapter(
            graph.llm("llm-a"), script=[FailureKind.BACKEND_ERROR], default="summary-text"
        )
        fallback = scripted_adapter(graph.llm("llm-b"), default="fallback-answer")
        engine = make_engine(graph, {"llm-a": primary, "llm-b": fallback}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.step("step-1").status is StepStatus.FALLEN_BACK
        assert report.step("step-2").status is StepStatus.SUCCEEDED
        assert report.step("step-2").agent_id == "agent-a"
        assert primary.calls[-1].inputs == {"answer": "fallback-answer"}


class TestSkipPropagation:
    """Tests for optional steps and permanently skipped dependents."""

    @pytest.mark.asyncio
    async def test_optional_failure_skips_dependents(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test an aborted optional step skips its dependents and the run completes."""
        echo_workflow_data["workflowSequence"] = [
            step("step-1", input="question", output="answer", optional=True),
            step("step-2", input="answer", output="summary"),
            step("step-3", condition="After step-2", output="verdict"),
            step("step-4", "agent-b", input="question", output="echo"),
        ]
        graph = build_graph(echo_workflow_data)
        failing = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        healthy = scripted_adapter(graph.llm("llm-b"))
        engine = make_engine(graph, {"llm-a": failing, "llm-b": healthy}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.COMPLETED
        statuses = {r.step_id: r.status for r in report.steps}
        assert statuses == {
            "step-1": StepStatus.SKIPPED,
            "step-2": StepStatus.SKIPPED,
            "step-3": StepStatus.SKIPPED,
            "step-4": StepStatus.SUCCEEDED,
        }
        assert report.step("step-1").error_code == "LLM_ERROR"
        assert "answer" in report.step("step-2").error
        assert "step-2" in report.step("step-3").error
        assert len(failing.calls) == 1
        assert report.context == {"question": "q", "echo": "q"}

    @pytest.mark.asyncio
    async def test_optional_input_does_not_block(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a step runs with None for an optional input whose producer was skipped."""
        echo_workflow_data["agents"][1]["parameters"] = {
            "prompt": "{{ question }} ({{ hint | default('no hint') }})"
        }
        echo_workflow_data["workflowSequence"] = [
            step("hint", input="question", output="hint", optional=True),
            step("answer", "agent-b", input=["question", "hint?"], output="answer"),
        ]
        graph = build_graph(echo_workflow_data)
        failing = scripted_adapter(graph.llm("llm-a"), default=FailureKind.TIMEOUT)
        healthy = scripted_adapter(graph.llm("llm-b"))
        engine = make_engine(graph, {"llm-a": failing, "llm-b": healthy}, sleep_recorder)

        report = await engine.run({"question": "why"})

        assert report.step("hint").status is StepStatus.SKIPPED
        assert report.step("answer").status is StepStatus.SUCCEEDED
        assert report.outputs["answer"] == "why (no hint)"

    @pytest.mark.asyncio
    async def test_expression_condition_gates_step(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test an expression condition is evaluated against produced outputs."""
        echo_workflow_data["workflowSequence"] = [
            step("score", input="question", output="confidence"),
            step(
                "review",
                "agent-b",
                input="question",
                output="review",
                condition="float(confidence) > 0.5",
            ),
        ]
        graph = build_graph(echo_workflow_data)
        scorer = scripted_adapter(graph.llm("llm-a"), default="0.9")
        reviewer = scripted_adapter(graph.llm("llm-b"), default="looks right")
        engine = make_engine(graph, {"llm-a": scorer, "llm-b": reviewer}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.COMPLETED
        assert report.completion_order == ["score", "review"]
        assert report.outputs["review"] == "looks right"

    @pytest.mark.asyncio
    async def test_expression_condition_over_skipped_output(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a condition reading a skipped step's output skips the step instead of waiting."""
        echo_workflow_data["workflowSequence"] = [
            step("score", input="question", output="confidence", optional=True),
            step(
                "review",
                "agent-b",
                input="question",
                output="review",
                condition="float(confidence) > 0.5",
            ),
        ]
        graph = build_graph(echo_workflow_data)
        scorer = scripted_adapter(graph.llm("llm-a"), default=FailureKind.BACKEND_ERROR)
        reviewer = scripted_adapter(graph.llm("llm-b"), default="looks right")
        engine = make_engine(graph, {"llm-a": scorer, "llm-b": reviewer}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.COMPLETED
        assert report.error is None
        assert report.step("score").status is StepStatus.SKIPPED
        assert report.step("review").status is StepStatus.SKIPPED
        assert "confidence" in report.step("review").error
        assert reviewer.calls == []


class TestScheduling:
    """Tests for ordering, determinism and concurrency."""

    @pytest.mark.asyncio
    async def test_independent_steps_order_independent(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test independent steps yield the same context whichever finishes first."""
        echo_workflow_data["workflowSequence"] = [
            step("step-1", input="question", output="left"),
            step("step-2", "agent-b", input="question", output="right"),
        ]
        graph = build_graph(echo_workflow_data)

        reports = []
        for delay_a, delay_b in [(0.05, 0.0), (0.0, 0.05)]:
            adapters = {
                "llm-a": scripted_adapter(graph.llm("llm-a"), default="L", delay=delay_a),
                "llm-b": scripted_adapter(graph.llm("llm-b"), default="R", delay=delay_b),
            }
            engine = make_engine(graph, adapters, sleep_recorder)
            reports.append(await engine.run({"question": "q"}))

        assert reports[0].completion_order == ["step-2", "step-1"]
        assert reports[1].completion_order == ["step-1", "step-2"]
        assert reports[0].context == {"question": "q", "left": "L", "right": "R"}
        assert reports[1].context == reports[0].context
        assert [r.step_id for r in reports[0].steps] == ["step-1", "step-2"]

    @pytest.mark.asyncio
    async def test_deterministic_reruns(self, echo_workflow_file) -> None:
        """Test two runs with deterministic backends give identical step results."""
        graph = WorkflowGraph(load_config(echo_workflow_file))

        def summary(report: Any) -> list[tuple[Any, ...]]:
            return [
                (r.step_id, r.status, r.agent_id, r.outputs, r.attempt_count)
                for r in report.steps
            ]

        async with WorkflowEngine(graph) as engine:
            first = await engine.run({"topic": "AI"})
            second = await engine.run({"topic": "AI"})

        assert first.status is RunStatus.COMPLETED
        assert summary(first) == summary(second)
        assert first.outputs == {"final-answer": "AI / AI"}

    @pytest.mark.asyncio
    async def test_declared_order_tie_break(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test eligible steps are dispatched in declared order."""
        echo_workflow_data["workflowSequence"] = [
            step("step-c", input="question", output="c"),
            step("step-a", input="question", output="a"),
            step("step-b", input="question", output="b"),
        ]
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder, max_concurrency=1)

        report = await engine.run({"question": "q"})

        assert report.completion_order == ["step-c", "step-a", "step-b"]
        assert [c.step_id for c in adapter.calls] == ["step-c", "step-a", "step-b"]

    @pytest.mark.parametrize("limit", [1, 2, 3])
    @pytest.mark.asyncio
    async def test_max_concurrency(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder, limit
    ) -> None:
        """Test no more than maxConcurrency steps run at once."""
        echo_workflow_data["workflowSequence"] = [
            step(f"step-{i}", input="question", output=f"out-{i}") for i in range(5)
        ]
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), delay=0.02)
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder, max_concurrency=limit)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.COMPLETED
        assert adapter.max_active == limit
        assert len(report.steps) == 5

    @pytest.mark.asyncio
    async def test_step_reads_only_declared_inputs(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a step's request carries only its declared inputs."""
        echo_workflow_data["workflowSequence"] = [
            step("step-1", input="question", output="answer"),
            step("step-2", input="answer", output="summary"),
        ]
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        await engine.run({"question": "q", "secret-note": "hidden"})

        assert adapter.calls[0].inputs == {"question": "q"}
        assert adapter.calls[1].inputs == {"answer": "q"}


class TestTerminalFailures:
    """Tests for deadlock, deadline, cancellation and invocation errors."""

    @pytest.mark.asyncio
    async def test_missing_run_input_deadlocks(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a required input nobody supplies is reported as a deadlock."""
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({})

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, DeadlockError)
        assert report.error.blocked == {"step-1": "missing run input(s): question"}
        assert adapter.calls == []
        assert report.to_dict()["error"]["blocked"] == {"step-1": "missing run input(s): question"}

    @pytest.mark.asyncio
    async def test_unsatisfiable_condition_deadlocks(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a condition that never becomes true is reported as a deadlock."""
        echo_workflow_data["workflowSequence"].append(
            step("step-2", input="answer", output="summary", condition="answer == 'yes'")
        )
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"), default="no")
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert isinstance(report.error, DeadlockError)
        assert list(report.error.blocked) == ["step-2"]
        assert report.step("step-1").status is StepStatus.SUCCEEDED
        with pytest.raises(DeadlockError):
            report.raise_for_status()

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, echo_workflow_data, build_graph) -> None:
        """Test the run deadline cancels in-flight steps and fails the run."""
        graph = build_graph(echo_workflow_data)
        adapter = HangingAdapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, deadline_seconds=0.05)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, WorkflowTimeoutError)
        assert report.error.in_flight == ["step-1"]
        assert report.error.deadline_seconds == 0.05
        assert report.elapsed_seconds < 5
        assert adapter.cancelled
        assert report.steps == []

    @pytest.mark.asyncio
    async def test_cancel(self, echo_workflow_data, build_graph) -> None:
        """Test cancel() stops the run and reports the in-flight steps."""
        graph = build_graph(echo_workflow_data)
        adapter = HangingAdapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter})

        task = asyncio.create_task(engine.run({"question": "q"}))
        await asyncio.wait_for(adapter.started.wait(), timeout=5)
        engine.cancel()
        report = await asyncio.wait_for(task, timeout=5)

        assert report.status is RunStatus.CANCELLED
        assert isinstance(report.error, WorkflowCancelledError)
        assert report.error.in_flight == ["step-1"]
        assert adapter.cancelled

    @pytest.mark.asyncio
    async def test_cancelling_awaiting_task(self, echo_workflow_data, build_graph) -> None:
        """Test cancelling the task awaiting run() propagates and keeps a report."""
        graph = build_graph(echo_workflow_data)
        adapter = HangingAdapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter})

        task = asyncio.create_task(engine.run({"question": "q"}))
        await asyncio.wait_for(adapter.started.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert adapter.cancelled
        assert engine.last_report is not None
        assert engine.last_report.status is RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_template_error_aborts_without_invocation(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a prompt referencing an undeclared input aborts the step."""
        echo_workflow_data["agents"][0]["parameters"] = {"prompt": "{{ not_an_input }}"}
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error, WorkflowAbort)
        assert isinstance(report.error.__cause__, TemplateError)
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_unresolvable_credential_aborts(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test a credential reference that cannot be resolved aborts the step."""
        echo_workflow_data["llms"][0]["credentialRef"] = "env:MISSING_KEY"
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(
            graph, {"llm-a": adapter}, sleep_recorder, secrets=EnvSecretStore(environ={})
        )

        report = await engine.run({"question": "q"})

        assert report.status is RunStatus.FAILED
        assert isinstance(report.error.__cause__, SecretResolutionError)
        assert "MISSING_KEY" in report.error.suggestion
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_run_input_colliding_with_output_rejected(
        self, echo_workflow_data, build_graph, scripted_adapter
    ) -> None:
        """Test run inputs may not pre-fill a key a step produces."""
        graph = build_graph(echo_workflow_data)
        engine = make_engine(graph, {"llm-a": scripted_adapter(graph.llm("llm-a"))})

        with pytest.raises(ConfigurationError, match="produced by workflow steps"):
            await engine.run({"question": "q", "answer": "already"})

    def test_dangling_reference_fails_before_dispatch(self, fixtures_dir) -> None:
        """Test a dangling reference is rejected when the graph is built."""
        config = load_config(fixtures_dir / "dangling-reference.yaml")

        with pytest.raises(ReferenceError) as exc_info:
            WorkflowGraph(config)

        assert "llm-missing" in str(exc_info.value)


class TestTimeouts:
    """Tests for per-call timeout selection."""

    @pytest.mark.parametrize(
        ("step_timeout", "agent_timeout", "binding_timeout", "expected"),
        [
            (5, 3, 7, 5),
            (None, 3, 7, 3),
            (None, None, 7, 7),
            (None, None, None, 60),
        ],
    )
    @pytest.mark.asyncio
    async def test_timeout_precedence(
        self,
        echo_workflow_data,
        build_graph,
        scripted_adapter,
        sleep_recorder,
        step_timeout,
        agent_timeout,
        binding_timeout,
        expected,
    ) -> None:
        """Test step, agent, binding and runtime timeouts apply in that order."""
        if step_timeout is not None:
            echo_workflow_data["workflowSequence"][0]["timeoutSeconds"] = step_timeout
        if agent_timeout is not None:
            echo_workflow_data["agents"][0]["parameters"] = {"timeout": agent_timeout}
        if binding_timeout is not None:
            echo_workflow_data["llms"][0]["timeoutSeconds"] = binding_timeout
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        await engine.run({"question": "q"})

        assert adapter.timeouts == [expected]


class TestEngineLifecycle:
    """Tests for plans, outputs and resource cleanup."""

    def test_execution_plan(self, echo_workflow_file) -> None:
        """Test the dry-run plan describes steps and concurrency levels."""
        graph = WorkflowGraph(load_config(echo_workflow_file))
        plan = WorkflowEngine(graph).build_execution_plan()

        assert plan.workflow_id == "echo-pipeline"
        assert plan.levels == [["draft", "keywords"], ["join"]]
        assert plan.external_inputs == ["topic"]
        assert plan.max_concurrency == 2
        join = plan.steps[2]
        assert join.dependencies == ["draft", "keywords"]
        assert join.provider == "echo"
        assert plan.to_dict()["steps"][2]["dependsOn"] == ["draft", "keywords"]

    @pytest.mark.asyncio
    async def test_whole_context_when_no_outputs_declared(
        self, echo_workflow_data, build_graph, scripted_adapter, sleep_recorder
    ) -> None:
        """Test the report carries the whole context when no outputs are declared."""
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))
        engine = make_engine(graph, {"llm-a": adapter}, sleep_recorder)

        report = await engine.run({"question": "q"})

        assert report.outputs == {"question": "q", "answer": "q"}

    @pytest.mark.asyncio
    async def test_owned_registry_closed(self, echo_workflow_file) -> None:
        """Test the engine closes the registry it created."""
        graph = WorkflowGraph(load_config(echo_workflow_file))

        async with WorkflowEngine(graph) as engine:
            await engine.run({"topic": "x"})
            assert engine.registry.is_adapter_active("llm-echo")

        assert engine.registry.get_active_adapters() == {}

    @pytest.mark.asyncio
    async def test_supplied_registry_left_open(
        self, echo_workflow_data, build_graph, scripted_adapter
    ) -> None:
        """Test a caller-supplied registry is not closed by the engine."""
        graph = build_graph(echo_workflow_data)
        adapter = scripted_adapter(graph.llm("llm-a"))

        async with make_engine(graph, {"llm-a": adapter}) as engine:
            await engine.run({"question": "q"})

        assert not adapter.closed
