# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow execution engine for Agentflow.

This module provides the WorkflowEngine class for executing a workflow graph:
steps whose conditions hold and whose inputs are present are dispatched as
concurrent asyncio tasks, bounded by the configured concurrency; failed
invocations are routed through the error policy; every step ends in exactly
one terminal status.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentflow.config.schema import ErrorAction, StepDef
from agentflow.config.secrets import EnvSecretStore, SecretStore
from agentflow.engine.conditions import ConditionEvaluator
from agentflow.engine.context import ExecutionContext
from agentflow.engine.graph import WorkflowGraph
from agentflow.engine.limits import LimitEnforcer
from agentflow.engine.policy import ErrorPolicy
from agentflow.engine.report import (
    AttemptRecord,
    RunReport,
    RunStatus,
    StepResult,
    StepStatus,
)
from agentflow.exceptions import (
    AgentflowError,
    ConditionError,
    DeadlockError,
    FailureSignal,
    SecretResolutionError,
    TemplateError,
    WorkflowAbort,
    WorkflowCancelledError,
    WorkflowTimeoutError,
)
from agentflow.executor.agent import AgentExecutor
from agentflow.providers.factory import infer_provider
from agentflow.providers.registry import AdapterRegistry

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class PlanStep:
    """A single step in the execution plan.

    Attributes:
        step_id: The step identifier.
        agent_id: Agent that executes the step.
        llm_id: LLM binding the agent is bound to.
        provider: Adapter that serves the binding.
        condition: The step's condition as written.
        inputs: Declared input keys.
        outputs: Declared output keys.
        dependencies: Steps that must terminate first.
        optional: Whether an abort skips the step instead of failing the run.
    """

    step_id: str
    agent_id: str
    llm_id: str
    provider: str
    condition: str
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    optional: bool = False


@dataclass
class ExecutionPlan:
    """Static view of how a workflow would execute, without running it.

    Used by the --dry-run flag to display the execution plan.
    """

    workflow_id: str
    """Workflow identifier."""

    steps: list[PlanStep] = field(default_factory=list)
    """Steps in declared order."""

    levels: list[list[str]] = field(default_factory=list)
    """Steps grouped into levels that may run concurrently."""

    external_inputs: list[str] = field(default_factory=list)
    """Input keys that must be supplied when starting a run."""

    fallback_agent_id: str | None = None
    """Agent used when a step falls back."""

    max_concurrency: int = 4
    """Maximum number of steps running at once."""

    deadline_seconds: float | None = None
    """Run deadline. None means unlimited."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "levels": self.levels,
            "externalInputs": self.external_inputs,
            "fallbackAgentId": self.fallback_agent_id,
            "maxConcurrency": self.max_concurrency,
            "deadlineSeconds": self.deadline_seconds,
            "steps": [
                {
                    "stepId": s.step_id,
                    "agentId": s.agent_id,
                    "llmId": s.llm_id,
                    "provider": s.provider,
                    "condition": s.condition,
                    "input": s.inputs,
                    "output": s.outputs,
                    "dependsOn": s.dependencies,
                    "optional": s.optional,
                }
                for s in self.steps
            ],
        }


@dataclass
class _StepOutcome:
    """What a step task hands back to the scheduler."""

    result: StepResult
    abort: WorkflowAbort | None = None


class WorkflowEngine:
    """Executes a workflow graph.

    The WorkflowEngine manages the complete lifecycle of a run:
    1. Seed a fresh ExecutionContext with the run inputs
    2. Each round, evaluate every pending step in declared order and record
       permanently skipped steps
    3. Dispatch eligible steps, lowest declared position first, while fewer
       than maxConcurrency steps are running
    4. When a step finishes, merge its outputs and start the next round
    5. Stop when every step is terminal, a step aborts, nothing can make
       progress, the deadline passes or the run is cancelled

    run() never raises for run-time workflow failures; they are reported in
    the returned RunReport.

    Example:
        >>> graph = WorkflowGraph(load_config("qa.yaml"))
        >>> async with WorkflowEngine(graph) as engine:
        ...     report = await engine.run({"question": "What is the capital of France?"})
        >>> report.status
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        registry: AdapterRegistry | None = None,
        secrets: SecretStore | None = None,
        *,
        max_concurrency: int | None = None,
        deadline_seconds: float | None = None,
        rng: random.Random | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        """Initialize the WorkflowEngine.

        Args:
            graph: The checked workflow graph.
            registry: Adapter registry. A registry owned by the engine is
                created when omitted and closed with the engine.
            secrets: Store resolving credential references. Defaults to the
                process environment.
            max_concurrency: Overrides runtime.maxConcurrency.
            deadline_seconds: Overrides runtime.deadlineSeconds.
            rng: Random source for backoff jitter.
            sleep: Coroutine function used to wait between retries.
        """
        self.graph = graph
        self.secrets = secrets if secrets is not None else EnvSecretStore()
        self._owns_registry = registry is None
        self.registry = registry if registry is not None else AdapterRegistry(self.secrets)
        self.executor = AgentExecutor(self.registry, self.secrets)
        self.evaluator = ConditionEvaluator(graph)
        self.policy = ErrorPolicy(graph.error_handling, rng=rng)

        runtime = graph.runtime
        self.max_concurrency = max_concurrency or runtime.max_concurrency
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else runtime.deadline_seconds
        )
        self.call_timeout_seconds = runtime.call_timeout_seconds
        self._sleep: SleepFunc = sleep or asyncio.sleep

        self._cancel_event: asyncio.Event | None = None
        self.last_report: RunReport | None = None

    async def __aenter__(self) -> WorkflowEngine:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the adapter registry if the engine created it."""
        if self._owns_registry:
            await self.registry.close()

    def cancel(self) -> None:
        """Cancel the run in progress.

        In-flight invocations are cancelled and no new step is dispatched.
        Results already recorded stay in the report. Has no effect when no
        run is in progress.
        """
        if self._cancel_event is not None:
            logger.info("Cancellation requested for workflow '%s'", self.graph.workflow_id)
            self._cancel_event.set()

    def build_execution_plan(self) -> ExecutionPlan:
        """Describe how the workflow would execute, without running it.

        Returns:
            The execution plan.
        """
        steps = []
        for step in self.graph.steps:
            binding = self.graph.binding_for(step.agent_id)
            steps.append(
                PlanStep(
                    step_id=step.step_id,
                    agent_id=step.agent_id,
                    llm_id=binding.llm_id,
                    provider=infer_provider(binding),
                    condition=str(self.graph.condition(step.step_id)),
                    inputs=list(step.input),
                    outputs=list(step.output),
                    dependencies=sorted(
                        self.graph.dependencies(step.step_id), key=self.graph.order_of
                    ),
                    optional=step.optional,
                )
            )

        return ExecutionPlan(
            workflow_id=self.graph.workflow_id,
            steps=steps,
            levels=self.graph.execution_levels(),
            external_inputs=self.graph.external_inputs(),
            fallback_agent_id=self.graph.error_handling.fallback_agent_id,
            max_concurrency=self.max_concurrency,
            deadline_seconds=self.deadline_seconds,
        )

    async def run(self, inputs: dict[str, Any] | None = None) -> RunReport:
        """Execute the workflow.

        Args:
            inputs: Run input values keyed by context key.

        Returns:
            The run report. Its status is COMPLETED when every step reached
            a terminal status without aborting the run.

        Raises:
            ConfigurationError: If a run input collides with a step output.
            RuntimeError: If the engine is already running.
            asyncio.CancelledError: If the task awaiting run() is cancelled.
                The partial report is kept in ``last_report``.
        """
        if self._cancel_event is not None:
            raise RuntimeError("WorkflowEngine is already running a workflow")

        inputs = dict(inputs or {})
        self.graph.check_run_inputs(inputs)

        context = ExecutionContext()
        context.seed(inputs)
        running: dict[asyncio.Task[_StepOutcome], str] = {}
        limits = LimitEnforcer(
            deadline_seconds=self.deadline_seconds,
            call_timeout_seconds=self.call_timeout_seconds,
            in_flight=lambda: sorted(running.values(), key=self.graph.order_of),
        )

        cancel_event = self._cancel_event = asyncio.Event()
        status = RunStatus.COMPLETED
        error: AgentflowError | None = None

        logger.info(
            "Starting workflow '%s' (%d step(s), max concurrency %d)",
            self.graph.workflow_id,
            len(self.graph.steps),
            self.max_concurrency,
        )
        limits.start()

        try:
            async with limits.timeout_context():
                await self._schedule(context, limits, running, cancel_event)
        except WorkflowCancelledError as e:
            status, error = RunStatus.CANCELLED, e
        except (WorkflowAbort, DeadlockError, WorkflowTimeoutError) as e:
            status, error = RunStatus.FAILED, e
        except asyncio.CancelledError:
            self.last_report = self._build_report(
                context,
                RunStatus.CANCELLED,
                WorkflowCancelledError(
                    "Workflow run was cancelled",
                    in_flight=sorted(running.values(), key=self.graph.order_of),
                ),
                limits.get_elapsed_time(),
            )
            raise
        finally:
            self._cancel_event = None

        report = self._build_report(context, status, error, limits.get_elapsed_time())
        self.last_report = report

        if error is None:
            logger.info(
                "Workflow '%s' completed in %.2fs", self.graph.workflow_id, report.elapsed_seconds
            )
        else:
            logger.warning(
                "Workflow '%s' %s: %s", self.graph.workflow_id, status.value, error.message
            )
        return report

    async def _schedule(
        self,
        context: ExecutionContext,
        limits: LimitEnforcer,
        running: dict[asyncio.Task[_StepOutcome], str],
        cancel_event: asyncio.Event,
    ) -> None:
        """Run scheduling rounds until every step is terminal.

        Raises:
            WorkflowAbort: If a non-optional step aborts.
            DeadlockError: If nothing is running or eligible but steps remain.
            WorkflowCancelledError: If cancel() was called.
        """
        pending: list[StepDef] = list(self.graph.steps)

        try:
            while True:
                if cancel_event.is_set():
                    raise WorkflowCancelledError(
                        "Workflow run was cancelled",
                        in_flight=sorted(running.values(), key=self.graph.order_of),
                    )

                ready = self._evaluate_round(context, pending)

                for step in ready:
                    if len(running) >= self.max_concurrency:
                        break
                    pending.remove(step)
                    logger.info("Dispatching step '%s' (agent '%s')", step.step_id, step.agent_id)
                    task = asyncio.create_task(
                        self._run_step(step, context, limits), name=f"step:{step.step_id}"
                    )
                    running[task] = step.step_id

                if not running:
                    if not pending:
                        return
                    raise self._deadlock(context, pending)

                cancel_waiter = asyncio.ensure_future(cancel_event.wait())
                try:
                    done, _ = await asyncio.wait(
                        [*running, cancel_waiter], return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    cancel_waiter.cancel()

                finished = [t for t in done if t in running]
                finished.sort(key=lambda t: self.graph.order_of(running[t]))
                abort: WorkflowAbort | None = None
                for task in finished:
                    running.pop(task)
                    outcome = task.result()
                    context.record(outcome.result)
                    self._log_result(outcome.result)
                    if outcome.abort is not None and abort is None:
                        abort = outcome.abort
                if abort is not None:
                    raise abort
        finally:
            await self._cancel_running(running)

    def _evaluate_round(self, context: ExecutionContext, pending: list[StepDef]) -> list[StepDef]:
        """Record newly skipped steps and return eligible ones in declared order.

        Skips can cascade within a round, so evaluation repeats until no
        further step is skipped.

        Raises:
            WorkflowAbort: If a non-optional step's condition cannot be evaluated.
        """
        while True:
            ready: list[StepDef] = []
            skipped_any = False
            for step in list(pending):
                try:
                    verdict = self.evaluator.evaluate(step, context)
                except ConditionError as e:
                    pending.remove(step)
                    outcome = self._abort(step, [], None, e.message, 0.0, cause=e)
                    context.record(outcome.result)
                    self._log_result(outcome.result)
                    if outcome.abort is not None:
                        raise outcome.abort from e
                    skipped_any = True
                    continue

                if verdict.is_skipped:
                    pending.remove(step)
                    result = StepResult(
                        step_id=step.step_id,
                        status=StepStatus.SKIPPED,
                        error=verdict.reason,
                    )
                    context.record(result)
                    self._log_result(result)
                    skipped_any = True
                elif verdict.is_eligible:
                    ready.append(step)

            if not skipped_any:
                return ready

    def _deadlock(self, context: ExecutionContext, pending: list[StepDef]) -> DeadlockError:
        blocked: dict[str, str] = {}
        for step in pending:
            verdict = self.evaluator.evaluate(step, context)
            reason = verdict.reason or "not eligible"
            missing_external = [
                key
                for key in step.required_inputs
                if not context.has(key) and self.graph.producer_of(key) is None
            ]
            if missing_external:
                reason = f"missing run input(s): {', '.join(missing_external)}"
            blocked[step.step_id] = reason

        details = "\n".join(f"  - {step_id}: {reason}" for step_id, reason in blocked.items())
        return DeadlockError(
            f"No step can make progress; {len(blocked)} step(s) blocked:\n{details}",
            blocked=blocked,
        )

    async def _cancel_running(self, running: dict[asyncio.Task[_StepOutcome], str]) -> None:
        """Cancel in-flight step tasks and wait for them to unwind.

        The mapping is left intact so the steps can still be reported as
        in flight.
        """
        tasks = [t for t in running if not t.done()]
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %d in-flight step(s)", len(tasks))

    def _call_timeout(self, step: StepDef, agent_id: str, limits: LimitEnforcer) -> float:
        agent = self.graph.agent(agent_id)
        step_timeout = step.timeout_seconds
        if step_timeout is None and agent.parameters.get("timeout") is not None:
            step_timeout = float(agent.parameters["timeout"])
        return limits.call_timeout(step_timeout, self.graph.binding_for(agent_id).timeout_seconds)

    async def _run_step(
        self, step: StepDef, context: ExecutionContext, limits: LimitEnforcer
    ) -> _StepOutcome:
        """Execute one step, applying the error policy, until it is terminal."""
        started = time.monotonic()
        variables = context.build_for_step(step)
        attempts: list[AttemptRecord] = []
        agent_id = step.agent_id
        agent_attempt = 0
        hops = 0

        while True:
            agent = self.graph.agent(agent_id)
            binding = self.graph.binding_for(agent_id)
            timeout = self._call_timeout(step, agent_id, limits)
            agent_attempt += 1
            call_start = time.monotonic()

            try:
                result = await self.executor.execute(step, agent, binding, variables, timeout)
            except FailureSignal as signal:
                attempts.append(
                    AttemptRecord(
                        agent_id=agent_id,
                        llm_id=binding.llm_id,
                        error_code=signal.error_code,
                        message=signal.message,
                        elapsed_seconds=time.monotonic() - call_start,
                    )
                )
                decision = self.policy.resolve(
                    signal, agent_id=agent_id, attempt=agent_attempt, hops=hops
                )

                if decision.action is ErrorAction.RETRY:
                    logger.info(
                        "Step '%s' attempt %d failed (%s); retrying in %.2fs",
                        step.step_id,
                        len(attempts),
                        decision.reason,
                        decision.delay,
                    )
                    await self._sleep(decision.delay)
                    continue

                if decision.action is ErrorAction.FALLBACK and decision.fallback_agent_id:
                    logger.warning(
                        "Step '%s' falling back from agent '%s' to '%s' (%s)",
                        step.step_id,
                        agent_id,
                        decision.fallback_agent_id,
                        decision.reason,
                    )
                    agent_id = decision.fallback_agent_id
                    agent_attempt = 0
                    hops += 1
                    continue

                return self._abort(
                    step,
                    attempts,
                    signal,
                    f"Step '{step.step_id}' failed: {signal.message} ({decision.reason})",
                    time.monotonic() - started,
                    agent_id=agent_id,
                )
            except (TemplateError, SecretResolutionError) as e:
                return self._abort(
                    step,
                    attempts,
                    None,
                    f"Step '{step.step_id}' could not be invoked: {e.message}",
                    time.monotonic() - started,
                    agent_id=agent_id,
                    cause=e,
                )

            attempts.append(
                AttemptRecord(
                    agent_id=agent_id,
                    llm_id=binding.llm_id,
                    elapsed_seconds=result.response.latency_seconds,
                )
            )
            return _StepOutcome(
                StepResult(
                    step_id=step.step_id,
                    status=StepStatus.FALLEN_BACK if hops else StepStatus.SUCCEEDED,
                    agent_id=agent_id,
                    outputs=result.outputs,
                    attempts=attempts,
                    elapsed_seconds=time.monotonic() - started,
                )
            )

    def _abort(
        self,
        step: StepDef,
        attempts: list[AttemptRecord],
        signal: FailureSignal | None,
        message: str,
        elapsed: float,
        *,
        agent_id: str | None = None,
        cause: AgentflowError | None = None,
    ) -> _StepOutcome:
        """Turn an unrecoverable step failure into a skip or a workflow abort."""
        error_code = signal.error_code if signal is not None else None

        if step.optional:
            return _StepOutcome(
                StepResult(
                    step_id=step.step_id,
                    status=StepStatus.SKIPPED,
                    agent_id=agent_id,
                    attempts=attempts,
                    error_code=error_code,
                    error=message,
                    elapsed_seconds=elapsed,
                )
            )

        abort = WorkflowAbort(
            message,
            step_id=step.step_id,
            signal=signal,
            attempts=len(attempts),
            suggestion=cause.suggestion if cause is not None else None,
        )
        if cause is not None:
            abort.__cause__ = cause
        return _StepOutcome(
            StepResult(
                step_id=step.step_id,
                status=StepStatus.FAILED,
                agent_id=agent_id,
                attempts=attempts,
                error_code=error_code,
                error=message,
                elapsed_seconds=elapsed,
            ),
            abort=abort,
        )

    @staticmethod
    def _log_result(result: StepResult) -> None:
        if result.status is StepStatus.SUCCEEDED:
            logger.info("Step '%s' succeeded", result.step_id)
        elif result.status is StepStatus.FALLEN_BACK:
            logger.info(
                "Step '%s' succeeded with fallback agent '%s'", result.step_id, result.agent_id
            )
        elif result.status is StepStatus.SKIPPED:
            logger.info("Step '%s' skipped: %s", result.step_id, result.error)
        else:
            logger.error("Step '%s' failed: %s", result.step_id, result.error)

    def _build_report(
        self,
        context: ExecutionContext,
        status: RunStatus,
        error: AgentflowError | None,
        elapsed: float,
    ) -> RunReport:
        steps = [
            context.results[step.step_id]
            for step in self.graph.steps
            if step.step_id in context.results
        ]
        if self.graph.outputs:
            outputs = {k: context.values[k] for k in self.graph.outputs if k in context.values}
        else:
            outputs = context.snapshot()

        return RunReport(
            workflow_id=self.graph.workflow_id,
            status=status,
            steps=steps,
            completion_order=list(context.completion_order),
            outputs=outputs,
            context=context.snapshot(),
            error=error,
            elapsed_seconds=elapsed,
        )
