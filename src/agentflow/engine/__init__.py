# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow engine module for Agentflow.

This module contains the workflow graph, condition evaluation, execution
context, error policy, deadline enforcement and the concurrent scheduler.
"""

from agentflow.engine.conditions import (
    Condition,
    ConditionEvaluator,
    ConditionResult,
    Eligibility,
    parse_condition,
)
from agentflow.engine.context import ExecutionContext
from agentflow.engine.graph import WorkflowGraph
from agentflow.engine.limits import LimitEnforcer
from agentflow.engine.policy import ErrorPolicy, PolicyDecision
from agentflow.engine.report import (
    AttemptRecord,
    RunReport,
    RunStatus,
    StepResult,
    StepStatus,
)
from agentflow.engine.workflow import ExecutionPlan, PlanStep, WorkflowEngine

__all__ = [
    "AttemptRecord",
    "Condition",
    "ConditionEvaluator",
    "ConditionResult",
    "Eligibility",
    "ErrorPolicy",
    "ExecutionContext",
    "ExecutionPlan",
    "LimitEnforcer",
    "PlanStep",
    "PolicyDecision",
    "RunReport",
    "RunStatus",
    "StepResult",
    "StepStatus",
    "WorkflowEngine",
    "WorkflowGraph",
    "parse_condition",
]
