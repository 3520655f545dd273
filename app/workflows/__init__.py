"""Workflow graph model, transition resolution and execution."""

from .executor import ExecutionPath, TransitionEffect, TransitionExecutor, TransitionOutcome
from .models import (
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    WorkflowSnapshot,
    WorkflowStatus,
)
from .resolver import Transition, TransitionSet, resolve_transitions
from .snapshot import WorkflowCapture, capture_default_workflow, extract_initial_status

__all__ = [
    "ExecutionPath",
    "Transition",
    "TransitionEffect",
    "TransitionExecutor",
    "TransitionOutcome",
    "TransitionSet",
    "WorkflowCapture",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowNode",
    "WorkflowSnapshot",
    "WorkflowStatus",
    "capture_default_workflow",
    "extract_initial_status",
    "resolve_transitions",
]
