"""Orchestrator module for reconciliation planning and execution."""

from converge.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from converge.orchestrator.planner import (
    Operation,
    Plan,
    PlanStep,
    ReconciliationPlanner,
    lookup_reference,
)
from converge.orchestrator.executor import (
    ExecutionResult,
    Outcome,
    ProgressCallback,
    ReconciliationExecutor,
    ResourceResult,
)
from converge.orchestrator.orchestrator import ProvisioningOrchestrator

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Planning
    'Operation',
    'Plan',
    'PlanStep',
    'ReconciliationPlanner',
    'lookup_reference',

    # Execution
    'ExecutionResult',
    'Outcome',
    'ProgressCallback',
    'ReconciliationExecutor',
    'ResourceResult',

    # Main orchestrator
    'ProvisioningOrchestrator',
]
