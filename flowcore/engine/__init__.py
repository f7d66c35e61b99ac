"""Workflow Engine - Sequencing, lifecycles and orchestration"""
from .orchestrator import WorkflowOrchestrator
from .step_resolver import StepGraphResolver
from .condition_evaluator import ConditionEvaluator
from .state_machine import InstanceStateMachine
from .execution_tracker import ExecutionTracker
from .assignment_manager import AssignmentManager
from .audit_writer import AuditWriter

__all__ = [
    "WorkflowOrchestrator",
    "StepGraphResolver",
    "ConditionEvaluator",
    "InstanceStateMachine",
    "ExecutionTracker",
    "AssignmentManager",
    "AuditWriter",
]
