"""Execution Tracker - Records every attempt to run a step"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import StepDefinition, StepExecution
from ..domain.enums import ExecutionStatus
from ..domain.errors import InvalidTransitionError
from ..repositories.base import WorkflowStore
from .state_machine import EXECUTION_TRANSITIONS
from ..utils.idgen import generate_execution_id
from ..utils.time import Clock
from ..utils.logger import get_logger

logger = get_logger(__name__)

ACTIVE_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)

# Settled executions the orchestrator still has to move past
ADVANCEABLE_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.SKIPPED, ExecutionStatus.FAILED)


class ExecutionTracker:
    """
    Create and transition StepExecution records

    A terminal execution is never mutated back into an active one; a retry
    is a new record with attempt + 1 pointing at the failed one.
    """

    def __init__(self, store: WorkflowStore, clock: Clock):
        self.store = store
        self.clock = clock

    # =========================================================================
    # Creation
    # =========================================================================

    def create_pending(
        self,
        instance_id: str,
        step: StepDefinition,
        input_data: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
        retry_of: Optional[str] = None,
        scheduled_for: Optional[datetime] = None
    ) -> StepExecution:
        """Create a PENDING execution for a step that became current"""
        execution = StepExecution(
            execution_id=generate_execution_id(),
            instance_id=instance_id,
            step_name=step.name,
            step_type=step.step_type,
            status=ExecutionStatus.PENDING,
            attempt=attempt,
            retry_of=retry_of,
            input_data=dict(input_data or {}),
            scheduled_for=scheduled_for,
            created_at=self.clock.now()
        )
        created = self.store.create_execution(execution)

        logger.info(
            f"Created execution for step {step.name} (attempt {attempt})",
            extra={
                "instance_id": instance_id,
                "execution_id": created.execution_id,
                "step_name": step.name,
                "attempt": attempt
            }
        )
        return created

    def retry(self, failed: StepExecution, step: StepDefinition, scheduled_for: Optional[datetime] = None) -> StepExecution:
        """Create the next attempt of a FAILED execution"""
        if failed.status != ExecutionStatus.FAILED:
            raise InvalidTransitionError(
                f"Only failed executions can be retried, {failed.execution_id} is {failed.status.value}",
                details={"execution_id": failed.execution_id, "status": failed.status.value}
            )
        return self.create_pending(
            instance_id=failed.instance_id,
            step=step,
            input_data=failed.input_data,
            attempt=failed.attempt + 1,
            retry_of=failed.execution_id,
            scheduled_for=scheduled_for
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def start(self, execution: StepExecution, executed_by: Optional[str] = None) -> StepExecution:
        """PENDING -> RUNNING"""
        return self._transition(
            execution,
            ExecutionStatus.RUNNING,
            {"started_at": self.clock.now(), "executed_by": executed_by}
        )

    def complete(self, execution: StepExecution, output_data: Optional[Dict[str, Any]] = None) -> StepExecution:
        """-> COMPLETED with the output delta"""
        now = self.clock.now()
        updates: Dict[str, Any] = {"output_data": dict(output_data or {}), "completed_at": now}
        if execution.started_at is None:
            updates["started_at"] = now
        return self._transition(execution, ExecutionStatus.COMPLETED, updates)

    def fail(self, execution: StepExecution, error_message: str) -> StepExecution:
        """RUNNING -> FAILED"""
        return self._transition(
            execution,
            ExecutionStatus.FAILED,
            {"error_message": error_message, "completed_at": self.clock.now()}
        )

    def skip(self, execution: StepExecution, reason: Optional[str] = None) -> StepExecution:
        return self._transition(
            execution,
            ExecutionStatus.SKIPPED,
            {"error_message": reason, "completed_at": self.clock.now()}
        )

    def cancel(self, execution: StepExecution, reason: Optional[str] = None) -> StepExecution:
        return self._transition(
            execution,
            ExecutionStatus.CANCELLED,
            {"error_message": reason, "completed_at": self.clock.now()}
        )

    def record_error(self, execution: StepExecution, error_message: str) -> StepExecution:
        """Attach an error to an execution without changing its status"""
        return self.store.update_execution(
            execution.execution_id,
            {"error_message": error_message},
            expected_revision=execution.revision
        )

    def mark_advanced(self, execution: StepExecution) -> StepExecution:
        """Record that the orchestrator moved past this execution"""
        return self.store.update_execution(
            execution.execution_id,
            {"advanced_at": self.clock.now()},
            expected_revision=execution.revision
        )

    def _transition(
        self,
        execution: StepExecution,
        target: ExecutionStatus,
        updates: Dict[str, Any]
    ) -> StepExecution:
        EXECUTION_TRANSITIONS.validate(execution.status, target, execution.execution_id)

        updated = self.store.update_execution(
            execution.execution_id,
            {**updates, "status": target.value},
            expected_revision=execution.revision
        )

        logger.info(
            f"Execution {execution.execution_id}: {execution.status.value} -> {target.value}",
            extra={
                "instance_id": execution.instance_id,
                "execution_id": execution.execution_id,
                "step_name": execution.step_name,
                "status": target.value
            }
        )
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def active_for_instance(self, instance_id: str) -> List[StepExecution]:
        """PENDING and RUNNING executions, oldest first"""
        return self.store.list_executions(instance_id, statuses=ACTIVE_STATUSES)

    def unadvanced_for_instance(self, instance_id: str) -> List[StepExecution]:
        """Settled executions the orchestrator has not advanced past yet"""
        return [
            e for e in self.store.list_executions(instance_id, statuses=ADVANCEABLE_STATUSES)
            if e.advanced_at is None
        ]

    def history(self, instance_id: str) -> List[StepExecution]:
        """Every execution of an instance in creation order"""
        return self.store.list_executions(instance_id)
