"""Assignment Manager - Human task delegation and responses"""
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..domain.models import Assignment, StepExecution
from ..domain.enums import AssignmentStatus, StepType
from ..domain.errors import ConflictError, ValidationError
from ..repositories.base import WorkflowStore
from .state_machine import ASSIGNMENT_TRANSITIONS
from ..utils.idgen import generate_assignment_id
from ..utils.time import Clock
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AssigneeResolver(Protocol):
    """Pick the assignee of a human task from its configuration and the context"""

    def resolve(self, configuration: Dict[str, Any], context: Dict[str, Any]) -> str:
        ...


class AssignmentManager:
    """
    Manage assignments of HUMAN_TASK executions

    An execution has at most one active (ASSIGNED / IN_PROGRESS) assignment;
    rejected and delegated assignments stay behind as history.
    """

    def __init__(self, store: WorkflowStore, clock: Clock, resolver: AssigneeResolver):
        self.store = store
        self.clock = clock
        self.resolver = resolver

    def assign(
        self,
        execution: StepExecution,
        configuration: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Assignment:
        """
        Create the first assignment of a running human task

        Raises:
            AssigneeResolutionError: No assignee could be resolved
        """
        if execution.step_type != StepType.HUMAN_TASK:
            raise ValidationError(
                f"Execution {execution.execution_id} is not a human task",
                details={"execution_id": execution.execution_id, "step_type": execution.step_type.value}
            )
        assignee = self.resolver.resolve(configuration, context)
        return self._create(execution, assignee)

    def reassign(self, execution: StepExecution, assignee: str) -> Assignment:
        """Create a fresh assignment after the previous one was rejected"""
        return self._create(execution, assignee)

    def acknowledge(self, assignment: Assignment) -> Assignment:
        """ASSIGNED -> IN_PROGRESS"""
        return self._transition(assignment, AssignmentStatus.IN_PROGRESS, {})

    def complete(
        self,
        assignment: Assignment,
        result: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None
    ) -> Assignment:
        """Record the assignee's outcome; `result` is the context delta"""
        return self._transition(
            assignment,
            AssignmentStatus.COMPLETED,
            {"result": dict(result or {}), "comments": comments, "completed_at": self.clock.now()}
        )

    def reject(self, assignment: Assignment, comments: Optional[str] = None) -> Assignment:
        return self._transition(
            assignment,
            AssignmentStatus.REJECTED,
            {"comments": comments, "completed_at": self.clock.now()}
        )

    def delegate(
        self,
        assignment: Assignment,
        new_assignee: str,
        comments: Optional[str] = None
    ) -> Tuple[Assignment, Assignment]:
        """
        Hand an assignment over to someone else

        Returns:
            (prior assignment now DELEGATED, new ASSIGNED assignment)
        """
        if new_assignee == assignment.assignee:
            raise ValidationError(
                "Cannot delegate an assignment to its current assignee",
                details={"assignment_id": assignment.assignment_id, "assignee": new_assignee}
            )
        prior = self._transition(
            assignment,
            AssignmentStatus.DELEGATED,
            {"delegated_to": new_assignee, "comments": comments, "completed_at": self.clock.now()}
        )
        execution = self.store.get_execution_or_raise(assignment.execution_id)
        return prior, self._create(execution, new_assignee)

    def cancel_active(self, instance_id: str) -> List[Assignment]:
        """Cancel every active assignment of an instance"""
        cancelled = []
        for assignment in self.store.list_assignments(instance_id=instance_id):
            if assignment.status.is_active:
                cancelled.append(self._transition(
                    assignment, AssignmentStatus.CANCELLED, {"completed_at": self.clock.now()}
                ))
        return cancelled

    def active_for_execution(self, execution_id: str) -> Optional[Assignment]:
        for assignment in self.store.list_assignments(execution_id=execution_id):
            if assignment.status.is_active:
                return assignment
        return None

    def history(self, execution_id: str) -> List[Assignment]:
        return self.store.list_assignments(execution_id=execution_id)

    def _create(self, execution: StepExecution, assignee: str) -> Assignment:
        active = self.active_for_execution(execution.execution_id)
        if active is not None:
            raise ConflictError(
                f"Execution {execution.execution_id} already has an active assignment",
                details={"execution_id": execution.execution_id, "assignment_id": active.assignment_id}
            )

        assignment = Assignment(
            assignment_id=generate_assignment_id(),
            execution_id=execution.execution_id,
            instance_id=execution.instance_id,
            assignee=assignee,
            status=AssignmentStatus.ASSIGNED,
            assigned_at=self.clock.now()
        )
        created = self.store.create_assignment(assignment)

        logger.info(
            f"Assigned step {execution.step_name} to {assignee}",
            extra={
                "instance_id": execution.instance_id,
                "execution_id": execution.execution_id,
                "assignment_id": created.assignment_id,
                "step_name": execution.step_name
            }
        )
        return created

    def _transition(
        self,
        assignment: Assignment,
        target: AssignmentStatus,
        updates: Dict[str, Any]
    ) -> Assignment:
        ASSIGNMENT_TRANSITIONS.validate(assignment.status, target, assignment.assignment_id)
        updated = self.store.update_assignment(
            assignment.assignment_id,
            {**updates, "status": target.value},
            expected_revision=assignment.revision
        )
        logger.info(
            f"Assignment {assignment.assignment_id}: {assignment.status.value} -> {target.value}",
            extra={
                "instance_id": assignment.instance_id,
                "assignment_id": assignment.assignment_id,
                "status": target.value
            }
        )
        return updated
