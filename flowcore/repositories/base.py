"""Workflow Store - Persistence contract consumed by the engine"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, StepExecution, Assignment, AuditEvent
)
from ..domain.enums import DefinitionStatus, InstanceStatus, ExecutionStatus, StepType
from ..domain.errors import (
    DefinitionNotFoundError, InstanceNotFoundError, ExecutionNotFoundError,
    AssignmentNotFoundError
)


class WorkflowStore(ABC):
    """
    Storage for definitions, instances, executions, assignments and audit events

    Every `update_*` accepts an `expected_revision` for optimistic concurrency;
    a stale revision raises ConcurrencyError. Mutations made inside
    `transaction()` are committed together or not at all. `instance_lock()`
    serializes advancement of one instance across threads (and processes,
    where the backend supports it).
    """

    # =========================================================================
    # Coordination
    # =========================================================================

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Atomic unit of work; nested calls join the outer transaction"""

    @abstractmethod
    def instance_lock(self, instance_id: str) -> AbstractContextManager:
        """Exclusive, re-entrant lock on one instance"""

    # =========================================================================
    # Definitions
    # =========================================================================

    @abstractmethod
    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a definition; (name, version) must be unique"""

    @abstractmethod
    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    def get_definition_by_name_version(self, name: str, version: int) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    def get_latest_version_number(self, name: str) -> int:
        """Highest version for a name, 0 when none exists"""

    @abstractmethod
    def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None
    ) -> List[WorkflowDefinition]:
        """List definitions ordered by (name, version)"""

    @abstractmethod
    def update_definition(
        self,
        definition_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowDefinition:
        ...

    @abstractmethod
    def delete_definition(self, definition_id: str) -> bool:
        ...

    # =========================================================================
    # Instances
    # =========================================================================

    @abstractmethod
    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        ...

    @abstractmethod
    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowInstance:
        ...

    @abstractmethod
    def list_instances(
        self,
        definition_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
        current_step: Optional[str] = None
    ) -> List[WorkflowInstance]:
        """Instances in start order"""

    @abstractmethod
    def count_instances_for_definition(self, definition_id: str) -> int:
        ...

    @abstractmethod
    def count_instances_by_status(self, definition_id: Optional[str] = None) -> Dict[InstanceStatus, int]:
        """Count per status; statuses without instances map to 0"""

    # =========================================================================
    # Executions
    # =========================================================================

    @abstractmethod
    def create_execution(self, execution: StepExecution) -> StepExecution:
        ...

    @abstractmethod
    def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        ...

    @abstractmethod
    def update_execution(
        self,
        execution_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> StepExecution:
        ...

    @abstractmethod
    def list_executions(
        self,
        instance_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None
    ) -> List[StepExecution]:
        """Executions of an instance in creation order"""

    @abstractmethod
    def list_due_executions(self, due_before: datetime) -> List[StepExecution]:
        """PENDING executions with scheduled_for <= due_before"""

    @abstractmethod
    def list_running_executions(
        self,
        started_before: datetime,
        step_types: Optional[Iterable[StepType]] = None
    ) -> List[StepExecution]:
        """RUNNING executions with started_at <= started_before, oldest first"""

    # =========================================================================
    # Assignments
    # =========================================================================

    @abstractmethod
    def create_assignment(self, assignment: Assignment) -> Assignment:
        ...

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        ...

    @abstractmethod
    def update_assignment(
        self,
        assignment_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> Assignment:
        ...

    @abstractmethod
    def list_assignments(
        self,
        execution_id: Optional[str] = None,
        instance_id: Optional[str] = None
    ) -> List[Assignment]:
        """Assignments in creation order"""

    # =========================================================================
    # Audit
    # =========================================================================

    @abstractmethod
    def append_event(self, event: AuditEvent) -> AuditEvent:
        ...

    @abstractmethod
    def list_events(self, instance_id: str) -> List[AuditEvent]:
        """Events of an instance in append order"""

    # =========================================================================
    # Convenience
    # =========================================================================

    def get_definition_or_raise(self, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID or raise error"""
        definition = self.get_definition(definition_id)
        if not definition:
            raise DefinitionNotFoundError(
                f"Definition {definition_id} not found",
                details={"definition_id": definition_id}
            )
        return definition

    def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = self.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found",
                details={"instance_id": instance_id}
            )
        return instance

    def get_execution_or_raise(self, execution_id: str) -> StepExecution:
        """Get execution by ID or raise error"""
        execution = self.get_execution(execution_id)
        if not execution:
            raise ExecutionNotFoundError(
                f"Execution {execution_id} not found",
                details={"execution_id": execution_id}
            )
        return execution

    def get_assignment_or_raise(self, assignment_id: str) -> Assignment:
        """Get assignment by ID or raise error"""
        assignment = self.get_assignment(assignment_id)
        if not assignment:
            raise AssignmentNotFoundError(
                f"Assignment {assignment_id} not found",
                details={"assignment_id": assignment_id}
            )
        return assignment
