"""Audit Writer - Append-only audit events"""
from typing import Any, Dict, Optional

from ..domain.models import AuditEvent, WorkflowInstance, StepExecution, Assignment
from ..domain.enums import AuditEventType
from ..repositories.base import WorkflowStore
from ..utils.idgen import generate_audit_event_id
from ..utils.time import Clock
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class AuditWriter:
    """
    Write audit events (append-only)

    Every status change of an instance, execution or assignment produces an
    event in the same transaction as the change itself.
    """

    def __init__(self, store: WorkflowStore, clock: Clock):
        self.store = store
        self.clock = clock

    def write_event(
        self,
        instance: WorkflowInstance,
        event_type: AuditEventType,
        execution: Optional[StepExecution] = None,
        assignment: Optional[Assignment] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Write a single audit event"""
        event = AuditEvent(
            event_id=generate_audit_event_id(),
            instance_id=instance.instance_id,
            event_type=event_type,
            execution_id=execution.execution_id if execution else None,
            assignment_id=assignment.assignment_id if assignment else None,
            step_name=execution.step_name if execution else None,
            instance_status=instance.status,
            current_step=instance.current_step,
            details=details or {},
            timestamp=self.clock.now(),
            correlation_id=get_correlation_id() or None
        )
        return self.store.append_event(event)

    def write_instance_event(
        self,
        instance: WorkflowInstance,
        event_type: AuditEventType,
        reason: Optional[str] = None
    ) -> AuditEvent:
        """Write an instance lifecycle event"""
        details = {"reason": reason} if reason else {}
        return self.write_event(instance, event_type, details=details)

    def write_execution_event(
        self,
        instance: WorkflowInstance,
        execution: StepExecution,
        event_type: AuditEventType,
        **details: Any
    ) -> AuditEvent:
        """Write an execution event with its attempt number"""
        return self.write_event(
            instance,
            event_type,
            execution=execution,
            details={"attempt": execution.attempt, **details}
        )

    def write_assignment_event(
        self,
        instance: WorkflowInstance,
        execution: StepExecution,
        assignment: Assignment,
        event_type: AuditEventType = AuditEventType.ASSIGNMENT_UPDATED
    ) -> AuditEvent:
        """Write an assignment event"""
        return self.write_event(
            instance,
            event_type,
            execution=execution,
            assignment=assignment,
            details={"assignee": assignment.assignee, "status": assignment.status.value}
        )
