"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class DefinitionStatus(str, Enum):
    """Workflow definition lifecycle status"""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class StepType(str, Enum):
    """Types of workflow steps"""
    HUMAN_TASK = "HUMAN_TASK"
    AUTOMATED = "AUTOMATED"
    GATEWAY = "GATEWAY"  # Resolved inline, only branches the flow
    TIMER = "TIMER"  # Waits until its scheduled fire time
    SCRIPT = "SCRIPT"
    SERVICE_CALL = "SERVICE_CALL"

    @property
    def uses_handler(self) -> bool:
        """Whether a step handler is invoked for this type"""
        return self in HANDLER_STEP_TYPES


HANDLER_STEP_TYPES = frozenset({StepType.AUTOMATED, StepType.SCRIPT, StepType.SERVICE_CALL})


class InstanceStatus(str, Enum):
    """Workflow instance status"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED)


class InstanceTrigger(str, Enum):
    """Events that move an instance between statuses"""
    SUSPEND = "SUSPEND"
    RESUME = "RESUME"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    CANCEL = "CANCEL"


class ExecutionStatus(str, Enum):
    """Status of one attempt to run a step"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class AssignmentStatus(str, Enum):
    """Human task assignment status"""
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    DELEGATED = "DELEGATED"
    CANCELLED = "CANCELLED"  # Instance cancelled while the assignment was open

    @property
    def is_active(self) -> bool:
        return self in (AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS)


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


class ConditionLogic(str, Enum):
    """How conditions in a group are combined"""
    AND = "AND"
    OR = "OR"


class AuditEventType(str, Enum):
    """Types of audit events"""
    INSTANCE_STARTED = "INSTANCE_STARTED"
    STEP_ACTIVATED = "STEP_ACTIVATED"
    EXECUTION_STARTED = "EXECUTION_STARTED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_RETRIED = "EXECUTION_RETRIED"
    EXECUTION_SKIPPED = "EXECUTION_SKIPPED"
    EXECUTION_STALLED = "EXECUTION_STALLED"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    TIMER_SCHEDULED = "TIMER_SCHEDULED"
    ASSIGNMENT_CREATED = "ASSIGNMENT_CREATED"
    ASSIGNMENT_UPDATED = "ASSIGNMENT_UPDATED"
    HANDLER_RESULT_DISCARDED = "HANDLER_RESULT_DISCARDED"
    INSTANCE_SUSPENDED = "INSTANCE_SUSPENDED"
    INSTANCE_RESUMED = "INSTANCE_RESUMED"
    INSTANCE_COMPLETED = "INSTANCE_COMPLETED"
    INSTANCE_FAILED = "INSTANCE_FAILED"
    INSTANCE_CANCELLED = "INSTANCE_CANCELLED"
