"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .enums import (
    DefinitionStatus, StepType, InstanceStatus, ExecutionStatus, AssignmentStatus,
    ConditionOperator, ConditionLogic, AuditEventType
)


# ============================================================================
# Condition & Successor
# ============================================================================

class Condition(BaseModel):
    """Single comparison against a context field"""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1, description="Dotted path into the instance context")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")


class ConditionGroup(BaseModel):
    """Group of conditions with AND/OR logic"""
    model_config = ConfigDict(extra="forbid")

    logic: ConditionLogic = Field(ConditionLogic.AND, description="AND or OR")
    conditions: List[Condition] = Field(default_factory=list)

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class SuccessorRef(BaseModel):
    """Candidate next step of a step"""
    model_config = ConfigDict(extra="forbid")

    step: str = Field(..., description="Name of the successor step")
    condition: Optional[ConditionGroup] = Field(None, description="Condition to evaluate; None = always eligible")
    on_failure: bool = Field(default=False, description="Followed only when the step fails")


class RetryPolicy(BaseModel):
    """Retry policy for handler failures"""
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=0.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = Field(default=300.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)"""
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_backoff_seconds)


# ============================================================================
# Definition
# ============================================================================

class StepDefinition(BaseModel):
    """A node of a workflow definition"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique within the definition")
    step_type: StepType
    order: int = Field(default=0, description="Default sequence position")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Interpreted by the step-type handler")
    successors: List[SuccessorRef] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = Field(None, description="Overrides the engine default")

    @property
    def normal_successors(self) -> List[SuccessorRef]:
        return [s for s in self.successors if not s.on_failure]

    @property
    def failure_successors(self) -> List[SuccessorRef]:
        return [s for s in self.successors if s.on_failure]


class WorkflowDefinition(BaseModel):
    """Versioned, named workflow template"""
    model_config = ConfigDict(extra="ignore")

    definition_id: str = Field(..., description="Unique definition ID")
    name: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1, description="Monotonic per name, starting at 1")
    description: Optional[str] = None
    status: DefinitionStatus = Field(default=DefinitionStatus.DRAFT)
    steps: List[StepDefinition] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    revision: int = Field(default=1, description="Optimistic concurrency revision")

    def get_step(self, name: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.name == name:
                return step
        return None


# ============================================================================
# Runtime
# ============================================================================

class WorkflowInstance(BaseModel):
    """Workflow instance (runtime)"""
    model_config = ConfigDict(extra="ignore")

    instance_id: str = Field(..., description="Unique instance ID")
    definition_id: str
    definition_name: str
    definition_version: int
    name: str
    status: InstanceStatus = Field(default=InstanceStatus.RUNNING)
    current_step: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_by: Optional[str] = None
    updated_at: datetime
    revision: int = Field(default=1, description="Optimistic concurrency revision")


class StepExecution(BaseModel):
    """One attempt to run a step within an instance"""
    model_config = ConfigDict(extra="ignore")

    execution_id: str = Field(..., description="Unique execution ID")
    instance_id: str
    step_name: str
    step_type: StepType
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    attempt: int = Field(default=1, ge=1)
    retry_of: Optional[str] = Field(None, description="Execution this one retries")
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    scheduled_for: Optional[datetime] = Field(None, description="Timer fire time or delayed retry time")
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    advanced_at: Optional[datetime] = Field(None, description="Set once the orchestrator advanced past this execution")
    revision: int = Field(default=1, description="Optimistic concurrency revision")


class Assignment(BaseModel):
    """Delegation of a human task execution to an assignee"""
    model_config = ConfigDict(extra="ignore")

    assignment_id: str
    execution_id: str
    instance_id: str
    assignee: str
    status: AssignmentStatus = Field(default=AssignmentStatus.ASSIGNED)
    comments: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict, description="Context delta submitted by the assignee")
    delegated_to: Optional[str] = None
    assigned_at: datetime
    completed_at: Optional[datetime] = None
    revision: int = Field(default=1, description="Optimistic concurrency revision")


class AuditEvent(BaseModel):
    """Append-only record of an engine transition"""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    instance_id: str
    event_type: AuditEventType
    execution_id: Optional[str] = None
    assignment_id: Optional[str] = None
    step_name: Optional[str] = None
    instance_status: Optional[InstanceStatus] = None
    current_step: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None


class HandlerResult(BaseModel):
    """Outcome of a step handler invocation"""
    model_config = ConfigDict(extra="forbid")

    output: Dict[str, Any] = Field(default_factory=dict, description="Context delta")
    error: Optional[str] = None
    skipped: bool = Field(default=False, description="Nothing to do; the step is SKIPPED and the flow moves on")
    skip_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None
