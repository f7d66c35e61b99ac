"""
State Machines - Explicit transition tables for every lifecycle

Each status change is validated against its table before it is persisted.
An illegal pair raises InvalidTransitionError and nothing is written.
"""
from datetime import datetime
from typing import Any, Dict, FrozenSet, Generic, Mapping, Optional, TypeVar

from ..domain.models import WorkflowInstance
from ..domain.enums import (
    DefinitionStatus, InstanceStatus, InstanceTrigger, ExecutionStatus, AssignmentStatus
)
from ..domain.errors import InvalidTransitionError

S = TypeVar("S")


class TransitionTable(Generic[S]):
    """Allowed (from -> to) status pairs for one entity kind"""

    def __init__(self, entity: str, transitions: Mapping[S, FrozenSet[S]]):
        self.entity = entity
        self._transitions = dict(transitions)

    def allowed_targets(self, current: S) -> FrozenSet[S]:
        return self._transitions.get(current, frozenset())

    def can_transition(self, current: S, target: S) -> bool:
        return target in self.allowed_targets(current)

    def validate(self, current: S, target: S, entity_id: Optional[str] = None) -> None:
        """Raise InvalidTransitionError unless current -> target is in the table"""
        if not self.can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move {self.entity} from {_value(current)} to {_value(target)}",
                details={
                    "entity": self.entity,
                    "entity_id": entity_id,
                    "from_status": _value(current),
                    "to_status": _value(target),
                }
            )


def _value(status: Any) -> Any:
    return getattr(status, "value", status)


DEFINITION_TRANSITIONS: TransitionTable[DefinitionStatus] = TransitionTable("definition", {
    DefinitionStatus.DRAFT: frozenset({DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED}),
    DefinitionStatus.ACTIVE: frozenset({
        DefinitionStatus.DRAFT, DefinitionStatus.INACTIVE, DefinitionStatus.ARCHIVED
    }),
    DefinitionStatus.INACTIVE: frozenset({DefinitionStatus.ACTIVE, DefinitionStatus.ARCHIVED}),
    DefinitionStatus.ARCHIVED: frozenset(),
})

EXECUTION_TRANSITIONS: TransitionTable[ExecutionStatus] = TransitionTable("execution", {
    # Timers complete straight from PENDING when they fire
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED,
        ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
        ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.SKIPPED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
})

_ASSIGNMENT_EXITS = frozenset({
    AssignmentStatus.COMPLETED, AssignmentStatus.REJECTED,
    AssignmentStatus.DELEGATED, AssignmentStatus.CANCELLED
})

ASSIGNMENT_TRANSITIONS: TransitionTable[AssignmentStatus] = TransitionTable("assignment", {
    AssignmentStatus.ASSIGNED: _ASSIGNMENT_EXITS | {AssignmentStatus.IN_PROGRESS},
    AssignmentStatus.IN_PROGRESS: _ASSIGNMENT_EXITS,
    AssignmentStatus.COMPLETED: frozenset(),
    AssignmentStatus.REJECTED: frozenset(),
    AssignmentStatus.DELEGATED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
})


class InstanceStateMachine:
    """
    Lifecycle of one workflow instance

    | From      | Trigger  | To        |
    |-----------|----------|-----------|
    | RUNNING   | SUSPEND  | SUSPENDED |
    | SUSPENDED | RESUME   | RUNNING   |
    | RUNNING   | COMPLETE | COMPLETED |
    | RUNNING   | FAIL     | FAILED    |
    | RUNNING   | CANCEL   | CANCELLED |
    | SUSPENDED | CANCEL   | CANCELLED |
    """

    TRIGGERS: Dict[tuple, InstanceStatus] = {
        (InstanceStatus.RUNNING, InstanceTrigger.SUSPEND): InstanceStatus.SUSPENDED,
        (InstanceStatus.SUSPENDED, InstanceTrigger.RESUME): InstanceStatus.RUNNING,
        (InstanceStatus.RUNNING, InstanceTrigger.COMPLETE): InstanceStatus.COMPLETED,
        (InstanceStatus.RUNNING, InstanceTrigger.FAIL): InstanceStatus.FAILED,
        (InstanceStatus.RUNNING, InstanceTrigger.CANCEL): InstanceStatus.CANCELLED,
        (InstanceStatus.SUSPENDED, InstanceTrigger.CANCEL): InstanceStatus.CANCELLED,
    }

    def target_for(self, status: InstanceStatus, trigger: InstanceTrigger) -> InstanceStatus:
        """Resolve the status a trigger leads to, or raise InvalidTransitionError"""
        target = self.TRIGGERS.get((status, trigger))
        if target is None:
            raise InvalidTransitionError(
                f"Cannot {trigger.value.lower()} an instance that is {status.value}",
                details={"from_status": status.value, "trigger": trigger.value}
            )
        return target

    def can_fire(self, status: InstanceStatus, trigger: InstanceTrigger) -> bool:
        return (status, trigger) in self.TRIGGERS

    def transition(
        self,
        instance: WorkflowInstance,
        trigger: InstanceTrigger,
        now: datetime,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Compute the persisted updates for firing a trigger

        Args:
            instance: Instance in its current state
            trigger: Event to apply
            now: Timestamp of the transition
            reason: Failure or cancellation reason

        Returns:
            Field updates for the instance record

        Raises:
            InvalidTransitionError: The (status, trigger) pair is not in the table
        """
        target = self.target_for(instance.status, trigger)
        updates: Dict[str, Any] = {"status": target.value}

        # completed_at is set iff the instance is terminal
        if target.is_terminal:
            updates["completed_at"] = now
            if target == InstanceStatus.COMPLETED:
                updates["current_step"] = None
            if reason:
                updates["failure_reason"] = reason

        return updates
