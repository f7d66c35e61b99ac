"""
Workflow Orchestrator - Drives instances through their step graph

=============================================================================
LOCKING DISCIPLINE
=============================================================================

Every mutation of an instance happens under `store.instance_lock()` and inside
one `store.transaction()`, taken in that order. Step handlers are invoked
with the lock released:

1. lock, read instance + execution, unlock
2. invoke handler
3. lock, re-validate (instance not terminal, execution still RUNNING),
   commit the outcome and advance, unlock

A result that fails re-validation is discarded and audited. Scheduling and
handler dispatch that follow a commit are collected in a _Plan and carried
out after the transaction has been committed.
=============================================================================
"""
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Tuple

from ..config.settings import Settings, get_settings
from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, StepDefinition, StepExecution,
    Assignment, HandlerResult, RetryPolicy
)
from ..domain.enums import (
    DefinitionStatus, StepType, InstanceStatus, InstanceTrigger, ExecutionStatus,
    AuditEventType, HANDLER_STEP_TYPES
)
from ..domain.errors import (
    AssigneeResolutionError, DefinitionNotActiveError, InvalidTransitionError,
    ResolutionError, ValidationError, DomainError
)
from ..repositories.base import WorkflowStore
from ..services.handler_registry import StepHandlerRegistry
from ..services.assignee_resolver import StaticAssigneeResolver
from .state_machine import InstanceStateMachine
from .step_resolver import StepGraphResolver
from .execution_tracker import ExecutionTracker
from .assignment_manager import AssignmentManager, AssigneeResolver
from .audit_writer import AuditWriter
from ..utils.idgen import generate_instance_id, generate_correlation_id
from ..utils.time import Clock, SystemClock, add_seconds, ensure_utc, is_due, parse_iso
from ..utils.logger import get_logger, get_correlation_id, set_correlation_id

logger = get_logger(__name__)


class TimerSchedulerProtocol(Protocol):
    """Scheduling facility for timers and delayed retries"""

    def schedule_at(self, fire_at: datetime, instance_id: str, execution_id: str) -> None:
        ...

    def cancel(self, execution_id: str) -> None:
        ...


@dataclass
class _Plan:
    """Side effects to carry out once the transaction has committed"""
    dispatch: List[str] = field(default_factory=list)
    timers: List[Tuple[datetime, str]] = field(default_factory=list)
    cancelled_timers: List[str] = field(default_factory=list)


class WorkflowOrchestrator:
    """
    The only component allowed to change instance status

    Responsibilities:
    - Start instances from ACTIVE definitions
    - Advance instances as executions settle
    - Invoke step handlers outside the instance lock
    - Create assignments for human tasks and apply their outcomes
    - Retry failed handler executions and follow error paths
    - Recover handler executions stalled in RUNNING
    - Suspend, resume and cancel instances
    """

    def __init__(
        self,
        store: WorkflowStore,
        handlers: Optional[StepHandlerRegistry] = None,
        resolver: Optional[StepGraphResolver] = None,
        assignee_resolver: Optional[AssigneeResolver] = None,
        scheduler: Optional[TimerSchedulerProtocol] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.handlers = handlers or StepHandlerRegistry()
        self.resolver = resolver or StepGraphResolver()
        self.scheduler = scheduler
        self.executor = executor
        self.state_machine = InstanceStateMachine()
        self.tracker = ExecutionTracker(store, self.clock)
        self.assignments = AssignmentManager(
            store, self.clock, assignee_resolver or StaticAssigneeResolver()
        )
        self.audit_writer = AuditWriter(store, self.clock)
        self.default_retry_policy = RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            backoff_seconds=self.settings.retry_backoff_seconds,
            backoff_multiplier=self.settings.retry_backoff_multiplier,
            max_backoff_seconds=self.settings.retry_max_backoff_seconds
        )

    # =========================================================================
    # Instance lifecycle
    # =========================================================================

    def start(
        self,
        definition_id: str,
        name: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        started_by: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Start an instance from an ACTIVE definition

        Algorithm:
        1. Check the definition is ACTIVE
        2. Resolve the first step
        3. Create the instance and activate the first step in one transaction
        4. Dispatch handlers / schedule timers

        The definition is read inside the transaction, so a concurrent
        delete_definition() either sees the new instance or wins and makes
        this call fail with DefinitionNotFoundError.

        Raises:
            DefinitionNotActiveError: Definition is not ACTIVE (no instance created)
        """
        self._ensure_correlation_id()
        plan = _Plan()
        # Nobody can reference the instance before this commits, so no lock is needed yet
        with self.store.transaction():
            definition = self.store.get_definition_or_raise(definition_id)
            if definition.status != DefinitionStatus.ACTIVE:
                raise DefinitionNotActiveError(
                    f"Definition {definition.name} v{definition.version} is {definition.status.value}",
                    details={"definition_id": definition_id, "status": definition.status.value}
                )

            first = self.resolver.first_step(definition)
            if first is None:
                raise ResolutionError(
                    f"Definition {definition.name} v{definition.version} has no steps",
                    details={"definition_id": definition_id}
                )

            now = self.clock.now()
            instance = WorkflowInstance(
                instance_id=generate_instance_id(),
                definition_id=definition.definition_id,
                definition_name=definition.name,
                definition_version=definition.version,
                name=name or definition.name,
                status=InstanceStatus.RUNNING,
                current_step=first.name,
                context=dict(initial_context or {}),
                started_at=now,
                created_by=started_by,
                updated_at=now
            )

            instance = self.store.create_instance(instance)
            self.audit_writer.write_event(
                instance, AuditEventType.INSTANCE_STARTED,
                details={"definition_id": definition_id, "definition_version": definition.version}
            )
            instance = self._activate_and_drain(instance, definition, [first], plan)

        logger.info(
            f"Started instance {instance.instance_id} of {definition.name} v{definition.version}",
            extra={"instance_id": instance.instance_id, "definition_id": definition_id}
        )

        self._run_plan(instance.instance_id, plan)
        return self.store.get_instance_or_raise(instance.instance_id)

    def suspend(self, instance_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        """RUNNING -> SUSPENDED; settling executions are recorded but not advanced"""
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                updates = self.state_machine.transition(instance, InstanceTrigger.SUSPEND, self.clock.now())
                instance = self._save_instance(instance, updates)
                self.audit_writer.write_instance_event(instance, AuditEventType.INSTANCE_SUSPENDED, reason)

        logger.info(f"Suspended instance {instance_id}", extra={"instance_id": instance_id})
        return instance

    def resume(self, instance_id: str) -> WorkflowInstance:
        """
        SUSPENDED -> RUNNING and replay deferred work

        Replays completions recorded while suspended, then timers and
        delayed retries that fell due in the meantime.
        """
        self._ensure_correlation_id()
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                updates = self.state_machine.transition(instance, InstanceTrigger.RESUME, self.clock.now())
                instance = self._save_instance(instance, updates)
                self.audit_writer.write_instance_event(instance, AuditEventType.INSTANCE_RESUMED)

                definition = self.store.get_definition_or_raise(instance.definition_id)
                instance = self._drain(
                    instance, definition, self.tracker.unadvanced_for_instance(instance_id), plan
                )

                now = self.clock.now()
                for execution in self.tracker.active_for_instance(instance_id):
                    if instance.status != InstanceStatus.RUNNING:
                        break
                    if execution.status == ExecutionStatus.PENDING and execution.scheduled_for is not None \
                            and is_due(execution.scheduled_for, now):
                        instance = self._fire_locked(instance, definition, execution, plan)

        logger.info(f"Resumed instance {instance_id}", extra={"instance_id": instance_id})
        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    def cancel(self, instance_id: str, reason: Optional[str] = None) -> WorkflowInstance:
        """
        Cancel an instance and every in-flight execution and assignment

        Handlers already running are not interrupted; their results are
        discarded when they return.
        """
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                instance = self._finish(instance, InstanceTrigger.CANCEL, reason or "Cancelled", plan)

        self._run_plan(instance_id, plan)
        return instance

    # =========================================================================
    # Advancement
    # =========================================================================

    def advance(self, instance_id: str, execution_id: str) -> WorkflowInstance:
        """
        Advance an instance past a settled execution

        Idempotent: an execution already advanced past is ignored, so racing
        callers create successor executions exactly once.

        Raises:
            InvalidTransitionError: The execution has not settled yet
        """
        self._ensure_correlation_id()
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                execution = self._get_execution(instance_id, execution_id)
                if not execution.status.is_terminal:
                    raise InvalidTransitionError(
                        f"Execution {execution_id} is {execution.status.value} and cannot be advanced",
                        details={"execution_id": execution_id, "status": execution.status.value}
                    )
                if execution.advanced_at is None and instance.status == InstanceStatus.RUNNING:
                    definition = self.store.get_definition_or_raise(instance.definition_id)
                    instance = self._drain(instance, definition, [execution], plan)

        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    def complete_execution(
        self,
        instance_id: str,
        execution_id: str,
        output: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        """Report success of an externally executed automated step"""
        return self._report_external(instance_id, execution_id, HandlerResult(output=output or {}))

    def fail_execution(self, instance_id: str, execution_id: str, error: str) -> WorkflowInstance:
        """Report failure of an externally executed automated step"""
        return self._report_external(instance_id, execution_id, HandlerResult(error=error))

    def _report_external(self, instance_id: str, execution_id: str, result: HandlerResult) -> WorkflowInstance:
        self._ensure_correlation_id()
        execution = self._get_execution(instance_id, execution_id)
        if not execution.step_type.uses_handler:
            raise ValidationError(
                f"Execution {execution_id} is a {execution.step_type.value} step",
                details={"execution_id": execution_id, "step_type": execution.step_type.value}
            )
        plan = self._commit_result(instance_id, execution_id, result, discard_stale=False)
        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    # =========================================================================
    # Human tasks
    # =========================================================================

    def acknowledge_assignment(self, assignment_id: str) -> Assignment:
        """Assignee picked up the task (ASSIGNED -> IN_PROGRESS)"""
        assignment = self.store.get_assignment_or_raise(assignment_id)
        with self.store.instance_lock(assignment.instance_id):
            with self.store.transaction():
                instance, execution, assignment = self._load_assignment(assignment_id)
                assignment = self.assignments.acknowledge(assignment)
                self.audit_writer.write_assignment_event(instance, execution, assignment)
        return assignment

    def complete_assignment(
        self,
        assignment_id: str,
        result: Optional[Dict[str, Any]] = None,
        comments: Optional[str] = None
    ) -> WorkflowInstance:
        """Assignee submitted the outcome; completes the execution and advances"""
        self._ensure_correlation_id()
        assignment = self.store.get_assignment_or_raise(assignment_id)
        instance_id = assignment.instance_id
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance, execution, assignment = self._load_assignment(assignment_id)
                assignment = self.assignments.complete(assignment, result, comments)
                self.audit_writer.write_assignment_event(instance, execution, assignment)
                execution = self.tracker.complete(execution, assignment.result)
                instance = self._settled(instance, execution, plan)

        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    def reject_assignment(
        self,
        assignment_id: str,
        comments: Optional[str] = None,
        reassign_to: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Assignee rejected the task

        With `reassign_to` a fresh assignment is created for the same
        execution; otherwise the execution fails and the error path is taken.
        """
        self._ensure_correlation_id()
        assignment = self.store.get_assignment_or_raise(assignment_id)
        instance_id = assignment.instance_id
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance, execution, assignment = self._load_assignment(assignment_id)
                assignment = self.assignments.reject(assignment, comments)
                self.audit_writer.write_assignment_event(instance, execution, assignment)

                if reassign_to:
                    new_assignment = self.assignments.reassign(execution, reassign_to)
                    self.audit_writer.write_assignment_event(
                        instance, execution, new_assignment, AuditEventType.ASSIGNMENT_CREATED
                    )
                else:
                    message = f"Assignment rejected by {assignment.assignee}"
                    if comments:
                        message = f"{message}: {comments}"
                    execution = self.tracker.fail(execution, message)
                    instance = self._settled(instance, execution, plan)

        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    def delegate_assignment(
        self,
        assignment_id: str,
        new_assignee: str,
        comments: Optional[str] = None
    ) -> Assignment:
        """Hand the task over; returns the new assignment"""
        assignment = self.store.get_assignment_or_raise(assignment_id)
        with self.store.instance_lock(assignment.instance_id):
            with self.store.transaction():
                instance, execution, assignment = self._load_assignment(assignment_id)
                prior, delegated = self.assignments.delegate(assignment, new_assignee, comments)
                self.audit_writer.write_assignment_event(instance, execution, prior)
                self.audit_writer.write_assignment_event(
                    instance, execution, delegated, AuditEventType.ASSIGNMENT_CREATED
                )
        return delegated

    def _load_assignment(self, assignment_id: str) -> Tuple[WorkflowInstance, StepExecution, Assignment]:
        """Re-read an assignment under the lock and check it can still change"""
        assignment = self.store.get_assignment_or_raise(assignment_id)
        instance = self.store.get_instance_or_raise(assignment.instance_id)
        if instance.status.is_terminal:
            raise InvalidTransitionError(
                f"Instance {instance.instance_id} is {instance.status.value}",
                details={"instance_id": instance.instance_id, "assignment_id": assignment_id}
            )
        execution = self.store.get_execution_or_raise(assignment.execution_id)
        return instance, execution, assignment

    # =========================================================================
    # Timers
    # =========================================================================

    def fire_timer(self, instance_id: str, execution_id: str) -> WorkflowInstance:
        """
        Fire a scheduled execution

        TIMER executions complete; delayed retries start and are dispatched.
        Stale or early fires are ignored.
        """
        self._ensure_correlation_id()
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                execution = self._get_execution(instance_id, execution_id)

                if instance.status != InstanceStatus.RUNNING or execution.status != ExecutionStatus.PENDING:
                    logger.info(
                        f"Ignoring fire of {execution_id}: instance {instance.status.value}, "
                        f"execution {execution.status.value}",
                        extra={"instance_id": instance_id, "execution_id": execution_id}
                    )
                elif not is_due(execution.scheduled_for, self.clock.now()):
                    logger.info(
                        f"Ignoring early fire of {execution_id}",
                        extra={"instance_id": instance_id, "execution_id": execution_id}
                    )
                else:
                    definition = self.store.get_definition_or_raise(instance.definition_id)
                    instance = self._fire_locked(instance, definition, execution, plan)

        self._run_plan(instance_id, plan)
        return self.store.get_instance_or_raise(instance_id)

    def poll_timers(self) -> int:
        """
        Fire every due execution across instances

        Recovery sweep for fires lost while no scheduler was running.

        Returns:
            Number of executions fired
        """
        fired = 0
        for execution in self.store.list_due_executions(self.clock.now()):
            try:
                self.fire_timer(execution.instance_id, execution.execution_id)
                fired += 1
            except DomainError as e:
                logger.warning(
                    f"Timer poll could not fire {execution.execution_id}: {e.message}",
                    extra={"instance_id": execution.instance_id, "execution_id": execution.execution_id}
                )
        if fired:
            logger.info(f"Timer poll fired {fired} executions")
        return fired

    def recover_stalled_executions(self) -> int:
        """
        Fail handler executions left RUNNING past the stall timeout

        A worker that dies between starting an execution and committing its
        result leaves it RUNNING with nobody to finish it. Failing it hands the
        step to its retry policy; should the original handler still return,
        its result is discarded. Steps completed externally are left alone.

        Returns:
            Number of executions recovered
        """
        cutoff = add_seconds(self.clock.now(), -self.settings.stalled_execution_timeout_seconds)
        recovered = 0
        for execution in self.store.list_running_executions(cutoff, step_types=HANDLER_STEP_TYPES):
            try:
                if self._recover_stalled(execution.instance_id, execution.execution_id, cutoff):
                    recovered += 1
            except DomainError as e:
                logger.warning(
                    f"Could not recover stalled execution {execution.execution_id}: {e.message}",
                    extra={"instance_id": execution.instance_id, "execution_id": execution.execution_id}
                )
        if recovered:
            logger.warning(f"Recovered {recovered} stalled executions")
        return recovered

    def sweep(self) -> int:
        """Periodic recovery pass: fire due executions, then recover stalled ones"""
        return self.poll_timers() + self.recover_stalled_executions()

    def _recover_stalled(self, instance_id: str, execution_id: str, cutoff: datetime) -> bool:
        self._ensure_correlation_id()
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                execution = self._get_execution(instance_id, execution_id)
                if instance.status.is_terminal or execution.status != ExecutionStatus.RUNNING \
                        or execution.started_at is None or ensure_utc(execution.started_at) > cutoff:
                    return False

                definition = self.store.get_definition_or_raise(instance.definition_id)
                step = self.resolver.get_step(definition, execution.step_name)
                if step.configuration.get("external"):
                    return False

                message = (
                    f"No result within {self.settings.stalled_execution_timeout_seconds:g}s; "
                    f"handler presumed lost"
                )
                execution = self.tracker.fail(execution, message)
                self.audit_writer.write_execution_event(
                    instance, execution, AuditEventType.EXECUTION_STALLED, error=message
                )
                self._settled(instance, execution, plan)

        logger.warning(
            f"Recovered stalled execution {execution_id} of step {execution.step_name}",
            extra={"instance_id": instance_id, "execution_id": execution_id, "step_name": execution.step_name}
        )
        self._run_plan(instance_id, plan)
        return True

    def _fire_locked(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        execution: StepExecution,
        plan: _Plan
    ) -> WorkflowInstance:
        if execution.step_type == StepType.TIMER:
            execution = self.tracker.complete(execution)
            self.audit_writer.write_execution_event(instance, execution, AuditEventType.EXECUTION_COMPLETED)
            return self._drain(instance, definition, [execution], plan)

        execution = self.tracker.start(execution, executed_by=self.settings.worker_id)
        self.audit_writer.write_execution_event(instance, execution, AuditEventType.EXECUTION_STARTED)
        plan.dispatch.append(execution.execution_id)
        return instance

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.store.get_instance_or_raise(instance_id)

    def get_history(self, instance_id: str) -> List[StepExecution]:
        self.store.get_instance_or_raise(instance_id)
        return self.tracker.history(instance_id)

    def list_instances(
        self,
        definition_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None
    ) -> List[WorkflowInstance]:
        """Instances, optionally of one definition version and/or in given statuses"""
        return self.store.list_instances(definition_id=definition_id, statuses=statuses)

    def list_running_instances(self, definition_id: Optional[str] = None) -> List[WorkflowInstance]:
        return self.store.list_instances(definition_id=definition_id, statuses=[InstanceStatus.RUNNING])

    def list_instances_at_step(self, step_name: str, definition_id: Optional[str] = None) -> List[WorkflowInstance]:
        """Non-terminal instances whose current step is `step_name`"""
        return self.store.list_instances(
            definition_id=definition_id,
            statuses=[s for s in InstanceStatus if not s.is_terminal],
            current_step=step_name
        )

    def count_instances_by_status(self, definition_id: Optional[str] = None) -> Dict[InstanceStatus, int]:
        """Instance count per status (every status present, zero included)"""
        return self.store.count_instances_by_status(definition_id=definition_id)

    # =========================================================================
    # Handler dispatch (lock released while the handler runs)
    # =========================================================================

    def _run_plan(self, instance_id: str, plan: _Plan) -> None:
        """Carry out post-commit side effects; synchronous dispatch loops until idle"""
        pending: Deque[_Plan] = deque([plan])
        while pending:
            current = pending.popleft()

            for execution_id in current.cancelled_timers:
                if self.scheduler is not None:
                    self.scheduler.cancel(execution_id)

            for fire_at, execution_id in current.timers:
                if self.scheduler is not None:
                    self.scheduler.schedule_at(fire_at, instance_id, execution_id)
                else:
                    logger.warning(
                        f"No scheduler configured; {execution_id} fires only via poll_timers()",
                        extra={"instance_id": instance_id, "execution_id": execution_id}
                    )

            for execution_id in current.dispatch:
                if self.executor is not None:
                    self.executor.submit(self._dispatch_in_background, instance_id, execution_id)
                else:
                    pending.append(self._dispatch(instance_id, execution_id))

    def _dispatch_in_background(self, instance_id: str, execution_id: str) -> None:
        try:
            self._run_plan(instance_id, self._dispatch(instance_id, execution_id))
        except Exception as e:
            # Worker boundary: the failure stays recorded on the execution for the next sweep
            logger.error(
                f"Background dispatch of {execution_id} failed: {e}",
                extra={"instance_id": instance_id, "execution_id": execution_id},
                exc_info=True
            )

    def _dispatch(self, instance_id: str, execution_id: str) -> _Plan:
        """Invoke the handler of a RUNNING execution and commit its result"""
        with self.store.instance_lock(instance_id):
            instance = self.store.get_instance_or_raise(instance_id)
            execution = self.store.get_execution_or_raise(execution_id)
            if instance.status.is_terminal or execution.status != ExecutionStatus.RUNNING:
                logger.info(
                    f"Skipping dispatch of {execution_id} ({execution.status.value})",
                    extra={"instance_id": instance_id, "execution_id": execution_id}
                )
                return _Plan()
            definition = self.store.get_definition_or_raise(instance.definition_id)
            step = self.resolver.get_step(definition, execution.step_name)
            context = dict(instance.context)

        if step.configuration.get("external"):
            # Completed later through complete_execution() / fail_execution()
            logger.info(
                f"Step {step.name} awaits external completion",
                extra={"instance_id": instance_id, "execution_id": execution_id, "step_name": step.name}
            )
            return _Plan()

        logger.info(
            f"Invoking {step.step_type.value} handler for step {step.name}",
            extra={"instance_id": instance_id, "execution_id": execution_id, "step_name": step.name}
        )
        result = self.handlers.execute(step.step_type, step.configuration, context)
        return self._commit_result(instance_id, execution_id, result, discard_stale=True)

    def _commit_result(
        self,
        instance_id: str,
        execution_id: str,
        result: HandlerResult,
        discard_stale: bool
    ) -> _Plan:
        """Re-validate under the lock, then settle the execution and advance"""
        plan = _Plan()
        with self.store.instance_lock(instance_id):
            with self.store.transaction():
                instance = self.store.get_instance_or_raise(instance_id)
                execution = self._get_execution(instance_id, execution_id)

                if instance.status.is_terminal or execution.status != ExecutionStatus.RUNNING:
                    if not discard_stale:
                        raise InvalidTransitionError(
                            f"Execution {execution_id} is {execution.status.value} "
                            f"in a {instance.status.value} instance",
                            details={
                                "execution_id": execution_id,
                                "status": execution.status.value,
                                "instance_status": instance.status.value
                            }
                        )
                    logger.warning(
                        f"Discarding handler result for {execution_id}: execution is "
                        f"{execution.status.value}, instance is {instance.status.value}",
                        extra={"instance_id": instance_id, "execution_id": execution_id}
                    )
                    self.audit_writer.write_execution_event(
                        instance, execution, AuditEventType.HANDLER_RESULT_DISCARDED,
                        succeeded=result.succeeded
                    )
                    return plan

                if result.succeeded and result.skipped:
                    execution = self.tracker.skip(execution, result.skip_reason)
                    self.audit_writer.write_execution_event(
                        instance, execution, AuditEventType.EXECUTION_SKIPPED, reason=result.skip_reason
                    )
                elif result.succeeded:
                    execution = self.tracker.complete(execution, result.output)
                    self.audit_writer.write_execution_event(instance, execution, AuditEventType.EXECUTION_COMPLETED)
                else:
                    execution = self.tracker.fail(execution, result.error or "Handler failed")
                    self.audit_writer.write_execution_event(
                        instance, execution, AuditEventType.EXECUTION_FAILED, error=execution.error_message
                    )

                self._settled(instance, execution, plan)
        return plan

    # =========================================================================
    # Core advancement (caller holds the lock and the transaction)
    # =========================================================================

    def _settled(self, instance: WorkflowInstance, execution: StepExecution, plan: _Plan) -> WorkflowInstance:
        """Advance past a just-settled execution unless the instance is suspended"""
        if instance.status != InstanceStatus.RUNNING:
            logger.info(
                f"Instance {instance.instance_id} is {instance.status.value}; deferring advance",
                extra={"instance_id": instance.instance_id, "execution_id": execution.execution_id}
            )
            return instance
        definition = self.store.get_definition_or_raise(instance.definition_id)
        return self._drain(instance, definition, [execution], plan)

    def _activate_and_drain(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        steps: List[StepDefinition],
        plan: _Plan
    ) -> WorkflowInstance:
        settled = [
            e for e in (self._activate(instance, step, plan) for step in steps) if e is not None
        ]
        instance = self._save_instance(instance, {"current_step": steps[-1].name})
        return self._drain(instance, definition, settled, plan)

    def _drain(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        settled: List[StepExecution],
        plan: _Plan
    ) -> WorkflowInstance:
        """Advance past settled executions, following inline steps breadth-first"""
        queue: Deque[StepExecution] = deque(settled)
        processed = 0

        while queue and instance.status == InstanceStatus.RUNNING:
            processed += 1
            if processed > self.settings.max_inline_steps:
                return self._finish(
                    instance, InstanceTrigger.FAIL,
                    f"Exceeded {self.settings.max_inline_steps} inline steps in one advancement",
                    plan
                )
            execution = queue.popleft()
            if execution.advanced_at is not None or execution.status == ExecutionStatus.CANCELLED:
                continue
            instance, produced = self._advance_one(instance, definition, execution, plan)
            queue.extend(produced)

        return instance

    def _advance_one(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        execution: StepExecution,
        plan: _Plan
    ) -> Tuple[WorkflowInstance, List[StepExecution]]:
        """
        Move past one settled execution

        Returns:
            (instance, executions that settled inline and must be advanced next)
        """
        step = self.resolver.get_step(definition, execution.step_name)

        if execution.status == ExecutionStatus.FAILED:
            return self._handle_failure(instance, definition, step, execution, plan)

        # Output is merged before successors are resolved, even when resolution fails
        context = {**instance.context, **execution.output_data}
        if context != instance.context:
            instance = self._save_instance(instance, {"context": context})
        try:
            next_steps = self.resolver.next_steps(definition, step, context)
        except ResolutionError as e:
            execution = self.tracker.record_error(execution, e.message)
            self.tracker.mark_advanced(execution)
            return self._finish(instance, InstanceTrigger.FAIL, e.message, plan), []

        self.tracker.mark_advanced(execution)

        if next_steps:
            return self._activate_successors(instance, next_steps, plan)

        if not self.resolver.is_terminal(step):
            return self._finish(
                instance, InstanceTrigger.FAIL,
                f"No eligible successor after step '{step.name}'",
                plan
            ), []

        return self._complete_if_idle(instance, plan), []

    def _handle_failure(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepDefinition,
        execution: StepExecution,
        plan: _Plan
    ) -> Tuple[WorkflowInstance, List[StepExecution]]:
        """Retry a failed handler execution or take the error path"""
        policy = step.retry_policy or self.default_retry_policy

        if step.step_type.uses_handler and execution.attempt < policy.max_attempts:
            delay = policy.delay_for(execution.attempt)
            scheduled_for = add_seconds(self.clock.now(), delay) if delay > 0 else None
            retry = self.tracker.retry(execution, step, scheduled_for=scheduled_for)
            self.tracker.mark_advanced(execution)
            self.audit_writer.write_execution_event(
                instance, retry, AuditEventType.EXECUTION_RETRIED,
                retry_of=execution.execution_id, delay_seconds=delay
            )
            if scheduled_for is not None:
                plan.timers.append((scheduled_for, retry.execution_id))
            else:
                retry = self.tracker.start(retry, executed_by=self.settings.worker_id)
                plan.dispatch.append(retry.execution_id)
            return instance, []

        context = {
            **instance.context,
            "last_error": {"step": step.name, "message": execution.error_message}
        }
        instance = self._save_instance(instance, {"context": context})
        try:
            failure_steps = self.resolver.failure_steps(definition, step, context)
        except ResolutionError as e:
            execution = self.tracker.record_error(execution, f"{execution.error_message}; {e.message}")
            self.tracker.mark_advanced(execution)
            return self._finish(instance, InstanceTrigger.FAIL, e.message, plan), []

        self.tracker.mark_advanced(execution)
        if not failure_steps:
            return self._finish(
                instance, InstanceTrigger.FAIL,
                f"Step '{step.name}' failed: {execution.error_message}",
                plan
            ), []

        logger.info(
            f"Taking error path from {step.name} -> {[s.name for s in failure_steps]}",
            extra={"instance_id": instance.instance_id, "step_name": step.name}
        )
        return self._activate_successors(instance, failure_steps, plan)

    def _activate_successors(
        self,
        instance: WorkflowInstance,
        steps: List[StepDefinition],
        plan: _Plan
    ) -> Tuple[WorkflowInstance, List[StepExecution]]:
        settled = [
            e for e in (self._activate(instance, step, plan) for step in steps) if e is not None
        ]
        instance = self._save_instance(instance, {"current_step": steps[-1].name})
        return instance, settled

    def _activate(
        self,
        instance: WorkflowInstance,
        step: StepDefinition,
        plan: _Plan
    ) -> Optional[StepExecution]:
        """
        Create the execution of a newly current step

        Returns:
            The execution when it settled inline (gateways, activation failures)
        """
        execution = self.tracker.create_pending(instance.instance_id, step, input_data=instance.context)
        self.audit_writer.write_execution_event(instance, execution, AuditEventType.STEP_ACTIVATED)

        if step.step_type == StepType.GATEWAY:
            execution = self.tracker.start(execution, executed_by=self.settings.worker_id)
            return self.tracker.complete(execution)

        if step.step_type == StepType.TIMER:
            try:
                fire_at = self._timer_fire_at(step)
            except ValidationError as e:
                return self._fail_activation(instance, execution, e.message)
            execution = self.store.update_execution(
                execution.execution_id, {"scheduled_for": fire_at}, expected_revision=execution.revision
            )
            plan.timers.append((fire_at, execution.execution_id))
            self.audit_writer.write_execution_event(
                instance, execution, AuditEventType.TIMER_SCHEDULED, fire_at=fire_at.isoformat()
            )
            return None

        execution = self.tracker.start(execution, executed_by=self.settings.worker_id)

        if step.step_type == StepType.HUMAN_TASK:
            try:
                assignment = self.assignments.assign(execution, step.configuration, instance.context)
            except AssigneeResolutionError as e:
                return self._fail_activation(instance, execution, e.message, started=True)
            self.audit_writer.write_assignment_event(
                instance, execution, assignment, AuditEventType.ASSIGNMENT_CREATED
            )
            return None

        self.audit_writer.write_execution_event(instance, execution, AuditEventType.EXECUTION_STARTED)
        plan.dispatch.append(execution.execution_id)
        return None

    def _fail_activation(
        self,
        instance: WorkflowInstance,
        execution: StepExecution,
        message: str,
        started: bool = False
    ) -> StepExecution:
        if not started:
            execution = self.tracker.start(execution, executed_by=self.settings.worker_id)
        execution = self.tracker.fail(execution, message)
        self.audit_writer.write_execution_event(
            instance, execution, AuditEventType.EXECUTION_FAILED, error=message
        )
        return execution

    def _timer_fire_at(self, step: StepDefinition) -> datetime:
        configuration = step.configuration
        if configuration.get("delay_seconds") is not None:
            try:
                delay = float(configuration["delay_seconds"])
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Timer step '{step.name}' has a non-numeric delay_seconds",
                    details={"step_name": step.name}
                )
            return add_seconds(self.clock.now(), max(delay, 0.0))

        fire_at = configuration.get("fire_at")
        if isinstance(fire_at, datetime):
            return ensure_utc(fire_at)
        if isinstance(fire_at, str):
            try:
                return parse_iso(fire_at)
            except (ValueError, OverflowError):
                raise ValidationError(
                    f"Timer step '{step.name}' has an unparseable fire_at",
                    details={"step_name": step.name, "fire_at": fire_at}
                )

        raise ValidationError(
            f"Timer step '{step.name}' needs delay_seconds or fire_at",
            details={"step_name": step.name}
        )

    def _complete_if_idle(self, instance: WorkflowInstance, plan: _Plan) -> WorkflowInstance:
        """Complete the instance once nothing is left active or unadvanced"""
        active = self.tracker.active_for_instance(instance.instance_id)
        if active:
            if instance.current_step != active[0].step_name:
                instance = self._save_instance(instance, {"current_step": active[0].step_name})
            return instance
        if self.tracker.unadvanced_for_instance(instance.instance_id):
            return instance
        return self._finish(instance, InstanceTrigger.COMPLETE, None, plan)

    def _finish(
        self,
        instance: WorkflowInstance,
        trigger: InstanceTrigger,
        reason: Optional[str],
        plan: _Plan
    ) -> WorkflowInstance:
        """Enter a terminal status, cancelling all in-flight work"""
        updates = self.state_machine.transition(instance, trigger, self.clock.now(), reason)

        for execution in self.tracker.active_for_instance(instance.instance_id):
            if execution.scheduled_for is not None and execution.status == ExecutionStatus.PENDING:
                plan.cancelled_timers.append(execution.execution_id)
            cancelled = self.tracker.cancel(execution, reason)
            self.audit_writer.write_execution_event(instance, cancelled, AuditEventType.EXECUTION_CANCELLED)
        self.assignments.cancel_active(instance.instance_id)

        instance = self._save_instance(instance, updates)
        event_type = {
            InstanceTrigger.COMPLETE: AuditEventType.INSTANCE_COMPLETED,
            InstanceTrigger.FAIL: AuditEventType.INSTANCE_FAILED,
            InstanceTrigger.CANCEL: AuditEventType.INSTANCE_CANCELLED,
        }[trigger]
        self.audit_writer.write_instance_event(instance, event_type, reason)

        log = logger.warning if trigger == InstanceTrigger.FAIL else logger.info
        log(
            f"Instance {instance.instance_id} {instance.status.value}" + (f": {reason}" if reason else ""),
            extra={"instance_id": instance.instance_id, "status": instance.status.value}
        )
        return instance

    # =========================================================================
    # Helpers
    # =========================================================================

    def _save_instance(self, instance: WorkflowInstance, updates: Dict[str, Any]) -> WorkflowInstance:
        return self.store.update_instance(instance.instance_id, updates, expected_revision=instance.revision)

    def _get_execution(self, instance_id: str, execution_id: str) -> StepExecution:
        execution = self.store.get_execution_or_raise(execution_id)
        if execution.instance_id != instance_id:
            raise ValidationError(
                f"Execution {execution_id} does not belong to instance {instance_id}",
                details={"execution_id": execution_id, "instance_id": instance_id}
            )
        return execution

    @staticmethod
    def _ensure_correlation_id() -> None:
        if not get_correlation_id():
            set_correlation_id(generate_correlation_id())
