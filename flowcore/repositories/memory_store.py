"""In-memory implementation of the workflow store."""
import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .base import WorkflowStore
from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, StepExecution, Assignment, AuditEvent
)
from ..domain.enums import DefinitionStatus, InstanceStatus, ExecutionStatus, StepType
from ..domain.errors import (
    AlreadyExistsError, ConcurrencyError, NotFoundError, DefinitionNotFoundError,
    InstanceNotFoundError, ExecutionNotFoundError, AssignmentNotFoundError
)
from ..utils.time import ensure_utc, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests, the `flowcore run` command or single-process
    embedding. Data is not persisted across process restarts.

    Transactions take a store-wide mutex and journal the previous version of
    every record they write; a failing unit of work restores them, so it
    leaves no trace. Stored documents are replaced on write, never mutated,
    which is what makes the journal of references sufficient. Instance locks
    are reference counted and dropped once nobody holds or waits for them.
    """

    def __init__(self, lock_timeout_seconds: float = 30.0) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "definitions": {},
            "instances": {},
            "executions": {},
            "assignments": {},
            "audit_events": {},
        }
        self._mutex = threading.RLock()
        self._tx_state = threading.local()
        self._lock_timeout_seconds = lock_timeout_seconds
        # instance id -> [lock, number of threads holding or waiting for it]
        self._instance_locks: Dict[str, List[Any]] = {}
        self._instance_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._mutex:
            depth = getattr(self._tx_state, "depth", 0)
            if depth:
                self._tx_state.depth = depth + 1
                try:
                    yield
                finally:
                    self._tx_state.depth = depth
                return

            self._tx_state.journal = []
            self._tx_state.depth = 1
            try:
                yield
            except BaseException:
                self._rollback(self._tx_state.journal)
                raise
            finally:
                self._tx_state.depth = 0
                self._tx_state.journal = None

    def _journal(self, table: str, key: str) -> None:
        """Remember the current version of a record before it is written"""
        journal = getattr(self._tx_state, "journal", None)
        if journal is not None:
            journal.append((table, key, self._tables[table].get(key)))

    def _rollback(self, journal: List[Tuple[str, str, Optional[Dict[str, Any]]]]) -> None:
        for table, key, previous in reversed(journal):
            if previous is None:
                self._tables[table].pop(key, None)
            else:
                self._tables[table][key] = previous
        logger.debug(f"Rolled back in-memory transaction ({len(journal)} writes)")

    @contextmanager
    def instance_lock(self, instance_id: str) -> Iterator[None]:
        with self._instance_locks_guard:
            entry = self._instance_locks.setdefault(instance_id, [threading.RLock(), 0])
            entry[1] += 1
        lock = entry[0]

        try:
            if not lock.acquire(timeout=self._lock_timeout_seconds):
                raise ConcurrencyError(
                    f"Timed out waiting for lock on instance {instance_id}",
                    details={"instance_id": instance_id, "timeout_seconds": self._lock_timeout_seconds}
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._instance_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._instance_locks[instance_id]

    @property
    def held_instance_locks(self) -> int:
        """Number of instances currently locked or waited for"""
        with self._instance_locks_guard:
            return len(self._instance_locks)

    # ------------------------------------------------------------------
    # Generic document helpers
    # ------------------------------------------------------------------

    def _insert(self, table: str, key: str, model: ModelT) -> ModelT:
        with self._mutex:
            if key in self._tables[table]:
                raise AlreadyExistsError(f"{table} record {key} already exists", details={"id": key})
            self._journal(table, key)
            self._tables[table][key] = model.model_dump()
        return model.model_copy(deep=True)

    def _get(self, table: str, key: str, model_cls: Type[ModelT]) -> Optional[ModelT]:
        with self._mutex:
            doc = self._tables[table].get(key)
            if doc is None:
                return None
            return model_cls.model_validate(copy.deepcopy(doc))

    def _update(
        self,
        table: str,
        key: str,
        model_cls: Type[ModelT],
        updates: Dict[str, Any],
        expected_revision: Optional[int],
        not_found: Type[NotFoundError],
    ) -> ModelT:
        with self._mutex:
            doc = self._tables[table].get(key)
            if doc is None:
                raise not_found(f"{model_cls.__name__} {key} not found", details={"id": key})
            if expected_revision is not None and doc["revision"] != expected_revision:
                raise ConcurrencyError(
                    f"{model_cls.__name__} {key} was modified concurrently",
                    details={"expected_revision": expected_revision, "actual_revision": doc["revision"]}
                )
            merged = {**copy.deepcopy(doc), **updates}
            merged["revision"] = doc["revision"] + 1
            if "updated_at" in doc:
                merged["updated_at"] = utc_now()
            model = model_cls.model_validate(merged)
            self._journal(table, key)
            self._tables[table][key] = model.model_dump()
            return model.model_copy(deep=True)

    def _all(self, table: str, model_cls: Type[ModelT]) -> List[ModelT]:
        with self._mutex:
            return [model_cls.model_validate(copy.deepcopy(doc)) for doc in self._tables[table].values()]

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._mutex:
            if self.get_definition_by_name_version(definition.name, definition.version):
                raise AlreadyExistsError(
                    f"Definition '{definition.name}' version {definition.version} already exists",
                    details={"name": definition.name, "version": definition.version}
                )
            return self._insert("definitions", definition.definition_id, definition)

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._get("definitions", definition_id, WorkflowDefinition)

    def get_definition_by_name_version(self, name: str, version: int) -> Optional[WorkflowDefinition]:
        for definition in self._all("definitions", WorkflowDefinition):
            if definition.name == name and definition.version == version:
                return definition
        return None

    def get_latest_version_number(self, name: str) -> int:
        versions = [d.version for d in self._all("definitions", WorkflowDefinition) if d.name == name]
        return max(versions, default=0)

    def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None
    ) -> List[WorkflowDefinition]:
        definitions = [
            d for d in self._all("definitions", WorkflowDefinition)
            if (name is None or d.name == name) and (status is None or d.status == status)
        ]
        return sorted(definitions, key=lambda d: (d.name, d.version))

    def update_definition(
        self,
        definition_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowDefinition:
        return self._update(
            "definitions", definition_id, WorkflowDefinition, updates,
            expected_revision, DefinitionNotFoundError
        )

    def delete_definition(self, definition_id: str) -> bool:
        with self._mutex:
            self._journal("definitions", definition_id)
            return self._tables["definitions"].pop(definition_id, None) is not None

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        return self._insert("instances", instance.instance_id, instance)

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self._get("instances", instance_id, WorkflowInstance)

    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowInstance:
        return self._update(
            "instances", instance_id, WorkflowInstance, updates,
            expected_revision, InstanceNotFoundError
        )

    def list_instances(
        self,
        definition_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
        current_step: Optional[str] = None
    ) -> List[WorkflowInstance]:
        wanted = set(statuses) if statuses is not None else None
        return [
            i for i in self._all("instances", WorkflowInstance)
            if (definition_id is None or i.definition_id == definition_id)
            and (wanted is None or i.status in wanted)
            and (current_step is None or i.current_step == current_step)
        ]

    def count_instances_for_definition(self, definition_id: str) -> int:
        return len(self.list_instances(definition_id=definition_id))

    def count_instances_by_status(self, definition_id: Optional[str] = None) -> Dict[InstanceStatus, int]:
        counts = {status: 0 for status in InstanceStatus}
        for instance in self.list_instances(definition_id=definition_id):
            counts[instance.status] += 1
        return counts

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(self, execution: StepExecution) -> StepExecution:
        return self._insert("executions", execution.execution_id, execution)

    def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        return self._get("executions", execution_id, StepExecution)

    def update_execution(
        self,
        execution_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> StepExecution:
        return self._update(
            "executions", execution_id, StepExecution, updates,
            expected_revision, ExecutionNotFoundError
        )

    def list_executions(
        self,
        instance_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None
    ) -> List[StepExecution]:
        wanted = set(statuses) if statuses is not None else None
        return [
            e for e in self._all("executions", StepExecution)
            if e.instance_id == instance_id and (wanted is None or e.status in wanted)
        ]

    def list_due_executions(self, due_before: datetime) -> List[StepExecution]:
        due_before = ensure_utc(due_before)
        return [
            e for e in self._all("executions", StepExecution)
            if e.status == ExecutionStatus.PENDING
            and e.scheduled_for is not None
            and ensure_utc(e.scheduled_for) <= due_before
        ]

    def list_running_executions(
        self,
        started_before: datetime,
        step_types: Optional[Iterable[StepType]] = None
    ) -> List[StepExecution]:
        started_before = ensure_utc(started_before)
        wanted = set(step_types) if step_types is not None else None
        running = [
            e for e in self._all("executions", StepExecution)
            if e.status == ExecutionStatus.RUNNING
            and e.started_at is not None
            and ensure_utc(e.started_at) <= started_before
            and (wanted is None or e.step_type in wanted)
        ]
        return sorted(running, key=lambda e: ensure_utc(e.started_at))

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def create_assignment(self, assignment: Assignment) -> Assignment:
        return self._insert("assignments", assignment.assignment_id, assignment)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self._get("assignments", assignment_id, Assignment)

    def update_assignment(
        self,
        assignment_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> Assignment:
        return self._update(
            "assignments", assignment_id, Assignment, updates,
            expected_revision, AssignmentNotFoundError
        )

    def list_assignments(
        self,
        execution_id: Optional[str] = None,
        instance_id: Optional[str] = None
    ) -> List[Assignment]:
        return [
            a for a in self._all("assignments", Assignment)
            if (execution_id is None or a.execution_id == execution_id)
            and (instance_id is None or a.instance_id == instance_id)
        ]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_event(self, event: AuditEvent) -> AuditEvent:
        return self._insert("audit_events", event.event_id, event)

    def list_events(self, instance_id: str) -> List[AuditEvent]:
        return [e for e in self._all("audit_events", AuditEvent) if e.instance_id == instance_id]
