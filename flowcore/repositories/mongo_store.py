"""
MongoDB Workflow Store

Multi-process capable store:
- Optimistic concurrency via a `revision` field on every document
- Multi-document transactions through a client session (requires a replica set)
- Lease lock on the instance document for serialized advancement across workers
"""
import os
import socket
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pymongo import ASCENDING, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import WorkflowStore
from ..domain.models import (
    WorkflowDefinition, WorkflowInstance, StepExecution, Assignment, AuditEvent
)
from ..domain.enums import DefinitionStatus, InstanceStatus, ExecutionStatus, StepType
from ..domain.errors import (
    AlreadyExistsError, ConcurrencyError, NotFoundError, DefinitionNotFoundError,
    InstanceNotFoundError, ExecutionNotFoundError, AssignmentNotFoundError
)
from ..utils.idgen import generate_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Storage-only fields never exposed on domain models
_INTERNAL_FIELDS = ("_id", "seq", "locked_until", "locked_by")


class MongoWorkflowStore(WorkflowStore):
    """Workflow store backed by MongoDB collections"""

    def __init__(
        self,
        db: Database,
        lock_lease_seconds: int = 60,
        lock_timeout_seconds: float = 30.0,
        lock_retry_interval_seconds: float = 0.05,
        worker_id: Optional[str] = None,
    ):
        self._db = db
        self._definitions: Collection = db["definitions"]
        self._instances: Collection = db["instances"]
        self._executions: Collection = db["executions"]
        self._assignments: Collection = db["assignments"]
        self._audit_events: Collection = db["audit_events"]
        self._lock_lease_seconds = lock_lease_seconds
        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_retry_interval_seconds = lock_retry_interval_seconds
        self._worker_id = worker_id or self._generate_worker_id()
        self._session_var: ContextVar[Optional[ClientSession]] = ContextVar(
            f"flowcore_session_{id(self)}", default=None
        )
        self._held = threading.local()

    def _generate_worker_id(self) -> str:
        """Unique identifier of this process for lease ownership"""
        return f"{socket.gethostname()}-{os.getpid()}-{generate_id()[:8]}"

    # =========================================================================
    # Coordination
    # =========================================================================

    @property
    def _session(self) -> Optional[ClientSession]:
        return self._session_var.get()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._session is not None:
            yield
            return

        with self._db.client.start_session() as session:
            with session.start_transaction():
                token = self._session_var.set(session)
                try:
                    yield
                finally:
                    self._session_var.reset(token)

    def _lock_owner(self) -> str:
        return f"{self._worker_id}:{threading.get_ident()}"

    def _held_counts(self) -> Dict[str, int]:
        counts = getattr(self._held, "counts", None)
        if counts is None:
            counts = {}
            self._held.counts = counts
        return counts

    @contextmanager
    def instance_lock(self, instance_id: str) -> Iterator[None]:
        counts = self._held_counts()
        if counts.get(instance_id):
            counts[instance_id] += 1
            try:
                yield
            finally:
                counts[instance_id] -= 1
            return

        self._acquire_lease(instance_id)
        counts[instance_id] = 1
        try:
            yield
        finally:
            counts.pop(instance_id, None)
            self._release_lease(instance_id)

    def _acquire_lease(self, instance_id: str) -> None:
        """
        Acquire the lease on an instance document using an atomic find-and-modify.

        Retries until the configured timeout; an expired lease left by a
        crashed worker is taken over.
        """
        owner = self._lock_owner()
        deadline = time.monotonic() + self._lock_timeout_seconds

        while True:
            now = utc_now()
            result = self._instances.find_one_and_update(
                {
                    "instance_id": instance_id,
                    "$or": [
                        {"locked_until": {"$lte": now}},
                        {"locked_until": None}
                    ]
                },
                {
                    "$set": {
                        "locked_until": now + timedelta(seconds=self._lock_lease_seconds),
                        "locked_by": owner
                    }
                }
            )
            if result is not None:
                logger.debug(
                    f"Lease acquired on instance {instance_id}",
                    extra={"instance_id": instance_id, "worker_id": owner}
                )
                return

            if self._instances.count_documents({"instance_id": instance_id}, limit=1) == 0:
                raise InstanceNotFoundError(
                    f"Instance {instance_id} not found",
                    details={"instance_id": instance_id}
                )
            if time.monotonic() >= deadline:
                raise ConcurrencyError(
                    f"Timed out waiting for lock on instance {instance_id}",
                    details={"instance_id": instance_id, "timeout_seconds": self._lock_timeout_seconds}
                )
            time.sleep(self._lock_retry_interval_seconds)

    def _release_lease(self, instance_id: str) -> None:
        try:
            self._instances.update_one(
                {"instance_id": instance_id, "locked_by": self._lock_owner()},
                {"$set": {"locked_until": None, "locked_by": None}}
            )
        except PyMongoError as e:
            # The lease expires on its own; the next worker takes it over
            logger.error(
                f"Database error releasing lease on instance {instance_id}: {e}",
                extra={"instance_id": instance_id}
            )

    # =========================================================================
    # Generic document helpers
    # =========================================================================

    @staticmethod
    def _to_model(doc: Dict[str, Any], model_cls: Type[ModelT]) -> ModelT:
        for field in _INTERNAL_FIELDS:
            doc.pop(field, None)
        return model_cls.model_validate(doc)

    def _insert(self, collection: Collection, key: str, model: ModelT) -> ModelT:
        doc = model.model_dump()
        doc["_id"] = key
        doc["seq"] = time.time_ns()
        try:
            collection.insert_one(doc, session=self._session)
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"{type(model).__name__} {key} already exists",
                details={"id": key}
            )
        return model

    def _find_one(self, collection: Collection, query: Dict[str, Any], model_cls: Type[ModelT]) -> Optional[ModelT]:
        doc = collection.find_one(query, session=self._session)
        if doc:
            return self._to_model(doc, model_cls)
        return None

    def _find(
        self,
        collection: Collection,
        query: Dict[str, Any],
        model_cls: Type[ModelT],
        sort: Optional[List] = None
    ) -> List[ModelT]:
        cursor = collection.find(query, session=self._session).sort(sort or [("seq", ASCENDING)])
        return [self._to_model(doc, model_cls) for doc in cursor]

    def _update(
        self,
        collection: Collection,
        key_field: str,
        key: str,
        model_cls: Type[ModelT],
        updates: Dict[str, Any],
        expected_revision: Optional[int],
        not_found: Type[NotFoundError],
    ) -> ModelT:
        """Update document with optimistic concurrency"""
        updates = dict(updates)
        if "updated_at" in model_cls.model_fields:
            updates["updated_at"] = utc_now()

        filter_query: Dict[str, Any] = {key_field: key}
        if expected_revision is not None:
            filter_query["revision"] = expected_revision

        result = collection.find_one_and_update(
            filter_query,
            {"$set": updates, "$inc": {"revision": 1}},
            return_document=ReturnDocument.AFTER,
            session=self._session
        )

        if result is None:
            if expected_revision is not None:
                exists = collection.find_one({key_field: key}, session=self._session)
                if exists:
                    raise ConcurrencyError(
                        f"{model_cls.__name__} {key} was modified concurrently",
                        details={"expected_revision": expected_revision, "actual_revision": exists.get("revision")}
                    )
            raise not_found(f"{model_cls.__name__} {key} not found", details={"id": key})

        return self._to_model(result, model_cls)

    # =========================================================================
    # Definitions
    # =========================================================================

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        # The unique (name, version) index turns a racing duplicate into AlreadyExistsError
        created = self._insert(self._definitions, definition.definition_id, definition)
        logger.info(
            f"Created definition {definition.name} v{definition.version}",
            extra={"definition_id": definition.definition_id}
        )
        return created

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._find_one(self._definitions, {"definition_id": definition_id}, WorkflowDefinition)

    def get_definition_by_name_version(self, name: str, version: int) -> Optional[WorkflowDefinition]:
        return self._find_one(self._definitions, {"name": name, "version": version}, WorkflowDefinition)

    def get_latest_version_number(self, name: str) -> int:
        doc = self._definitions.find_one(
            {"name": name},
            sort=[("version", -1)],
            projection={"version": 1},
            session=self._session
        )
        return int(doc["version"]) if doc else 0

    def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None
    ) -> List[WorkflowDefinition]:
        query: Dict[str, Any] = {}
        if name:
            query["name"] = name
        if status:
            query["status"] = status.value
        return self._find(
            self._definitions, query, WorkflowDefinition,
            sort=[("name", ASCENDING), ("version", ASCENDING)]
        )

    def update_definition(
        self,
        definition_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowDefinition:
        return self._update(
            self._definitions, "definition_id", definition_id, WorkflowDefinition,
            updates, expected_revision, DefinitionNotFoundError
        )

    def delete_definition(self, definition_id: str) -> bool:
        result = self._definitions.delete_one({"definition_id": definition_id}, session=self._session)
        return result.deleted_count > 0

    # =========================================================================
    # Instances
    # =========================================================================

    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        return self._insert(self._instances, instance.instance_id, instance)

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self._find_one(self._instances, {"instance_id": instance_id}, WorkflowInstance)

    def update_instance(
        self,
        instance_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> WorkflowInstance:
        return self._update(
            self._instances, "instance_id", instance_id, WorkflowInstance,
            updates, expected_revision, InstanceNotFoundError
        )

    def list_instances(
        self,
        definition_id: Optional[str] = None,
        statuses: Optional[Iterable[InstanceStatus]] = None,
        current_step: Optional[str] = None
    ) -> List[WorkflowInstance]:
        query: Dict[str, Any] = {}
        if definition_id:
            query["definition_id"] = definition_id
        if statuses is not None:
            query["status"] = {"$in": [s.value for s in statuses]}
        if current_step is not None:
            query["current_step"] = current_step
        return self._find(self._instances, query, WorkflowInstance)

    def count_instances_for_definition(self, definition_id: str) -> int:
        return self._instances.count_documents({"definition_id": definition_id}, session=self._session)

    def count_instances_by_status(self, definition_id: Optional[str] = None) -> Dict[InstanceStatus, int]:
        pipeline: List[Dict[str, Any]] = []
        if definition_id:
            pipeline.append({"$match": {"definition_id": definition_id}})
        pipeline.append({"$group": {"_id": "$status", "count": {"$sum": 1}}})

        counts = {status: 0 for status in InstanceStatus}
        for row in self._instances.aggregate(pipeline, session=self._session):
            counts[InstanceStatus(row["_id"])] = row["count"]
        return counts

    # =========================================================================
    # Executions
    # =========================================================================

    def create_execution(self, execution: StepExecution) -> StepExecution:
        return self._insert(self._executions, execution.execution_id, execution)

    def get_execution(self, execution_id: str) -> Optional[StepExecution]:
        return self._find_one(self._executions, {"execution_id": execution_id}, StepExecution)

    def update_execution(
        self,
        execution_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> StepExecution:
        return self._update(
            self._executions, "execution_id", execution_id, StepExecution,
            updates, expected_revision, ExecutionNotFoundError
        )

    def list_executions(
        self,
        instance_id: str,
        statuses: Optional[Iterable[ExecutionStatus]] = None
    ) -> List[StepExecution]:
        query: Dict[str, Any] = {"instance_id": instance_id}
        if statuses is not None:
            query["status"] = {"$in": [s.value for s in statuses]}
        return self._find(self._executions, query, StepExecution)

    def list_due_executions(self, due_before: datetime) -> List[StepExecution]:
        return self._find(
            self._executions,
            {
                "status": ExecutionStatus.PENDING.value,
                "scheduled_for": {"$ne": None, "$lte": due_before}
            },
            StepExecution,
            sort=[("scheduled_for", ASCENDING)]
        )

    def list_running_executions(
        self,
        started_before: datetime,
        step_types: Optional[Iterable[StepType]] = None
    ) -> List[StepExecution]:
        query: Dict[str, Any] = {
            "status": ExecutionStatus.RUNNING.value,
            "started_at": {"$ne": None, "$lte": started_before}
        }
        if step_types is not None:
            query["step_type"] = {"$in": [t.value for t in step_types]}
        return self._find(self._executions, query, StepExecution, sort=[("started_at", ASCENDING)])

    # =========================================================================
    # Assignments
    # =========================================================================

    def create_assignment(self, assignment: Assignment) -> Assignment:
        return self._insert(self._assignments, assignment.assignment_id, assignment)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self._find_one(self._assignments, {"assignment_id": assignment_id}, Assignment)

    def update_assignment(
        self,
        assignment_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> Assignment:
        return self._update(
            self._assignments, "assignment_id", assignment_id, Assignment,
            updates, expected_revision, AssignmentNotFoundError
        )

    def list_assignments(
        self,
        execution_id: Optional[str] = None,
        instance_id: Optional[str] = None
    ) -> List[Assignment]:
        query: Dict[str, Any] = {}
        if execution_id:
            query["execution_id"] = execution_id
        if instance_id:
            query["instance_id"] = instance_id
        return self._find(self._assignments, query, Assignment)

    # =========================================================================
    # Audit
    # =========================================================================

    def append_event(self, event: AuditEvent) -> AuditEvent:
        return self._insert(self._audit_events, event.event_id, event)

    def list_events(self, instance_id: str) -> List[AuditEvent]:
        return self._find(self._audit_events, {"instance_id": instance_id}, AuditEvent)
