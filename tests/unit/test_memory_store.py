"""Tests for InMemoryWorkflowStore"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from flowcore.domain.enums import ExecutionStatus, InstanceStatus, StepType
from flowcore.domain.errors import (
    AlreadyExistsError, ConcurrencyError, InstanceNotFoundError
)
from flowcore.domain.models import StepExecution, WorkflowDefinition, WorkflowInstance
from flowcore.repositories.memory_store import InMemoryWorkflowStore

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_instance(instance_id="WFI-1"):
    return WorkflowInstance(
        instance_id=instance_id,
        definition_id="WFD-1",
        definition_name="wf",
        definition_version=1,
        name="wf",
        started_at=NOW,
        updated_at=NOW
    )


def make_execution(execution_id, scheduled_for=None, status=ExecutionStatus.PENDING,
                   step_type=StepType.TIMER, started_at=None):
    return StepExecution(
        execution_id=execution_id,
        instance_id="WFI-1",
        step_name="wait",
        step_type=step_type,
        status=status,
        scheduled_for=scheduled_for,
        started_at=started_at,
        created_at=NOW
    )


def test_update_bumps_revision(store):
    store.create_instance(make_instance())
    updated = store.update_instance("WFI-1", {"context": {"a": 1}}, expected_revision=1)
    assert updated.revision == 2
    assert store.get_instance("WFI-1").context == {"a": 1}


def test_stale_revision_conflicts(store):
    store.create_instance(make_instance())
    store.update_instance("WFI-1", {"current_step": "a"}, expected_revision=1)
    with pytest.raises(ConcurrencyError):
        store.update_instance("WFI-1", {"current_step": "b"}, expected_revision=1)
    assert store.get_instance("WFI-1").current_step == "a"


def test_update_missing_raises_not_found(store):
    with pytest.raises(InstanceNotFoundError):
        store.update_instance("WFI-missing", {"current_step": "a"})


def test_duplicate_insert(store):
    store.create_instance(make_instance())
    with pytest.raises(AlreadyExistsError):
        store.create_instance(make_instance())


def test_duplicate_definition_version(store):
    definition = WorkflowDefinition(definition_id="WFD-1", name="wf", created_at=NOW, updated_at=NOW)
    store.create_definition(definition)
    with pytest.raises(AlreadyExistsError):
        store.create_definition(definition.model_copy(update={"definition_id": "WFD-2"}))
    assert store.get_latest_version_number("wf") == 1
    assert store.get_latest_version_number("other") == 0


def test_transaction_rolls_back(store):
    store.create_instance(make_instance())

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.update_instance("WFI-1", {"current_step": "a"})
            store.create_instance(make_instance("WFI-2"))
            with store.transaction():
                store.create_execution(make_execution("EXE-1"))
            raise RuntimeError("abort")

    assert store.get_instance("WFI-1").current_step is None
    assert store.get_instance("WFI-2") is None
    assert store.get_execution("EXE-1") is None


def test_returned_models_are_copies(store):
    store.create_instance(make_instance())
    fetched = store.get_instance("WFI-1")
    fetched.context["leak"] = True
    assert store.get_instance("WFI-1").context == {}


def test_list_due_executions(store):
    store.create_execution(make_execution("EXE-due", scheduled_for=NOW))
    store.create_execution(make_execution("EXE-later", scheduled_for=NOW + timedelta(hours=1)))
    store.create_execution(make_execution("EXE-none"))
    store.create_execution(make_execution("EXE-done", scheduled_for=NOW, status=ExecutionStatus.COMPLETED))

    due = store.list_due_executions(NOW + timedelta(seconds=1))
    assert [e.execution_id for e in due] == ["EXE-due"]


def test_instance_lock_is_reentrant(store):
    with store.instance_lock("WFI-1"):
        with store.instance_lock("WFI-1"):
            pass


def test_instance_lock_timeout():
    store = InMemoryWorkflowStore(lock_timeout_seconds=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with store.instance_lock("WFI-1"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(5)
        with pytest.raises(ConcurrencyError):
            with store.instance_lock("WFI-1"):
                pass
        # other instances are not blocked
        with store.instance_lock("WFI-2"):
            pass
    finally:
        release.set()
        thread.join()


def test_rollback_restores_updated_and_deleted_records(store):
    definition = WorkflowDefinition(definition_id="WFD-1", name="wf", created_at=NOW, updated_at=NOW)
    store.create_definition(definition)
    store.create_instance(make_instance())
    store.update_instance("WFI-1", {"current_step": "a"})

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.update_instance("WFI-1", {"current_step": "b"})
            store.update_instance("WFI-1", {"current_step": "c"})
            store.delete_definition("WFD-1")
            raise RuntimeError("abort")

    instance = store.get_instance("WFI-1")
    assert instance.current_step == "a"
    assert instance.revision == 2
    assert store.get_definition("WFD-1") is not None

    # the journal is per transaction
    with store.transaction():
        store.update_instance("WFI-1", {"current_step": "d"})
    assert store.get_instance("WFI-1").current_step == "d"


def test_instance_locks_are_dropped_after_use(store):
    with store.instance_lock("WFI-1"):
        with store.instance_lock("WFI-1"):
            assert store.held_instance_locks == 1
        with store.instance_lock("WFI-2"):
            assert store.held_instance_locks == 2
    assert store.held_instance_locks == 0


def test_timed_out_waiter_does_not_leak_lock_entry():
    store = InMemoryWorkflowStore(lock_timeout_seconds=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with store.instance_lock("WFI-1"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(5)
        with pytest.raises(ConcurrencyError):
            with store.instance_lock("WFI-1"):
                pass
        assert store.held_instance_locks == 1
    finally:
        release.set()
        thread.join()
    assert store.held_instance_locks == 0


def test_list_instances_filters(store):
    store.create_instance(make_instance("WFI-1"))
    store.create_instance(make_instance("WFI-2"))
    store.create_instance(make_instance("WFI-3"))
    store.update_instance("WFI-1", {"current_step": "review"})
    store.update_instance("WFI-2", {"current_step": "review", "status": InstanceStatus.SUSPENDED})

    at_review = store.list_instances(current_step="review")
    assert [i.instance_id for i in at_review] == ["WFI-1", "WFI-2"]
    running_at_review = store.list_instances(statuses=[InstanceStatus.RUNNING], current_step="review")
    assert [i.instance_id for i in running_at_review] == ["WFI-1"]


def test_count_instances_by_status(store):
    store.create_instance(make_instance("WFI-1"))
    store.create_instance(make_instance("WFI-2"))
    store.update_instance("WFI-2", {"status": InstanceStatus.FAILED})

    counts = store.count_instances_by_status()
    assert counts[InstanceStatus.RUNNING] == 1
    assert counts[InstanceStatus.FAILED] == 1
    assert counts[InstanceStatus.CANCELLED] == 0
    assert set(counts) == set(InstanceStatus)
    assert store.count_instances_by_status(definition_id="WFD-other")[InstanceStatus.RUNNING] == 0


def test_list_running_executions(store):
    store.create_execution(make_execution(
        "EXE-old", status=ExecutionStatus.RUNNING, step_type=StepType.AUTOMATED,
        started_at=NOW - timedelta(minutes=10)
    ))
    store.create_execution(make_execution(
        "EXE-older", status=ExecutionStatus.RUNNING, step_type=StepType.SCRIPT,
        started_at=NOW - timedelta(minutes=20)
    ))
    store.create_execution(make_execution(
        "EXE-fresh", status=ExecutionStatus.RUNNING, step_type=StepType.AUTOMATED, started_at=NOW
    ))
    store.create_execution(make_execution(
        "EXE-task", status=ExecutionStatus.RUNNING, step_type=StepType.HUMAN_TASK,
        started_at=NOW - timedelta(minutes=30)
    ))

    cutoff = NOW - timedelta(minutes=5)
    stalled = store.list_running_executions(cutoff)
    assert [e.execution_id for e in stalled] == ["EXE-task", "EXE-older", "EXE-old"]

    handler_steps = store.list_running_executions(cutoff, step_types=[StepType.AUTOMATED, StepType.SCRIPT])
    assert [e.execution_id for e in handler_steps] == ["EXE-older", "EXE-old"]
