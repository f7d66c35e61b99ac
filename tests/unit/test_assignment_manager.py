"""Tests for AssignmentManager and StaticAssigneeResolver"""
import pytest

from flowcore.domain.enums import AssignmentStatus
from flowcore.domain.errors import (
    AssigneeResolutionError, ConflictError, InvalidTransitionError, ValidationError
)
from flowcore.domain.models import StepDefinition
from flowcore.engine.assignment_manager import AssignmentManager
from flowcore.engine.execution_tracker import ExecutionTracker
from flowcore.services.assignee_resolver import StaticAssigneeResolver

from tests.factories import make_step


@pytest.fixture
def tracker(store, clock):
    return ExecutionTracker(store, clock)


@pytest.fixture
def manager(store, clock):
    return AssignmentManager(store, clock, StaticAssigneeResolver({"finance": "bob"}))


@pytest.fixture
def task(tracker):
    step = StepDefinition.model_validate(make_step("approve", "HUMAN_TASK", configuration={"role": "finance"}))
    return tracker.start(tracker.create_pending("WFI-1", step))


def test_assign_resolves_role(manager, task):
    assignment = manager.assign(task, {"role": "finance"}, {})
    assert assignment.assignee == "bob"
    assert assignment.status == AssignmentStatus.ASSIGNED
    assert assignment.instance_id == "WFI-1"
    assert manager.active_for_execution(task.execution_id).assignment_id == assignment.assignment_id


def test_assign_rejects_non_human_step(manager, tracker):
    step = StepDefinition.model_validate(make_step("charge"))
    execution = tracker.create_pending("WFI-1", step)
    with pytest.raises(ValidationError):
        manager.assign(execution, {"assignee": "bob"}, {})


def test_one_active_assignment_per_execution(manager, task):
    manager.assign(task, {"assignee": "carol"}, {})
    with pytest.raises(ConflictError):
        manager.reassign(task, "dave")


def test_acknowledge_then_complete(manager, task):
    assignment = manager.assign(task, {"assignee": "carol"}, {})
    in_progress = manager.acknowledge(assignment)
    done = manager.complete(in_progress, {"approved": True}, comments="ok")

    assert in_progress.status == AssignmentStatus.IN_PROGRESS
    assert done.status == AssignmentStatus.COMPLETED
    assert done.result == {"approved": True}
    assert done.completed_at is not None
    assert manager.active_for_execution(task.execution_id) is None


def test_completed_assignment_is_final(manager, task):
    done = manager.complete(manager.assign(task, {"assignee": "carol"}, {}))
    with pytest.raises(InvalidTransitionError):
        manager.reject(done)


def test_delegate(manager, task):
    assignment = manager.assign(task, {"assignee": "carol"}, {})
    prior, new = manager.delegate(assignment, "dave", comments="on leave")

    assert prior.status == AssignmentStatus.DELEGATED
    assert prior.delegated_to == "dave"
    assert new.assignee == "dave"
    assert new.status == AssignmentStatus.ASSIGNED
    assert [a.assignee for a in manager.history(task.execution_id)] == ["carol", "dave"]


def test_delegate_to_same_assignee(manager, task):
    assignment = manager.assign(task, {"assignee": "carol"}, {})
    with pytest.raises(ValidationError):
        manager.delegate(assignment, "carol")


def test_reject_then_reassign(manager, task):
    manager.reject(manager.assign(task, {"assignee": "carol"}, {}), comments="not mine")
    again = manager.reassign(task, "dave")
    assert again.status == AssignmentStatus.ASSIGNED
    assert len(manager.history(task.execution_id)) == 2


def test_cancel_active(manager, task):
    manager.assign(task, {"assignee": "carol"}, {})
    cancelled = manager.cancel_active("WFI-1")
    assert [a.status for a in cancelled] == [AssignmentStatus.CANCELLED]
    assert manager.cancel_active("WFI-1") == []


class TestStaticAssigneeResolver:

    def test_precedence(self):
        resolver = StaticAssigneeResolver({"finance": "bob"})
        configuration = {"assignee": "carol", "assignee_field": "owner", "role": "finance"}
        assert resolver.resolve(configuration, {"owner": "erin"}) == "carol"
        assert resolver.resolve({"assignee_field": "request.owner", "role": "finance"},
                                {"request": {"owner": "erin"}}) == "erin"
        assert resolver.resolve({"role": "finance"}, {}) == "bob"

    @pytest.mark.parametrize("configuration", [
        {},
        {"role": "legal"},
        {"assignee_field": "owner"},
    ])
    def test_unresolvable(self, configuration):
        with pytest.raises(AssigneeResolutionError):
            StaticAssigneeResolver({"finance": "bob"}).resolve(configuration, {})
