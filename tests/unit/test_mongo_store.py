"""Tests for MongoWorkflowStore against mocked pymongo collections"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from flowcore.domain.enums import ExecutionStatus, InstanceStatus, StepType
from flowcore.domain.errors import AlreadyExistsError, ConcurrencyError, InstanceNotFoundError
from flowcore.domain.models import WorkflowInstance
from flowcore.repositories.mongo_store import MongoWorkflowStore

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

COLLECTIONS = ("definitions", "instances", "executions", "assignments", "audit_events")


def instance_doc(**overrides):
    instance = WorkflowInstance(
        instance_id="WFI-1",
        definition_id="WFD-1",
        definition_name="wf",
        definition_version=1,
        name="wf",
        started_at=NOW,
        updated_at=NOW
    )
    return {**instance.model_dump(), **overrides}


@pytest.fixture
def collections():
    return {name: MagicMock(name=name) for name in COLLECTIONS}


@pytest.fixture
def db(collections):
    db = MagicMock()
    db.__getitem__.side_effect = collections.__getitem__
    return db


@pytest.fixture
def mongo(db):
    return MongoWorkflowStore(
        db,
        lock_lease_seconds=60,
        lock_timeout_seconds=0.05,
        lock_retry_interval_seconds=0.01,
        worker_id="worker-a"
    )


class TestDocuments:

    def test_insert_adds_storage_fields(self, mongo, collections):
        instance = WorkflowInstance.model_validate(instance_doc())
        mongo.create_instance(instance)

        doc = collections["instances"].insert_one.call_args.args[0]
        assert doc["_id"] == "WFI-1"
        assert isinstance(doc["seq"], int)
        assert collections["instances"].insert_one.call_args.kwargs["session"] is None

    def test_duplicate_key(self, mongo, collections):
        collections["instances"].insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        with pytest.raises(AlreadyExistsError):
            mongo.create_instance(WorkflowInstance.model_validate(instance_doc()))

    def test_internal_fields_are_stripped(self, mongo, collections):
        collections["instances"].find_one.return_value = instance_doc(
            _id="WFI-1", seq=1, locked_by="worker-b", locked_until=NOW
        )
        instance = mongo.get_instance("WFI-1")
        assert instance.instance_id == "WFI-1"
        assert "locked_by" not in instance.model_dump()

    def test_get_missing(self, mongo, collections):
        collections["instances"].find_one.return_value = None
        assert mongo.get_instance("WFI-404") is None

    def test_update_with_revision(self, mongo, collections):
        collections["instances"].find_one_and_update.return_value = instance_doc(current_step="b", revision=3)

        updated = mongo.update_instance("WFI-1", {"current_step": "b"}, expected_revision=2)

        query, update = collections["instances"].find_one_and_update.call_args.args
        assert query == {"instance_id": "WFI-1", "revision": 2}
        assert update["$inc"] == {"revision": 1}
        assert update["$set"]["current_step"] == "b"
        assert "updated_at" in update["$set"]
        assert updated.revision == 3

    def test_stale_revision(self, mongo, collections):
        collections["instances"].find_one_and_update.return_value = None
        collections["instances"].find_one.return_value = instance_doc(revision=5)

        with pytest.raises(ConcurrencyError) as exc_info:
            mongo.update_instance("WFI-1", {"current_step": "b"}, expected_revision=2)
        assert exc_info.value.details["actual_revision"] == 5

    def test_update_missing(self, mongo, collections):
        collections["instances"].find_one_and_update.return_value = None
        collections["instances"].find_one.return_value = None
        with pytest.raises(InstanceNotFoundError):
            mongo.update_instance("WFI-1", {"current_step": "b"}, expected_revision=2)

    def test_list_executions_query(self, mongo, collections):
        collections["executions"].find.return_value.sort.return_value = []

        mongo.list_executions("WFI-1", statuses=[ExecutionStatus.PENDING, ExecutionStatus.RUNNING])

        query = collections["executions"].find.call_args.args[0]
        assert query == {"instance_id": "WFI-1", "status": {"$in": ["PENDING", "RUNNING"]}}
        collections["executions"].find.return_value.sort.assert_called_once_with([("seq", 1)])

    def test_list_instances_at_step_query(self, mongo, collections):
        collections["instances"].find.return_value.sort.return_value = [instance_doc(current_step="review")]

        found = mongo.list_instances(statuses=[InstanceStatus.RUNNING], current_step="review")

        assert [i.current_step for i in found] == ["review"]
        query = collections["instances"].find.call_args.args[0]
        assert query == {"status": {"$in": ["RUNNING"]}, "current_step": "review"}

    def test_count_instances_by_status(self, mongo, collections):
        collections["instances"].aggregate.return_value = [
            {"_id": "RUNNING", "count": 2},
            {"_id": "FAILED", "count": 1},
        ]

        counts = mongo.count_instances_by_status("WFD-1")

        assert counts[InstanceStatus.RUNNING] == 2
        assert counts[InstanceStatus.FAILED] == 1
        assert counts[InstanceStatus.COMPLETED] == 0
        pipeline = collections["instances"].aggregate.call_args.args[0]
        assert pipeline[0] == {"$match": {"definition_id": "WFD-1"}}
        assert pipeline[1]["$group"]["_id"] == "$status"

    def test_list_running_executions_query(self, mongo, collections):
        collections["executions"].find.return_value.sort.return_value = []

        mongo.list_running_executions(NOW, step_types=[StepType.AUTOMATED, StepType.SCRIPT])

        query = collections["executions"].find.call_args.args[0]
        assert query == {
            "status": "RUNNING",
            "started_at": {"$ne": None, "$lte": NOW},
            "step_type": {"$in": ["AUTOMATED", "SCRIPT"]},
        }
        collections["executions"].find.return_value.sort.assert_called_once_with([("started_at", 1)])

    def test_latest_version_number(self, mongo, collections):
        collections["definitions"].find_one.return_value = {"version": 4}
        assert mongo.get_latest_version_number("wf") == 4
        collections["definitions"].find_one.return_value = None
        assert mongo.get_latest_version_number("wf") == 0


class TestTransactions:

    def test_operations_join_the_session(self, mongo, db, collections):
        session = db.client.start_session.return_value.__enter__.return_value

        with mongo.transaction():
            with mongo.transaction():
                mongo.create_instance(WorkflowInstance.model_validate(instance_doc()))

        assert collections["instances"].insert_one.call_args.kwargs["session"] is session
        session.start_transaction.assert_called_once()
        db.client.start_session.assert_called_once()

    def test_session_is_cleared_after_exit(self, mongo, db, collections):
        with pytest.raises(RuntimeError):
            with mongo.transaction():
                raise RuntimeError("abort")

        mongo.create_instance(WorkflowInstance.model_validate(instance_doc()))
        assert collections["instances"].insert_one.call_args.kwargs["session"] is None


class TestLease:

    def test_acquire_and_release(self, mongo, collections):
        instances = collections["instances"]
        instances.find_one_and_update.return_value = {"instance_id": "WFI-1"}

        with mongo.instance_lock("WFI-1"):
            with mongo.instance_lock("WFI-1"):
                pass

        instances.find_one_and_update.assert_called_once()
        query, update = instances.find_one_and_update.call_args.args
        assert query["instance_id"] == "WFI-1"
        assert update["$set"]["locked_by"].startswith("worker-a:")

        release_query, release_update = instances.update_one.call_args.args
        assert release_query == {"instance_id": "WFI-1", "locked_by": update["$set"]["locked_by"]}
        assert release_update == {"$set": {"locked_until": None, "locked_by": None}}

    def test_held_lease_times_out(self, mongo, collections):
        instances = collections["instances"]
        instances.find_one_and_update.return_value = None
        instances.count_documents.return_value = 1

        with pytest.raises(ConcurrencyError):
            with mongo.instance_lock("WFI-1"):
                pass
        assert instances.find_one_and_update.call_count >= 2
        instances.update_one.assert_not_called()

    def test_lock_on_missing_instance(self, mongo, collections):
        collections["instances"].find_one_and_update.return_value = None
        collections["instances"].count_documents.return_value = 0

        with pytest.raises(InstanceNotFoundError):
            with mongo.instance_lock("WFI-404"):
                pass

    def test_release_failure_is_logged(self, mongo, collections):
        collections["instances"].find_one_and_update.return_value = {"instance_id": "WFI-1"}
        collections["instances"].update_one.side_effect = PyMongoError("network")

        with mongo.instance_lock("WFI-1"):
            pass
