"""Tests for DefinitionService"""
import threading

import pytest

from flowcore.domain.enums import DefinitionStatus
from flowcore.domain.errors import (
    AlreadyExistsError, DefinitionInUseError, DefinitionNotFoundError,
    DefinitionValidationError, InvalidTransitionError, ValidationError
)

from tests.factories import EXTERNAL, make_step, when


def error_types(result):
    return [e["type"] for e in result["errors"]]


def warning_types(result):
    return [w["type"] for w in result["warnings"]]


class TestVersions:

    def test_versions_are_sequential(self, definitions):
        v1 = definitions.create_definition("onboarding", [make_step("a")], description="first")
        v2 = definitions.create_new_version("onboarding")
        v3 = definitions.create_new_version("onboarding", [make_step("b")])

        assert [d.version for d in definitions.list_versions("onboarding")] == [1, 2, 3]
        assert v1.status == DefinitionStatus.DRAFT
        # without steps the latest version is copied
        assert [s.name for s in v2.steps] == ["a"]
        assert v2.description == "first"
        assert [s.name for s in v3.steps] == ["b"]
        assert definitions.get_version("onboarding", 2).definition_id == v2.definition_id

    def test_name_is_unique(self, definitions):
        definitions.create_definition("onboarding", [make_step("a")])
        with pytest.raises(AlreadyExistsError):
            definitions.create_definition("onboarding", [make_step("a")])

    def test_new_version_of_unknown_name(self, definitions):
        with pytest.raises(DefinitionNotFoundError):
            definitions.create_new_version("ghost")

    def test_unknown_version(self, definitions):
        definitions.create_definition("onboarding", [make_step("a")])
        with pytest.raises(DefinitionNotFoundError):
            definitions.get_version("onboarding", 7)

    def test_get_latest_version(self, definitions):
        definitions.create_definition("onboarding", [make_step("a")])
        v2 = definitions.create_new_version("onboarding")
        definitions.archive(v2.definition_id)

        latest = definitions.get_latest_version("onboarding")
        assert latest.version == 2
        assert latest.status == DefinitionStatus.ARCHIVED
        with pytest.raises(DefinitionNotFoundError):
            definitions.get_latest_version("ghost")

    def test_invalid_step_document(self, definitions):
        with pytest.raises(ValidationError):
            definitions.create_definition("broken", [{"name": "a", "step_type": "TELEPORT"}])

    def test_several_versions_may_be_active(self, definitions):
        v1 = definitions.create_definition("onboarding", [make_step("a")])
        v2 = definitions.create_new_version("onboarding")
        definitions.activate(v1.definition_id)
        definitions.activate(v2.definition_id)

        active = definitions.list_definitions(status=DefinitionStatus.ACTIVE)
        assert [d.version for d in active] == [1, 2]


class TestLifecycle:

    def test_status_transitions(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a")])
        definition_id = definition.definition_id

        assert definitions.activate(definition_id).status == DefinitionStatus.ACTIVE
        assert definitions.deactivate(definition_id).status == DefinitionStatus.INACTIVE
        assert definitions.activate(definition_id).status == DefinitionStatus.ACTIVE
        assert definitions.revert_to_draft(definition_id).status == DefinitionStatus.DRAFT
        assert definitions.archive(definition_id).status == DefinitionStatus.ARCHIVED

        with pytest.raises(InvalidTransitionError):
            definitions.activate(definition_id)

    def test_draft_cannot_be_deactivated(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a")])
        with pytest.raises(InvalidTransitionError):
            definitions.deactivate(definition.definition_id)

    def test_invalid_definition_cannot_activate(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a", successors=["ghost"])])
        with pytest.raises(DefinitionValidationError) as exc_info:
            definitions.activate(definition.definition_id)

        assert exc_info.value.details["errors"][0]["type"] == "UNKNOWN_SUCCESSOR"
        assert definitions.get_definition(definition.definition_id).status == DefinitionStatus.DRAFT

    def test_update_draft(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a")])
        updated = definitions.update_draft(
            definition.definition_id, [make_step("a", successors=["b"]), make_step("b", order=1)],
            description="two steps"
        )
        assert [s.name for s in updated.steps] == ["a", "b"]
        assert updated.description == "two steps"
        assert updated.revision == definition.revision + 1

    def test_update_requires_draft(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a")])
        definitions.activate(definition.definition_id)
        with pytest.raises(InvalidTransitionError):
            definitions.update_draft(definition.definition_id, description="late edit")

    def test_referenced_definition_is_protected(self, definitions, orchestrator):
        definition = definitions.create_definition("onboarding", [make_step("a", configuration=EXTERNAL)])
        definitions.activate(definition.definition_id)
        orchestrator.start(definition.definition_id)
        definitions.revert_to_draft(definition.definition_id)

        with pytest.raises(DefinitionInUseError):
            definitions.update_draft(definition.definition_id, description="edit")
        with pytest.raises(DefinitionInUseError):
            definitions.delete_definition(definition.definition_id)

    def test_delete_unreferenced(self, definitions):
        definition = definitions.create_definition("onboarding", [make_step("a")])
        assert definitions.delete_definition(definition.definition_id)
        with pytest.raises(DefinitionNotFoundError):
            definitions.get_definition(definition.definition_id)

    def test_delete_racing_start_leaves_no_orphan(self, definitions, orchestrator, store, monkeypatch):
        definition = definitions.create_definition("onboarding", [make_step("a", configuration=EXTERNAL)])
        definitions.activate(definition.definition_id)
        outcome = {}
        starters = []

        def start():
            try:
                outcome["instance"] = orchestrator.start(definition.definition_id)
            except DefinitionNotFoundError as e:
                outcome["error"] = e

        count_instances = store.count_instances_for_definition

        def count_while_starting(definition_id):
            # a start arrives between the reference check and the delete
            starter = threading.Thread(target=start)
            starters.append(starter)
            starter.start()
            starter.join(timeout=0.2)
            return count_instances(definition_id)

        monkeypatch.setattr(store, "count_instances_for_definition", count_while_starting)
        assert definitions.delete_definition(definition.definition_id)
        starters[0].join(5)

        assert "instance" not in outcome
        assert isinstance(outcome["error"], DefinitionNotFoundError)
        assert store.list_instances() == []


class TestValidation:

    def test_valid_definition(self, definitions):
        result = definitions.validate_payload({
            "name": "ok",
            "steps": [
                make_step("route", "GATEWAY", successors=[
                    {"step": "big", "condition": when("amount", "GREATER_THAN", 10)},
                    {"step": "small"},
                ]),
                make_step("big", "HUMAN_TASK", order=1, configuration={"role": "approvers"}),
                make_step("small", order=2),
            ],
        })
        assert result == {"is_valid": True, "errors": [], "warnings": []}

    def test_empty_steps(self, definitions):
        result = definitions.validate_payload({"name": "empty", "steps": []})
        assert error_types(result) == ["EMPTY_STEPS"]

    def test_malformed_step(self, definitions):
        result = definitions.validate_payload({"steps": [{"name": "a"}]})
        assert not result["is_valid"]
        assert error_types(result) == ["INVALID_STEP"]
        assert result["errors"][0]["path"] == "steps.0.step_type"

    def test_structural_errors(self, definitions):
        result = definitions.validate_payload({
            "name": "broken",
            "steps": [
                make_step("a", successors=["b", "b", "ghost"]),
                make_step("b", order=1),
                make_step("b", order=2),
                make_step("wait", "TIMER", order=3),
                make_step("fork", "GATEWAY", order=4, successors=[{"step": "a", "on_failure": True}]),
            ],
        })
        types = error_types(result)
        assert "DUPLICATE_STEP" in types
        assert "DUPLICATE_SUCCESSOR" in types
        assert "UNKNOWN_SUCCESSOR" in types
        assert "TIMER_WITHOUT_SCHEDULE" in types
        assert "FAILURE_PATH_UNSUPPORTED" in types
        assert not result["is_valid"]

    def test_unconditioned_cycle(self, definitions):
        result = definitions.validate_payload({
            "steps": [
                make_step("a", successors=["b"]),
                make_step("b", order=1, successors=["a", "end"]),
                make_step("end", order=2),
            ],
        })
        assert error_types(result) == ["UNCONDITIONED_CYCLE"]

    def test_conditioned_cycle_is_allowed(self, definitions):
        result = definitions.validate_payload({
            "steps": [
                make_step("a", successors=["b"]),
                make_step("b", order=1, successors=[
                    {"step": "a", "condition": when("retry", "EQUALS", True)},
                    {"step": "end", "condition": when("retry", "EQUALS", False)},
                ]),
                make_step("end", order=2),
            ],
        })
        assert result["is_valid"]

    def test_warnings(self, definitions):
        result = definitions.validate_payload({
            "steps": [
                make_step("a", successors=["b"]),
                make_step("b", order=1, successors=[{"step": "a", "condition": when("again", "EQUALS", True)}]),
                make_step("orphan", "HUMAN_TASK", order=2, successors=["a"]),
                make_step("call", "SERVICE_CALL", order=3, successors=["a"]),
            ],
        })
        # warnings alone do not block activation
        assert set(warning_types(result)) == {"UNREACHABLE_STEP", "NO_TERMINAL_STEP", "NO_ASSIGNEE", "NO_URL"}
