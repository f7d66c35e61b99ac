"""Definition Service - Versioned workflow definitions and their lifecycle"""
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import WorkflowDefinition, StepDefinition
from ..domain.enums import DefinitionStatus, StepType
from ..domain.errors import (
    AlreadyExistsError, DefinitionInUseError, DefinitionNotFoundError,
    DefinitionValidationError, InvalidTransitionError, ValidationError
)
from ..engine.state_machine import DEFINITION_TRANSITIONS
from ..repositories.base import WorkflowStore
from ..utils.idgen import generate_definition_id
from ..utils.time import Clock, SystemClock
from ..utils.logger import get_logger

logger = get_logger(__name__)

StepInput = Union[StepDefinition, Dict[str, Any]]


class DefinitionService:
    """
    Service for workflow definition operations

    Versions for a name are exactly 1..k: a new version is always
    latest + 1 and the store rejects a duplicate (name, version).
    """

    def __init__(self, store: WorkflowStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    # =========================================================================
    # Creation & editing
    # =========================================================================

    def create_definition(
        self,
        name: str,
        steps: Iterable[StepInput],
        description: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> WorkflowDefinition:
        """Create version 1 of a new workflow (draft)"""
        if self.store.get_latest_version_number(name) > 0:
            raise AlreadyExistsError(
                f"Workflow '{name}' already exists; create a new version instead",
                details={"name": name}
            )
        return self._create_version(name, 1, self._coerce_steps(steps), description, created_by)

    def create_new_version(
        self,
        name: str,
        steps: Optional[Iterable[StepInput]] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> WorkflowDefinition:
        """
        Create the next version of an existing workflow (draft)

        Without `steps` the latest version's steps are copied.
        """
        with self.store.transaction():
            latest_number = self.store.get_latest_version_number(name)
            if latest_number == 0:
                raise DefinitionNotFoundError(f"Workflow '{name}' not found", details={"name": name})

            latest = self.store.get_definition_by_name_version(name, latest_number)
            new_steps = self._coerce_steps(steps) if steps is not None else list(latest.steps)
            return self._create_version(
                name,
                latest_number + 1,
                new_steps,
                description if description is not None else latest.description,
                created_by
            )

    def update_draft(
        self,
        definition_id: str,
        steps: Optional[Iterable[StepInput]] = None,
        description: Optional[str] = None
    ) -> WorkflowDefinition:
        """Replace the steps or description of a draft nobody references yet"""
        # The reference check and the write share one transaction so a
        # concurrent start cannot slip in between them
        with self.store.transaction():
            definition = self.store.get_definition_or_raise(definition_id)
            if definition.status != DefinitionStatus.DRAFT:
                raise InvalidTransitionError(
                    f"Only draft definitions can be edited, {definition.name} v{definition.version} "
                    f"is {definition.status.value}",
                    details={"definition_id": definition_id, "status": definition.status.value}
                )
            self._ensure_unreferenced(definition)

            updates: Dict[str, Any] = {}
            if steps is not None:
                updates["steps"] = [s.model_dump() for s in self._coerce_steps(steps)]
            if description is not None:
                updates["description"] = description
            if not updates:
                return definition

            return self.store.update_definition(definition_id, updates, expected_revision=definition.revision)

    def delete_definition(self, definition_id: str) -> bool:
        """Delete a definition (its steps go with it); refused while instances reference it"""
        with self.store.transaction():
            definition = self.store.get_definition_or_raise(definition_id)
            self._ensure_unreferenced(definition)
            deleted = self.store.delete_definition(definition_id)
        logger.info(
            f"Deleted definition {definition.name} v{definition.version}",
            extra={"definition_id": definition_id}
        )
        return deleted

    def _create_version(
        self,
        name: str,
        version: int,
        steps: List[StepDefinition],
        description: Optional[str],
        created_by: Optional[str]
    ) -> WorkflowDefinition:
        now = self.clock.now()
        definition = WorkflowDefinition(
            definition_id=generate_definition_id(),
            name=name,
            version=version,
            description=description,
            status=DefinitionStatus.DRAFT,
            steps=steps,
            created_by=created_by,
            created_at=now,
            updated_at=now
        )
        created = self.store.create_definition(definition)
        logger.info(
            f"Created definition {name} v{version}",
            extra={"definition_id": created.definition_id}
        )
        return created

    def _coerce_steps(self, steps: Iterable[StepInput]) -> List[StepDefinition]:
        coerced = []
        for i, step in enumerate(steps):
            if isinstance(step, StepDefinition):
                coerced.append(step)
                continue
            try:
                coerced.append(StepDefinition.model_validate(step))
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid step definition at steps[{i}]",
                    details={"errors": [
                        {**err, "loc": ("steps", i, *err["loc"])}
                        for err in e.errors(include_url=False, include_context=False)
                    ]}
                )
        return coerced

    def _ensure_unreferenced(self, definition: WorkflowDefinition) -> None:
        count = self.store.count_instances_for_definition(definition.definition_id)
        if count:
            raise DefinitionInUseError(
                f"Definition {definition.name} v{definition.version} is referenced by {count} instances",
                details={"definition_id": definition.definition_id, "instance_count": count}
            )

    # =========================================================================
    # Status lifecycle
    # =========================================================================

    def activate(self, definition_id: str) -> WorkflowDefinition:
        """
        Make a definition startable

        Raises:
            DefinitionValidationError: The step graph is not well-formed
        """
        definition = self.store.get_definition_or_raise(definition_id)
        validation = self.validate_definition(definition)
        if not validation["is_valid"]:
            raise DefinitionValidationError(
                f"Definition {definition.name} v{definition.version} failed validation",
                details={"errors": validation["errors"]}
            )
        for warning in validation["warnings"]:
            logger.warning(
                f"Activating {definition.name} v{definition.version}: {warning['message']}",
                extra={"definition_id": definition_id}
            )
        return self._set_status(definition, DefinitionStatus.ACTIVE)

    def deactivate(self, definition_id: str) -> WorkflowDefinition:
        """Stop new instances; running instances are unaffected"""
        return self._set_status(self.store.get_definition_or_raise(definition_id), DefinitionStatus.INACTIVE)

    def archive(self, definition_id: str) -> WorkflowDefinition:
        return self._set_status(self.store.get_definition_or_raise(definition_id), DefinitionStatus.ARCHIVED)

    def revert_to_draft(self, definition_id: str) -> WorkflowDefinition:
        return self._set_status(self.store.get_definition_or_raise(definition_id), DefinitionStatus.DRAFT)

    def _set_status(self, definition: WorkflowDefinition, target: DefinitionStatus) -> WorkflowDefinition:
        DEFINITION_TRANSITIONS.validate(definition.status, target, definition.definition_id)
        updated = self.store.update_definition(
            definition.definition_id,
            {"status": target.value},
            expected_revision=definition.revision
        )
        logger.info(
            f"Definition {definition.name} v{definition.version}: "
            f"{definition.status.value} -> {target.value}",
            extra={"definition_id": definition.definition_id, "status": target.value}
        )
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        return self.store.get_definition_or_raise(definition_id)

    def get_version(self, name: str, version: int) -> WorkflowDefinition:
        """Get a specific version of a workflow"""
        definition = self.store.get_definition_by_name_version(name, version)
        if not definition:
            raise DefinitionNotFoundError(
                f"Workflow '{name}' version {version} not found",
                details={"name": name, "version": version}
            )
        return definition

    def get_latest_version(self, name: str) -> WorkflowDefinition:
        """Highest version of a workflow, whatever its status"""
        latest_number = self.store.get_latest_version_number(name)
        if latest_number == 0:
            raise DefinitionNotFoundError(f"Workflow '{name}' not found", details={"name": name})
        return self.get_version(name, latest_number)

    def list_versions(self, name: str) -> List[WorkflowDefinition]:
        """All versions of a workflow, oldest first"""
        return self.store.list_definitions(name=name)

    def list_definitions(self, status: Optional[DefinitionStatus] = None) -> List[WorkflowDefinition]:
        return self.store.list_definitions(status=status)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a raw definition document (name, description, steps)"""
        try:
            steps = self._coerce_steps(payload.get("steps") or [])
        except ValidationError as e:
            return {
                "is_valid": False,
                "errors": [
                    {"type": "INVALID_STEP", "message": err["msg"], "path": ".".join(str(p) for p in err["loc"])}
                    for err in e.details["errors"]
                ],
                "warnings": []
            }
        now = self.clock.now()
        definition = WorkflowDefinition(
            definition_id="unsaved",
            name=payload.get("name") or "unnamed",
            description=payload.get("description"),
            steps=steps,
            created_at=now,
            updated_at=now
        )
        return self.validate_definition(definition)

    def validate_definition(self, definition: WorkflowDefinition) -> Dict[str, Any]:
        """
        Validate the step graph of a definition

        Returns:
            {"is_valid": bool, "errors": [...], "warnings": [...]}
        """
        errors: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []

        if not definition.steps:
            errors.append({
                "type": "EMPTY_STEPS",
                "message": "Workflow must have at least one step",
                "path": "steps"
            })
            return {"is_valid": False, "errors": errors, "warnings": warnings}

        step_names: Set[str] = set()
        for i, step in enumerate(definition.steps):
            if step.name in step_names:
                errors.append({
                    "type": "DUPLICATE_STEP",
                    "message": f"Duplicate step name: {step.name}",
                    "path": f"steps[{i}].name"
                })
            step_names.add(step.name)

        for i, step in enumerate(definition.steps):
            seen = set()
            for j, successor in enumerate(step.successors):
                path = f"steps[{i}].successors[{j}]"
                if successor.step not in step_names:
                    errors.append({
                        "type": "UNKNOWN_SUCCESSOR",
                        "message": f"Step '{step.name}' references unknown step '{successor.step}'",
                        "path": path
                    })
                key = (successor.step, successor.on_failure)
                if key in seen:
                    errors.append({
                        "type": "DUPLICATE_SUCCESSOR",
                        "message": f"Step '{step.name}' lists '{successor.step}' more than once",
                        "path": path
                    })
                seen.add(key)

            errors.extend(self._validate_step_configuration(i, step))
            warnings.extend(self._step_configuration_warnings(i, step))

        for cycle in self._find_unconditioned_cycles(definition):
            errors.append({
                "type": "UNCONDITIONED_CYCLE",
                "message": f"Steps {' -> '.join(cycle)} form a loop with no condition to exit it",
                "path": "steps"
            })

        first = min(definition.steps, key=lambda s: (s.order, s.name))
        reachable = self._find_reachable_steps(first.name, definition)
        for i, step in enumerate(definition.steps):
            if step.name not in reachable:
                warnings.append({
                    "type": "UNREACHABLE_STEP",
                    "message": f"Step '{step.name}' is not reachable from '{first.name}'",
                    "path": f"steps[{i}]"
                })

        if not any(not step.normal_successors for step in definition.steps):
            warnings.append({
                "type": "NO_TERMINAL_STEP",
                "message": "No step ends the workflow; instances can never complete",
                "path": "steps"
            })

        return {
            "is_valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings
        }

    def _validate_step_configuration(self, index: int, step: StepDefinition) -> List[Dict[str, Any]]:
        errors = []
        configuration = step.configuration
        if step.step_type == StepType.TIMER:
            if configuration.get("delay_seconds") is None and not configuration.get("fire_at"):
                errors.append({
                    "type": "TIMER_WITHOUT_SCHEDULE",
                    "message": f"Timer step '{step.name}' needs delay_seconds or fire_at",
                    "path": f"steps[{index}].configuration"
                })
        if step.failure_successors and step.step_type == StepType.GATEWAY:
            errors.append({
                "type": "FAILURE_PATH_UNSUPPORTED",
                "message": f"Gateway step '{step.name}' never fails, so it cannot have failure successors",
                "path": f"steps[{index}].successors"
            })
        return errors

    def _step_configuration_warnings(self, index: int, step: StepDefinition) -> List[Dict[str, Any]]:
        warnings = []
        configuration = step.configuration
        if step.step_type == StepType.HUMAN_TASK and not (
            configuration.get("assignee") or configuration.get("role") or configuration.get("assignee_field")
        ):
            warnings.append({
                "type": "NO_ASSIGNEE",
                "message": f"Human task '{step.name}' has no assignee, role or assignee_field",
                "path": f"steps[{index}].configuration"
            })
        if step.step_type == StepType.SERVICE_CALL and not configuration.get("url") \
                and not configuration.get("external"):
            warnings.append({
                "type": "NO_URL",
                "message": f"Service call '{step.name}' has no url configured",
                "path": f"steps[{index}].configuration"
            })
        return warnings

    def _find_unconditioned_cycles(self, definition: WorkflowDefinition) -> List[List[str]]:
        """Cycles made only of unconditioned normal successor edges"""
        graph = {
            step.name: [s.step for s in step.normal_successors if s.condition is None]
            for step in definition.steps
        }
        cycles: List[List[str]] = []
        state: Dict[str, int] = {}  # 1 = on stack, 2 = done
        stack: List[str] = []

        def visit(node: str) -> None:
            state[node] = 1
            stack.append(node)
            for target in graph.get(node, []):
                if target not in graph:
                    continue
                if state.get(target) == 1:
                    cycles.append(stack[stack.index(target):] + [target])
                elif target not in state:
                    visit(target)
            stack.pop()
            state[node] = 2

        for name in graph:
            if name not in state:
                visit(name)
        return cycles

    def _find_reachable_steps(self, start_step: str, definition: WorkflowDefinition) -> Set[str]:
        """Find all steps reachable from start, including error paths"""
        reachable = {start_step}
        to_visit = [start_step]

        while to_visit:
            current = definition.get_step(to_visit.pop())
            if current is None:
                continue
            for successor in current.successors:
                if successor.step not in reachable:
                    reachable.add(successor.step)
                    to_visit.append(successor.step)

        return reachable
