"""Step Graph Resolver - Decide which steps run next"""
from typing import Any, Dict, List, Optional

from ..domain.models import WorkflowDefinition, StepDefinition, SuccessorRef
from ..domain.errors import EvaluationError, ResolutionError, StepNotFoundError
from .condition_evaluator import ConditionEvaluator, Evaluator
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StepGraphResolver:
    """
    Resolve successors over the step graph of one definition version

    Given a step S and the instance context:
    1. Take S's successors in declared order
    2. Evaluate each condition (no condition = eligible)
    3. Return every eligible successor, keeping declared order

    The resolver never touches instance or execution state.
    """

    def __init__(self, evaluator: Optional[Evaluator] = None):
        self.condition_evaluator = evaluator or ConditionEvaluator()

    def first_step(self, definition: WorkflowDefinition) -> Optional[StepDefinition]:
        """Step with minimal order, ties broken by name; None for an empty definition"""
        if not definition.steps:
            return None
        return min(definition.steps, key=lambda s: (s.order, s.name))

    def get_step(self, definition: WorkflowDefinition, step_name: str) -> StepDefinition:
        """Get step by name or raise error"""
        step = definition.get_step(step_name)
        if step is None:
            raise StepNotFoundError(
                f"Step '{step_name}' not found in {definition.name} v{definition.version}",
                details={"definition_id": definition.definition_id, "step_name": step_name}
            )
        return step

    def next_steps(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        context: Dict[str, Any]
    ) -> List[StepDefinition]:
        """
        Resolve eligible normal successors of a step

        Args:
            definition: Definition version the step belongs to
            step: Step whose successors are resolved
            context: Instance context for condition evaluation

        Returns:
            Eligible successors in declared order

        Raises:
            ResolutionError: A condition could not be evaluated
        """
        return self._resolve(definition, step, step.normal_successors, context)

    def failure_steps(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        context: Dict[str, Any]
    ) -> List[StepDefinition]:
        """Resolve eligible error-path successors of a failed step"""
        return self._resolve(definition, step, step.failure_successors, context)

    def is_terminal(self, step: StepDefinition) -> bool:
        """A step is terminal when it declares no normal successors"""
        return not step.normal_successors

    def _resolve(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        successors: List[SuccessorRef],
        context: Dict[str, Any]
    ) -> List[StepDefinition]:
        eligible: List[StepDefinition] = []
        for successor in successors:
            target = definition.get_step(successor.step)
            if target is None:
                raise ResolutionError(
                    f"Step '{step.name}' references unknown successor '{successor.step}'",
                    details={"step_name": step.name, "successor": successor.step}
                )

            if successor.condition is not None:
                try:
                    matched = self.condition_evaluator.evaluate(successor.condition, context)
                except EvaluationError as e:
                    raise ResolutionError(
                        f"Condition on '{step.name}' -> '{successor.step}' failed: {e.message}",
                        details={"step_name": step.name, "successor": successor.step, **e.details}
                    )
                if not matched:
                    continue

            eligible.append(target)

        logger.debug(
            f"Resolved {step.name} -> {[s.name for s in eligible]}",
            extra={"definition_id": definition.definition_id, "step_name": step.name}
        )
        return eligible
