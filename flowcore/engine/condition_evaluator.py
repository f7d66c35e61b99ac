"""Condition Evaluator - Safe evaluation of successor conditions"""
from typing import Any, Callable, Dict, Mapping, Protocol, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionOperator, ConditionLogic
from ..domain.errors import EvaluationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

Expression = Union[ConditionGroup, Mapping[str, Any]]

_MISSING = object()

# Operators that treat an absent context key as an empty value
_EMPTINESS_OPERATORS = (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY)


class Evaluator(Protocol):
    """Boolean evaluation of a condition expression against a context"""

    def evaluate(self, expression: Any, context: Dict[str, Any]) -> bool:
        ...


class ConditionEvaluator:
    """
    Evaluate successor conditions safely

    Uses a simple DSL - no eval() or exec(). Malformed expressions and
    missing context keys raise EvaluationError instead of evaluating to False.
    """

    def evaluate(
        self,
        expression: Expression,
        context: Dict[str, Any]
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            expression: ConditionGroup or its dict form
            context: Instance context with field values

        Returns:
            True if conditions are met

        Raises:
            EvaluationError: Expression is malformed or references a missing key
        """
        condition_group = self._coerce(expression)

        if not condition_group.conditions:
            return True  # No conditions = always true

        results = [self._evaluate_single(c, context) for c in condition_group.conditions]

        if condition_group.logic == ConditionLogic.OR:
            return any(results)
        return all(results)

    def _coerce(self, expression: Expression) -> ConditionGroup:
        if isinstance(expression, ConditionGroup):
            return expression
        if not isinstance(expression, Mapping):
            raise EvaluationError(
                f"Unsupported condition expression of type {type(expression).__name__}",
                details={"expression": repr(expression)}
            )
        try:
            return ConditionGroup.model_validate(dict(expression))
        except PydanticValidationError as e:
            raise EvaluationError(
                "Malformed condition expression",
                details={"errors": e.errors(include_url=False, include_context=False)}
            )

    def _evaluate_single(
        self,
        condition: Condition,
        context: Dict[str, Any]
    ) -> bool:
        """Evaluate a single condition"""
        field_value = self._get_field_value(condition.field, context)

        if field_value is _MISSING:
            if condition.operator in _EMPTINESS_OPERATORS:
                field_value = None
            else:
                raise EvaluationError(
                    f"Context key '{condition.field}' is missing",
                    details={"field": condition.field, "operator": condition.operator.value}
                )

        return self._compare(condition.field, field_value, condition.operator, condition.value)

    def _get_field_value(self, field_path: str, context: Dict[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "form_values.amount" -> context["form_values"]["amount"]
        """
        value: Any = context
        for part in field_path.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return _MISSING
            value = value[part]
        return value

    def _compare(
        self,
        field: str,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQUALS:
            return field_value == compare_value

        elif operator == ConditionOperator.NOT_EQUALS:
            return field_value != compare_value

        elif operator == ConditionOperator.GREATER_THAN:
            return self._compare_numeric(field, field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.LESS_THAN:
            return self._compare_numeric(field, field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.GREATER_THAN_OR_EQUALS:
            return self._compare_numeric(field, field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LESS_THAN_OR_EQUALS:
            return self._compare_numeric(field, field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            if field_value is None:
                return False
            if isinstance(field_value, (list, tuple, set)):
                return compare_value in field_value
            return str(compare_value) in str(field_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            if field_value is None:
                return True
            if isinstance(field_value, (list, tuple, set)):
                return compare_value not in field_value
            return str(compare_value) not in str(field_value)

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value in compare_value

        elif operator == ConditionOperator.NOT_IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value not in compare_value

        elif operator == ConditionOperator.IS_EMPTY:
            return field_value is None or field_value == "" or field_value == [] or field_value == {}

        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not (field_value is None or field_value == "" or field_value == [] or field_value == {})

        raise EvaluationError(f"Unsupported operator {operator}", details={"field": field})

    def _compare_numeric(
        self,
        field: str,
        field_value: Any,
        compare_value: Any,
        comparator: Callable[[float, float], bool]
    ) -> bool:
        """Compare numeric values"""
        try:
            return comparator(float(field_value), float(compare_value))
        except (ValueError, TypeError):
            raise EvaluationError(
                f"Cannot compare '{field}' numerically",
                details={"field": field, "value": repr(field_value), "compare_value": repr(compare_value)}
            )
