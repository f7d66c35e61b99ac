"""Assignee Resolver - Pick the assignee of a human task"""
from typing import Any, Dict, Mapping, Optional

from ..domain.errors import AssigneeResolutionError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StaticAssigneeResolver:
    """
    Resolve assignees from step configuration

    Resolution order:
    1. `assignee`: fixed assignee
    2. `assignee_field`: dotted path into the instance context
    3. `role`: looked up in the role table given at construction
    """

    def __init__(self, roles: Optional[Mapping[str, str]] = None):
        self.roles = dict(roles or {})

    def resolve(self, configuration: Dict[str, Any], context: Dict[str, Any]) -> str:
        assignee = configuration.get("assignee")
        if assignee:
            return str(assignee)

        field = configuration.get("assignee_field")
        if field:
            value = self._lookup(field, context)
            if not value:
                raise AssigneeResolutionError(
                    f"Context field '{field}' holds no assignee",
                    details={"assignee_field": field}
                )
            return str(value)

        role = configuration.get("role")
        if role:
            if role not in self.roles:
                raise AssigneeResolutionError(
                    f"No assignee configured for role '{role}'",
                    details={"role": role}
                )
            logger.debug(f"Resolved role {role} to {self.roles[role]}")
            return self.roles[role]

        raise AssigneeResolutionError(
            "Human task has no assignee, assignee_field or role configured",
            details={"configuration_keys": sorted(configuration)}
        )

    def _lookup(self, field_path: str, context: Dict[str, Any]) -> Any:
        value: Any = context
        for part in field_path.split("."):
            if not isinstance(value, Mapping):
                return None
            value = value.get(part)
        return value
