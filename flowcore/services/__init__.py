"""Service modules - Definitions, step handlers and assignee resolution"""
from .definition_service import DefinitionService
from .handler_registry import StepHandlerRegistry, ServiceCallHandler
from .assignee_resolver import StaticAssigneeResolver

__all__ = [
    "DefinitionService",
    "StepHandlerRegistry",
    "ServiceCallHandler",
    "StaticAssigneeResolver",
]
