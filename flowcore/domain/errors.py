"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"


class DefinitionValidationError(ValidationError):
    """Workflow definition is not structurally well-formed"""
    error_code = "DEFINITION_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition not found"""
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class ExecutionNotFoundError(NotFoundError):
    """Step execution not found"""
    error_code = "EXECUTION_NOT_FOUND"


class AssignmentNotFoundError(NotFoundError):
    """Assignment not found"""
    error_code = "ASSIGNMENT_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Step is not part of the definition"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict or lock timeout"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


class InvalidTransitionError(ConflictError):
    """Requested status change is not in the transition table"""
    error_code = "INVALID_TRANSITION"


class DefinitionNotActiveError(ConflictError):
    """Instances can only be started from ACTIVE definitions"""
    error_code = "DEFINITION_NOT_ACTIVE"


class DefinitionInUseError(ConflictError):
    """Definition is referenced by instances"""
    error_code = "DEFINITION_IN_USE"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"


class EvaluationError(EngineError):
    """A condition could not be evaluated against the context"""
    error_code = "EVALUATION_ERROR"


class ResolutionError(EngineError):
    """Next steps could not be resolved"""
    error_code = "RESOLUTION_ERROR"


class HandlerError(EngineError):
    """Step handler failed or is not registered"""
    error_code = "HANDLER_ERROR"


class AssigneeResolutionError(EngineError):
    """Could not resolve the assignee of a human task"""
    error_code = "ASSIGNEE_RESOLUTION_ERROR"
