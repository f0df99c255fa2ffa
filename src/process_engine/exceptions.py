"""
Process engine exceptions
"""
from typing import Optional


class WorkflowEngineError(Exception):
    """Base error for the process engine"""
    code = "engine_error"
    retriable = False

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message, "retriable": self.retriable}
        if self.node_id:
            data["node_id"] = self.node_id
        return data


class WorkflowParseError(WorkflowEngineError):
    """Definition document could not be read"""
    code = "parse_error"


class DefinitionIntegrityError(WorkflowEngineError):
    """Malformed graph or a reference to a missing node; fatal for the instance"""
    code = "definition_integrity"


class WorkflowValidationError(DefinitionIntegrityError):
    """Definition failed structural validation at load time"""
    code = "definition_invalid"

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class MaxStepsExceededError(DefinitionIntegrityError):
    """Automated segment did not suspend within the configured step limit"""
    code = "max_steps_exceeded"

    def __init__(self, limit: int, node_id: Optional[str] = None):
        self.limit = limit
        super().__init__(f"Execution did not settle within {limit} steps", node_id=node_id)


class DefinitionNotFoundError(WorkflowEngineError):
    """Definition does not exist"""
    code = "definition_not_found"

    def __init__(self, definition_id: str, version: Optional[int] = None):
        self.definition_id = definition_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow definition '{definition_id}'{suffix} not found")


class InstanceNotFoundError(WorkflowEngineError):
    """Instance does not exist"""
    code = "instance_not_found"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance '{instance_id}' not found")


class TokenNotFoundError(WorkflowEngineError):
    """Work token does not exist"""
    code = "token_not_found"

    def __init__(self, token_id: str):
        self.token_id = token_id
        super().__init__(f"Work token '{token_id}' not found")


class InvalidStateTransition(WorkflowEngineError):
    """Operation is not allowed in the current status"""
    code = "invalid_state_transition"

    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class EvaluationError(WorkflowEngineError):
    """Guard or expression could not be evaluated"""
    code = "evaluation_error"
    retriable = True


class UnresolvedVariableError(EvaluationError):
    """Expression references a name missing from the context"""
    code = "unresolved_variable"

    def __init__(self, variable: str, expression: Optional[str] = None):
        self.variable = variable
        self.expression = expression
        msg = f"Unresolved variable '{variable}'"
        if expression:
            msg += f" in expression '{expression}'"
        super().__init__(msg)


class NoMatchingTransitionError(EvaluationError):
    """No outgoing edge of a node was satisfied"""
    code = "no_matching_transition"

    def __init__(self, node_id: str):
        super().__init__(f"No outgoing transition of node '{node_id}' matched", node_id=node_id)


class AssignmentError(WorkflowEngineError):
    """Assignee for a work token could not be resolved"""
    code = "assignment_error"
    retriable = True


class ActionExecutionError(WorkflowEngineError):
    """Automated action raised or returned an unusable result"""
    code = "action_error"
    retriable = True

    def __init__(self, action: str, message: str, node_id: Optional[str] = None, cause: Exception = None):
        self.action = action
        self.cause = cause
        super().__init__(f"Action '{action}' failed: {message}", node_id=node_id)


class ConcurrencyConflictError(WorkflowEngineError):
    """Instance revision changed since it was loaded"""
    code = "concurrency_conflict"
    retriable = True

    def __init__(self, instance_id: str, expected_revision: int, actual_revision: Optional[int] = None):
        self.instance_id = instance_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        msg = f"Instance '{instance_id}' was modified concurrently (expected revision {expected_revision}"
        if actual_revision is not None:
            msg += f", found {actual_revision}"
        super().__init__(msg + ")")
