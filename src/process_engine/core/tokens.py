"""
Work token creation and assignee resolution
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from ..exceptions import AssignmentError, EvaluationError
from ..models.definition import TaskNode
from ..models.instance import WorkflowInstance, WorkToken
from .context import ContextManager


logger = logging.getLogger(__name__)


# role -> user id, or None when nobody holds the role
RoleDirectory = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class Assignment:
    """Resolved assignee of a token"""
    assignee: Optional[str] = None
    role: Optional[str] = None


class AssigneeResolver(ABC):
    """Strategy that picks who a task token is assigned to"""

    @abstractmethod
    def resolve(self, node: TaskNode, context: Mapping[str, Any]) -> Assignment:
        """Return the assignment or raise AssignmentError"""
        pass


class StaticAssignee(AssigneeResolver):
    """Fixed user id"""

    def __init__(self, user_id: str):
        self.user_id = user_id

    def resolve(self, node: TaskNode, context: Mapping[str, Any]) -> Assignment:
        if not self.user_id:
            raise AssignmentError(f"Task '{node.id}' has an empty static assignee", node_id=node.id)
        return Assignment(assignee=self.user_id)


class RoleAssignee(AssigneeResolver):
    """Assign to a role, optionally narrowed to a user through a role directory"""

    def __init__(self, role: str, directory: Optional[RoleDirectory] = None):
        self.role = role
        self.directory = directory

    def resolve(self, node: TaskNode, context: Mapping[str, Any]) -> Assignment:
        if not self.role:
            raise AssignmentError(f"Task '{node.id}' has an empty role", node_id=node.id)
        if self.directory is None:
            return Assignment(role=self.role)

        try:
            user_id = self.directory(self.role)
        except Exception as e:
            raise AssignmentError(
                f"Role directory failed for role '{self.role}' of task '{node.id}': {e!r}", node_id=node.id
            ) from e
        if not user_id:
            raise AssignmentError(f"No user holds role '{self.role}' for task '{node.id}'", node_id=node.id)
        return Assignment(assignee=user_id, role=self.role)


class ExpressionAssignee(AssigneeResolver):
    """Assignee derived from the instance context"""

    def __init__(self, expression: str, context_manager: ContextManager = None):
        self.expression = expression
        self.context_manager = context_manager or ContextManager()

    def resolve(self, node: TaskNode, context: Mapping[str, Any]) -> Assignment:
        try:
            value = self.context_manager.resolve(self.expression, context)
        except EvaluationError as e:
            raise AssignmentError(
                f"Assignee expression of task '{node.id}' failed: {e.message}", node_id=node.id
            ) from e
        if not isinstance(value, str) or not value:
            raise AssignmentError(
                f"Assignee expression '{self.expression}' of task '{node.id}' yielded {value!r}",
                node_id=node.id
            )
        return Assignment(assignee=value)


class WorkTokenCreator:
    """Builds work tokens for task nodes"""

    def __init__(
        self,
        context_manager: ContextManager = None,
        directory: Optional[RoleDirectory] = None,
        default_due_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.context_manager = context_manager or ContextManager()
        self.directory = directory
        self.default_due_seconds = default_due_seconds
        self.clock = clock

    def resolver_for(self, node: TaskNode) -> AssigneeResolver:
        """Build the resolver described by the node's assignee config"""
        config: Dict[str, Any] = dict(node.assignee or {})
        if "user" in config:
            return StaticAssignee(config["user"])
        if "role" in config:
            return RoleAssignee(config["role"], self.directory)
        if "expression" in config:
            return ExpressionAssignee(config["expression"], self.context_manager)
        raise AssignmentError(f"Task '{node.id}' has no assignee configured", node_id=node.id)

    def create_token(
        self,
        instance: WorkflowInstance,
        node: TaskNode,
        assignee_resolution: Optional[AssigneeResolver] = None,
        branch_id: Optional[str] = None
    ) -> WorkToken:
        """Create an open token for a task node; raises AssignmentError"""
        task_input = self.context_manager.extract(node.input_mapping, instance.context)
        resolver = assignee_resolution or self.resolver_for(node)
        assignment = resolver.resolve(node, self.context_manager.effective(instance.context, task_input))

        now = self.clock()
        due_in = node.due_in if node.due_in is not None else self.default_due_seconds
        payload = {
            "fields": list(node.fields),
            "input": task_input,
        }

        token = WorkToken(
            instance_id=instance.id,
            node_id=node.id,
            branch_id=branch_id,
            assignee=assignment.assignee,
            assigned_role=assignment.role,
            payload=payload,
            created_at=now,
            due_at=now + timedelta(seconds=due_in) if due_in is not None else None,
        )
        logger.debug(
            f"Created token {token.id} for task {node.id} "
            f"[assignee={token.assignee}, role={token.assigned_role}]"
        )
        return token
