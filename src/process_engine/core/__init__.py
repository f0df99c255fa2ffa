"""Core process engine components"""

from .context import ContextManager
from .executor import WorkflowExecutor, TaskCompletion
from .logger import ExecutionLogger
from .parser import WorkflowParser
from .service import WorkflowService
from .tokens import (
    WorkTokenCreator, AssigneeResolver, StaticAssignee, RoleAssignee, ExpressionAssignee
)

__all__ = [
    "ContextManager",
    "WorkflowExecutor",
    "TaskCompletion",
    "ExecutionLogger",
    "WorkflowParser",
    "WorkflowService",
    "WorkTokenCreator",
    "AssigneeResolver",
    "StaticAssignee",
    "RoleAssignee",
    "ExpressionAssignee"
]
