"""
Process engine - workflow execution core
"""

__version__ = "0.1.0"

from .core import (
    ContextManager, WorkflowExecutor, WorkflowParser, WorkflowService, WorkTokenCreator, ExecutionLogger
)
from .models import WorkflowDefinition, WorkflowInstance, WorkToken, LogEntry, InstanceStatus
from .storage import InMemoryWorkflowStore

__all__ = [
    "ContextManager",
    "WorkflowExecutor",
    "WorkflowParser",
    "WorkflowService",
    "WorkTokenCreator",
    "ExecutionLogger",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkToken",
    "LogEntry",
    "InstanceStatus",
    "InMemoryWorkflowStore"
]
