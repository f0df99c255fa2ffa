"""Storage interfaces and implementations"""

from .repository import (
    WorkflowStore,
    UnitOfWork,
    InMemoryWorkflowStore,
    InMemoryUnitOfWork
)

__all__ = [
    "WorkflowStore",
    "UnitOfWork",
    "InMemoryWorkflowStore",
    "InMemoryUnitOfWork"
]
