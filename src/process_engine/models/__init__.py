"""Definition and instance models"""

from .definition import (
    WorkflowDefinition, Node, Edge, NodeKind, GatewayKind, EndOutcome,
    StartNode, EndNode, TaskNode, GatewayNode, AutomatedActionNode
)
from .instance import (
    WorkflowInstance, InstanceStatus, Branch, BranchState, ForkRecord,
    WorkToken, TokenStatus, LogEntry, LogKind, ContextChange, ExecutionOutcome
)

__all__ = [
    "WorkflowDefinition",
    "Node",
    "Edge",
    "NodeKind",
    "GatewayKind",
    "EndOutcome",
    "StartNode",
    "EndNode",
    "TaskNode",
    "GatewayNode",
    "AutomatedActionNode",
    "WorkflowInstance",
    "InstanceStatus",
    "Branch",
    "BranchState",
    "ForkRecord",
    "WorkToken",
    "TokenStatus",
    "LogEntry",
    "LogKind",
    "ContextChange",
    "ExecutionOutcome"
]
