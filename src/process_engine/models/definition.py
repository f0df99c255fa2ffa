"""
Workflow definition model
"""
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union


class NodeKind(Enum):
    """Node kinds"""
    START = "start"
    END = "end"
    TASK = "task"
    GATEWAY = "gateway"
    AUTOMATED_ACTION = "automated-action"


class GatewayKind(Enum):
    """Gateway routing modes"""
    EXCLUSIVE = "exclusive"
    PARALLEL = "parallel"


class EndOutcome(Enum):
    """Outcome recorded by an end node"""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class StartNode:
    """Entry point of the graph"""
    id: str
    name: Optional[str] = None
    kind: ClassVar[NodeKind] = NodeKind.START


@dataclass(frozen=True)
class EndNode:
    """Terminal node of a branch"""
    id: str
    name: Optional[str] = None
    outcome: EndOutcome = EndOutcome.SUCCESS
    kind: ClassVar[NodeKind] = NodeKind.END


@dataclass(frozen=True)
class TaskNode:
    """Human task; suspends the branch until its token is completed"""
    id: str
    name: Optional[str] = None
    assignee: Dict[str, Any] = field(default_factory=dict)  # {"user"|"role"|"expression": ...}
    fields: Tuple[str, ...] = ()
    input_mapping: Dict[str, str] = field(default_factory=dict)
    output_mapping: Dict[str, str] = field(default_factory=dict)
    due_in: Optional[int] = None  # seconds
    kind: ClassVar[NodeKind] = NodeKind.TASK


@dataclass(frozen=True)
class GatewayNode:
    """Routing node; parallel gateways with several incoming edges also join"""
    id: str
    name: Optional[str] = None
    gateway: GatewayKind = GatewayKind.EXCLUSIVE
    kind: ClassVar[NodeKind] = NodeKind.GATEWAY


@dataclass(frozen=True)
class AutomatedActionNode:
    """Runs a registered action synchronously"""
    id: str
    action: str = ""
    name: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    output_mapping: Dict[str, str] = field(default_factory=dict)
    kind: ClassVar[NodeKind] = NodeKind.AUTOMATED_ACTION


Node = Union[StartNode, EndNode, TaskNode, GatewayNode, AutomatedActionNode]


@dataclass(frozen=True)
class Edge:
    """Directed edge; guard is an expression over the instance context"""
    source: str
    target: str
    guard: Optional[str] = None
    default: bool = False
    name: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.source}->{self.target}"


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable, versioned workflow graph"""
    id: str
    version: int = 1
    name: str = ""
    description: Optional[str] = None
    nodes: Tuple[Node, ...] = ()
    edges: Tuple[Edge, ...] = ()
    _index: Dict[str, Node] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_index", {node.id: node for node in self.nodes})

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._index.get(node_id)

    def outgoing(self, node_id: str) -> List[Edge]:
        """Outgoing edges in declaration order"""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    @property
    def start_node(self) -> Optional[StartNode]:
        for node in self.nodes:
            if isinstance(node, StartNode):
                return node
        return None

    def is_join(self, node: Node) -> bool:
        return (
            isinstance(node, GatewayNode)
            and node.gateway == GatewayKind.PARALLEL
            and len(self.incoming(node.id)) > 1
        )

    def validate(self) -> List[str]:
        """Check graph invariants; returns a list of problems"""
        errors = []

        seen = set()
        for node in self.nodes:
            if not node.id:
                errors.append("Node without id")
            elif node.id in seen:
                errors.append(f"Duplicate node id: {node.id}")
            seen.add(node.id)

        starts = [node for node in self.nodes if isinstance(node, StartNode)]
        if len(starts) != 1:
            errors.append(f"Expected exactly one start node, found {len(starts)}")

        for edge in self.edges:
            if edge.source not in self._index:
                errors.append(f"Edge {edge.id} references unknown source node: {edge.source}")
            if edge.target not in self._index:
                errors.append(f"Edge {edge.id} references unknown target node: {edge.target}")

        for node in self.nodes:
            outgoing = self.outgoing(node.id)
            if isinstance(node, EndNode):
                if outgoing:
                    errors.append(f"End node {node.id} must not have outgoing edges")
                continue
            if not outgoing:
                errors.append(f"Node {node.id} ({node.kind.value}) has no outgoing edges")
            defaults = [edge for edge in outgoing if edge.default]
            if len(defaults) > 1:
                errors.append(f"Node {node.id} declares more than one default edge")
            if isinstance(node, AutomatedActionNode) and not node.action:
                errors.append(f"Automated action node {node.id} has no action")

        if len(starts) == 1:
            start = starts[0]
            if self.incoming(start.id):
                errors.append(f"Start node {start.id} must not have incoming edges")
            unreachable = set(self._index) - self._reachable_from(start.id)
            for node_id in sorted(unreachable):
                errors.append(f"Node {node_id} is not reachable from start")

        return errors

    def _reachable_from(self, node_id: str) -> set:
        visited = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target not in visited and edge.target in self._index:
                    visited.add(edge.target)
                    queue.append(edge.target)
        return visited

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in the document format accepted by the parser"""
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "nodes": [_node_to_dict(node) for node in self.nodes],
            "edges": [_edge_to_dict(edge) for edge in self.edges],
        }


def _node_to_dict(node: Node) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": node.id, "type": node.kind.value}
    if node.name:
        data["name"] = node.name
    if isinstance(node, EndNode):
        data["outcome"] = node.outcome.value
    elif isinstance(node, GatewayNode):
        data["gateway"] = node.gateway.value
    elif isinstance(node, TaskNode):
        data.update({
            "assignee": dict(node.assignee),
            "fields": list(node.fields),
            "input_mapping": dict(node.input_mapping),
            "output_mapping": dict(node.output_mapping),
        })
        if node.due_in is not None:
            data["due_in"] = node.due_in
    elif isinstance(node, AutomatedActionNode):
        data.update({
            "action": node.action,
            "params": dict(node.params),
            "output_mapping": dict(node.output_mapping),
        })
    return data


def _edge_to_dict(edge: Edge) -> Dict[str, Any]:
    data: Dict[str, Any] = {"from": edge.source, "to": edge.target}
    if edge.guard is not None:
        data["guard"] = edge.guard
    if edge.default:
        data["default"] = True
    if edge.name:
        data["name"] = edge.name
    return data
