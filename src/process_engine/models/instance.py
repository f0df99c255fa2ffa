"""
Workflow instance, work token and execution log models
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


class InstanceStatus(Enum):
    """Workflow instance status"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED)


class BranchState(Enum):
    """Position state of a single branch"""
    ACTIVE = "active"
    WAITING = "waiting"
    JOINED = "joined"


class TokenStatus(Enum):
    """Work token status"""
    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class LogKind(Enum):
    """Execution log entry kinds"""
    TRANSITION = "transition"
    TASK_CREATED = "task-created"
    TASK_COMPLETED = "task-completed"
    ERROR = "error"


def _new_id() -> str:
    return str(uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Branch:
    """One active position in the graph"""
    node_id: str
    id: str = field(default_factory=_new_id)
    state: BranchState = BranchState.ACTIVE
    token_id: Optional[str] = None  # set while the branch owns a task token
    fork_id: Optional[str] = None  # innermost open fork this branch belongs to

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "state": self.state.value,
            "token_id": self.token_id,
            "fork_id": self.fork_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Branch":
        return cls(
            id=data["id"],
            node_id=data["node_id"],
            state=BranchState(data.get("state", "active")),
            token_id=data.get("token_id"),
            fork_id=data.get("fork_id"),
        )


@dataclass
class ForkRecord:
    """Open parallel split; the join proceeds once all its branches arrive"""
    gateway_id: str
    parent_branch_id: str
    branch_ids: List[str] = field(default_factory=list)
    parent_fork_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gateway_id": self.gateway_id,
            "parent_branch_id": self.parent_branch_id,
            "branch_ids": list(self.branch_ids),
            "parent_fork_id": self.parent_fork_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForkRecord":
        return cls(
            id=data["id"],
            gateway_id=data["gateway_id"],
            parent_branch_id=data["parent_branch_id"],
            branch_ids=list(data.get("branch_ids", [])),
            parent_fork_id=data.get("parent_fork_id"),
        )


@dataclass
class WorkflowInstance:
    """Mutable execution record of one workflow run"""
    definition_id: str
    definition_version: int
    id: str = field(default_factory=_new_id)
    status: InstanceStatus = InstanceStatus.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    branches: List[Branch] = field(default_factory=list)
    forks: Dict[str, ForkRecord] = field(default_factory=dict)
    revision: int = 0
    cancel_requested: bool = False
    outcome: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def active_nodes(self) -> List[str]:
        return [branch.node_id for branch in self.branches]

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        for branch in self.branches:
            if branch.id == branch_id:
                return branch
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "definition_version": self.definition_version,
            "status": self.status.value,
            "context": self.context,
            "branches": [branch.to_dict() for branch in self.branches],
            "forks": [fork.to_dict() for fork in self.forks.values()],
            "revision": self.revision,
            "cancel_requested": self.cancel_requested,
            "outcome": self.outcome,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        forks = [ForkRecord.from_dict(item) for item in data.get("forks", [])]
        return cls(
            id=data["id"],
            definition_id=data["definition_id"],
            definition_version=data["definition_version"],
            status=InstanceStatus(data["status"]),
            context=data.get("context") or {},
            branches=[Branch.from_dict(item) for item in data.get("branches", [])],
            forks={fork.id: fork for fork in forks},
            revision=data.get("revision", 0),
            cancel_requested=data.get("cancel_requested", False),
            outcome=data.get("outcome"),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or datetime.utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or datetime.utcnow(),
        )


@dataclass
class WorkToken:
    """Pending human work for one task node of one instance"""
    instance_id: str
    node_id: str
    id: str = field(default_factory=_new_id)
    branch_id: Optional[str] = None
    assignee: Optional[str] = None
    assigned_role: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    status: TokenStatus = TokenStatus.OPEN
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def complete(self, result: Dict[str, Any], actor: Optional[str] = None):
        self.status = TokenStatus.COMPLETED
        self.result = dict(result)
        self.completed_at = datetime.utcnow()
        self.completed_by = actor

    def cancel(self):
        self.status = TokenStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "branch_id": self.branch_id,
            "assignee": self.assignee,
            "assigned_role": self.assigned_role,
            "payload": self.payload,
            "status": self.status.value,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "due_at": _iso(self.due_at),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkToken":
        return cls(
            id=data["id"],
            instance_id=data["instance_id"],
            node_id=data["node_id"],
            branch_id=data.get("branch_id"),
            assignee=data.get("assignee"),
            assigned_role=data.get("assigned_role"),
            payload=data.get("payload") or {},
            status=TokenStatus(data.get("status", "open")),
            result=data.get("result"),
            created_at=_parse_dt(data.get("created_at")) or datetime.utcnow(),
            due_at=_parse_dt(data.get("due_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            completed_by=data.get("completed_by"),
        )


@dataclass(frozen=True)
class LogEntry:
    """Immutable audit record"""
    instance_id: str
    kind: LogKind
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    node_id: Optional[str] = None
    token_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "instance_id": self.instance_id,
            "kind": self.kind.value,
            "node_id": self.node_id,
            "token_id": self.token_id,
            "details": self.details,
        }


@dataclass(frozen=True)
class ContextChange:
    """Context keys written by one logged step"""
    timestamp: datetime
    kind: LogKind
    changes: Dict[str, Any]
    node_id: Optional[str] = None
    token_id: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "ContextChange":
        return cls(
            timestamp=entry.timestamp,
            kind=entry.kind,
            changes=dict(entry.details.get("context") or {}),
            node_id=entry.node_id,
            token_id=entry.token_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "kind": self.kind.value,
            "node_id": self.node_id,
            "token_id": self.token_id,
            "changes": self.changes,
        }


@dataclass
class ExecutionOutcome:
    """Result of one executor call"""
    instance: WorkflowInstance
    tokens_created: List[WorkToken] = field(default_factory=list)
    steps: int = 0

    @property
    def status(self) -> InstanceStatus:
        return self.instance.status

    @property
    def active_nodes(self) -> List[str]:
        return self.instance.active_nodes

    @property
    def suspended(self) -> bool:
        return self.instance.status == InstanceStatus.WAITING
