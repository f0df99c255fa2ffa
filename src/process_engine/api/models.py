"""
API request and response models
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InstanceStatusEnum(str, Enum):
    """Instance status (API)"""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TokenStatusEnum(str, Enum):
    """Work token status (API)"""
    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# definitions

class DefinitionSummary(BaseModel):
    """Registered definition"""
    id: str = Field(..., description="Definition id")
    version: int = Field(..., description="Definition version")
    name: str = Field(..., description="Display name")
    description: Optional[str] = Field(None, description="Description")
    node_count: int = Field(..., description="Number of nodes")
    edge_count: int = Field(..., description="Number of edges")


class DefinitionDetail(DefinitionSummary):
    """Definition with its graph"""
    document: Dict[str, Any] = Field(..., description="Definition document")


# instances

class StartInstanceRequest(BaseModel):
    """Start a new instance"""
    definition_id: str = Field(..., description="Definition id")
    version: Optional[int] = Field(None, ge=1, description="Definition version, latest when omitted")
    context: Dict[str, Any] = Field(default_factory=dict, description="Initial context")
    instance_id: Optional[str] = Field(None, description="Client supplied instance id")


class TaskCompleteRequest(BaseModel):
    """Complete an open work token"""
    token_id: str = Field(..., description="Work token id")
    result: Dict[str, Any] = Field(default_factory=dict, description="Collected fields")
    actor: Optional[str] = Field(None, description="User completing the task")


class BranchInfo(BaseModel):
    """Active position"""
    id: str
    node_id: str
    state: str
    token_id: Optional[str] = None
    fork_id: Optional[str] = None


class InstanceResponse(BaseModel):
    """Instance state"""
    id: str = Field(..., description="Instance id")
    definition_id: str = Field(..., description="Definition id")
    definition_version: int = Field(..., description="Definition version")
    status: InstanceStatusEnum = Field(..., description="Instance status")
    context: Dict[str, Any] = Field(default_factory=dict, description="Instance context")
    branches: List[BranchInfo] = Field(default_factory=list, description="Active positions")
    revision: int = Field(..., description="Optimistic concurrency revision")
    cancel_requested: bool = Field(False, description="Cancellation pending")
    outcome: Optional[str] = Field(None, description="End outcome")
    error: Optional[Dict[str, Any]] = Field(None, description="Failure details")
    created_at: datetime = Field(..., description="Created at")
    updated_at: datetime = Field(..., description="Updated at")

    model_config = ConfigDict(from_attributes=True)


class TokenResponse(BaseModel):
    """Work token"""
    id: str
    instance_id: str
    node_id: str
    branch_id: Optional[str] = None
    assignee: Optional[str] = None
    assigned_role: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: TokenStatusEnum
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


class LogEntryResponse(BaseModel):
    """Execution log entry"""
    id: str
    timestamp: datetime
    instance_id: str
    kind: str
    node_id: Optional[str] = None
    token_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ContextChangeResponse(BaseModel):
    """Context keys written by one step"""
    timestamp: datetime
    kind: str
    node_id: Optional[str] = None
    token_id: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResponse(BaseModel):
    """Result of execute, start or task-complete"""
    instance: InstanceResponse = Field(..., description="Instance after the call")
    tokens_created: List[TokenResponse] = Field(default_factory=list, description="Tokens emitted")
    steps: int = Field(0, description="Node steps taken")


# common

class ErrorResponse(BaseModel):
    """Error body"""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    retriable: bool = Field(False, description="Whether a retry can succeed")
    node_id: Optional[str] = Field(None, description="Node involved")
    request_id: Optional[str] = Field(None, description="Request id")


class HealthCheckResponse(BaseModel):
    """Health check"""
    status: str = Field(..., description="Health status", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="Version")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Timestamp")
