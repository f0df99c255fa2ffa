"""
SQLAlchemy table models
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, ForeignKey,
    CheckConstraint, Index, JSON, PrimaryKeyConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class WorkflowDefinitionRecord(Base):
    """Stored definition version"""
    __tablename__ = 'workflow_definitions'

    id = Column(String(255), nullable=False)
    version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False, default="")
    description = Column(Text)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        PrimaryKeyConstraint('id', 'version', name='pk_workflow_definitions'),
        CheckConstraint('version > 0', name='check_definition_version'),
    )


class WorkflowInstanceRecord(Base):
    """Workflow instance row; revision guards concurrent saves"""
    __tablename__ = 'workflow_instances'

    id = Column(String(36), primary_key=True)
    definition_id = Column(String(255), nullable=False)
    definition_version = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    branches = Column(JSON, nullable=False, default=list)
    forks = Column(JSON, nullable=False, default=list)
    revision = Column(Integer, nullable=False, default=0)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(20))
    error = Column(JSON)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'waiting', 'completed', 'failed', 'cancelled')",
            name='check_instance_status'
        ),
        Index('idx_workflow_instances_definition', 'definition_id', 'definition_version'),
        Index('idx_workflow_instances_status', 'status'),
    )


class WorkTokenRecord(Base):
    """Work token row"""
    __tablename__ = 'work_tokens'

    id = Column(String(36), primary_key=True)
    instance_id = Column(String(36), ForeignKey('workflow_instances.id', ondelete='CASCADE'), nullable=False)
    node_id = Column(String(255), nullable=False)
    branch_id = Column(String(36))
    assignee = Column(String(255))
    assigned_role = Column(String(255))
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False)
    result = Column(JSON)
    created_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime)
    completed_at = Column(DateTime)
    completed_by = Column(String(255))

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'completed', 'expired', 'cancelled')",
            name='check_token_status'
        ),
        Index('idx_work_tokens_instance', 'instance_id'),
        Index('idx_work_tokens_assignee_status', 'assignee', 'status'),
    )


class ExecutionLogRecord(Base):
    """Append-only execution log row"""
    __tablename__ = 'execution_log'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True)
    instance_id = Column(String(36), nullable=False)
    kind = Column(String(20), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    node_id = Column(String(255))
    token_id = Column(String(36))
    details = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('transition', 'task-created', 'task-completed', 'error')",
            name='check_log_kind'
        ),
        Index('idx_execution_log_instance', 'instance_id', 'seq'),
    )
