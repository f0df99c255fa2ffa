"""
SQLAlchemy store implementation
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..core.parser import WorkflowParser
from ..exceptions import ConcurrencyConflictError, DefinitionIntegrityError, InstanceNotFoundError
from ..models.definition import WorkflowDefinition
from ..models.instance import (
    Branch, ForkRecord, InstanceStatus, LogEntry, LogKind, TokenStatus, WorkflowInstance, WorkToken
)
from .repository import UnitOfWork, WorkflowStore
from .sqlalchemy_models import (
    Base,
    ExecutionLogRecord,
    WorkflowDefinitionRecord,
    WorkflowInstanceRecord,
    WorkTokenRecord,
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """Async engine and session factory"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """Open the engine and create tables"""
        engine_kwargs: Dict[str, Any] = {"echo": self.echo, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=20, max_overflow=10)
        self.engine = create_async_engine(self.database_url, **engine_kwargs)

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """Session that commits on success and rolls back on error"""
        if self.async_session_maker is None:
            raise RuntimeError("DatabaseManager.initialize() has not been called")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()


def _instance_values(instance: WorkflowInstance) -> Dict[str, Any]:
    return {
        "definition_id": instance.definition_id,
        "definition_version": instance.definition_version,
        "status": instance.status.value,
        "context": instance.context,
        "branches": [branch.to_dict() for branch in instance.branches],
        "forks": [fork.to_dict() for fork in instance.forks.values()],
        "cancel_requested": instance.cancel_requested,
        "outcome": instance.outcome,
        "error": instance.error,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
    }


def _token_values(token: WorkToken) -> Dict[str, Any]:
    return {
        "instance_id": token.instance_id,
        "node_id": token.node_id,
        "branch_id": token.branch_id,
        "assignee": token.assignee,
        "assigned_role": token.assigned_role,
        "payload": token.payload,
        "status": token.status.value,
        "result": token.result,
        "created_at": token.created_at,
        "due_at": token.due_at,
        "completed_at": token.completed_at,
        "completed_by": token.completed_by,
    }


def _record_to_instance(record: WorkflowInstanceRecord) -> WorkflowInstance:
    forks = [ForkRecord.from_dict(item) for item in record.forks or []]
    return WorkflowInstance(
        id=record.id,
        definition_id=record.definition_id,
        definition_version=record.definition_version,
        status=InstanceStatus(record.status),
        context=dict(record.context or {}),
        branches=[Branch.from_dict(item) for item in record.branches or []],
        forks={fork.id: fork for fork in forks},
        revision=record.revision,
        cancel_requested=record.cancel_requested,
        outcome=record.outcome,
        error=record.error,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _record_to_token(record: WorkTokenRecord) -> WorkToken:
    return WorkToken(
        id=record.id,
        instance_id=record.instance_id,
        node_id=record.node_id,
        branch_id=record.branch_id,
        assignee=record.assignee,
        assigned_role=record.assigned_role,
        payload=dict(record.payload or {}),
        status=TokenStatus(record.status),
        result=record.result,
        created_at=record.created_at,
        due_at=record.due_at,
        completed_at=record.completed_at,
        completed_by=record.completed_by,
    )


def _record_to_entry(record: ExecutionLogRecord) -> LogEntry:
    return LogEntry(
        id=record.id,
        instance_id=record.instance_id,
        kind=LogKind(record.kind),
        timestamp=record.timestamp,
        node_id=record.node_id,
        token_id=record.token_id,
        details=dict(record.details or {}),
    )


class SQLAlchemyUnitOfWork(UnitOfWork):
    """Writes into one session; DatabaseManager.get_session commits or rolls back"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save_instance(self, instance: WorkflowInstance, expected_revision: int) -> WorkflowInstance:
        instance.updated_at = datetime.utcnow()
        result = await self.session.execute(
            update(WorkflowInstanceRecord)
            .where(
                WorkflowInstanceRecord.id == instance.id,
                WorkflowInstanceRecord.revision == expected_revision
            )
            .values(revision=expected_revision + 1, **_instance_values(instance))
        )
        if result.rowcount == 0:
            current = await self.session.scalar(
                select(WorkflowInstanceRecord.revision).where(WorkflowInstanceRecord.id == instance.id)
            )
            if current is None:
                raise InstanceNotFoundError(instance.id)
            raise ConcurrencyConflictError(instance.id, expected_revision, current)

        instance.revision = expected_revision + 1
        return instance

    async def create_token(self, token: WorkToken):
        self.session.add(WorkTokenRecord(id=token.id, **_token_values(token)))

    async def update_token(self, token: WorkToken):
        result = await self.session.execute(
            update(WorkTokenRecord)
            .where(WorkTokenRecord.id == token.id)
            .values(**_token_values(token))
        )
        if result.rowcount == 0:
            raise DefinitionIntegrityError(f"Cannot update unknown token {token.id}")

    async def append_log(self, entry: LogEntry):
        self.session.add(ExecutionLogRecord(
            id=entry.id,
            instance_id=entry.instance_id,
            kind=entry.kind.value,
            timestamp=entry.timestamp,
            node_id=entry.node_id,
            token_id=entry.token_id,
            details=entry.details,
        ))


class SQLAlchemyWorkflowStore(WorkflowStore):
    """Relational store backed by an async SQLAlchemy engine"""

    def __init__(self, db_manager: DatabaseManager, parser: WorkflowParser = None):
        self.db = db_manager
        self.parser = parser or WorkflowParser()

    async def initialize(self):
        if self.db.engine is None:
            await self.db.initialize()

    async def close(self):
        await self.db.close()

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        try:
            async with self.db.get_session() as session:
                session.add(WorkflowDefinitionRecord(
                    id=definition.id,
                    version=definition.version,
                    name=definition.name,
                    description=definition.description,
                    document=definition.to_dict(),
                ))
        except IntegrityError as e:
            raise DefinitionIntegrityError(
                f"Definition {definition.id} version {definition.version} already exists"
            ) from e
        return definition

    async def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        async with self.db.get_session() as session:
            query = select(WorkflowDefinitionRecord).where(WorkflowDefinitionRecord.id == definition_id)
            if version is not None:
                query = query.where(WorkflowDefinitionRecord.version == version)
            else:
                query = query.order_by(WorkflowDefinitionRecord.version.desc()).limit(1)

            record = (await session.execute(query)).scalar_one_or_none()
            if record is None:
                return None
            return self.parser.parse_dict(record.document)

    async def list_definitions(self) -> List[WorkflowDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowDefinitionRecord).order_by(
                    WorkflowDefinitionRecord.id, WorkflowDefinitionRecord.version
                )
            )
            latest: Dict[str, Dict[str, Any]] = {}
            for record in result.scalars().all():
                latest[record.id] = record.document
        return [self.parser.parse_dict(document) for document in latest.values()]

    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        try:
            async with self.db.get_session() as session:
                session.add(WorkflowInstanceRecord(
                    id=instance.id, revision=instance.revision, **_instance_values(instance)
                ))
        except IntegrityError as e:
            raise ConcurrencyConflictError(instance.id, instance.revision) from e
        return instance

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowInstanceRecord, instance_id)
            return _record_to_instance(record) if record else None

    async def get_token(self, token_id: str) -> Optional[WorkToken]:
        async with self.db.get_session() as session:
            record = await session.get(WorkTokenRecord, token_id)
            return _record_to_token(record) if record else None

    async def list_tokens(self, instance_id: str, status: Optional[TokenStatus] = None) -> List[WorkToken]:
        async with self.db.get_session() as session:
            query = select(WorkTokenRecord).where(WorkTokenRecord.instance_id == instance_id)
            if status is not None:
                query = query.where(WorkTokenRecord.status == status.value)
            query = query.order_by(WorkTokenRecord.created_at)
            result = await session.execute(query)
            return [_record_to_token(record) for record in result.scalars().all()]

    async def list_log(self, instance_id: str) -> List[LogEntry]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLogRecord)
                .where(ExecutionLogRecord.instance_id == instance_id)
                .order_by(ExecutionLogRecord.seq)
            )
            return [_record_to_entry(record) for record in result.scalars().all()]

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SQLAlchemyUnitOfWork]:
        async with self.db.get_session() as session:
            yield SQLAlchemyUnitOfWork(session)
