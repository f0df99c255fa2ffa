"""
Persistence interfaces for definitions, instances, tokens and the execution log
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..exceptions import ConcurrencyConflictError, DefinitionIntegrityError, InstanceNotFoundError
from ..models.definition import WorkflowDefinition
from ..models.instance import LogEntry, TokenStatus, WorkflowInstance, WorkToken


class UnitOfWork(ABC):
    """Group of writes that commit together or not at all"""

    @abstractmethod
    async def save_instance(self, instance: WorkflowInstance, expected_revision: int) -> WorkflowInstance:
        """Compare-and-swap save; sets instance.revision to expected_revision + 1"""
        pass

    @abstractmethod
    async def create_token(self, token: WorkToken):
        pass

    @abstractmethod
    async def update_token(self, token: WorkToken):
        pass

    @abstractmethod
    async def append_log(self, entry: LogEntry):
        pass


class WorkflowStore(ABC):
    """Definition and instance store"""

    @abstractmethod
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a new definition version; (id, version) is immutable once saved"""
        pass

    @abstractmethod
    async def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """Get a definition version, latest when version is None"""
        pass

    @abstractmethod
    async def list_definitions(self) -> List[WorkflowDefinition]:
        """Latest version of every definition"""
        pass

    @abstractmethod
    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        pass

    @abstractmethod
    async def get_token(self, token_id: str) -> Optional[WorkToken]:
        pass

    @abstractmethod
    async def list_tokens(self, instance_id: str, status: Optional[TokenStatus] = None) -> List[WorkToken]:
        pass

    @abstractmethod
    async def list_log(self, instance_id: str) -> List[LogEntry]:
        """Log entries of an instance in append order"""
        pass

    @abstractmethod
    def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        """Async context manager yielding a UnitOfWork; commits on clean exit"""
        pass

    async def save_instance(self, instance: WorkflowInstance, expected_revision: int) -> WorkflowInstance:
        async with self.unit_of_work() as uow:
            await uow.save_instance(instance, expected_revision)
        return instance

    async def append_log(self, entry: LogEntry):
        async with self.unit_of_work() as uow:
            await uow.append_log(entry)

    async def create_token(self, token: WorkToken):
        async with self.unit_of_work() as uow:
            await uow.create_token(token)

    async def update_token(self, token: WorkToken):
        async with self.unit_of_work() as uow:
            await uow.update_token(token)

    async def initialize(self):
        pass

    async def close(self):
        pass


# In-memory implementation (tests, CLI)
class InMemoryUnitOfWork(UnitOfWork):
    """Stages writes and applies them at commit"""

    def __init__(self, store: "InMemoryWorkflowStore"):
        self.store = store
        self.instances: List[Tuple[WorkflowInstance, int]] = []
        self.new_tokens: List[WorkToken] = []
        self.updated_tokens: List[WorkToken] = []
        self.entries: List[LogEntry] = []

    async def save_instance(self, instance: WorkflowInstance, expected_revision: int) -> WorkflowInstance:
        instance.revision = expected_revision + 1
        instance.updated_at = datetime.utcnow()
        self.instances.append((copy.deepcopy(instance), expected_revision))
        return instance

    async def create_token(self, token: WorkToken):
        self.new_tokens.append(copy.deepcopy(token))

    async def update_token(self, token: WorkToken):
        self.updated_tokens.append(copy.deepcopy(token))

    async def append_log(self, entry: LogEntry):
        self.entries.append(entry)

    async def commit(self):
        async with self.store._lock:
            for instance, expected in self.instances:
                stored = self.store.instances.get(instance.id)
                if stored is None:
                    raise InstanceNotFoundError(instance.id)
                if stored.revision != expected:
                    raise ConcurrencyConflictError(instance.id, expected, stored.revision)
            for token in self.updated_tokens:
                if token.id not in self.store.tokens:
                    raise DefinitionIntegrityError(f"Cannot update unknown token {token.id}")

            for instance, _ in self.instances:
                self.store.instances[instance.id] = instance
            for token in self.new_tokens + self.updated_tokens:
                self.store.tokens[token.id] = token
            self.store.log.extend(self.entries)


class InMemoryWorkflowStore(WorkflowStore):
    """In-memory store; returns copies so callers never share state with it"""

    def __init__(self):
        self.definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self.instances: Dict[str, WorkflowInstance] = {}
        self.tokens: Dict[str, WorkToken] = {}
        self.log: List[LogEntry] = []
        self._lock = asyncio.Lock()

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        key = (definition.id, definition.version)
        if key in self.definitions:
            raise DefinitionIntegrityError(
                f"Definition {definition.id} version {definition.version} already exists"
            )
        self.definitions[key] = definition
        return definition

    async def get_definition(self, definition_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        if version is not None:
            return self.definitions.get((definition_id, version))
        versions = [v for (d, v) in self.definitions if d == definition_id]
        if not versions:
            return None
        return self.definitions[(definition_id, max(versions))]

    async def list_definitions(self) -> List[WorkflowDefinition]:
        latest: Dict[str, WorkflowDefinition] = {}
        for (definition_id, version), definition in sorted(self.definitions.items()):
            latest[definition_id] = definition
        return list(latest.values())

    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        if instance.id in self.instances:
            raise ConcurrencyConflictError(instance.id, instance.revision, self.instances[instance.id].revision)
        self.instances[instance.id] = copy.deepcopy(instance)
        return instance

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self.instances.get(instance_id)
        return copy.deepcopy(instance) if instance else None

    async def get_token(self, token_id: str) -> Optional[WorkToken]:
        token = self.tokens.get(token_id)
        return copy.deepcopy(token) if token else None

    async def list_tokens(self, instance_id: str, status: Optional[TokenStatus] = None) -> List[WorkToken]:
        tokens = [
            t for t in self.tokens.values()
            if t.instance_id == instance_id and (status is None or t.status == status)
        ]
        tokens.sort(key=lambda t: t.created_at)
        return copy.deepcopy(tokens)

    async def list_log(self, instance_id: str) -> List[LogEntry]:
        return [entry for entry in self.log if entry.instance_id == instance_id]

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryUnitOfWork]:
        uow = InMemoryUnitOfWork(self)
        yield uow
        await uow.commit()
