"""
Workflow service: entry points that load state, run the executor and publish events
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import EngineSettings
from ..exceptions import (
    DefinitionNotFoundError, InstanceNotFoundError, InvalidStateTransition,
    MaxStepsExceededError, TokenNotFoundError, WorkflowEngineError
)
from ..integrations.event_bus import EventBus
from ..models.definition import WorkflowDefinition
from ..models.instance import (
    ContextChange, ExecutionOutcome, InstanceStatus, LogEntry, TokenStatus, WorkflowInstance, WorkToken
)
from ..storage.repository import WorkflowStore
from .executor import TaskCompletion, WorkflowExecutor
from .parser import WorkflowParser
from .state_machine import is_terminal


logger = logging.getLogger(__name__)


class WorkflowService:
    """Execute and task-complete entry points over an injected store"""

    def __init__(
        self,
        store: WorkflowStore,
        executor: WorkflowExecutor = None,
        parser: WorkflowParser = None,
        event_bus: EventBus = None,
        settings: EngineSettings = None
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.executor = executor or WorkflowExecutor(
            store, max_steps_per_advance=self.settings.max_steps_per_advance
        )
        if self.settings.default_task_due_seconds is not None and executor is None:
            self.executor.token_creator.default_due_seconds = self.settings.default_task_due_seconds
        self.parser = parser or WorkflowParser(self.executor.context_manager)
        self.event_bus = event_bus or EventBus()

    # definitions

    async def register_definition(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowDefinition:
        """Parse, validate and store a definition version"""
        definition = self.parser.parse(source)
        await self.store.save_definition(definition)
        logger.info(f"Registered definition {definition.id} v{definition.version}")
        return definition

    async def load_definition(self, definition_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        definition = await self.store.get_definition(definition_id, version)
        if definition is None:
            raise DefinitionNotFoundError(definition_id, version)
        return definition

    async def list_definitions(self) -> List[WorkflowDefinition]:
        return await self.store.list_definitions()

    # instances

    async def load_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def load_token(self, token_id: str) -> WorkToken:
        token = await self.store.get_token(token_id)
        if token is None:
            raise TokenNotFoundError(token_id)
        return token

    async def start_instance(
        self,
        definition_id: str,
        context: Optional[Dict[str, Any]] = None,
        version: Optional[int] = None,
        instance_id: Optional[str] = None
    ) -> ExecutionOutcome:
        """Create an instance of the definition and run it to its first suspension"""
        definition = await self.load_definition(definition_id, version)
        instance = WorkflowInstance(
            definition_id=definition.id,
            definition_version=definition.version,
            context=dict(context or {}),
        )
        if instance_id:
            instance.id = instance_id
        await self.store.insert_instance(instance)
        logger.info(f"Created instance {instance.id} of {definition.id} v{definition.version}")
        return await self._run(instance, definition)

    async def execute(self, instance_id: str) -> ExecutionOutcome:
        """Advance a stored instance until it suspends or terminates"""
        instance = await self.load_instance(instance_id)
        async with self._logged(instance):
            definition = await self._definition_for(instance)
        return await self._run(instance, definition)

    async def complete_task(
        self,
        instance_id: str,
        token_id: str,
        result: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None
    ) -> ExecutionOutcome:
        """Complete an open token and resume the instance"""
        instance = await self.load_instance(instance_id)
        async with self._logged(instance):
            token = await self.load_token(token_id)
            definition = await self._definition_for(instance)
        completion = TaskCompletion(token=token, result=dict(result or {}), actor=actor)
        return await self._run(instance, definition, completion)

    async def request_cancellation(self, instance_id: str) -> WorkflowInstance:
        """Flag the instance; the next advance settles it as cancelled"""
        instance = await self.load_instance(instance_id)
        if is_terminal(instance.status):
            error = InvalidStateTransition(instance.status.value, InstanceStatus.CANCELLED.value)
            await self.executor.execution_logger.error(instance.id, error)
            raise error
        if not instance.cancel_requested:
            instance.cancel_requested = True
            await self.store.save_instance(instance, instance.revision)
            logger.info(f"Cancellation requested for instance {instance.id}")
        return instance

    async def cancel(self, instance_id: str) -> ExecutionOutcome:
        """Request cancellation and settle it immediately"""
        await self.request_cancellation(instance_id)
        return await self.execute(instance_id)

    async def get_status(self, instance_id: str) -> WorkflowInstance:
        return await self.load_instance(instance_id)

    async def list_tokens(self, instance_id: str, status: Optional[TokenStatus] = None) -> List[WorkToken]:
        await self.load_instance(instance_id)
        return await self.store.list_tokens(instance_id, status)

    async def list_log(self, instance_id: str) -> List[LogEntry]:
        await self.load_instance(instance_id)
        return await self.store.list_log(instance_id)

    async def get_effective_context(self, instance_id: str, token_id: Optional[str] = None) -> Dict[str, Any]:
        """Global context, or the view a task sees: its mapped inputs over the global context"""
        instance = await self.load_instance(instance_id)
        if token_id is None:
            return instance.context
        async with self._logged(instance):
            token = await self.load_token(token_id)
            if token.instance_id != instance.id:
                raise TokenNotFoundError(token_id)
        return self.executor.context_manager.effective(instance.context, token.payload.get("input"))

    async def context_history(self, instance_id: str) -> List[ContextChange]:
        """Context writes in commit order; the initial context is not part of the history"""
        entries = await self.list_log(instance_id)
        return [ContextChange.from_entry(entry) for entry in entries if entry.details.get("context")]

    async def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return await self.load_definition(instance.definition_id, instance.definition_version)

    @asynccontextmanager
    async def _logged(self, instance: WorkflowInstance):
        """Record lookup failures against an instance that has already been loaded"""
        try:
            yield
        except WorkflowEngineError as e:
            await self.executor.execution_logger.error(instance.id, e)
            raise

    async def _run(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        completion: Optional[TaskCompletion] = None
    ) -> ExecutionOutcome:
        tokens_created: List[WorkToken] = []
        steps = 0
        calls = 0
        while True:
            outcome = await self.executor.advance(instance, definition, completion)
            completion = None
            calls += 1
            steps += outcome.steps
            tokens_created.extend(outcome.tokens_created)
            instance = outcome.instance
            await self._publish(outcome)

            if instance.status != InstanceStatus.RUNNING:
                break
            if calls >= self.settings.max_advance_calls:
                error = MaxStepsExceededError(steps, node_id=instance.active_nodes[0] if instance.branches else None)
                failed = await self.executor.fail(instance, error)
                await self._publish(failed)
                raise error

        return ExecutionOutcome(instance=instance, tokens_created=tokens_created, steps=steps)

    async def _publish(self, outcome: ExecutionOutcome):
        await self.event_bus.publish_outcome(outcome)
