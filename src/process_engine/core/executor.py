"""
Workflow executor: advances an instance through its definition graph
"""
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..exceptions import (
    DefinitionIntegrityError, EvaluationError, InvalidStateTransition,
    NoMatchingTransitionError, WorkflowEngineError
)
from ..integrations.actions import ActionRegistry, BuiltinActions
from ..models.definition import (
    AutomatedActionNode, Edge, EndNode, EndOutcome, GatewayKind, GatewayNode,
    Node, StartNode, TaskNode, WorkflowDefinition
)
from ..models.instance import (
    Branch, BranchState, ExecutionOutcome, ForkRecord, InstanceStatus,
    LogEntry, LogKind, TokenStatus, WorkflowInstance, WorkToken
)
from ..storage.repository import WorkflowStore
from .context import ContextManager
from .logger import ExecutionLogger
from .state_machine import validate_transition
from .tokens import WorkTokenCreator


logger = logging.getLogger(__name__)


@dataclass
class TaskCompletion:
    """Completion of an open work token, applied at the start of an advance"""
    token: WorkToken
    result: Dict[str, Any]
    actor: Optional[str] = None


class _Transition:
    """Working copy and staged writes of one advance call"""

    def __init__(self, instance: WorkflowInstance, execution_logger: ExecutionLogger):
        self.instance = instance
        self.execution_logger = execution_logger
        self.new_tokens: List[WorkToken] = []
        self.updated_tokens: List[WorkToken] = []
        self.entries: List[LogEntry] = []
        self.steps = 0
        self.failure_end: Optional[str] = None

    def log(self, kind: LogKind, node_id: str = None, token_id: str = None, details: Dict[str, Any] = None):
        self.entries.append(
            self.execution_logger.entry(self.instance.id, kind, node_id=node_id, token_id=token_id, details=details)
        )


class WorkflowExecutor:
    """State machine core

    ``advance`` loads nothing itself: callers pass the instance snapshot and
    its definition. All changes are made on a copy and committed through a
    single unit of work guarded by the snapshot's revision, so a call either
    persists a complete transition or leaves the stored instance untouched.
    """

    def __init__(
        self,
        store: WorkflowStore,
        context_manager: ContextManager = None,
        token_creator: WorkTokenCreator = None,
        execution_logger: ExecutionLogger = None,
        actions: ActionRegistry = None,
        max_steps_per_advance: int = 100
    ):
        self.store = store
        self.context_manager = context_manager or ContextManager()
        self.token_creator = token_creator or WorkTokenCreator(self.context_manager)
        self.execution_logger = execution_logger or ExecutionLogger(store)
        if actions is None:
            actions = ActionRegistry()
            BuiltinActions.register_all(actions, self.context_manager)
        self.actions = actions
        self.max_steps_per_advance = max_steps_per_advance

    async def advance(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        completion: Optional[TaskCompletion] = None
    ) -> ExecutionOutcome:
        """Run the instance until every branch waits, finishes or the step budget is spent"""
        try:
            validate_transition(instance.status, InstanceStatus.RUNNING)
            return await self._advance(instance, definition, completion)
        except DefinitionIntegrityError as e:
            logger.error(f"Definition integrity failure on instance {instance.id}: {e}")
            await self.fail(instance, e)
            raise
        except WorkflowEngineError as e:
            logger.warning(f"Advance of instance {instance.id} aborted: {e}")
            await self.execution_logger.error(instance.id, e)
            raise
        except Exception as e:
            logger.error(f"Advance of instance {instance.id} failed unexpectedly: {e!r}", exc_info=True)
            node_id = instance.active_nodes[0] if instance.branches else None
            await self.execution_logger.error(instance.id, e, node_id=node_id)
            raise

    async def fail(self, instance: WorkflowInstance, error: WorkflowEngineError) -> ExecutionOutcome:
        """Commit the instance as failed and cancel its open tokens"""
        tx = _Transition(copy.deepcopy(instance), self.execution_logger)
        failed = tx.instance
        validate_transition(failed.status, InstanceStatus.FAILED)

        await self._cancel_open_tokens(tx)
        failed.status = InstanceStatus.FAILED
        failed.branches = []
        failed.forks = {}
        failed.error = error.to_dict()
        details = error.to_dict()
        details["type"] = type(error).__name__
        tx.log(LogKind.ERROR, node_id=error.node_id, details=details)
        return await self._commit(instance, tx)

    async def _advance(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        completion: Optional[TaskCompletion]
    ) -> ExecutionOutcome:
        if (definition.id, definition.version) != (instance.definition_id, instance.definition_version):
            raise DefinitionIntegrityError(
                f"Instance {instance.id} runs {instance.definition_id} v{instance.definition_version}, "
                f"got {definition.id} v{definition.version}"
            )

        tx = _Transition(copy.deepcopy(instance), self.execution_logger)
        working = tx.instance

        if working.cancel_requested:
            await self._settle_cancelled(tx)
            return await self._commit(instance, tx)

        working.status = InstanceStatus.RUNNING

        if completion is not None:
            self._apply_completion(tx, definition, completion)

        if instance.status == InstanceStatus.PENDING:
            start = definition.start_node
            if start is None:
                raise DefinitionIntegrityError(f"Definition {definition.id} has no start node")
            working.branches.append(Branch(node_id=start.id))

        await self._drain(tx, definition)
        self._settle(tx)
        return await self._commit(instance, tx)

    def _apply_completion(self, tx: _Transition, definition: WorkflowDefinition, completion: TaskCompletion):
        working = tx.instance
        token = copy.deepcopy(completion.token)
        if token.instance_id != working.id:
            raise InvalidStateTransition(
                token.status.value, TokenStatus.COMPLETED.value,
                f"token {token.id} does not belong to instance {working.id}"
            )
        if token.status != TokenStatus.OPEN:
            raise InvalidStateTransition(
                token.status.value, TokenStatus.COMPLETED.value, f"token {token.id} is not open"
            )

        branch = working.get_branch(token.branch_id) if token.branch_id else None
        if branch is None or branch.token_id != token.id or branch.state != BranchState.WAITING:
            raise InvalidStateTransition(
                token.status.value, TokenStatus.COMPLETED.value, f"token {token.id} is not awaited by the instance"
            )

        node = self._node(definition, token.node_id)
        result = dict(completion.result or {})
        output_mapping = getattr(node, "output_mapping", None)
        if output_mapping:
            scope = self.context_manager.effective(working.context, token.payload.get("input"), result)
            updates = self.context_manager.extract(output_mapping, scope)
        else:
            updates = result
        before = working.context
        working.context = self.context_manager.merge(before, updates)

        token.complete(result, completion.actor)
        branch.state = BranchState.ACTIVE
        tx.updated_tokens.append(token)
        tx.log(
            LogKind.TASK_COMPLETED,
            node_id=node.id,
            token_id=token.id,
            details={
                "actor": completion.actor,
                "result": result,
                "context": self.context_manager.changes(before, working.context),
            },
        )

    async def _drain(self, tx: _Transition, definition: WorkflowDefinition):
        working = tx.instance
        while True:
            branch = next((b for b in working.branches if b.state == BranchState.ACTIVE), None)
            if branch is None:
                # a finished sibling may have been the last one a join was waiting for
                if not self._release_ready_joins(tx, definition):
                    return
                continue
            if tx.steps >= self.max_steps_per_advance:
                return

            tx.steps += 1
            try:
                await self._step(tx, definition, branch)
            except WorkflowEngineError as e:
                if e.node_id is None:
                    e.node_id = branch.node_id
                raise

    async def _step(self, tx: _Transition, definition: WorkflowDefinition, branch: Branch):
        working = tx.instance
        node = self._node(definition, branch.node_id)

        if isinstance(node, StartNode):
            self._move(branch, self._select(definition, node, working.context)[0])

        elif isinstance(node, TaskNode):
            if branch.token_id is None:
                token = self.token_creator.create_token(working, node, branch_id=branch.id)
                branch.token_id = token.id
                branch.state = BranchState.WAITING
                tx.new_tokens.append(token)
                tx.log(
                    LogKind.TASK_CREATED,
                    node_id=node.id,
                    token_id=token.id,
                    details={
                        "assignee": token.assignee,
                        "role": token.assigned_role,
                        "due_at": token.due_at.isoformat() if token.due_at else None,
                    },
                )
            else:
                # token completed; leave the task
                branch.token_id = None
                self._move(branch, self._select(definition, node, working.context)[0])

        elif isinstance(node, AutomatedActionNode):
            output = await self.actions.invoke(node.action, node.params, working.context, node_id=node.id)
            updates = self.context_manager.extract(node.output_mapping, output) if node.output_mapping else output
            before = working.context
            working.context = self.context_manager.merge(before, updates)
            edge = self._select(definition, node, working.context)[0]
            tx.log(
                LogKind.TRANSITION,
                node_id=node.id,
                details={
                    "action": node.action,
                    "updated": sorted(updates),
                    "context": self.context_manager.changes(before, working.context),
                    "to": [edge.target],
                },
            )
            self._move(branch, edge)

        elif isinstance(node, GatewayNode):
            if node.gateway == GatewayKind.EXCLUSIVE:
                edge = self._select(definition, node, working.context)[0]
                tx.log(LogKind.TRANSITION, node_id=node.id, details={"gateway": "exclusive", "to": [edge.target]})
                self._move(branch, edge)
                return
            if definition.is_join(node) and branch.fork_id is not None:
                branch = self._arrive_at_join(tx, node, branch)
                if branch is None:
                    return
            self._leave_parallel_gateway(tx, definition, node, branch)

        elif isinstance(node, EndNode):
            working.branches.remove(branch)
            if node.outcome == EndOutcome.FAILURE and tx.failure_end is None:
                tx.failure_end = node.id

        else:
            raise DefinitionIntegrityError(f"Unsupported node type {type(node).__name__}", node_id=branch.node_id)

    def _select(self, definition: WorkflowDefinition, node: Node, context: Dict[str, Any], all_matches: bool = False) -> List[Edge]:
        """Pick outgoing edges in declaration order; default edges only when nothing else matched"""
        edges = definition.outgoing(node.id)
        selected = []
        for edge in edges:
            if edge.default:
                continue
            try:
                matched = self.context_manager.evaluate(edge.guard, context)
            except EvaluationError as e:
                e.node_id = e.node_id or node.id
                raise
            if matched:
                selected.append(edge)
                if not all_matches:
                    break

        if not selected:
            selected = [edge for edge in edges if edge.default]
        if not selected:
            raise NoMatchingTransitionError(node.id)
        return selected

    def _move(self, branch: Branch, edge: Edge):
        branch.node_id = edge.target

    def _leave_parallel_gateway(self, tx: _Transition, definition: WorkflowDefinition, node: GatewayNode, branch: Branch):
        working = tx.instance
        if len(definition.outgoing(node.id)) == 1:
            self._move(branch, self._select(definition, node, working.context)[0])
            return

        edges = self._select(definition, node, working.context, all_matches=True)
        fork = ForkRecord(gateway_id=node.id, parent_branch_id=branch.id, parent_fork_id=branch.fork_id)
        children = [Branch(node_id=edge.target, fork_id=fork.id) for edge in edges]
        fork.branch_ids = [child.id for child in children]

        index = working.branches.index(branch)
        working.branches[index:index + 1] = children
        working.forks[fork.id] = fork
        tx.log(
            LogKind.TRANSITION,
            node_id=node.id,
            details={"gateway": "parallel", "fork": fork.id, "to": [edge.target for edge in edges]},
        )

    def _arrive_at_join(self, tx: _Transition, node: GatewayNode, branch: Branch) -> Optional[Branch]:
        """Park the branch; returns the merged branch once every branch of its fork has arrived"""
        working = tx.instance
        fork = working.forks.get(branch.fork_id)
        if fork is None:
            raise DefinitionIntegrityError(
                f"Branch {branch.id} references unknown fork {branch.fork_id}", node_id=node.id
            )

        branch.state = BranchState.JOINED
        if self._pending_members(working, fork, node.id):
            logger.debug(f"Branch {branch.id} parked at join {node.id}")
            return None
        return self._merge_fork(tx, fork, node.id)

    def _pending_members(self, working: WorkflowInstance, fork: ForkRecord, join_id: str) -> List[str]:
        """Members of the fork that are still alive and not parked at join_id"""
        split_again = {f.parent_branch_id for f in working.forks.values() if f.id != fork.id}
        pending = []
        for member_id in fork.branch_ids:
            member = working.get_branch(member_id)
            if member is None:
                if member_id in split_again:
                    pending.append(member_id)
            elif not (member.state == BranchState.JOINED and member.node_id == join_id):
                pending.append(member_id)
        return pending

    def _merge_fork(self, tx: _Transition, fork: ForkRecord, join_id: str) -> Branch:
        working = tx.instance
        parked = [b for b in working.branches if b.id in fork.branch_ids]
        index = working.branches.index(parked[0])
        for member in parked:
            working.branches.remove(member)

        merged = Branch(id=fork.parent_branch_id, node_id=join_id, fork_id=fork.parent_fork_id)
        working.branches.insert(index, merged)
        del working.forks[fork.id]
        tx.log(
            LogKind.TRANSITION,
            node_id=join_id,
            details={"gateway": "join", "fork": fork.id, "branches": [b.id for b in parked]},
        )
        return merged

    def _release_ready_joins(self, tx: _Transition, definition: WorkflowDefinition) -> bool:
        """Merge forks whose remaining members are all parked at one join"""
        working = tx.instance
        for fork in list(working.forks.values()):
            parked = [b for b in working.branches if b.id in fork.branch_ids and b.state == BranchState.JOINED]
            if not parked:
                continue
            join_id = parked[0].node_id
            if self._pending_members(working, fork, join_id):
                continue
            merged = self._merge_fork(tx, fork, join_id)
            node = self._node(definition, join_id)
            self._leave_parallel_gateway(tx, definition, node, merged)
            return True
        return False

    def _settle(self, tx: _Transition):
        working = tx.instance
        states = {branch.state for branch in working.branches}

        if BranchState.ACTIVE in states:
            target = InstanceStatus.RUNNING
        elif BranchState.WAITING in states:
            target = InstanceStatus.WAITING
        elif states:
            joins = sorted({b.node_id for b in working.branches})
            raise DefinitionIntegrityError(
                f"Parallel join(s) {', '.join(joins)} can never be satisfied", node_id=joins[0]
            )
        elif tx.failure_end:
            target = InstanceStatus.FAILED
            working.outcome = EndOutcome.FAILURE.value
            working.error = {"code": "failure_end", "message": f"Reached failure end node '{tx.failure_end}'"}
        else:
            target = InstanceStatus.COMPLETED
            working.outcome = EndOutcome.SUCCESS.value

        validate_transition(working.status, target)
        working.status = target
        if target.is_terminal:
            working.forks = {}

    async def _settle_cancelled(self, tx: _Transition):
        working = tx.instance
        previous = working.status
        validate_transition(previous, InstanceStatus.CANCELLED)
        cancelled = await self._cancel_open_tokens(tx)
        working.status = InstanceStatus.CANCELLED
        working.branches = []
        working.forks = {}
        tx.log(
            LogKind.TRANSITION,
            details={"status": InstanceStatus.CANCELLED.value, "from": previous.value, "tokens_cancelled": cancelled},
        )

    async def _cancel_open_tokens(self, tx: _Transition) -> List[str]:
        tokens = await self.store.list_tokens(tx.instance.id, TokenStatus.OPEN)
        for token in tokens:
            token.cancel()
            tx.updated_tokens.append(token)
        return [token.id for token in tokens]

    async def _commit(self, original: WorkflowInstance, tx: _Transition) -> ExecutionOutcome:
        working = tx.instance
        async with self.store.unit_of_work() as uow:
            await uow.save_instance(working, original.revision)
            for token in tx.new_tokens:
                await uow.create_token(token)
            for token in tx.updated_tokens:
                await uow.update_token(token)
            await self.execution_logger.stage(uow, tx.entries)

        self.execution_logger.emit(tx.entries)
        logger.info(
            f"Instance {working.id}: {original.status.value} -> {working.status.value} "
            f"[steps={tx.steps}, revision={working.revision}, active={working.active_nodes}]"
        )
        return ExecutionOutcome(instance=working, tokens_created=list(tx.new_tokens), steps=tx.steps)

    def _node(self, definition: WorkflowDefinition, node_id: str) -> Node:
        node = definition.get_node(node_id)
        if node is None:
            raise DefinitionIntegrityError(
                f"Node '{node_id}' not found in {definition.id} v{definition.version}", node_id=node_id
            )
        return node
