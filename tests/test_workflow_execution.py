"""
End-to-end execution scenarios through the workflow service
"""
import pytest

from process_engine.config import EngineSettings
from process_engine.core.executor import WorkflowExecutor
from process_engine.core.service import WorkflowService
from process_engine.core.tokens import WorkTokenCreator
from process_engine.exceptions import (
    ActionExecutionError, AssignmentError, DefinitionIntegrityError, EvaluationError, InstanceNotFoundError,
    InvalidStateTransition, MaxStepsExceededError, NoMatchingTransitionError,
    TokenNotFoundError, UnresolvedVariableError
)
from process_engine.integrations.event_bus import INSTANCE_EVENTS_TOPIC
from process_engine.models.instance import InstanceStatus, LogKind, TokenStatus


def _kinds(entries):
    return [entry.kind.value for entry in entries]


class TestSingleTask:
    """start -> task(T1) -> end"""

    @pytest.mark.asyncio
    async def test_start_suspends_then_completes(self, service, single_task_definition):
        await service.register_definition(single_task_definition)

        outcome = await service.start_instance("single-task")
        instance = outcome.instance
        assert outcome.status == InstanceStatus.WAITING
        assert outcome.suspended
        assert instance.active_nodes == ["T1"]

        open_tokens = await service.list_tokens(instance.id, TokenStatus.OPEN)
        assert len(open_tokens) == 1
        token = open_tokens[0]
        assert token.node_id == "T1"
        assert token.assignee == "alice"
        assert token.payload["fields"] == ["approved"]

        outcome = await service.complete_task(instance.id, token.id, {"approved": True}, actor="alice")
        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.instance.context == {"approved": True}
        assert outcome.instance.active_nodes == []
        assert outcome.instance.outcome == "success"

        entries = await service.list_log(instance.id)
        assert _kinds(entries) == ["task-created", "task-completed"]
        assert all(entry.token_id == token.id for entry in entries)

        stored = await service.load_token(token.id)
        assert stored.status == TokenStatus.COMPLETED
        assert stored.result == {"approved": True}
        assert stored.completed_by == "alice"

    @pytest.mark.asyncio
    async def test_second_completion_is_rejected_and_changes_nothing(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task")
        instance_id = outcome.instance.id
        token = outcome.tokens_created[0]

        await service.complete_task(instance_id, token.id, {"approved": True})
        before = await service.load_instance(instance_id)

        for _ in range(2):
            with pytest.raises(InvalidStateTransition):
                await service.complete_task(instance_id, token.id, {"approved": False})
            after = await service.load_instance(instance_id)
            assert after.revision == before.revision
            assert after.status == InstanceStatus.COMPLETED
            assert after.context == {"approved": True}

    @pytest.mark.asyncio
    async def test_token_of_another_instance_is_rejected(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        first = await service.start_instance("single-task")
        second = await service.start_instance("single-task")

        with pytest.raises(InvalidStateTransition):
            await service.complete_task(second.instance.id, first.tokens_created[0].id, {})

        untouched = await service.load_instance(second.instance.id)
        assert untouched.status == InstanceStatus.WAITING
        assert untouched.revision == second.instance.revision

    @pytest.mark.asyncio
    async def test_unknown_ids(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task")

        with pytest.raises(InstanceNotFoundError):
            await service.execute("missing")
        with pytest.raises(TokenNotFoundError):
            await service.complete_task(outcome.instance.id, "missing", {})

    @pytest.mark.asyncio
    async def test_output_mapping_on_completion(self, service, single_task_definition):
        single_task_definition["nodes"][1]["output_mapping"] = {"review": "$.approved", "reviewer": "by"}
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task", context={"amount": 3})

        outcome = await service.complete_task(
            outcome.instance.id, outcome.tokens_created[0].id, {"approved": False, "by": "alice", "noise": 1}
        )
        assert outcome.instance.context == {"amount": 3, "review": False, "reviewer": "alice"}

    @pytest.mark.asyncio
    async def test_unknown_token_is_logged_against_the_instance(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task")
        instance_id = outcome.instance.id

        with pytest.raises(TokenNotFoundError):
            await service.complete_task(instance_id, "no-such-token", {})

        entries = await service.list_log(instance_id)
        assert _kinds(entries) == ["task-created", "error"]
        assert entries[-1].details["code"] == "token_not_found"
        assert (await service.load_instance(instance_id)).revision == outcome.instance.revision

    @pytest.mark.asyncio
    async def test_expired_token_cannot_be_completed(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task", context={"amount": 1})
        instance_id = outcome.instance.id

        token = await service.load_token(outcome.tokens_created[0].id)
        token.status = TokenStatus.EXPIRED
        async with service.store.unit_of_work() as uow:
            await uow.update_token(token)

        with pytest.raises(InvalidStateTransition):
            await service.complete_task(instance_id, token.id, {"approved": True})

        instance = await service.load_instance(instance_id)
        assert instance.status == InstanceStatus.WAITING
        assert instance.revision == outcome.instance.revision
        assert instance.context == {"amount": 1}
        assert (await service.load_token(token.id)).status == TokenStatus.EXPIRED
        assert _kinds(await service.list_log(instance_id)) == ["task-created", "error"]

    @pytest.mark.asyncio
    async def test_output_mapping_sees_task_inputs(self, service, single_task_definition):
        task = single_task_definition["nodes"][1]
        task["input_mapping"] = {"order_id": "order.id"}
        task["output_mapping"] = {"approved_order": "order_id", "approved": "approved"}
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task", context={"order": {"id": 7}})
        instance_id = outcome.instance.id
        token_id = outcome.tokens_created[0].id

        assert await service.get_effective_context(instance_id) == {"order": {"id": 7}}
        assert await service.get_effective_context(instance_id, token_id) == {"order": {"id": 7}, "order_id": 7}

        outcome = await service.complete_task(instance_id, token_id, {"approved": True})
        assert outcome.instance.context == {"order": {"id": 7}, "approved_order": 7, "approved": True}

    @pytest.mark.asyncio
    async def test_context_history(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task", context={"amount": 1})
        instance_id = outcome.instance.id
        token_id = outcome.tokens_created[0].id
        assert await service.context_history(instance_id) == []

        await service.complete_task(instance_id, token_id, {"approved": True, "amount": 1})

        history = await service.context_history(instance_id)
        assert len(history) == 1
        assert history[0].kind == LogKind.TASK_COMPLETED
        assert history[0].node_id == "T1"
        assert history[0].token_id == token_id
        # unchanged keys are not recorded
        assert history[0].changes == {"approved": True}


class TestGatewayRouting:
    """Exclusive gateway on amount > 100"""

    @pytest.mark.asyncio
    async def test_small_amount_completes_without_tasks(self, service, amount_gateway_definition):
        await service.register_definition(amount_gateway_definition)

        outcome = await service.start_instance("amount-gateway", context={"amount": 50})

        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.tokens_created == []
        assert await service.list_tokens(outcome.instance.id) == []

    @pytest.mark.asyncio
    async def test_large_amount_waits_for_review(self, service, amount_gateway_definition):
        await service.register_definition(amount_gateway_definition)

        outcome = await service.start_instance("amount-gateway", context={"amount": 500})

        assert outcome.status == InstanceStatus.WAITING
        assert len(outcome.tokens_created) == 1
        token = outcome.tokens_created[0]
        assert token.node_id == "review"
        assert token.assigned_role == "approver"

    @pytest.mark.asyncio
    async def test_first_satisfied_edge_wins(self, service):
        await service.register_definition({
            "id": "ordered",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "route", "type": "gateway"},
                {"id": "first", "type": "automated-action", "action": "set_variable",
                 "params": {"name": "picked", "value": "first"}},
                {"id": "second", "type": "automated-action", "action": "set_variable",
                 "params": {"name": "picked", "value": "second"}},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"from": "start", "to": "route"},
                {"from": "route", "to": "first", "guard": "amount > 10"},
                {"from": "route", "to": "second", "guard": "amount > 1"},
                {"from": "first", "to": "end"},
                {"from": "second", "to": "end"},
            ],
        })

        outcome = await service.start_instance("ordered", context={"amount": 50})
        assert outcome.instance.context["picked"] == "first"

        outcome = await service.start_instance("ordered", context={"amount": 5})
        assert outcome.instance.context["picked"] == "second"

    @pytest.mark.asyncio
    async def test_no_matching_transition(self, service, amount_gateway_definition):
        amount_gateway_definition["edges"][2] = {"from": "check", "to": "end", "guard": "amount < 0"}
        await service.register_definition(amount_gateway_definition)

        with pytest.raises(NoMatchingTransitionError) as exc_info:
            await service.start_instance("amount-gateway", context={"amount": 50})
        assert exc_info.value.node_id == "check"


class TestParallel:
    """Fork and join"""

    async def _run(self, service, order):
        outcome = await service.start_instance("parallel-review")
        instance_id = outcome.instance.id
        tokens = {token.node_id: token for token in outcome.tokens_created}
        assert set(tokens) == {"legal", "finance"}
        assert outcome.status == InstanceStatus.WAITING

        first, second = order
        outcome = await service.complete_task(instance_id, tokens[first].id, {"approved": True})
        assert outcome.status == InstanceStatus.WAITING
        assert sorted(outcome.instance.active_nodes) == sorted(["join", second])

        outcome = await service.complete_task(instance_id, tokens[second].id, {"approved": True})
        return outcome.instance

    @pytest.mark.asyncio
    async def test_join_is_independent_of_completion_order(self, service, parallel_definition):
        await service.register_definition(parallel_definition)

        a_then_b = await self._run(service, ("legal", "finance"))
        b_then_a = await self._run(service, ("finance", "legal"))

        assert a_then_b.status == b_then_a.status == InstanceStatus.COMPLETED
        assert a_then_b.context == b_then_a.context == {"legal_ok": True, "finance_ok": True, "all_ok": True}
        assert a_then_b.forks == b_then_a.forks == {}

    @pytest.mark.asyncio
    async def test_fork_and_join_are_logged(self, service, parallel_definition):
        await service.register_definition(parallel_definition)
        instance = await self._run(service, ("legal", "finance"))

        entries = await service.list_log(instance.id)
        gateway_events = [e.details.get("gateway") for e in entries if e.kind == LogKind.TRANSITION]
        assert gateway_events.count("parallel") == 1
        assert gateway_events.count("join") == 1
        assert _kinds(entries).count("task-created") == 2
        assert _kinds(entries).count("task-completed") == 2

    @pytest.mark.asyncio
    async def test_ended_branch_does_not_block_join(self, service):
        await service.register_definition({
            "id": "partial-join",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "split", "type": "gateway", "gateway": "parallel"},
                {"id": "t1", "type": "task", "assignee": {"user": "u1"}},
                {"id": "t2", "type": "task", "assignee": {"user": "u2"}},
                {"id": "t3", "type": "task", "assignee": {"user": "u3"}},
                {"id": "join", "type": "gateway", "gateway": "parallel"},
                {"id": "side_end", "type": "end"},
                {"id": "after", "type": "automated-action", "action": "set_variable",
                 "params": {"name": "joined", "value": True}},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"from": "start", "to": "split"},
                {"from": "split", "to": "t1"},
                {"from": "split", "to": "t2"},
                {"from": "split", "to": "t3"},
                {"from": "t1", "to": "join"},
                {"from": "t2", "to": "join"},
                {"from": "t3", "to": "side_end"},
                {"from": "join", "to": "after"},
                {"from": "after", "to": "end"},
            ],
        })
        outcome = await service.start_instance("partial-join")
        instance_id = outcome.instance.id
        tokens = {token.node_id: token.id for token in outcome.tokens_created}

        await service.complete_task(instance_id, tokens["t1"], {})
        outcome = await service.complete_task(instance_id, tokens["t2"], {})
        # t3 is still open, so the join keeps waiting for it
        assert outcome.status == InstanceStatus.WAITING
        assert "joined" not in outcome.instance.context

        outcome = await service.complete_task(instance_id, tokens["t3"], {})
        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.instance.context == {"joined": True}

    @pytest.mark.asyncio
    async def test_unsatisfiable_join_fails_instance(self, service):
        # each branch parks at a different join, so neither join can ever release
        await service.register_definition({
            "id": "crossed-joins",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "split", "type": "gateway", "gateway": "parallel"},
                {"id": "a", "type": "gateway", "gateway": "exclusive"},
                {"id": "b", "type": "gateway", "gateway": "exclusive"},
                {"id": "j1", "type": "gateway", "gateway": "parallel"},
                {"id": "j2", "type": "gateway", "gateway": "parallel"},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"from": "start", "to": "split"},
                {"from": "split", "to": "a"},
                {"from": "split", "to": "b"},
                {"from": "a", "to": "j1"},
                {"from": "a", "to": "j2", "default": True},
                {"from": "b", "to": "j2"},
                {"from": "b", "to": "j1", "default": True},
                {"from": "j1", "to": "end"},
                {"from": "j2", "to": "end"},
            ],
        })

        with pytest.raises(DefinitionIntegrityError) as exc_info:
            await service.start_instance("crossed-joins", instance_id="crossed")
        assert exc_info.value.node_id == "j1"

        instance = await service.load_instance("crossed")
        assert instance.status == InstanceStatus.FAILED
        assert instance.error["code"] == "definition_integrity"
        assert instance.branches == []
        assert instance.forks == {}
        assert _kinds(await service.list_log("crossed")) == ["error"]

    @pytest.mark.asyncio
    async def test_guarded_fork_only_activates_satisfied_edges(self, service, parallel_definition):
        parallel_definition["edges"][2]["guard"] = "amount > 1000"
        parallel_definition["nodes"][5]["params"]["expression"] = "legal_ok"
        await service.register_definition(parallel_definition)

        outcome = await service.start_instance("parallel-review", context={"amount": 10})
        assert [token.node_id for token in outcome.tokens_created] == ["legal"]

        outcome = await service.complete_task(outcome.instance.id, outcome.tokens_created[0].id, {"approved": True})
        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.instance.context == {"amount": 10, "legal_ok": True, "all_ok": True}


class TestAutomated:
    """Automated-action chains"""

    @pytest.mark.asyncio
    async def test_runs_to_completion_in_one_call(self, service, automated_definition):
        await service.register_definition(automated_definition)

        outcome = await service.start_instance("automated", context={"amount": 21})

        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.instance.context == {"amount": 21, "flagged": True, "doubled": 42}
        entries = await service.list_log(outcome.instance.id)
        assert _kinds(entries) == ["transition", "transition"]
        assert [entry.details["action"] for entry in entries] == ["set_variable", "evaluate"]

    @pytest.mark.asyncio
    async def test_step_budget_splits_work_across_advances(self, store, automated_definition):
        settings = EngineSettings(max_steps_per_advance=1, max_advance_calls=10)
        service = WorkflowService(store, settings=settings)
        await service.register_definition(automated_definition)

        outcome = await service.start_instance("automated", context={"amount": 1})

        assert outcome.status == InstanceStatus.COMPLETED
        assert outcome.instance.revision == 4
        assert outcome.steps == 4

    @pytest.mark.asyncio
    async def test_endless_loop_fails_instance(self, store):
        settings = EngineSettings(max_steps_per_advance=5, max_advance_calls=3)
        service = WorkflowService(store, settings=settings)
        await service.register_definition({
            "id": "loop",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "inc", "type": "automated-action", "action": "evaluate",
                 "params": {"target": "counter", "expression": "counter + 1"}},
                {"id": "again", "type": "gateway"},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"from": "start", "to": "inc"},
                {"from": "inc", "to": "again"},
                {"from": "again", "to": "inc", "guard": "counter >= 0"},
                {"from": "again", "to": "end", "default": True},
            ],
        })

        with pytest.raises(MaxStepsExceededError):
            await service.start_instance("loop", context={"counter": 0}, instance_id="loop-1")

        instance = await service.load_instance("loop-1")
        assert instance.status == InstanceStatus.FAILED
        assert instance.error["code"] == "max_steps_exceeded"

    @pytest.mark.asyncio
    async def test_failure_end_marks_instance_failed(self, service, automated_definition):
        automated_definition["nodes"][3]["outcome"] = "failure"
        await service.register_definition(automated_definition)

        outcome = await service.start_instance("automated", context={"amount": 1})

        assert outcome.status == InstanceStatus.FAILED
        assert outcome.instance.outcome == "failure"
        assert outcome.instance.error["code"] == "failure_end"


class TestErrors:
    """Aborted transitions leave the instance unchanged"""

    @pytest.mark.asyncio
    async def test_unresolved_guard_is_logged_and_retriable(self, service, amount_gateway_definition):
        await service.register_definition(amount_gateway_definition)

        with pytest.raises(UnresolvedVariableError) as exc_info:
            await service.start_instance("amount-gateway", context={}, instance_id="i-1")
        assert isinstance(exc_info.value, EvaluationError)
        assert exc_info.value.retriable

        instance = await service.load_instance("i-1")
        assert instance.status == InstanceStatus.PENDING
        assert instance.revision == 0
        assert instance.branches == []

        entries = await service.list_log("i-1")
        assert _kinds(entries) == ["error"]
        assert entries[0].node_id == "check"
        assert entries[0].details["code"] == "unresolved_variable"

    @pytest.mark.asyncio
    async def test_assignment_error_aborts_transition(self, store, amount_gateway_definition):
        executor = WorkflowExecutor(store, token_creator=WorkTokenCreator(directory=lambda role: None))
        service = WorkflowService(store, executor=executor)
        await service.register_definition(amount_gateway_definition)

        with pytest.raises(AssignmentError):
            await service.start_instance("amount-gateway", context={"amount": 500}, instance_id="i-2")

        instance = await service.load_instance("i-2")
        assert instance.status == InstanceStatus.PENDING
        assert await service.list_tokens("i-2") == []
        assert _kinds(await service.list_log("i-2")) == ["error"]

    @pytest.mark.asyncio
    async def test_unknown_action_fails_instance(self, service, automated_definition):
        automated_definition["nodes"][1]["action"] = "does-not-exist"
        await service.register_definition(automated_definition)

        with pytest.raises(DefinitionIntegrityError):
            await service.start_instance("automated", context={"amount": 1}, instance_id="i-3")

        instance = await service.load_instance("i-3")
        assert instance.status == InstanceStatus.FAILED
        assert instance.error["code"] == "definition_integrity"
        entries = await service.list_log("i-3")
        assert _kinds(entries) == ["error"]
        assert entries[0].node_id == "flag"

    @pytest.mark.asyncio
    async def test_failing_action_leaves_instance_unchanged(self, store, automated_definition):
        executor = WorkflowExecutor(store)

        def explode(params, context):
            raise RuntimeError("downstream unavailable")

        executor.actions.register("set_variable", explode)
        service = WorkflowService(store, executor=executor)
        await service.register_definition(automated_definition)

        with pytest.raises(ActionExecutionError) as exc_info:
            await service.start_instance("automated", context={"amount": 1}, instance_id="i-4")
        assert exc_info.value.retriable
        assert exc_info.value.node_id == "flag"

        instance = await service.load_instance("i-4")
        assert instance.status == InstanceStatus.PENDING

    @pytest.mark.asyncio
    async def test_terminal_instance_rejects_execute(self, service, automated_definition):
        await service.register_definition(automated_definition)
        outcome = await service.start_instance("automated", context={"amount": 1})

        with pytest.raises(InvalidStateTransition):
            await service.execute(outcome.instance.id)


class TestCancellation:
    """Cooperative cancellation"""

    @pytest.mark.asyncio
    async def test_request_takes_effect_on_next_advance(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task")
        instance_id = outcome.instance.id

        flagged = await service.request_cancellation(instance_id)
        assert flagged.cancel_requested
        assert (await service.load_instance(instance_id)).status == InstanceStatus.WAITING

        outcome = await service.execute(instance_id)
        assert outcome.status == InstanceStatus.CANCELLED
        assert outcome.instance.branches == []

        tokens = await service.list_tokens(instance_id)
        assert [token.status for token in tokens] == [TokenStatus.CANCELLED]

        entries = await service.list_log(instance_id)
        assert entries[-1].kind == LogKind.TRANSITION
        assert entries[-1].details["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_instance_is_final(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        outcome = await service.start_instance("single-task")
        instance_id = outcome.instance.id
        token_id = outcome.tokens_created[0].id

        await service.cancel(instance_id)

        with pytest.raises(InvalidStateTransition):
            await service.complete_task(instance_id, token_id, {"approved": True})
        with pytest.raises(InvalidStateTransition):
            await service.request_cancellation(instance_id)


class TestVersioningAndEvents:
    """Definition versions and published events"""

    @pytest.mark.asyncio
    async def test_instances_pin_their_definition_version(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        first = await service.start_instance("single-task")

        single_task_definition["version"] = 2
        single_task_definition["nodes"][1]["assignee"] = {"user": "bob"}
        await service.register_definition(single_task_definition)
        second = await service.start_instance("single-task")

        assert first.instance.definition_version == 1
        assert second.instance.definition_version == 2
        assert second.tokens_created[0].assignee == "bob"

        outcome = await service.complete_task(first.instance.id, first.tokens_created[0].id, {})
        assert outcome.status == InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_version_is_rejected(self, service, single_task_definition):
        await service.register_definition(single_task_definition)
        with pytest.raises(DefinitionIntegrityError):
            await service.register_definition(single_task_definition)

    @pytest.mark.asyncio
    async def test_events_published_after_commit(self, service, single_task_definition):
        received = []
        await service.event_bus.subscribe(INSTANCE_EVENTS_TOPIC, lambda event: received.append(event.payload))
        await service.register_definition(single_task_definition)

        outcome = await service.start_instance("single-task")

        assert received[-1]["instance_id"] == outcome.instance.id
        assert received[-1]["status"] == "waiting"
        assert received[-1]["tokens_created"] == [outcome.tokens_created[0].id]
