"""
Pytest configuration and shared fixtures
"""
import pytest

from process_engine.core.service import WorkflowService
from process_engine.storage.repository import InMemoryWorkflowStore


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    """In-memory store"""
    return InMemoryWorkflowStore()


@pytest.fixture
def service(store) -> WorkflowService:
    """Service over the in-memory store"""
    return WorkflowService(store)


@pytest.fixture
def single_task_definition() -> dict:
    """start -> task(T1) -> end"""
    return {
        "id": "single-task",
        "version": 1,
        "name": "Single task",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "T1", "type": "task", "assignee": {"user": "alice"}, "fields": ["approved"]},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"from": "start", "to": "T1"},
            {"from": "T1", "to": "end"},
        ],
    }


@pytest.fixture
def amount_gateway_definition() -> dict:
    """Review only when amount > 100"""
    return {
        "id": "amount-gateway",
        "version": 1,
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "check", "type": "gateway", "gateway": "exclusive"},
            {"id": "review", "type": "task", "assignee": {"role": "approver"}, "fields": ["approved"]},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"from": "start", "to": "check"},
            {"from": "check", "to": "review", "guard": "amount > 100"},
            {"from": "check", "to": "end", "default": True},
            {"from": "review", "to": "end"},
        ],
    }


@pytest.fixture
def parallel_definition() -> dict:
    """Fork into two tasks and join them"""
    return {
        "id": "parallel-review",
        "version": 1,
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "split", "type": "gateway", "gateway": "parallel"},
            {"id": "legal", "type": "task", "assignee": {"user": "lena"}, "output_mapping": {"legal_ok": "approved"}},
            {"id": "finance", "type": "task", "assignee": {"user": "finn"}, "output_mapping": {"finance_ok": "approved"}},
            {"id": "join", "type": "gateway", "gateway": "parallel"},
            {"id": "summarize", "type": "automated-action", "action": "evaluate",
             "params": {"target": "all_ok", "expression": "legal_ok and finance_ok"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"from": "start", "to": "split"},
            {"from": "split", "to": "legal"},
            {"from": "split", "to": "finance"},
            {"from": "legal", "to": "join"},
            {"from": "finance", "to": "join"},
            {"from": "join", "to": "summarize"},
            {"from": "summarize", "to": "end"},
        ],
    }


@pytest.fixture
def automated_definition() -> dict:
    """Only automated nodes; runs to completion without suspending"""
    return {
        "id": "automated",
        "version": 1,
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "flag", "type": "automated-action", "action": "set_variable",
             "params": {"name": "flagged", "value": True}},
            {"id": "double", "type": "automated-action", "action": "evaluate",
             "params": {"target": "doubled", "expression": "amount * 2"}},
            {"id": "end", "type": "end"},
        ],
        "edges": [
            {"from": "start", "to": "flag"},
            {"from": "flag", "to": "double"},
            {"from": "double", "to": "end"},
        ],
    }
