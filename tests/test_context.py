"""
Context manager tests
"""
import pytest

from process_engine.core.context import ContextManager
from process_engine.exceptions import EvaluationError, UnresolvedVariableError


class TestContextManager:
    """Merge, resolve and guard evaluation"""

    @pytest.fixture
    def manager(self):
        return ContextManager()

    def test_merge_with_empty_updates_is_identity(self, manager):
        context = {"a": 1, "nested": {"b": [1, 2]}}
        assert manager.merge(context, {}) == context
        assert manager.merge(context, None) == context

    def test_merge_is_pure(self, manager):
        context = {"a": 1, "nested": {"b": 2}}
        merged = manager.merge(context, {"a": 5, "extra": [1]})

        assert context == {"a": 1, "nested": {"b": 2}}
        assert merged == {"a": 5, "nested": {"b": 2}, "extra": [1]}

    def test_merge_overwrites_nested_values_whole(self, manager):
        merged = manager.merge({"addr": {"city": "A", "zip": "1"}}, {"addr": {"city": "B"}})
        assert merged == {"addr": {"city": "B"}}

    def test_merge_copies_update_values(self, manager):
        updates = {"items": [1, 2]}
        merged = manager.merge({}, updates)
        updates["items"].append(3)
        assert merged == {"items": [1, 2]}

    def test_task_local_layers_shadow_global(self, manager):
        context = {"amount": 10, "owner": "carol"}
        view = manager.effective(context, {"owner": "dave", "order_id": 7}, None, {"amount": 12})

        assert view == {"amount": 12, "owner": "dave", "order_id": 7}
        assert context == {"amount": 10, "owner": "carol"}
        assert manager.effective(context) == context

    def test_changes_lists_written_keys(self, manager):
        before = {"a": 1, "b": {"c": 2}}
        after = manager.merge(before, {"a": 1, "b": {"c": 3}, "d": None})
        assert manager.changes(before, after) == {"b": {"c": 3}, "d": None}
        assert manager.changes(before, before) == {}

    def test_merge_never_deletes_keys(self, manager):
        merged = manager.merge({"keep": True, "x": 1}, {"x": None})
        assert merged == {"keep": True, "x": None}

    def test_resolve_after_merge(self, manager):
        context = manager.merge({"a": 1}, {"k": "v"})
        assert manager.resolve("k", context) == "v"

    def test_merge_rejects_non_mapping(self, manager):
        with pytest.raises(EvaluationError):
            manager.merge({}, ["not", "a", "mapping"])

    @pytest.mark.parametrize("expression,expected", [
        ("amount > 100", True),
        ("$.amount > 1000", False),
        ("order.total >= 20 and order.currency == 'EUR'", True),
        ("$.order.items[0] == 'pen'", True),
        ("not approved", False),
        ("approved == true", True),
        ("note == null", True),
        ("'pen' in order.items", True),
        ("amount * 2 - 10", 490),
        ("status != \"$.literal\"", True),
    ])
    def test_resolve_expressions(self, manager, expression, expected):
        context = {
            "amount": 250,
            "approved": True,
            "note": None,
            "status": "open",
            "order": {"total": 20, "currency": "EUR", "items": ["pen", "ink"]},
        }
        assert manager.resolve(expression, context) == expected

    def test_missing_variable_raises_unresolved(self, manager):
        with pytest.raises(UnresolvedVariableError) as exc_info:
            manager.resolve("missing > 1", {"amount": 1})
        assert exc_info.value.variable == "missing"
        assert exc_info.value.retriable

    def test_missing_nested_key_raises_unresolved(self, manager):
        with pytest.raises(UnresolvedVariableError) as exc_info:
            manager.resolve("order.total", {"order": {}})
        assert exc_info.value.variable == "order.total"

    @pytest.mark.parametrize("expression", [
        "amount >",
        "__import__('os')",
        "amount.__class__",
        "[x for x in items]",
        "lambda: 1",
    ])
    def test_rejects_malformed_or_forbidden(self, manager, expression):
        with pytest.raises(EvaluationError):
            manager.resolve(expression, {"amount": 1, "items": []})

    def test_type_errors_become_evaluation_errors(self, manager):
        with pytest.raises(EvaluationError):
            manager.resolve("name > 3", {"name": "x"})

    def test_empty_guard_is_satisfied(self, manager):
        assert manager.evaluate(None, {}) is True
        assert manager.evaluate("", {}) is True
        assert manager.evaluate("amount > 1", {"amount": 0}) is False

    def test_extract_mapping(self, manager):
        source = {"decision": {"approved": True, "by": "bob"}}
        assert manager.extract({"ok": "decision.approved", "who": "$.decision.by"}, source) == {
            "ok": True,
            "who": "bob",
        }
        assert manager.extract({}, source) == {}
