"""Tests for the run variable context."""

import pytest

from autoflow.core.exceptions import VariableScopeError
from autoflow.core.variables import VariableContext
from autoflow.models.core import Variable, VariableScope, VariableType


@pytest.fixture
def context():
    variables = [
        Variable(id="v1", name="region", type=VariableType.STRING, value="eu", scope=VariableScope.GLOBAL),
        Variable(id="v2", name="limit", type=VariableType.NUMBER, value=10),
        Variable(id="v3", name="retry_hint", type=VariableType.STRING, value="soft", scope=VariableScope.NODE),
    ]
    return VariableContext(variables, inputs={"amount": 150, "tags": ["a", "b"]})


class TestVariableContext:
    """Test cases for VariableContext."""

    def test_scopes_seeded(self, context):
        assert context.global_scope == {"region": "eu", "amount": 150, "tags": ["a", "b"]}
        assert context.workflow_scope == {"limit": 10}

    def test_inputs_override_globals(self):
        variables = [Variable(id="v1", name="region", type=VariableType.STRING, value="eu", scope=VariableScope.GLOBAL)]
        ctx = VariableContext(variables, inputs={"region": "us"})
        assert ctx.lookup("region") == "us"

    def test_inputs_are_read_only(self, context):
        with pytest.raises(VariableScopeError):
            context.set_variable("amount", 1, node_id="a", scope=VariableScope.GLOBAL)

    def test_single_writer_per_workflow_key(self, context):
        """Test that a workflow key belongs to the first node that writes it."""
        context.set_variable("total", 1, node_id="a")
        context.set_variable("total", 2, node_id="a")
        assert context.lookup("total") == 2

        with pytest.raises(VariableScopeError):
            context.set_variable("total", 3, node_id="b")

    def test_node_scope_lifetime(self, context):
        context.enter_node("a", {"url": "https://example.test"})

        assert context.lookup("url", node_id="a") == "https://example.test"
        assert context.lookup("retry_hint", node_id="a") == "soft"
        assert context.lookup("url", node_id="b") is None

        context.exit_node("a")
        assert context.node_scope("a") == {}
        with pytest.raises(VariableScopeError):
            context.set_variable("temp", 1, node_id="a", scope=VariableScope.NODE)

    def test_resolve_whole_reference_keeps_type(self, context):
        context.record_output("fetch", {"items": [1, 2, 3]})

        assert context.resolve_value("{{ nodes.fetch.items }}") == [1, 2, 3]
        assert context.resolve_value("{{ inputs.tags.1 }}") == "b"

    def test_resolve_interpolates_strings(self, context):
        resolved = context.resolve_inputs({"text": "Limit is {{ limit }} in {{ vars.region }}", "n": 3})
        assert resolved == {"text": "Limit is 10 in eu", "n": 3}

    def test_unresolved_reference(self, context):
        assert context.resolve_value("{{ nodes.missing.value }}") is None
        assert context.resolve_value("x{{ nodes.missing.value }}y") == "xy"

    def test_evaluate(self, context):
        context.record_output("check", {"count": 5})

        assert context.evaluate("{{ nodes.check.count }} > 3")
        assert context.evaluate("amount >= 100 and region == 'eu'")
        assert not context.evaluate("len(tags) > 2")

    def test_evaluate_failures_are_false(self, context):
        assert not context.evaluate("{{ nodes.missing.count }} > 3")
        assert not context.evaluate("undefined_name == 1")
        assert not context.evaluate("__import__('os')")

    def test_empty_expression_is_true(self, context):
        assert context.evaluate("")
        assert context.evaluate(None)

    def test_inputs_are_copied(self):
        inputs = {"payload": {"x": 1}}
        ctx = VariableContext(inputs=inputs)
        ctx.resolve_value("{{ inputs.payload }}")["x"] = 2
        assert inputs["payload"]["x"] == 1
