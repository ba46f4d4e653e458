"""Tests for capability dependency resolution."""

import pytest

from autoflow.core.dependency_resolver import DependencyResolver
from autoflow.core.exceptions import DependencyError
from autoflow.models.core import Workflow


class TestDependencyResolver:
    """Test cases for DependencyResolver."""

    def test_all_resolved(self, registry, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow([make_node("a")], [make_edge("start", "a")]))

        result = DependencyResolver(registry).validate_dependencies(workflow)

        assert result.valid
        assert result.errors == []

    def test_collects_every_unknown_pair(self, registry, make_workflow, make_node, make_edge):
        """Test that resolution reports all unresolved nodes, not just the first."""
        workflow = Workflow.model_validate(make_workflow(
            [make_node("a", provider="slack", operation="post"), make_node("b", operation="nothing")],
            [make_edge("start", "a"), make_edge("a", "b")]
        ))

        result = DependencyResolver(registry).validate_dependencies(workflow)

        assert not result.valid
        assert result.errors == [
            "Node 'a': unknown capability 'slack.post' for type 'action'",
            "Node 'b': unknown capability 'test.nothing' for type 'action'",
        ]

    def test_type_specific_capability(self, registry, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("check", type="action", provider="logic", operation="if")],
            [make_edge("start", "check")]
        ))

        result = DependencyResolver(registry).validate_dependencies(workflow)

        assert result.errors == ["Node 'check': unknown capability 'logic.if' for type 'action'"]

    def test_target_support(self, registry, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("call", provider="http", operation="request"), make_node("a")],
            [make_edge("start", "call"), make_edge("call", "a")]
        ))
        resolver = DependencyResolver(registry)

        assert resolver.validate_dependencies(workflow, "runtime").valid
        assert resolver.validate_dependencies(workflow, "execute").errors == [
            "Node 'call': capability 'http.request' does not support target 'execute'"
        ]
        # test capabilities have no external mapping
        assert resolver.validate_dependencies(workflow, "external").errors == [
            "Node 'a': capability 'test.echo' does not support target 'external'"
        ]

    def test_require_raises(self, registry, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("a", provider="slack", operation="post")],
            [make_edge("start", "a")]
        ))

        with pytest.raises(DependencyError) as exc_info:
            DependencyResolver(registry).require(workflow, "external")

        assert exc_info.value.unresolved == ["Node 'a': unknown capability 'slack.post' for type 'action'"]
        assert exc_info.value.context == {"target": "external"}
        assert exc_info.value.to_dict()["category"] == "dependency"
