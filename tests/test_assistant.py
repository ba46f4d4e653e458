"""Tests for the workflow suggestion boundary."""

import pytest

from autoflow.core.assistant import WorkflowAssistant
from autoflow.core.exceptions import AISuggestionError, GraphValidationError
from autoflow.models.core import Workflow


class FakeSuggester:
    """Suggester returning canned responses."""

    def __init__(self, workflow=None, node=None, reasoning="Because", error=None):
        self.workflow = workflow
        self.node = node
        self.reasoning = reasoning
        self.error = error
        self.calls = []

    async def suggest_workflow(self, prompt, context=None):
        self.calls.append(("workflow", prompt, context))
        if self.error:
            raise self.error
        return self.workflow, self.reasoning

    def suggest_node(self, workflow, node_id, instruction):
        self.calls.append(("node", node_id, instruction))
        if self.error:
            raise self.error
        return self.node


@pytest.fixture
def draft(make_workflow, make_node, make_edge):
    workflow = make_workflow([make_node("a")], [make_edge("start", "a")])
    del workflow["id"]
    del workflow["version"]
    return workflow


class TestWorkflowAssistant:
    """Test cases for WorkflowAssistant."""

    @pytest.mark.asyncio
    async def test_generate_fills_identity(self, draft):
        suggester = FakeSuggester(workflow=draft)
        assistant = WorkflowAssistant(suggester)

        workflow, reasoning = await assistant.generate_workflow("notify me on new orders", {"team": "ops"})

        assert isinstance(workflow, Workflow)
        assert workflow.id
        assert workflow.version == "1.0.0"
        assert reasoning == "Because"
        assert suggester.calls == [("workflow", "notify me on new orders", {"team": "ops"})]

    @pytest.mark.asyncio
    async def test_generate_rejects_invalid_suggestion(self, draft):
        draft["edges"].append({"id": "loop", "source": "a", "target": "a"})
        assistant = WorkflowAssistant(FakeSuggester(workflow=draft))

        with pytest.raises(GraphValidationError):
            await assistant.generate_workflow("loop forever")

    @pytest.mark.asyncio
    async def test_empty_prompt(self):
        with pytest.raises(AISuggestionError):
            await WorkflowAssistant(FakeSuggester()).generate_workflow("   ")

    @pytest.mark.asyncio
    async def test_service_failure_is_wrapped(self):
        assistant = WorkflowAssistant(FakeSuggester(error=ConnectionError("unreachable")))

        with pytest.raises(AISuggestionError) as exc_info:
            await assistant.generate_workflow("anything")
        assert "unreachable" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_edit_node(self, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow([make_node("a")], [make_edge("start", "a")]))
        suggester = FakeSuggester(node=make_node("ignored", provider="core", operation="log",
                                                 inputs={"message": "hi"}))

        updated = await WorkflowAssistant(suggester).edit_node(workflow, "a", "log instead")

        node = updated.get_node("a")
        assert node.capability_key == "core.log"
        assert node.inputs == {"message": "hi"}
        assert suggester.calls == [("node", "a", "log instead")]

    @pytest.mark.asyncio
    async def test_add_suggested_node(self, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow([make_node("a")], [make_edge("start", "a")]))
        suggester = FakeSuggester(node={"id": "a", "type": "action", "provider": "core", "operation": "noop"})

        updated = await WorkflowAssistant(suggester).add_suggested_node(workflow, "then do nothing", after_node_id="a")

        assert len(updated.nodes) == 3
        added = updated.nodes[-1]
        assert added.id != "a"
        assert updated.edges[-1].source == "a"
        assert updated.edges[-1].target == added.id

    @pytest.mark.asyncio
    async def test_malformed_node_suggestion(self, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow([make_node("a")], [make_edge("start", "a")]))
        assistant = WorkflowAssistant(FakeSuggester(node={"type": "action"}))

        with pytest.raises(AISuggestionError):
            await assistant.add_suggested_node(workflow, "something")
