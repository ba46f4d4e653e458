"""Boundary to an external workflow suggestion service."""

import inspect
import uuid
from typing import Any, Dict, Optional, Protocol, Tuple, Union

from pydantic import ValidationError as ModelValidationError

from ..models.core import Node, Workflow
from .editor import add_node, replace_node
from .exceptions import AISuggestionError, GraphValidationError, WorkflowEngineError
from .logging import get_logger
from .validator import GraphValidator

logger = get_logger(__name__)

DEFAULT_WORKFLOW_VERSION = "1.0.0"


class WorkflowSuggester(Protocol):
    """Contract for a remote suggestion service. Methods may be sync or async."""

    def suggest_node(self, workflow: Workflow, node_id: Optional[str], instruction: str) -> Union[Node, Dict[str, Any]]:
        ...

    def suggest_workflow(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> Tuple[Union[Workflow, Dict[str, Any]], str]:
        ...


class WorkflowAssistant:
    """Applies suggestions from an injected WorkflowSuggester.

    Every suggestion is validated before it is returned; nothing produced by
    the suggester reaches a caller unchecked.
    """

    def __init__(self, suggester: WorkflowSuggester, validator: Optional[GraphValidator] = None):
        self.suggester = suggester
        self.validator = validator or GraphValidator()

    async def _call(self, operation: str, method, *args):
        try:
            result = method(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error(f"Suggestion service failed during {operation}: {str(e)}")
            raise AISuggestionError(f"Suggestion service failed: {str(e)}", operation=operation)

    def _check(self, workflow: Union[Workflow, Dict[str, Any]], operation: str) -> Workflow:
        result = self.validator.validate(workflow)
        if not result.valid:
            raise GraphValidationError(
                f"Suggested workflow is invalid ({operation}): {'; '.join(result.messages())}",
                validation_errors=[issue.model_dump() for issue in result.errors],
                workflow_id=workflow.get("id") if isinstance(workflow, dict) else workflow.id,
            )
        if isinstance(workflow, Workflow):
            return workflow
        try:
            return Workflow.model_validate(workflow)
        except ModelValidationError as e:
            raise GraphValidationError(
                f"Suggested workflow is invalid ({operation}): {e.errors()[0]['msg']}",
                workflow_id=workflow.get("id"),
            )

    async def generate_workflow(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> Tuple[Workflow, str]:
        """
        Generate a workflow from a natural-language prompt.

        Args:
            prompt: Description of the desired workflow
            context: Optional extra context passed through to the suggester

        Returns:
            Tuple of (validated workflow, suggester reasoning)

        Raises:
            AISuggestionError: If the suggestion service fails
            GraphValidationError: If the suggested workflow is invalid
        """
        if not prompt or not prompt.strip():
            raise AISuggestionError("Prompt cannot be empty", operation="generate")

        suggestion = await self._call("generate", self.suggester.suggest_workflow, prompt, context)
        try:
            draft, reasoning = suggestion
        except (TypeError, ValueError):
            raise AISuggestionError("Suggestion service returned a malformed response", operation="generate")

        data = draft.to_wire() if isinstance(draft, Workflow) else dict(draft or {})
        if not data.get("id"):
            data["id"] = str(uuid.uuid4())
        if not data.get("version"):
            data["version"] = DEFAULT_WORKFLOW_VERSION

        workflow = self._check(data, "generate")
        logger.info(f"Generated workflow {workflow.id} with {len(workflow.nodes)} nodes")
        return workflow, reasoning or ""

    async def edit_node(self, workflow: Workflow, node_id: str, instruction: str) -> Workflow:
        """Replace a node with the suggester's revision of it."""
        suggestion = await self._call("edit_node", self.suggester.suggest_node, workflow, node_id, instruction)
        updated = replace_node(workflow, node_id, suggestion)
        return self._check(updated, "edit_node")

    async def add_suggested_node(self, workflow: Workflow, instruction: str,
                                 after_node_id: Optional[str] = None) -> Workflow:
        """Add a node proposed by the suggester, connected after ``after_node_id`` when given."""
        suggestion = await self._call("add_node", self.suggester.suggest_node, workflow, after_node_id, instruction)
        try:
            if isinstance(suggestion, Node):
                node = suggestion
            else:
                data = dict(suggestion or {})
                if not data.get("id"):
                    data["id"] = f"node-{uuid.uuid4().hex[:12]}"
                node = Node.model_validate(data)
        except ModelValidationError as e:
            raise AISuggestionError(f"Suggested node is malformed: {e.errors()[0]['msg']}", operation="add_node")
        if workflow.get_node(node.id) is not None:
            node = node.model_copy(update={"id": f"node-{uuid.uuid4().hex[:12]}"})

        updated = add_node(workflow, node, after_node_id)
        return self._check(updated, "add_node")
