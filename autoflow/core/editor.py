"""Structural edits on workflow snapshots.

Every edit returns a new Workflow; the input snapshot is never mutated.
"""

import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as ModelValidationError

from ..models.core import (
    EditAction,
    EditOperation,
    Edge,
    EdgeType,
    Node,
    Position,
    Workflow,
)
from .exceptions import GraphEditError
from .logging import get_logger

logger = get_logger(__name__)

NodeLike = Union[Node, Dict[str, Any]]
EdgeLike = Union[Edge, Dict[str, Any]]


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _copy(workflow: Workflow) -> Workflow:
    return workflow.model_copy(deep=True)


def _as_node(node: NodeLike, action: str) -> Node:
    if isinstance(node, Node):
        return node.model_copy(deep=True)
    data = dict(node or {})
    if not data.get("id"):
        data["id"] = _new_id("node")
    try:
        return Node.model_validate(data)
    except ModelValidationError as e:
        raise GraphEditError(f"Invalid node definition: {e.errors()[0]['msg']}", action=action)


def _as_edge(edge: EdgeLike, action: str) -> Edge:
    if isinstance(edge, Edge):
        return edge.model_copy(deep=True)
    data = dict(edge or {})
    if not data.get("id"):
        data["id"] = _new_id("edge")
    try:
        return Edge.model_validate(data)
    except ModelValidationError as e:
        raise GraphEditError(f"Invalid edge definition: {e.errors()[0]['msg']}", action=action)


def _require_node(workflow: Workflow, node_id: str, action: str) -> Node:
    node = workflow.get_node(node_id)
    if node is None:
        raise GraphEditError(f"Node '{node_id}' not found in workflow {workflow.id}", action=action)
    return node


def add_node(workflow: Workflow, node: NodeLike, after_node_id: Optional[str] = None) -> Workflow:
    """
    Add a node, optionally placing and connecting it after an existing node.

    Args:
        workflow: Workflow snapshot
        node: Node model or wire-format dict; a missing id is generated
        after_node_id: When given, the node is inserted right after this one
            in the node list and a default edge from it is added

    Returns:
        New workflow snapshot

    Raises:
        GraphEditError: If the id is taken or ``after_node_id`` is unknown
    """
    new_node = _as_node(node, EditAction.ADD_NODE.value)
    if workflow.get_node(new_node.id) is not None:
        raise GraphEditError(f"Node '{new_node.id}' already exists", action=EditAction.ADD_NODE.value)
    if after_node_id is not None:
        _require_node(workflow, after_node_id, EditAction.ADD_NODE.value)

    updated = _copy(workflow)
    if after_node_id is None:
        updated.nodes.append(new_node)
    else:
        anchor = updated.node_ids.index(after_node_id)
        updated.nodes.insert(anchor + 1, new_node)
        updated.edges.append(Edge(
            id=_new_id("edge"),
            source=after_node_id,
            target=new_node.id,
            type=EdgeType.DEFAULT,
        ))
    logger.debug(f"Added node {new_node.id} to workflow {workflow.id}")
    return updated


def remove_node(workflow: Workflow, node_id: str) -> Workflow:
    """Remove a node and every edge touching it; unknown ids leave the workflow unchanged."""
    updated = _copy(workflow)
    if updated.get_node(node_id) is None:
        return updated
    updated.nodes = [node for node in updated.nodes if node.id != node_id]
    updated.edges = [edge for edge in updated.edges if edge.source != node_id and edge.target != node_id]
    logger.debug(f"Removed node {node_id} from workflow {workflow.id}")
    return updated


def reorder_nodes(workflow: Workflow, node_ids: List[str]) -> Workflow:
    """Reorder the node list; nodes not named keep their relative order at the end."""
    unknown = [node_id for node_id in node_ids if workflow.get_node(node_id) is None]
    if unknown:
        raise GraphEditError(f"Unknown nodes in reorder: {', '.join(unknown)}", action=EditAction.REORDER_NODES.value)

    updated = _copy(workflow)
    by_id = {node.id: node for node in updated.nodes}
    ordered = []
    for node_id in node_ids:
        if by_id.get(node_id) is not None:
            ordered.append(by_id.pop(node_id))
    ordered.extend(node for node in updated.nodes if node.id in by_id)
    updated.nodes = ordered
    return updated


def add_edge(workflow: Workflow, edge: EdgeLike) -> Workflow:
    """Add an edge between two existing nodes."""
    new_edge = _as_edge(edge, EditAction.ADD_EDGE.value)
    for endpoint in (new_edge.source, new_edge.target):
        _require_node(workflow, endpoint, EditAction.ADD_EDGE.value)
    if workflow.get_edge(new_edge.id) is not None:
        raise GraphEditError(f"Edge '{new_edge.id}' already exists", action=EditAction.ADD_EDGE.value)

    updated = _copy(workflow)
    updated.edges.append(new_edge)
    return updated


def remove_edge(workflow: Workflow, edge_id: str) -> Workflow:
    if workflow.get_edge(edge_id) is None:
        raise GraphEditError(f"Edge '{edge_id}' not found in workflow {workflow.id}", action=EditAction.REMOVE_EDGE.value)
    updated = _copy(workflow)
    updated.edges = [edge for edge in updated.edges if edge.id != edge_id]
    return updated


def update_node_position(workflow: Workflow, node_id: str, position: Union[Position, Dict[str, float]]) -> Workflow:
    _require_node(workflow, node_id, EditAction.UPDATE_NODE_POSITION.value)
    if not isinstance(position, Position):
        try:
            position = Position.model_validate(position)
        except ModelValidationError as e:
            raise GraphEditError(f"Invalid position: {e.errors()[0]['msg']}", action=EditAction.UPDATE_NODE_POSITION.value)

    updated = _copy(workflow)
    updated.get_node(node_id).position = position
    return updated


def update_node(workflow: Workflow, node_id: str, updates: Dict[str, Any]) -> Workflow:
    """Merge field updates into a node. The node id cannot change."""
    current = _require_node(workflow, node_id, EditAction.EDIT_NODE.value)
    if updates.get("id", node_id) != node_id:
        raise GraphEditError("Node id cannot be changed by an update", action=EditAction.EDIT_NODE.value)

    merged = current.to_wire()
    merged.update(updates)
    return replace_node(workflow, node_id, merged)


def replace_node(workflow: Workflow, node_id: str, node: NodeLike) -> Workflow:
    """Swap a node in place, keeping its id and every edge touching it."""
    _require_node(workflow, node_id, EditAction.EDIT_NODE.value)
    if isinstance(node, dict):
        node = {**node, "id": node_id}
    replacement = _as_node(node, EditAction.EDIT_NODE.value)
    if replacement.id != node_id:
        replacement = replacement.model_copy(update={"id": node_id})

    updated = _copy(workflow)
    updated.nodes = [replacement if existing.id == node_id else existing for existing in updated.nodes]
    return updated


def _require(data: Dict[str, Any], key: str, action: EditAction) -> Any:
    if data.get(key) is None:
        raise GraphEditError(f"Edit '{action.value}' requires '{key}'", action=action.value)
    return data[key]


def _edit_node(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    node_id = _require(data, "nodeId", EditAction.EDIT_NODE)
    if data.get("node") is not None:
        return replace_node(workflow, node_id, data["node"])
    return update_node(workflow, node_id, _require(data, "updates", EditAction.EDIT_NODE))


def _add_node(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    return add_node(workflow, _require(data, "node", EditAction.ADD_NODE), data.get("afterNodeId"))


def _remove_node(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    return remove_node(workflow, _require(data, "nodeId", EditAction.REMOVE_NODE))


def _reorder_nodes(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    # nodeIds is accepted as an alias of nodeOrder
    key = "nodeIds" if data.get("nodeOrder") is None and data.get("nodeIds") is not None else "nodeOrder"
    return reorder_nodes(workflow, list(_require(data, key, EditAction.REORDER_NODES)))


def _add_edge(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    edge = data.get("edge")
    if edge is None:
        edge = {key: value for key, value in data.items() if key != "edge"}
    return add_edge(workflow, edge)


def _remove_edge(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    return remove_edge(workflow, _require(data, "edgeId", EditAction.REMOVE_EDGE))


def _update_node_position(workflow: Workflow, data: Dict[str, Any]) -> Workflow:
    return update_node_position(
        workflow,
        _require(data, "nodeId", EditAction.UPDATE_NODE_POSITION),
        _require(data, "position", EditAction.UPDATE_NODE_POSITION),
    )


EDIT_HANDLERS: Dict[EditAction, Callable[[Workflow, Dict[str, Any]], Workflow]] = {
    EditAction.EDIT_NODE: _edit_node,
    EditAction.ADD_NODE: _add_node,
    EditAction.REMOVE_NODE: _remove_node,
    EditAction.REORDER_NODES: _reorder_nodes,
    EditAction.ADD_EDGE: _add_edge,
    EditAction.REMOVE_EDGE: _remove_edge,
    EditAction.UPDATE_NODE_POSITION: _update_node_position,
}


def apply_edit(workflow: Workflow, operation: Union[EditOperation, Dict[str, Any]]) -> Workflow:
    """
    Apply one edit operation by dispatching on its action.

    Args:
        workflow: Workflow snapshot
        operation: EditOperation or its wire-format dict

    Returns:
        New workflow snapshot

    Raises:
        GraphEditError: If the action is unknown or the edit cannot be applied
    """
    if not isinstance(operation, EditOperation):
        try:
            operation = EditOperation.model_validate(operation)
        except ModelValidationError as e:
            raise GraphEditError(f"Invalid edit operation: {e.errors()[0]['msg']}")

    handler = EDIT_HANDLERS.get(operation.action)
    if handler is None:
        raise GraphEditError(f"Unsupported edit action: {operation.action.value}", action=operation.action.value)

    logger.info(f"Applying {operation.action.value} to workflow {workflow.id}")
    return handler(workflow, operation.data)
