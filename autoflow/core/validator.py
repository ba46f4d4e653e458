"""Structural and semantic validation of workflow graphs."""

from typing import Any, Dict, List, Optional, Set, Union

from ..models.core import (
    EdgeType,
    ErrorHandlingMode,
    NodeType,
    ValidationIssue,
    ValidationResult,
    VariableScope,
    VariableType,
    Workflow,
)
from .logging import get_logger

logger = get_logger(__name__)

WORKFLOW_REQUIRED_FIELDS = ("id", "name", "version", "nodes")
NODE_REQUIRED_FIELDS = ("id", "type", "provider", "operation")
EDGE_REQUIRED_FIELDS = ("id", "source", "target")
VARIABLE_REQUIRED_FIELDS = ("id", "name", "type")

NODE_TYPES = {member.value for member in NodeType}
EDGE_TYPES = {member.value for member in EdgeType}
ERROR_HANDLING_MODES = {member.value for member in ErrorHandlingMode}
VARIABLE_TYPES = {member.value for member in VariableType}
VARIABLE_SCOPES = {member.value for member in VariableScope}

TRIGGER_REQUIRED_MESSAGE = "Workflow must contain at least one trigger node"

WHITE, GRAY, BLACK = 0, 1, 2

WorkflowInput = Union[Workflow, Dict[str, Any]]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _one_of(value: Any, allowed: Set[str]) -> bool:
    return isinstance(value, str) and value in allowed


def _node_id(node: Any) -> Optional[str]:
    if not isinstance(node, dict):
        return None
    node_id = node.get("id")
    return node_id if isinstance(node_id, str) and node_id.strip() else None


class GraphValidator:
    """Validates workflow graphs without mutating them.

    Accepts either a ``Workflow`` model or a raw wire-format dict, so that
    payloads from the HTTP layer or the suggestion service can be checked
    before model construction. Every problem is collected; nothing short
    circuits.
    """

    def validate(self, workflow: WorkflowInput) -> ValidationResult:
        """
        Validate a workflow for structural and semantic correctness.

        Args:
            workflow: Workflow model or wire-format dict

        Returns:
            ValidationResult: validity flag plus errors and warnings
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        try:
            data = self._as_dict(workflow)
            if not isinstance(data, dict):
                errors.append(ValidationIssue(path="", message="Workflow must be an object"))
                return ValidationResult(valid=False, errors=errors)

            for field in WORKFLOW_REQUIRED_FIELDS:
                if _is_missing(data.get(field)):
                    errors.append(ValidationIssue(path=field, message=f"Missing required field '{field}'"))

            self._validate_settings(data.get("settings"), errors)

            nodes = self._as_list(data.get("nodes"), "nodes", errors)
            edges = self._as_list(data.get("edges"), "edges", errors)
            variables = self._as_list(data.get("variables"), "variables", errors)

            node_ids = self._validate_nodes(nodes, errors, warnings)
            self._validate_edges(edges, node_ids, errors, warnings)
            self._validate_variables(variables, errors)
            self._validate_cycles(nodes, edges, node_ids, errors)
            self._validate_trigger(nodes, errors)
            self._warn_isolated_nodes(nodes, edges, node_ids, warnings)

        except Exception as e:
            logger.error(f"Error during workflow validation: {str(e)}")
            errors.append(ValidationIssue(path="", message=f"Validation error: {str(e)}"))

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Workflow validation completed. Valid: {result.valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def validate_node(self, node: Any) -> ValidationResult:
        """Validate a single node in isolation."""
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        self._check_node(self._as_dict(node), "node", errors, warnings)
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def validate_edge(self, edge: Any) -> ValidationResult:
        """Validate a single edge in isolation (node references are not checked)."""
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        self._check_edge(self._as_dict(edge), "edge", None, errors, warnings)
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _as_dict(value: Any) -> Any:
        if hasattr(value, "to_wire"):
            return value.to_wire()
        return value

    @staticmethod
    def _as_list(value: Any, path: str, errors: List[ValidationIssue]) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            errors.append(ValidationIssue(path=path, message=f"'{path}' must be a list"))
            return []
        return value

    def _validate_settings(self, settings: Any, errors: List[ValidationIssue]) -> None:
        if settings is None:
            return
        if not isinstance(settings, dict):
            errors.append(ValidationIssue(path="settings", message="'settings' must be an object"))
            return

        mode = settings.get("errorHandling")
        if mode is not None and not _one_of(mode, ERROR_HANDLING_MODES):
            errors.append(ValidationIssue(
                path="settings.errorHandling",
                message=f"Unknown error handling mode '{mode}'. Expected one of: {', '.join(sorted(ERROR_HANDLING_MODES))}"
            ))
        self._check_non_negative(settings.get("maxRetries"), "settings.maxRetries", errors)
        self._check_positive(settings.get("timeout"), "settings.timeout", errors)

    def _validate_nodes(self, nodes: List[Any], errors: List[ValidationIssue],
                        warnings: List[ValidationIssue]) -> Set[str]:
        node_ids: Set[str] = set()
        for index, node in enumerate(nodes):
            path = f"nodes[{index}]"
            node_id = self._check_node(node, path, errors, warnings)
            if node_id is None:
                continue
            if node_id in node_ids:
                errors.append(ValidationIssue(path=f"{path}.id", message=f"Duplicate node id '{node_id}'"))
            node_ids.add(node_id)
        return node_ids

    def _check_node(self, node: Any, path: str, errors: List[ValidationIssue],
                    warnings: List[ValidationIssue]) -> Optional[str]:
        if not isinstance(node, dict):
            errors.append(ValidationIssue(path=path, message="Node must be an object"))
            return None

        for field in NODE_REQUIRED_FIELDS:
            if _is_missing(node.get(field)):
                errors.append(ValidationIssue(path=f"{path}.{field}", message=f"Missing required field '{field}'"))

        node_type = node.get("type")
        if not _is_missing(node_type) and not _one_of(node_type, NODE_TYPES):
            errors.append(ValidationIssue(
                path=f"{path}.type",
                message=f"Invalid node type '{node_type}'. Expected one of: {', '.join(sorted(NODE_TYPES))}"
            ))

        runtime = node.get("runtime")
        if isinstance(runtime, dict):
            self._check_non_negative(runtime.get("retries"), f"{path}.runtime.retries", errors)
            self._check_positive(runtime.get("timeout"), f"{path}.runtime.timeout", errors)
        elif runtime is not None:
            errors.append(ValidationIssue(path=f"{path}.runtime", message="'runtime' must be an object"))

        condition = node.get("condition")
        if isinstance(condition, dict):
            if condition.get("enabled", True) and _is_missing(condition.get("expression")):
                warnings.append(ValidationIssue(
                    path=f"{path}.condition",
                    message="Node condition is enabled but has no expression; it will be ignored"
                ))
        elif condition is not None:
            errors.append(ValidationIssue(path=f"{path}.condition", message="'condition' must be an object"))

        if not _is_missing(node.get("id")) and _node_id(node) is None:
            errors.append(ValidationIssue(path=f"{path}.id", message="Node id must be a string"))
        return _node_id(node)

    def _validate_edges(self, edges: List[Any], node_ids: Set[str], errors: List[ValidationIssue],
                        warnings: List[ValidationIssue]) -> None:
        edge_ids: Set[str] = set()
        for index, edge in enumerate(edges):
            path = f"edges[{index}]"
            self._check_edge(edge, path, node_ids, errors, warnings)
            if isinstance(edge, dict) and isinstance(edge.get("id"), str):
                if edge["id"] in edge_ids:
                    errors.append(ValidationIssue(path=f"{path}.id", message=f"Duplicate edge id '{edge['id']}'"))
                edge_ids.add(edge["id"])

    def _check_edge(self, edge: Any, path: str, node_ids: Optional[Set[str]],
                    errors: List[ValidationIssue], warnings: List[ValidationIssue]) -> None:
        if not isinstance(edge, dict):
            errors.append(ValidationIssue(path=path, message="Edge must be an object"))
            return

        for field in EDGE_REQUIRED_FIELDS:
            if _is_missing(edge.get(field)):
                errors.append(ValidationIssue(path=f"{path}.{field}", message=f"Missing required field '{field}'"))

        if node_ids is not None:
            for field in ("source", "target"):
                reference = edge.get(field)
                if _is_missing(reference):
                    continue
                if not isinstance(reference, str):
                    errors.append(ValidationIssue(
                        path=f"{path}.{field}",
                        message=f"Edge {field} must be a node id string"
                    ))
                elif reference not in node_ids:
                    errors.append(ValidationIssue(
                        path=f"{path}.{field}",
                        message=f"Edge {field} '{reference}' is an unknown node reference"
                    ))

        edge_type = edge.get("type")
        if edge_type is not None and not _one_of(edge_type, EDGE_TYPES):
            errors.append(ValidationIssue(
                path=f"{path}.type",
                message=f"Invalid edge type '{edge_type}'. Expected one of: {', '.join(sorted(EDGE_TYPES))}"
            ))

        condition = edge.get("condition")
        if condition is not None and not isinstance(condition, dict):
            errors.append(ValidationIssue(path=f"{path}.condition", message="'condition' must be an object"))
            condition = None

        if edge_type == EdgeType.CONDITIONAL.value:
            condition = condition or {}
            if not condition.get("enabled", True) or _is_missing(condition.get("expression")):
                warnings.append(ValidationIssue(
                    path=f"{path}.condition",
                    message="Conditional edge has no active expression; it behaves like a default edge"
                ))

    def _validate_variables(self, variables: List[Any], errors: List[ValidationIssue]) -> None:
        for index, variable in enumerate(variables):
            path = f"variables[{index}]"
            if not isinstance(variable, dict):
                errors.append(ValidationIssue(path=path, message="Variable must be an object"))
                continue
            for field in VARIABLE_REQUIRED_FIELDS:
                if _is_missing(variable.get(field)):
                    errors.append(ValidationIssue(path=f"{path}.{field}", message=f"Missing required field '{field}'"))
            var_type = variable.get("type")
            if not _is_missing(var_type) and not _one_of(var_type, VARIABLE_TYPES):
                errors.append(ValidationIssue(path=f"{path}.type", message=f"Invalid variable type '{var_type}'"))
            scope = variable.get("scope")
            if scope is not None and not _one_of(scope, VARIABLE_SCOPES):
                errors.append(ValidationIssue(path=f"{path}.scope", message=f"Invalid variable scope '{scope}'"))

    def _validate_cycles(self, nodes: List[Any], edges: List[Any], node_ids: Set[str],
                         errors: List[ValidationIssue]) -> None:
        """Three-color depth-first search; a gray neighbour is a back edge.

        Every edge type counts: a cycle deadlocks regardless of gating.
        """
        order: List[str] = []
        for node in nodes:
            node_id = _node_id(node)
            if node_id in node_ids and node_id not in order:
                order.append(node_id)

        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in order}
        for edge in edges:
            if not isinstance(edge, dict):
                continue
            source, target = edge.get("source"), edge.get("target")
            if not isinstance(source, str) or not isinstance(target, str):
                continue
            if source in adjacency and target in adjacency:
                adjacency[source].append(target)

        color = {node_id: WHITE for node_id in order}
        reported: Set[tuple] = set()

        for start in order:
            if color[start] != WHITE:
                continue
            color[start] = GRAY
            path = [start]
            stack = [(start, iter(adjacency[start]))]

            while stack:
                current, neighbours = stack[-1]
                descended = False
                for neighbour in neighbours:
                    if color[neighbour] == WHITE:
                        color[neighbour] = GRAY
                        path.append(neighbour)
                        stack.append((neighbour, iter(adjacency[neighbour])))
                        descended = True
                        break
                    if color[neighbour] == GRAY:
                        cycle = path[path.index(neighbour):] + [neighbour]
                        key = tuple(cycle)
                        if key not in reported:
                            reported.add(key)
                            errors.append(ValidationIssue(
                                path="edges",
                                message=f"Circular dependency detected: {' -> '.join(cycle)}"
                            ))
                if not descended:
                    color[current] = BLACK
                    path.pop()
                    stack.pop()

    def _validate_trigger(self, nodes: List[Any], errors: List[ValidationIssue]) -> None:
        has_trigger = any(
            isinstance(node, dict) and node.get("type") == NodeType.TRIGGER.value
            for node in nodes
        )
        if not has_trigger:
            errors.append(ValidationIssue(path="nodes", message=TRIGGER_REQUIRED_MESSAGE))

    def _warn_isolated_nodes(self, nodes: List[Any], edges: List[Any], node_ids: Set[str],
                             warnings: List[ValidationIssue]) -> None:
        """Nodes with neither incoming nor outgoing edges (triggers excepted)."""
        if len(node_ids) < 2:
            return
        connected: Set[str] = set()
        for edge in edges:
            if isinstance(edge, dict):
                connected.update(
                    reference for reference in (edge.get("source"), edge.get("target"))
                    if isinstance(reference, str)
                )
        for index, node in enumerate(nodes):
            if not isinstance(node, dict) or node.get("type") == NodeType.TRIGGER.value:
                continue
            node_id = _node_id(node)
            if node_id in node_ids and node_id not in connected:
                warnings.append(ValidationIssue(path=f"nodes[{index}]", message=f"Isolated node '{node_id}'"))

    @staticmethod
    def _check_non_negative(value: Any, path: str, errors: List[ValidationIssue]) -> None:
        if value is None:
            return
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(ValidationIssue(path=path, message="Must be a non-negative integer"))

    @staticmethod
    def _check_positive(value: Any, path: str, errors: List[ValidationIssue]) -> None:
        if value is None:
            return
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            errors.append(ValidationIssue(path=path, message="Must be a positive number"))


def validate_workflow(workflow: WorkflowInput) -> ValidationResult:
    """Convenience wrapper around ``GraphValidator().validate``."""
    return GraphValidator().validate(workflow)
