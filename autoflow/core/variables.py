"""Layered variable context for a single workflow run."""

import copy
import re
from typing import Any, Dict, Iterable, Optional, Set

from ..models.core import Variable, VariableScope, Workflow
from .exceptions import VariableScopeError
from .logging import get_logger

logger = get_logger(__name__)

REFERENCE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

SAFE_FUNCTIONS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'min': min,
    'max': max,
    'abs': abs,
    'any': any,
    'all': all,
}

_MISSING = object()


class VariableContext:
    """Live variable values for one run, partitioned by scope.

    - global: declared global variables overridden by the run inputs;
      read-only unless the declared variable is mutable
    - workflow: declared workflow variables plus values written by nodes;
      each key may be written by one producing node only
    - node: declared node-scope defaults plus the running node's resolved
      inputs; exists only while that node runs
    """

    def __init__(self, variables: Iterable[Variable] = (), inputs: Optional[Dict[str, Any]] = None):
        self.inputs: Dict[str, Any] = copy.deepcopy(dict(inputs or {}))
        self._global: Dict[str, Any] = {}
        self._mutable_globals: Set[str] = set()
        self._workflow: Dict[str, Any] = {}
        self._node_defaults: Dict[str, Any] = {}
        self._node_scopes: Dict[str, Dict[str, Any]] = {}
        self._node_outputs: Dict[str, Dict[str, Any]] = {}
        self._writers: Dict[str, str] = {}

        for variable in variables:
            value = copy.deepcopy(variable.value)
            if variable.scope == VariableScope.GLOBAL:
                self._global[variable.name] = value
                if variable.mutable:
                    self._mutable_globals.add(variable.name)
            elif variable.scope == VariableScope.NODE:
                self._node_defaults[variable.name] = value
            else:
                self._workflow[variable.name] = value

        self._global.update(self.inputs)

    @classmethod
    def for_workflow(cls, workflow: Workflow, inputs: Optional[Dict[str, Any]] = None) -> "VariableContext":
        return cls(workflow.variables, inputs)

    @property
    def global_scope(self) -> Dict[str, Any]:
        return dict(self._global)

    @property
    def workflow_scope(self) -> Dict[str, Any]:
        return dict(self._workflow)

    @property
    def node_outputs(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._node_outputs)

    def node_scope(self, node_id: str) -> Dict[str, Any]:
        return dict(self._node_scopes.get(node_id, {}))

    def enter_node(self, node_id: str, values: Optional[Dict[str, Any]] = None) -> None:
        """Open the node scope for a node about to run."""
        scope = copy.deepcopy(self._node_defaults)
        scope.update(values or {})
        self._node_scopes[node_id] = scope

    def exit_node(self, node_id: str) -> None:
        """Discard the node scope once the node has finished."""
        self._node_scopes.pop(node_id, None)

    def record_output(self, node_id: str, outputs: Optional[Dict[str, Any]]) -> None:
        self._node_outputs[node_id] = dict(outputs or {})

    def set_variable(self, name: str, value: Any, node_id: str, scope: VariableScope = VariableScope.WORKFLOW) -> None:
        """Write a variable on behalf of a producing node.

        Raises:
            VariableScopeError: On writes to read-only globals or to a
                workflow key already produced by another node
        """
        if scope == VariableScope.NODE:
            if node_id not in self._node_scopes:
                raise VariableScopeError(f"Node '{node_id}' is not running", variable=name, scope=scope.value)
            self._node_scopes[node_id][name] = value
            return

        if scope == VariableScope.GLOBAL or name in self._global:
            if name not in self._mutable_globals:
                raise VariableScopeError(f"Global variable '{name}' is read-only", variable=name, scope="global")
            self._global[name] = value
            return

        writer = self._writers.get(name)
        if writer is not None and writer != node_id:
            raise VariableScopeError(
                f"Workflow variable '{name}' was already produced by node '{writer}'",
                variable=name, scope="workflow"
            )
        self._writers[name] = node_id
        self._workflow[name] = value

    def lookup(self, name: str, node_id: Optional[str] = None, default: Any = None) -> Any:
        """Resolve a bare variable name: node scope, then workflow, then global."""
        if node_id is not None and name in self._node_scopes.get(node_id, {}):
            return self._node_scopes[node_id][name]
        if name in self._workflow:
            return self._workflow[name]
        return self._global.get(name, default)

    def namespace(self, node_id: Optional[str] = None) -> Dict[str, Any]:
        """Merged view used for expression evaluation."""
        merged: Dict[str, Any] = {}
        merged.update(self._global)
        merged.update(self._workflow)
        if node_id is not None:
            merged.update(self._node_scopes.get(node_id, {}))
        names = dict(merged)
        names['vars'] = merged
        names['nodes'] = self.node_outputs
        names['inputs'] = dict(self.inputs)
        return names

    def resolve_path(self, path: str, node_id: Optional[str] = None) -> Any:
        """Resolve a dotted reference such as ``nodes.fetch.status`` or ``vars.limit``."""
        parts = [part for part in path.strip().split('.') if part]
        if not parts:
            return _MISSING

        head, rest = parts[0], parts[1:]
        if head == 'nodes':
            current: Any = self._node_outputs
        elif head == 'inputs':
            current = self.inputs
        elif head == 'vars':
            current = self.namespace(node_id)['vars']
        else:
            current = self.lookup(head, node_id, _MISSING)

        for part in rest:
            if current is _MISSING:
                break
            if isinstance(current, dict):
                current = current.get(part, _MISSING)
            elif isinstance(current, (list, tuple)) and part.lstrip('-').isdigit():
                index = int(part)
                current = current[index] if -len(current) <= index < len(current) else _MISSING
            else:
                current = getattr(current, part, _MISSING)
        return current

    def resolve_value(self, value: Any, node_id: Optional[str] = None) -> Any:
        """Substitute ``{{ reference }}`` placeholders in a literal.

        A string that is exactly one reference resolves to the raw value;
        references embedded in longer strings are interpolated as text.
        """
        if isinstance(value, dict):
            return {key: self.resolve_value(item, node_id) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, node_id) for item in value]
        if not isinstance(value, str) or '{{' not in value:
            return value

        whole = REFERENCE_PATTERN.fullmatch(value.strip())
        if whole:
            resolved = self.resolve_path(whole.group(1), node_id)
            if resolved is _MISSING:
                logger.warning(f"Unresolved variable reference '{whole.group(1)}'")
                return None
            return resolved

        def interpolate(match):
            resolved = self.resolve_path(match.group(1), node_id)
            if resolved is _MISSING:
                logger.warning(f"Unresolved variable reference '{match.group(1)}'")
                return ''
            return str(resolved)

        return REFERENCE_PATTERN.sub(interpolate, value)

    def resolve_inputs(self, inputs: Optional[Dict[str, Any]], node_id: Optional[str] = None) -> Dict[str, Any]:
        return self.resolve_value(dict(inputs or {}), node_id)

    def evaluate(self, expression: Optional[str], node_id: Optional[str] = None) -> bool:
        """
        Evaluate a boolean expression against the current context.

        ``{{ reference }}`` placeholders are bound as values before
        evaluation. Errors are logged and treated as False.

        Args:
            expression: Expression string, e.g. ``"{{ nodes.check.count }} > 3"``
            node_id: Node whose scope should be visible, if any

        Returns:
            Truthiness of the expression
        """
        if expression is None or not expression.strip():
            return True

        names = self.namespace(node_id)
        bound: Dict[str, Any] = {}

        def bind(match):
            placeholder = f"__ref{len(bound)}"
            resolved = self.resolve_path(match.group(1), node_id)
            bound[placeholder] = None if resolved is _MISSING else resolved
            return placeholder

        source = REFERENCE_PATTERN.sub(bind, expression)

        try:
            eval_context = {**names, **bound, **SAFE_FUNCTIONS}
            result = eval(source, {"__builtins__": {}}, eval_context)
            return bool(result)
        except Exception as e:
            logger.warning(f"Failed to evaluate condition '{expression}': {str(e)}")
            return False
