"""Compiles workflow graphs into external-tool documents and runtime code."""

import re
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    EdgeType,
    ErrorHandlingMode,
    ExternalCompileResult,
    Node,
    NodeType,
    RuntimeCompileResult,
    Workflow,
)
from .capability_registry import CapabilityRegistry, CompileTarget
from .dependency_resolver import DependencyResolver
from .exceptions import CompilationError
from .graph import WorkflowGraph
from .logging import get_logger
from .scheduler import DEFAULT_NODE_TIMEOUT_MS, is_failure_contained, resolve_node_policy
from .variables import SAFE_FUNCTIONS

logger = get_logger(__name__)

IF_NODE_TYPE = "n8n-nodes-base.if"
MAIN_OUTPUT = 0
ERROR_OUTPUT = 1
NODE_SPACING = 220

_RUNTIME_PREAMBLE = r'''
import asyncio
import inspect
import re

_REFERENCE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


async def _with_policy(call, timeout_ms, retries):
    """Run ``call`` under a timeout, retrying with exponential backoff."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(call(), timeout_ms / 1000.0)
        except asyncio.CancelledError:
            raise
        except Exception:
            if attempt > retries:
                raise
            await asyncio.sleep(min(RETRY_BASE_DELAY * 2 ** (attempt - 1), RETRY_MAX_DELAY))


class _RunState:
    """Node status, outputs and variables for one run."""

    def __init__(self, invoke, variables):
        self._invoke = invoke
        self.inputs = dict(variables or {})
        self.variables = dict(DEFAULT_VARIABLES)
        self.variables.update(self.inputs)
        self.outputs = {}
        self.status = {}
        self.errors = {}
        self.aborted = None

    def succeeded(self, node_id):
        return self.status.get(node_id) == 'success'

    def failed(self, node_id):
        return self.status.get(node_id) == 'failed'

    def lookup(self, path):
        parts = [part for part in path.strip().split('.') if part]
        if not parts:
            return None
        head, rest = parts[0], parts[1:]
        if head == 'nodes':
            current = self.outputs
        elif head == 'vars':
            current = self.variables
        elif head == 'inputs':
            current = self.inputs
        else:
            current = self.variables.get(head)
        for part in rest:
            if isinstance(current, dict):
                current = current.get(part)
            elif isinstance(current, (list, tuple)) and part.lstrip('-').isdigit():
                index = int(part)
                current = current[index] if -len(current) <= index < len(current) else None
            else:
                return None
        return current

    def resolve(self, value):
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if not isinstance(value, str) or '{{' not in value:
            return value
        whole = _REFERENCE.fullmatch(value.strip())
        if whole:
            return self.lookup(whole.group(1))

        def interpolate(match):
            resolved = self.lookup(match.group(1))
            return '' if resolved is None else str(resolved)

        return _REFERENCE.sub(interpolate, value)

    def check(self, expression):
        if not expression or not expression.strip():
            return True
        bound = {}

        def bind(match):
            key = '__ref%d' % len(bound)
            bound[key] = self.lookup(match.group(1))
            return key

        source = _REFERENCE.sub(bind, expression)
        names = dict(self.variables)
        names.update(vars=self.variables, nodes=self.outputs, inputs=self.inputs)
        names.update(bound)
        names.update(_SAFE_FUNCTIONS)
        try:
            return bool(eval(source, {'__builtins__': {}}, names))
        except Exception:
            return False

    def skip(self, node_id):
        self.status[node_id] = 'skipped'

    def record(self, node_id, result):
        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {'result': result}
        self.outputs[node_id] = result
        self.status[node_id] = 'success'

    def fail(self, node_id, error, contained):
        self.status[node_id] = 'failed'
        self.errors[node_id] = str(error) or type(error).__name__
        if not contained and self.aborted is None:
            self.aborted = "Node '%s' failed: %s" % (node_id, self.errors[node_id])

    async def invoke(self, call, node_id, inputs):
        result = self._invoke(call, node_id, inputs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def result(self):
        failed = [node_id for node_id in NODE_IDS if self.status.get(node_id) == 'failed']
        if self.aborted:
            error = self.aborted
        elif failed:
            error = 'Nodes failed: ' + ', '.join(failed)
        else:
            error = None
        return {
            'workflowId': WORKFLOW_ID,
            'status': 'failed' if failed else 'success',
            'error': error,
            'nodes': {
                node_id: {
                    'status': self.status.get(node_id, 'skipped'),
                    'outputs': self.outputs.get(node_id),
                    'error': self.errors.get(node_id),
                }
                for node_id in NODE_IDS
            },
        }
'''


def _safe_functions_line() -> str:
    """Condition helpers shared with live evaluation, as module source."""
    entries = ", ".join(f"{name!r}: {name}" for name in SAFE_FUNCTIONS)
    return f"_SAFE_FUNCTIONS = {{{entries}}}"


def _identifier(value: str, taken: Set[str]) -> str:
    """Turn a node id into a unique Python identifier fragment."""
    base = re.sub(r"\W", "_", value) or "node"
    if base[0].isdigit():
        base = f"n{base}"
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}_{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


class WorkflowCompiler:
    """Compiles a workflow for an external workflow tool or as Python code.

    Both targets resolve dependencies first and walk the graph in
    topological order; neither emits anything for an unresolvable workflow.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        resolver: Optional[DependencyResolver] = None,
        default_timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.registry = registry
        self.resolver = resolver or DependencyResolver(registry)
        self.default_timeout_ms = default_timeout_ms
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    def compile(self, workflow: Workflow, target: str):
        """Dispatch on target name: ``external`` or ``runtime``."""
        target = CompileTarget(target)
        if target == CompileTarget.EXTERNAL:
            return self.compile_to_external_format(workflow)
        if target == CompileTarget.RUNTIME:
            return self.compile_to_runtime_code(workflow)
        raise CompilationError(f"Unsupported compile target: {target.value}", target=target.value)

    def compile_to_external_format(self, workflow: Workflow) -> ExternalCompileResult:
        """
        Compile a workflow into an n8n-style document.

        Args:
            workflow: Workflow to compile

        Returns:
            ExternalCompileResult with the document, or the errors that
            prevented compilation
        """
        dependencies = self.resolver.validate_dependencies(workflow, CompileTarget.EXTERNAL)
        if not dependencies.valid:
            return ExternalCompileResult(success=False, errors=dependencies.errors)

        graph = WorkflowGraph(workflow)
        try:
            order = graph.topological_order()
        except CompilationError as e:
            return ExternalCompileResult(success=False, errors=[e.message])

        warnings: List[str] = []
        taken_names: Set[str] = set()
        names: Dict[str, str] = {}
        documents: Dict[str, Dict[str, Any]] = {}
        emitted: List[Dict[str, Any]] = []

        for index, node_id in enumerate(order):
            node = graph.nodes[node_id]
            names[node_id] = self._unique_name(node.name or node.id, taken_names)
            document = self._external_node(workflow, node, names[node_id], index, warnings)
            documents[node_id] = document
            emitted.append(document)

        connections: Dict[str, Dict[str, List[List[Dict[str, Any]]]]] = {}

        def connect(source_name: str, slot: int, target_name: str) -> None:
            outputs = connections.setdefault(source_name, {"main": []})["main"]
            while len(outputs) <= slot:
                outputs.append([])
            outputs[slot].append({"node": target_name, "type": "main", "index": 0})

        for node_id in order:
            for edge in graph.outgoing[node_id]:
                source = graph.nodes[edge.source]
                source_name = names[edge.source]
                target_name = names[edge.target]

                if edge.type == EdgeType.ERROR:
                    capability = self.registry.resolve(source)
                    if source.type == NodeType.TRIGGER or not capability.external.supports_error_output:
                        warnings.append(
                            f"Edge '{edge.id}': error route from '{source.id}' cannot be expressed and was dropped"
                        )
                        continue
                    documents[edge.source]["onError"] = "continueErrorOutput"
                    connect(source_name, ERROR_OUTPUT, target_name)

                elif edge.type == EdgeType.CONDITIONAL and edge.condition is not None and edge.condition.active:
                    guard_name = self._unique_name(f"If {target_name}", taken_names)
                    emitted.append(self._guard_node(edge, guard_name, documents[edge.source], documents[edge.target]))
                    connect(source_name, MAIN_OUTPUT, guard_name)
                    connect(guard_name, MAIN_OUTPUT, target_name)

                else:
                    connect(source_name, MAIN_OUTPUT, target_name)

        settings: Dict[str, Any] = {"executionOrder": "v1"}
        if workflow.settings.timeout:
            settings["executionTimeout"] = max(1, workflow.settings.timeout // 1000)

        document = {
            "name": workflow.name,
            "nodes": emitted,
            "connections": connections,
            "active": False,
            "settings": settings,
            "meta": {"workflowId": workflow.id, "version": workflow.version},
        }
        for warning in warnings:
            logger.warning(f"External compile of {workflow.id}: {warning}")
        logger.info(f"Compiled workflow {workflow.id} to external format ({len(emitted)} nodes)")
        return ExternalCompileResult(success=True, document=document, errors=list(warnings), warnings=warnings)

    def _external_node(self, workflow: Workflow, node: Node, name: str, index: int,
                       warnings: List[str]) -> Dict[str, Any]:
        capability = self.registry.resolve(node)
        spec = capability.external
        timeout_ms, retries = resolve_node_policy(workflow, node, self.default_timeout_ms)

        if node.position is not None:
            position = [node.position.x, node.position.y]
        else:
            position = [250 + index * NODE_SPACING, 300]

        document: Dict[str, Any] = {
            "id": node.id,
            "name": name,
            "type": spec.node_type,
            "typeVersion": spec.type_version,
            "position": position,
            "parameters": spec.build_parameters(node),
        }
        if retries > 0:
            document["retryOnFail"] = True
            document["maxTries"] = retries + 1
            document["waitBetweenTries"] = int(self.retry_base_delay * 1000)
        if node.runtime.continue_on_error or workflow.settings.error_handling == ErrorHandlingMode.CONTINUE_ON_ERROR:
            document["onError"] = "continueRegularOutput"
        if node.credentials is not None:
            credential_type = capability.metadata.get("credential_type", node.provider)
            document["credentials"] = {credential_type: node.credentials.to_wire()}
        if node.condition is not None and node.condition.active:
            document["notes"] = f"Runs only when: {node.condition.expression}"
            document["notesInFlow"] = True
            warnings.append(
                f"Node '{node.id}': node-level condition is not enforced by the external format"
            )
        return document

    @staticmethod
    def _guard_node(edge, name: str, source: Dict[str, Any], target: Dict[str, Any]) -> Dict[str, Any]:
        """IF node standing in for a conditional edge; its true output leads to the target."""
        position = [
            (source["position"][0] + target["position"][0]) / 2,
            (source["position"][1] + target["position"][1]) / 2,
        ]
        return {
            "id": f"{edge.id}-guard",
            "name": name,
            "type": IF_NODE_TYPE,
            "typeVersion": 1,
            "position": position,
            "parameters": {
                "conditions": {
                    "boolean": [{"value1": f"={edge.condition.expression}", "value2": True}]
                }
            },
        }

    @staticmethod
    def _unique_name(name: str, taken: Set[str]) -> str:
        candidate = name
        suffix = 1
        while candidate in taken:
            candidate = f"{name} {suffix}"
            suffix += 1
        taken.add(candidate)
        return candidate

    def compile_to_runtime_code(self, workflow: Workflow) -> RuntimeCompileResult:
        """
        Compile a workflow into a self-contained Python module.

        The module exposes ``async def run(invoke, variables=None)``, where
        ``invoke(call, node_id, inputs)`` performs one capability call and may
        be sync or async. ``run`` returns a dict with the run status, error and
        per-node results.

        Args:
            workflow: Workflow to compile

        Returns:
            RuntimeCompileResult with the module source, or the errors that
            prevented compilation
        """
        dependencies = self.resolver.validate_dependencies(workflow, CompileTarget.RUNTIME)
        if not dependencies.valid:
            return RuntimeCompileResult(success=False, errors=dependencies.errors)

        graph = WorkflowGraph(workflow)
        try:
            order = graph.topological_order()
            stages = graph.stages()
        except CompilationError as e:
            return RuntimeCompileResult(success=False, errors=[e.message])

        taken: Set[str] = set()
        identifiers = {node_id: _identifier(node_id, taken) for node_id in order}

        lines: List[str] = [
            f"# Generated by autoflow from workflow {workflow.name!r} ({workflow.id}), version {workflow.version}",
        ]
        lines.extend(_RUNTIME_PREAMBLE.splitlines())
        lines.extend([
            "",
            _safe_functions_line(),
            f"WORKFLOW_ID = {workflow.id!r}",
            f"NODE_IDS = {order!r}",
            f"DEFAULT_VARIABLES = {self._default_variables(workflow)!r}",
            f"RETRY_BASE_DELAY = {float(self.retry_base_delay)!r}",
            f"RETRY_MAX_DELAY = {float(self.retry_max_delay)!r}",
        ])

        for node_id in order:
            lines.extend(self._runtime_node(workflow, graph.nodes[node_id], identifiers[node_id]))
        for node_id in order:
            lines.extend(self._runtime_step(workflow, graph, graph.nodes[node_id], identifiers))
        lines.extend(self._runtime_entrypoint(stages, identifiers))

        code = "\n".join(lines) + "\n"
        try:
            compile(code, f"<autoflow:{workflow.id}>", "exec")
        except SyntaxError as e:
            message = f"Generated code for workflow {workflow.id} is not valid Python: {e.msg} (line {e.lineno})"
            logger.error(message)
            return RuntimeCompileResult(success=False, errors=[message])

        logger.info(f"Compiled workflow {workflow.id} to runtime code ({len(order)} nodes, {len(stages)} stages)")
        return RuntimeCompileResult(success=True, code=code)

    @staticmethod
    def _default_variables(workflow: Workflow) -> Dict[str, Any]:
        return {variable.name: variable.value for variable in workflow.variables}

    def _runtime_node(self, workflow: Workflow, node: Node, ident: str) -> List[str]:
        capability = self.registry.resolve(node)
        timeout_ms, retries = resolve_node_policy(workflow, node, self.default_timeout_ms)
        return [
            "",
            "",
            f"async def node_{ident}(state):",
            f"    # {(node.name or node.id)!r} via {capability.runtime_call!r}",
            f"    inputs = state.resolve({dict(node.inputs)!r})",
            f"    return await _with_policy(",
            f"        lambda: state.invoke({capability.runtime_call!r}, {node.id!r}, inputs),",
            f"        {timeout_ms}, {retries})",
        ]

    def _runtime_step(self, workflow: Workflow, graph: WorkflowGraph, node: Node,
                      identifiers: Dict[str, str]) -> List[str]:
        node_ref = repr(node.id)
        body = [
            "",
            "",
            f"async def step_{identifiers[node.id]}(state):",
            "    if state.aborted:",
            f"        state.skip({node_ref})",
            "        return",
        ]

        incoming = graph.incoming[node.id]
        if incoming:
            body.append("    satisfied = False")
            for edge in incoming:
                source_ref = repr(edge.source)
                if edge.type == EdgeType.ERROR:
                    body.append(f"    if state.failed({source_ref}):")
                    body.append("        satisfied = True")
                elif edge.type == EdgeType.CONDITIONAL and edge.condition is not None and edge.condition.active:
                    body.append(f"    if state.succeeded({source_ref}):")
                    body.append(f"        if not state.check({edge.condition.expression!r}):")
                    body.append(f"            state.skip({node_ref})")
                    body.append("            return")
                    body.append("        satisfied = True")
                else:
                    body.append(f"    if state.succeeded({source_ref}):")
                    body.append("        satisfied = True")
            body.extend([
                "    if not satisfied:",
                f"        state.skip({node_ref})",
                "        return",
            ])

        if node.condition is not None and node.condition.active:
            body.extend([
                f"    if not state.check({node.condition.expression!r}):",
                f"        state.skip({node_ref})",
                "        return",
            ])

        contained = is_failure_contained(workflow, graph, node)
        body.extend([
            "    try:",
            f"        state.record({node_ref}, await node_{identifiers[node.id]}(state))",
            "    except Exception as exc:",
            f"        state.fail({node_ref}, exc, contained={contained!r})",
        ])
        return body

    @staticmethod
    def _runtime_entrypoint(stages: List[List[str]], identifiers: Dict[str, str]) -> List[str]:
        body = [
            "",
            "",
            "async def run(invoke, variables=None):",
            "    state = _RunState(invoke, variables)",
        ]
        for stage in stages:
            steps = [f"step_{identifiers[node_id]}(state)" for node_id in stage]
            if len(steps) == 1:
                body.append(f"    await {steps[0]}")
            else:
                body.append(f"    await asyncio.gather({', '.join(steps)})")
        body.append("    return state.result()")
        return body
