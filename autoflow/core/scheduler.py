"""Dependency-aware execution of workflow graphs."""

import asyncio
import copy
import inspect
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as ModelValidationError

from ..models.core import (
    Edge,
    EdgeType,
    ErrorHandlingMode,
    Node,
    NodeExecutionLog,
    NodeStatus,
    RunStatus,
    VariableScope,
    Workflow,
    WorkflowExecutionLog,
)
from .capability_registry import CapabilityRegistry
from .error_recovery import RetryConfig
from .exceptions import NodeExecutionError, NodeTimeoutError
from .graph import WorkflowGraph
from .logging import NodeRetryLogger, get_logger, logging_context, set_logging_context
from .validator import GraphValidator
from .variables import VariableContext

logger = get_logger(__name__)

DEFAULT_NODE_TIMEOUT_MS = 30000
DEFAULT_RETRY_MODE_RETRIES = 3

# Edge states once the source node has finished
SATISFIED = "satisfied"
DEAD = "dead"
GATED = "gated"


def resolve_node_policy(workflow: Workflow, node: Node,
                        default_timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS) -> Tuple[int, int]:
    """Effective (timeout_ms, retries) for a node.

    Node runtime settings win over workflow settings, which win over the
    engine defaults. ``retry`` error handling implies a retry budget when
    none is configured.
    """
    settings = workflow.settings
    timeout_ms = node.runtime.timeout or settings.timeout or default_timeout_ms
    if node.runtime.retries is not None:
        retries = node.runtime.retries
    elif settings.max_retries is not None:
        retries = settings.max_retries
    elif settings.error_handling == ErrorHandlingMode.RETRY:
        retries = DEFAULT_RETRY_MODE_RETRIES
    else:
        retries = 0
    return timeout_ms, retries


def is_failure_contained(workflow: Workflow, graph: WorkflowGraph, node: Node) -> bool:
    """Whether a failure of ``node`` leaves the rest of the run going."""
    if node.runtime.continue_on_error:
        return True
    if workflow.settings.error_handling == ErrorHandlingMode.CONTINUE_ON_ERROR:
        return True
    return any(edge.type == EdgeType.ERROR for edge in graph.outgoing[node.id])


class NodeInvocation:
    """Everything an executor receives for one attempt of one node."""

    def __init__(self, node: Node, inputs: Dict[str, Any], credentials: Any,
                 variables: VariableContext, run_id: str, attempt: int):
        self.node = node
        self.inputs = inputs
        self.credentials = credentials
        self.variables = variables
        self.run_id = run_id
        self.attempt = attempt

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.variables.lookup(name, self.node.id, default)

    def set_variable(self, name: str, value: Any, scope: VariableScope = VariableScope.WORKFLOW) -> None:
        self.variables.set_variable(name, value, self.node.id, scope)

    def evaluate(self, expression: str) -> bool:
        return self.variables.evaluate(expression, self.node.id)


class _RunState:
    """Mutable bookkeeping for one run; owned by a single scheduler call."""

    def __init__(self, workflow: Workflow, log: WorkflowExecutionLog,
                 context: VariableContext, secrets: Dict[str, Any]):
        self.workflow = workflow
        self.graph = WorkflowGraph(workflow)
        self.log = log
        self.context = context
        self.secrets = secrets
        self.loop = asyncio.get_running_loop()
        self.node_logs: Dict[str, NodeExecutionLog] = {
            node_id: NodeExecutionLog(node_id=node_id) for node_id in self.graph.nodes
        }
        self.unresolved: Dict[str, int] = {
            node_id: len(self.graph.sources_of(node_id)) for node_id in self.graph.nodes
        }
        self.edge_state: Dict[str, str] = {}
        self.tasks: Dict[asyncio.Task, str] = {}
        self.stop_status: Optional[RunStatus] = None
        self.stop_reason: Optional[str] = None

    @property
    def stopped(self) -> bool:
        return self.stop_status is not None

    def stop(self, status: RunStatus, reason: str) -> None:
        if self.stopped:
            return
        self.stop_status = status
        self.stop_reason = reason
        for task in self.tasks:
            task.cancel()


class ExecutionScheduler:
    """Runs validated workflow graphs in dependency order.

    Mutually independent eligible nodes run concurrently as asyncio tasks,
    up to ``max_concurrency``. Synchronous executors are dispatched to a
    thread pool owned by the scheduler. Per-node errors are absorbed into
    the run's log; ``execute`` itself does not raise for them.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        validator: Optional[GraphValidator] = None,
        max_concurrency: int = 10,
        default_timeout_ms: int = DEFAULT_NODE_TIMEOUT_MS,
        retry_config: Optional[RetryConfig] = None,
        thread_pool_size: Optional[int] = None,
    ):
        """Initialize the scheduler.

        Args:
            registry: Capability registry used to find node executors
            validator: Validator used when a workflow is not pre-validated
            max_concurrency: Maximum number of nodes running at once per run
            default_timeout_ms: Node timeout when neither node nor workflow sets one
            retry_config: Backoff between retry attempts
            thread_pool_size: Worker threads for synchronous executors
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.registry = registry
        self.validator = validator or GraphValidator()
        self.max_concurrency = max_concurrency
        self.default_timeout_ms = default_timeout_ms
        self.retry_config = retry_config or RetryConfig()
        self._thread_pool = ThreadPoolExecutor(
            max_workers=thread_pool_size or max_concurrency,
            thread_name_prefix="autoflow-node"
        )
        self._active_runs: Dict[str, _RunState] = {}
        self._retry_logger = NodeRetryLogger("scheduler")

        logger.info(f"ExecutionScheduler initialized with max_concurrency={max_concurrency}")

    def execution_order(self, workflow: Workflow) -> List[str]:
        """Static dependency order (node list order breaks ties)."""
        return WorkflowGraph(workflow).topological_order()

    async def execute(
        self,
        workflow: Union[Workflow, Dict[str, Any]],
        inputs: Optional[Dict[str, Any]] = None,
        secrets: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        validated: bool = False,
    ) -> WorkflowExecutionLog:
        """
        Execute a workflow and return its finalized execution log.

        Args:
            workflow: Workflow model or wire-format dict
            inputs: Run inputs, exposed as read-only global variables
            secrets: Credential values keyed by credential id or name
            execution_id: Identifier for this run (generated when omitted)
            validated: Skip internal validation when the caller already validated

        Returns:
            WorkflowExecutionLog with a terminal status
        """
        execution_id = execution_id or str(uuid.uuid4())
        started = datetime.utcnow()

        model, problems = self._prepare(workflow, validated)
        if model is None:
            workflow_id = workflow.get("id") if isinstance(workflow, dict) else getattr(workflow, "id", None)
            log = WorkflowExecutionLog(
                execution_id=execution_id,
                workflow_id=str(workflow_id or "unknown"),
                start_time=started,
            )
            self._finalize(log, RunStatus.FAILED, f"Workflow validation failed: {'; '.join(problems)}")
            logger.warning(f"Refusing to execute invalid workflow {log.workflow_id}: {log.error}")
            return log

        log = WorkflowExecutionLog(execution_id=execution_id, workflow_id=model.id, start_time=started)
        # Inputs and secrets are copied so node execution cannot mutate the caller's values
        context = VariableContext.for_workflow(model, inputs)
        run = _RunState(model, log, context, copy.deepcopy(dict(secrets or {})))
        self._active_runs[execution_id] = run

        with logging_context(execution_id=execution_id, workflow_id=model.id):
            logger.info(f"Starting execution {execution_id} of workflow '{model.name}' ({len(model.nodes)} nodes)")
            try:
                await self._run_graph(run)
            except asyncio.CancelledError:
                run.stop(RunStatus.CANCELLED, "Execution cancelled")
                await self._drain(run)
                self._complete(run)
                raise
            except Exception as e:
                logger.error(f"Execution {execution_id} failed with internal error: {str(e)}", exc_info=True)
                run.stop(RunStatus.FAILED, f"Internal error: {str(e)}")
                await self._drain(run)
            finally:
                self._active_runs.pop(execution_id, None)

            self._complete(run)
            logger.info(f"Execution {execution_id} finished with status {log.status.value}")
        return log

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Request cancellation of an in-flight run.

        Running nodes are cancelled (cooperatively for async executors,
        abandoned for thread-pool executors) and marked failed; nodes not yet
        started are skipped; the run ends ``cancelled``.

        Returns:
            True if the run was active, False otherwise
        """
        run = self._active_runs.get(execution_id)
        if run is None:
            logger.warning(f"Attempted to cancel non-active execution: {execution_id}")
            return False
        run.loop.call_soon_threadsafe(run.stop, RunStatus.CANCELLED, "Execution cancelled")
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def get_active_executions(self) -> List[str]:
        return list(self._active_runs.keys())

    def is_execution_active(self, execution_id: str) -> bool:
        return execution_id in self._active_runs

    def shutdown(self) -> None:
        """Cancel active runs and release the thread pool."""
        for execution_id in list(self._active_runs.keys()):
            self.cancel_execution(execution_id)
        self._thread_pool.shutdown(wait=False)
        logger.info("ExecutionScheduler shutdown completed")

    def _prepare(self, workflow: Union[Workflow, Dict[str, Any]], validated: bool) -> Tuple[Optional[Workflow], List[str]]:
        if not validated:
            result = self.validator.validate(workflow)
            if not result.valid:
                return None, result.messages()
        if isinstance(workflow, Workflow):
            return workflow, []
        try:
            return Workflow.model_validate(workflow), []
        except ModelValidationError as e:
            return None, [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]

    async def _run_graph(self, run: _RunState) -> None:
        """Kahn-style frontier: nodes become decidable once every source has finished."""
        graph = run.graph
        ready: List[str] = []
        self._admit(run, graph.roots(), ready)

        while (ready or run.tasks) and not run.stopped:
            while ready and len(run.tasks) < self.max_concurrency:
                self._start_node(run, ready.pop(0))

            if not run.tasks:
                break

            done, _ = await asyncio.wait(set(run.tasks), return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: graph.order_index[run.tasks[t]]):
                node_id = run.tasks.pop(task)
                if task.cancelled():
                    self._mark_interrupted(run, node_id)
                    continue

                status = task.result()
                if status == NodeStatus.FAILED and not is_failure_contained(run.workflow, graph, graph.nodes[node_id]):
                    node_error = run.node_logs[node_id].error
                    run.stop(RunStatus.FAILED, f"Node '{node_id}' failed: {node_error}")
                if not run.stopped:
                    newly_decidable = self._resolve_outgoing(run, node_id, status)
                    self._admit(run, newly_decidable, ready)

            ready = graph.sort_by_position(ready)

        await self._drain(run)

    def _admit(self, run: _RunState, candidates: List[str], ready: List[str]) -> None:
        """Decide decidable nodes: eligible ones join ``ready``, others are skipped transitively."""
        worklist = run.graph.sort_by_position(candidates)
        while worklist:
            node_id = worklist.pop(0)
            should_run, reason = self._decide(run, node_id)
            if should_run:
                ready.append(node_id)
                continue

            node_log = run.node_logs[node_id]
            node_log.status = NodeStatus.SKIPPED
            run.log.node_logs.append(node_log)
            logger.info(f"Skipping node {node_id}: {reason}")
            newly_decidable = self._resolve_outgoing(run, node_id, NodeStatus.SKIPPED)
            worklist = run.graph.sort_by_position(worklist + newly_decidable)

    def _decide(self, run: _RunState, node_id: str) -> Tuple[bool, str]:
        node = run.graph.nodes[node_id]
        incoming = run.graph.incoming[node_id]

        if incoming:
            satisfied = False
            for edge in incoming:
                state = run.edge_state.get(edge.id, DEAD)
                if state == GATED:
                    if not run.context.evaluate(edge.condition.expression):
                        return False, f"conditional edge '{edge.id}' evaluated false"
                    satisfied = True
                elif state == SATISFIED:
                    satisfied = True
            if not satisfied:
                return False, "no upstream path was satisfied"

        if node.condition is not None and node.condition.active:
            if not run.context.evaluate(node.condition.expression):
                return False, "node condition evaluated false"

        return True, ""

    def _edge_outcome(self, edge: Edge, status: NodeStatus) -> str:
        if status == NodeStatus.SUCCESS:
            if edge.type == EdgeType.ERROR:
                return DEAD
            if edge.type == EdgeType.CONDITIONAL and edge.condition is not None and edge.condition.active:
                return GATED
            return SATISFIED
        if status == NodeStatus.FAILED and edge.type == EdgeType.ERROR:
            return SATISFIED
        return DEAD

    def _resolve_outgoing(self, run: _RunState, node_id: str, status: NodeStatus) -> List[str]:
        """Settle the outgoing edges of a finished node; return targets that became decidable."""
        for edge in run.graph.outgoing[node_id]:
            run.edge_state[edge.id] = self._edge_outcome(edge, status)

        newly_decidable = []
        for target in run.graph.targets_of(node_id):
            run.unresolved[target] -= 1
            if run.unresolved[target] == 0:
                newly_decidable.append(target)
        return newly_decidable

    def _start_node(self, run: _RunState, node_id: str) -> None:
        node_log = run.node_logs[node_id]
        node_log.status = NodeStatus.RUNNING
        node_log.start_time = datetime.utcnow()
        run.log.node_logs.append(node_log)
        task = asyncio.ensure_future(self._execute_node(run, run.graph.nodes[node_id]))
        run.tasks[task] = node_id

    async def _execute_node(self, run: _RunState, node: Node) -> NodeStatus:
        """Run one node with timeout and retries; never raises for node failures."""
        node_log = run.node_logs[node.id]
        set_logging_context(node_id=node.id)
        timeout_ms, retries = resolve_node_policy(run.workflow, node, self.default_timeout_ms)
        max_attempts = retries + 1

        try:
            capability = self.registry.lookup(node.type, node.provider, node.operation)
            resolved_inputs = run.context.resolve_inputs(node.inputs, node.id)
            node_log.inputs = copy.deepcopy(resolved_inputs)

            if capability is None or capability.executor is None:
                raise NodeExecutionError(
                    f"No executor registered for '{node.capability_key}'",
                    node_id=node.id, run_id=run.log.execution_id
                )

            credentials = self._resolve_credentials(node, run.secrets)
            run.context.enter_node(node.id, resolved_inputs)
            last_error: Optional[Exception] = None

            for attempt in range(1, max_attempts + 1):
                node_log.retries = attempt - 1
                invocation = NodeInvocation(
                    node, copy.deepcopy(resolved_inputs), credentials,
                    run.context, run.log.execution_id, attempt
                )
                try:
                    result = await self._invoke(capability.executor, capability.is_async, invocation, timeout_ms)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = self.retry_config.get_delay(attempt)
                        self._retry_logger.attempt_failed(node.id, e, attempt, max_attempts, delay)
                        await asyncio.sleep(delay)
                    continue

                outputs = self._normalize_outputs(result)
                run.context.record_output(node.id, outputs)
                node_log.outputs = copy.deepcopy(outputs)
                node_log.status = NodeStatus.SUCCESS
                if attempt > 1:
                    self._retry_logger.recovered(node.id, attempt)
                logger.debug(f"Node {node.id} succeeded on attempt {attempt}")
                return NodeStatus.SUCCESS

            if max_attempts > 1:
                self._retry_logger.exhausted(node.id, last_error, max_attempts)
            raise last_error

        except asyncio.CancelledError:
            raise
        except Exception as e:
            node_log.status = NodeStatus.FAILED
            node_log.error = str(e) or type(e).__name__
            logger.error(f"Node {node.id} failed: {node_log.error}")
            return NodeStatus.FAILED
        finally:
            run.context.exit_node(node.id)
            node_log.end_time = datetime.utcnow()

    async def _invoke(self, executor, is_async: bool, invocation: NodeInvocation, timeout_ms: int) -> Any:
        """Call an executor under a timeout; sync executors run in the thread pool."""
        loop = asyncio.get_running_loop()

        async def call():
            if is_async:
                result = await executor(invocation)
            else:
                result = await loop.run_in_executor(self._thread_pool, executor, invocation)
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            return await asyncio.wait_for(call(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise NodeTimeoutError(
                f"Node '{invocation.node.id}' timed out after {timeout_ms} ms",
                node_id=invocation.node.id, run_id=invocation.run_id,
                attempt=invocation.attempt, timeout_ms=timeout_ms
            )

    @staticmethod
    def _normalize_outputs(result: Any) -> Dict[str, Any]:
        if result is None:
            return {}
        if isinstance(result, dict):
            return result
        return {"result": result}

    @staticmethod
    def _resolve_credentials(node: Node, secrets: Dict[str, Any]) -> Any:
        if node.credentials is None:
            return None
        for key in (node.credentials.id, node.credentials.name):
            if key and key in secrets:
                return secrets[key]
        logger.warning(f"Credentials for node {node.id} not found in supplied secrets")
        return None

    def _mark_interrupted(self, run: _RunState, node_id: str) -> None:
        node_log = run.node_logs[node_id]
        if node_log.status == NodeStatus.RUNNING:
            node_log.status = NodeStatus.FAILED
            if run.stop_status == RunStatus.CANCELLED:
                node_log.error = "Cancelled before completion"
            else:
                node_log.error = f"Aborted: {run.stop_reason}"
            node_log.end_time = node_log.end_time or datetime.utcnow()

    async def _drain(self, run: _RunState) -> None:
        """Wait for cancelled in-flight nodes and record them as interrupted."""
        if not run.tasks:
            return
        pending = dict(run.tasks)
        run.tasks.clear()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task, node_id in sorted(pending.items(), key=lambda item: run.graph.order_index[item[1]]):
            if task.cancelled():
                self._mark_interrupted(run, node_id)

    def _complete(self, run: _RunState) -> None:
        """Skip every node that never left pending, then finalize the log."""
        if run.log.is_finished:
            return
        try:
            order = run.graph.topological_order()
        except Exception:
            order = list(run.graph.nodes)
        for node_id in order:
            node_log = run.node_logs[node_id]
            if node_log.status == NodeStatus.PENDING:
                node_log.status = NodeStatus.SKIPPED
                run.log.node_logs.append(node_log)

        if run.stopped:
            self._finalize(run.log, run.stop_status, run.stop_reason)
        elif any(entry.status == NodeStatus.FAILED for entry in run.log.node_logs):
            failed = [entry.node_id for entry in run.log.node_logs if entry.status == NodeStatus.FAILED]
            self._finalize(run.log, RunStatus.FAILED, f"Nodes failed: {', '.join(failed)}")
        else:
            self._finalize(run.log, RunStatus.SUCCESS, None)

    @staticmethod
    def _finalize(log: WorkflowExecutionLog, status: RunStatus, error: Optional[str]) -> None:
        """Stamp the terminal status and end time exactly once."""
        if log.end_time is not None:
            return
        log.status = status
        log.error = error
        log.end_time = datetime.utcnow()
