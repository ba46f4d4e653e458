"""Tests for the execution scheduler."""

import asyncio
import threading
from collections import defaultdict

import pytest

from autoflow.core.error_recovery import RetryConfig
from autoflow.core.scheduler import ExecutionScheduler
from autoflow.models.core import NodeStatus, RunStatus, Workflow


def statuses(log):
    return {entry.node_id: entry.status for entry in log.node_logs}


@pytest.fixture
def flaky(registry):
    """Capability failing ``failures`` times per node before succeeding."""
    attempts = defaultdict(int)

    def run(invocation):
        attempts[invocation.node.id] += 1
        if attempts[invocation.node.id] <= invocation.inputs.get("failures", 0):
            raise RuntimeError(f"attempt {attempts[invocation.node.id]} failed")
        return {"attempts": attempts[invocation.node.id]}

    registry.register_executor("test", "flaky", run)
    return attempts


@pytest.fixture
def recorder(registry):
    """Capability recording the order in which nodes start."""
    started = []

    async def run(invocation):
        started.append(invocation.node.id)
        await asyncio.sleep(0)
        return {"node": invocation.node.id}

    registry.register_executor("test", "record", run)
    return started


class TestExecutionScheduler:
    """Test cases for ExecutionScheduler."""

    @pytest.mark.asyncio
    async def test_linear_run_passes_outputs(self, scheduler, make_workflow, make_node, make_edge):
        """Test that outputs of upstream nodes resolve into downstream inputs."""
        workflow = make_workflow(
            [
                make_node("setter", provider="core", operation="set", inputs={"greeting": "hello"}),
                make_node("echo", inputs={"message": "{{ nodes.setter.greeting }} {{ inputs.who }}"}),
            ],
            [make_edge("start", "setter"), make_edge("setter", "echo")]
        )

        log = await scheduler.execute(workflow, inputs={"who": "world"})

        assert log.status == RunStatus.SUCCESS
        assert log.error is None
        assert log.end_time is not None
        assert [entry.node_id for entry in log.node_logs] == ["start", "setter", "echo"]
        assert log.get_node_log("echo").outputs == {"message": "hello world"}
        assert log.get_node_log("echo").inputs == {"message": "hello world"}
        assert log.workflow_id == "wf-test"

    @pytest.mark.asyncio
    async def test_dependencies_run_first(self, scheduler, recorder, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [
                make_node("join", operation="record"),
                make_node("left", operation="record"),
                make_node("right", operation="record"),
            ],
            [
                make_edge("start", "left"),
                make_edge("start", "right"),
                make_edge("left", "join"),
                make_edge("right", "join"),
            ]
        )

        log = await scheduler.execute(workflow)

        assert log.status == RunStatus.SUCCESS
        assert recorder[-1] == "join"
        assert set(recorder[:2]) == {"left", "right"}
        assert scheduler.execution_order(Workflow.model_validate(workflow)) == ["start", "left", "right", "join"]

    @pytest.mark.asyncio
    async def test_retry_accounting(self, scheduler, flaky, make_workflow, make_node, make_edge):
        """Test that retries record the attempts consumed beyond the first."""
        workflow = make_workflow(
            [make_node("unstable", operation="flaky", inputs={"failures": 2}, runtime={"retries": 2})],
            [make_edge("start", "unstable")]
        )

        log = await scheduler.execute(workflow)

        node_log = log.get_node_log("unstable")
        assert log.status == RunStatus.SUCCESS
        assert node_log.retries == 2
        assert node_log.outputs == {"attempts": 3}

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, scheduler, flaky, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [make_node("unstable", operation="flaky", inputs={"failures": 5}, runtime={"retries": 1})],
            [make_edge("start", "unstable")]
        )

        log = await scheduler.execute(workflow)

        node_log = log.get_node_log("unstable")
        assert log.status == RunStatus.FAILED
        assert node_log.status == NodeStatus.FAILED
        assert node_log.retries == 1
        assert node_log.error == "attempt 2 failed"
        assert flaky["unstable"] == 2

    @pytest.mark.asyncio
    async def test_retry_mode_default_budget(self, scheduler, flaky, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [make_node("unstable", operation="flaky", inputs={"failures": 3})],
            [make_edge("start", "unstable")],
            settings={"errorHandling": "retry"}
        )

        log = await scheduler.execute(workflow)

        assert log.status == RunStatus.SUCCESS
        assert log.get_node_log("unstable").retries == 3

    @pytest.mark.asyncio
    async def test_stop_on_error_aborts_run(self, scheduler, make_workflow, make_node, make_edge):
        """Test that an uncontained failure cancels in-flight nodes and skips the rest."""
        workflow = make_workflow(
            [
                make_node("boom", operation="fail"),
                make_node("slow", operation="sleep", inputs={"seconds": 1}),
                make_node("after", operation="echo"),
            ],
            [make_edge("start", "boom"), make_edge("start", "slow"), make_edge("boom", "after")]
        )

        log = await scheduler.execute(workflow)

        assert log.status == RunStatus.FAILED
        assert log.error == "Node 'boom' failed: boom"
        assert statuses(log) == {
            "start": NodeStatus.SUCCESS,
            "boom": NodeStatus.FAILED,
            "slow": NodeStatus.FAILED,
            "after": NodeStatus.SKIPPED,
        }
        assert log.get_node_log("slow").error.startswith("Aborted")

    @pytest.mark.asyncio
    async def test_continue_on_error(self, scheduler, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [
                make_node("boom", operation="fail", runtime={"continueOnError": True}),
                make_node("after_boom"),
                make_node("sibling"),
            ],
            [make_edge("start", "boom"), make_edge("boom", "after_boom"), make_edge("start", "sibling")]
        )

        log = await scheduler.execute(workflow)

        assert statuses(log) == {
            "start": NodeStatus.SUCCESS,
            "boom": NodeStatus.FAILED,
            "after_boom": NodeStatus.SKIPPED,
            "sibling": NodeStatus.SUCCESS,
        }
        assert log.status == RunStatus.FAILED
        assert log.error == "Nodes failed: boom"

    @pytest.mark.asyncio
    async def test_error_edge_routes_failure(self, scheduler, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [
                make_node("boom", operation="fail"),
                make_node("handler", inputs={"handled": True}),
                make_node("happy_path"),
            ],
            [
                make_edge("start", "boom"),
                make_edge("boom", "handler", type="error"),
                make_edge("boom", "happy_path"),
            ]
        )

        log = await scheduler.execute(workflow)

        result = statuses(log)
        assert result["handler"] == NodeStatus.SUCCESS
        assert result["happy_path"] == NodeStatus.SKIPPED
        assert log.get_node_log("handler").outputs == {"handled": True}

    @pytest.mark.asyncio
    async def test_conditional_edges(self, scheduler, make_workflow, make_node, make_edge):
        """Test that conditional edges gate their targets on the run's variables."""
        workflow = make_workflow(
            [
                make_node("check", type="condition", provider="logic", operation="if",
                          inputs={"expression": "{{ inputs.amount }} > 100"}),
                make_node("big"),
                make_node("small"),
                make_node("notify"),
            ],
            [
                make_edge("start", "check"),
                make_edge("check", "big", type="conditional", condition={"expression": "{{ nodes.check.result }}"}),
                make_edge("check", "small", type="conditional",
                          condition={"expression": "not {{ nodes.check.result }}"}),
                make_edge("small", "notify"),
            ]
        )

        log = await scheduler.execute(workflow, inputs={"amount": 150})

        assert log.status == RunStatus.SUCCESS
        assert statuses(log) == {
            "start": NodeStatus.SUCCESS,
            "check": NodeStatus.SUCCESS,
            "big": NodeStatus.SUCCESS,
            "small": NodeStatus.SKIPPED,
            "notify": NodeStatus.SKIPPED,
        }

    @pytest.mark.asyncio
    async def test_join_runs_when_one_path_satisfied(self, scheduler, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [
                make_node("gated", condition={"expression": "inputs['enabled']"}),
                make_node("plain"),
                make_node("join"),
            ],
            [
                make_edge("start", "gated"),
                make_edge("start", "plain"),
                make_edge("gated", "join"),
                make_edge("plain", "join"),
            ]
        )

        log = await scheduler.execute(workflow, inputs={"enabled": False})

        result = statuses(log)
        assert result["gated"] == NodeStatus.SKIPPED
        assert result["join"] == NodeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_timeout(self, scheduler, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [make_node("slow", operation="sleep", inputs={"seconds": 1}, runtime={"timeout": 50})],
            [make_edge("start", "slow")]
        )

        log = await scheduler.execute(workflow)

        node_log = log.get_node_log("slow")
        assert node_log.status == NodeStatus.FAILED
        assert "timed out after 50 ms" in node_log.error

    @pytest.mark.asyncio
    async def test_invalid_workflow_does_not_run(self, scheduler, make_workflow, make_node):
        workflow = make_workflow([make_node("a")], trigger=False)

        log = await scheduler.execute(workflow)

        assert log.status == RunStatus.FAILED
        assert log.error.startswith("Workflow validation failed")
        assert log.node_logs == []
        assert log.end_time is not None

    @pytest.mark.asyncio
    async def test_missing_executor(self, scheduler, make_workflow, make_node, make_edge):
        workflow = make_workflow(
            [make_node("call", provider="http", operation="request", inputs={"url": "https://example.test"})],
            [make_edge("start", "call")]
        )

        log = await scheduler.execute(workflow)

        assert log.get_node_log("call").error == "No executor registered for 'http.request'"

    @pytest.mark.asyncio
    async def test_credentials_from_secrets(self, registry, scheduler, make_workflow, make_node, make_edge):
        registry.register_executor("test", "whoami", lambda invocation: {"token": invocation.credentials})
        workflow = make_workflow(
            [make_node("auth", operation="whoami", credentials={"id": "cred-1", "name": "API key"})],
            [make_edge("start", "auth")]
        )

        log = await scheduler.execute(workflow, secrets={"cred-1": "s3cret"})

        assert log.get_node_log("auth").outputs == {"token": "s3cret"}

    @pytest.mark.asyncio
    async def test_sync_executors_use_thread_pool(self, registry, scheduler, make_workflow, make_node, make_edge):
        registry.register_executor("test", "thread", lambda invocation: threading.current_thread().name)
        workflow = make_workflow([make_node("t", operation="thread")], [make_edge("start", "t")])

        log = await scheduler.execute(workflow)

        assert log.get_node_log("t").outputs["result"].startswith("autoflow-node")

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, registry, make_workflow, make_node, make_edge):
        running = {"now": 0, "peak": 0}

        async def tracked(invocation):
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            await asyncio.sleep(0.02)
            running["now"] -= 1

        registry.register_executor("test", "tracked", tracked)
        workflow = make_workflow(
            [make_node(f"n{i}", operation="tracked") for i in range(5)],
            [make_edge("start", f"n{i}") for i in range(5)]
        )
        limited = ExecutionScheduler(registry, max_concurrency=2, retry_config=RetryConfig.immediate())

        try:
            log = await limited.execute(workflow)
        finally:
            limited.shutdown()

        assert log.status == RunStatus.SUCCESS
        assert running["peak"] == 2

    @pytest.mark.asyncio
    async def test_cancellation(self, scheduler, make_workflow, make_node, make_edge):
        """Test that cancelling a run fails running nodes and skips pending ones."""
        workflow = make_workflow(
            [make_node("slow", operation="sleep", inputs={"seconds": 5}), make_node("after")],
            [make_edge("start", "slow"), make_edge("slow", "after")]
        )

        task = asyncio.create_task(scheduler.execute(workflow, execution_id="run-1"))
        for _ in range(200):
            await asyncio.sleep(0.01)
            if scheduler.is_execution_active("run-1"):
                break
        await asyncio.sleep(0.05)

        assert scheduler.get_active_executions() == ["run-1"]
        assert scheduler.cancel_execution("run-1") is True
        log = await asyncio.wait_for(task, timeout=2)

        assert log.status == RunStatus.CANCELLED
        assert statuses(log) == {
            "start": NodeStatus.SUCCESS,
            "slow": NodeStatus.FAILED,
            "after": NodeStatus.SKIPPED,
        }
        assert log.end_time is not None
        assert not scheduler.is_execution_active("run-1")

    def test_cancel_unknown_execution(self, scheduler):
        assert scheduler.cancel_execution("nope") is False

    @pytest.mark.asyncio
    async def test_node_writes_workflow_variable(self, registry, scheduler, make_workflow, make_node, make_edge):
        def producer(invocation):
            invocation.set_variable("customer", {"tier": "gold"})

        registry.register_executor("test", "produce", producer)
        workflow = make_workflow(
            [
                make_node("producer", operation="produce"),
                make_node("consumer", inputs={"tier": "{{ customer.tier }}"}),
            ],
            [make_edge("start", "producer"), make_edge("producer", "consumer")]
        )

        log = await scheduler.execute(workflow)

        assert log.get_node_log("producer").outputs == {}
        assert log.get_node_log("consumer").outputs == {"tier": "gold"}
