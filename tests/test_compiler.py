"""Tests for the external and runtime compilers."""

import pytest

from autoflow.core.compiler import WorkflowCompiler
from autoflow.core.exceptions import CompilationError
from autoflow.models.core import Workflow


def link(target, index=0):
    return {"node": target, "type": "main", "index": index}


def noop(make_node, node_id, **extra):
    """Node on a capability every compile target supports."""
    return make_node(node_id, provider="core", operation="noop", **extra)


@pytest.fixture
def compiler(registry):
    return WorkflowCompiler(registry, retry_base_delay=0, retry_max_delay=0)


@pytest.fixture
def fetch_workflow(make_workflow, make_node, make_edge):
    """Trigger -> HTTP fetch with a conditional success route and an error route."""
    return Workflow.model_validate(make_workflow(
        [
            make_node("fetch", type="api", provider="http", operation="request",
                      inputs={"url": "https://example.test/items", "method": "get"},
                      credentials={"id": "cred-1", "name": "API key"},
                      runtime={"retries": 2}),
            make_node("notify", provider="core", operation="log", inputs={"message": "fetched"}),
            make_node("recover", provider="core", operation="noop"),
        ],
        [
            make_edge("start", "fetch"),
            make_edge("fetch", "notify", type="conditional", edge_id="e-ok",
                      condition={"expression": "{{ $json.ok }}"}),
            make_edge("fetch", "recover", type="error"),
        ]
    ))


class TestExternalCompiler:
    """Test cases for compiling to the external workflow-tool format."""

    def test_document_shape(self, compiler, fetch_workflow):
        result = compiler.compile_to_external_format(fetch_workflow)

        assert result.success
        document = result.document
        assert document["name"] == "Test workflow"
        assert document["active"] is False
        assert document["meta"] == {"workflowId": "wf-test", "version": "1.0.0"}
        assert [node["name"] for node in document["nodes"]] == ["start", "fetch", "notify", "recover", "If notify"]

    def test_node_translation(self, compiler, fetch_workflow):
        """Test that type, retry policy and credentials carry over."""
        nodes = {node["name"]: node for node in compiler.compile_to_external_format(fetch_workflow).document["nodes"]}

        assert nodes["start"]["type"] == "n8n-nodes-base.manualTrigger"
        fetch = nodes["fetch"]
        assert fetch["type"] == "n8n-nodes-base.httpRequest"
        assert fetch["parameters"] == {"url": "https://example.test/items", "method": "GET"}
        assert fetch["retryOnFail"] is True
        assert fetch["maxTries"] == 3
        assert fetch["credentials"] == {"httpHeaderAuth": {"id": "cred-1", "name": "API key"}}
        assert fetch["onError"] == "continueErrorOutput"
        assert "retryOnFail" not in nodes["notify"]

    def test_conditional_edge_becomes_if_node(self, compiler, fetch_workflow):
        document = compiler.compile_to_external_format(fetch_workflow).document
        guard = next(node for node in document["nodes"] if node["name"] == "If notify")

        assert guard["id"] == "e-ok-guard"
        assert guard["type"] == "n8n-nodes-base.if"
        assert guard["parameters"]["conditions"]["boolean"][0]["value1"] == "={{ $json.ok }}"
        assert document["connections"]["If notify"] == {"main": [[link("notify")]]}

    def test_connections(self, compiler, fetch_workflow):
        connections = compiler.compile_to_external_format(fetch_workflow).document["connections"]

        assert connections["start"] == {"main": [[link("fetch")]]}
        assert connections["fetch"] == {"main": [[link("If notify")], [link("recover")]]}
        assert "notify" not in connections

    def test_trigger_error_edge_dropped(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a"), noop(make_node, "fallback")],
            [make_edge("start", "a"), make_edge("start", "fallback", type="error", edge_id="e-err")]
        ))

        result = compiler.compile_to_external_format(workflow)

        note = "Edge 'e-err': error route from 'start' cannot be expressed and was dropped"
        assert result.success
        assert result.errors == [note]
        assert result.warnings == [note]
        assert result.document["connections"]["start"] == {"main": [[link("a")]]}

    def test_node_condition_becomes_note(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a", condition={"expression": "inputs['go']"})],
            [make_edge("start", "a")]
        ))

        result = compiler.compile_to_external_format(workflow)

        assert result.success
        node = result.document["nodes"][1]
        assert node["notes"] == "Runs only when: inputs['go']"
        assert any("node-level condition" in error for error in result.errors)

    def test_duplicate_names_are_suffixed(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a", name="Step"), noop(make_node, "b", name="Step")],
            [make_edge("start", "a"), make_edge("a", "b")]
        ))

        names = [node["name"] for node in compiler.compile_to_external_format(workflow).document["nodes"]]

        assert names == ["start", "Step", "Step 1"]

    def test_two_node_workflow(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a")],
            [make_edge("start", "a")]
        ))

        result = compiler.compile_to_external_format(workflow)

        assert result.success
        assert result.errors == []
        assert len(result.document["nodes"]) == 2
        assert result.document["connections"] == {"start": {"main": [[link("a")]]}}

    def test_unknown_capability_fails(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("a", provider="nope", operation="missing")],
            [make_edge("start", "a")]
        ))

        result = compiler.compile_to_external_format(workflow)

        assert not result.success
        assert result.document is None
        assert result.errors == ["Node 'a': unknown capability 'nope.missing' for type 'action'"]

    def test_cycle_fails(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a"), noop(make_node, "b")],
            [make_edge("start", "a"), make_edge("a", "b"), make_edge("b", "a")]
        ))

        result = compiler.compile_to_external_format(workflow)

        assert not result.success
        assert result.document is None
        assert result.errors[0].startswith("Circular dependency detected")

    def test_unsupported_target(self, compiler, fetch_workflow):
        with pytest.raises(CompilationError):
            compiler.compile(fetch_workflow, "execute")


class TestRuntimeCompiler:
    """Test cases for compiling to Python source."""

    @staticmethod
    def load(code):
        namespace = {}
        exec(code, namespace)
        return namespace

    def test_module_layout(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("fetch-data"), make_node("9lives")],
            [make_edge("start", "fetch-data"), make_edge("fetch-data", "9lives")]
        ))

        result = compiler.compile(workflow, "runtime")

        assert result.success
        assert "async def node_fetch_data(state):" in result.code
        assert "async def step_n9lives(state):" in result.code
        namespace = self.load(result.code)
        assert namespace["WORKFLOW_ID"] == "wf-test"
        assert namespace["NODE_IDS"] == ["start", "fetch-data", "9lives"]

    @pytest.mark.asyncio
    async def test_conditional_run(self, compiler, make_workflow, make_node, make_edge):
        """Test that generated code follows conditional edges and passes outputs along."""
        workflow = Workflow.model_validate(make_workflow(
            [
                make_node("check", type="condition", provider="logic", operation="if",
                          inputs={"expression": "{{ inputs.amount }} > 100"}),
                make_node("big", inputs={"amount": "{{ inputs.amount }}"}),
                make_node("small"),
            ],
            [
                make_edge("start", "check"),
                make_edge("check", "big", type="conditional", condition={"expression": "{{ nodes.check.result }}"}),
                make_edge("check", "small", type="conditional",
                          condition={"expression": "not {{ nodes.check.result }}"}),
            ]
        ))
        calls = []

        def invoke(call, node_id, inputs):
            calls.append((call, node_id, inputs))
            if call == "logic.if":
                return {"result": inputs["expression"] == "150 > 100"}
            return dict(inputs)

        run = self.load(compiler.compile_to_runtime_code(workflow).code)["run"]
        outcome = await run(invoke, {"amount": 150})

        assert outcome["status"] == "success"
        assert outcome["error"] is None
        assert outcome["nodes"]["big"] == {"status": "success", "outputs": {"amount": 150}, "error": None}
        assert outcome["nodes"]["small"]["status"] == "skipped"
        assert [call[:2] for call in calls] == [
            ("trigger.manual", "start"),
            ("logic.if", "check"),
            ("test.echo", "big"),
        ]

    @pytest.mark.asyncio
    async def test_stop_on_error(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("boom", operation="fail"), make_node("after")],
            [make_edge("start", "boom"), make_edge("boom", "after")]
        ))

        async def invoke(call, node_id, inputs):
            if call == "test.fail":
                raise RuntimeError("kaput")
            return {}

        run = self.load(compiler.compile_to_runtime_code(workflow).code)["run"]
        outcome = await run(invoke)

        assert outcome["status"] == "failed"
        assert outcome["error"] == "Node 'boom' failed: kaput"
        assert outcome["nodes"]["boom"]["error"] == "kaput"
        assert outcome["nodes"]["after"]["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_retries_and_error_route(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [
                make_node("flaky", runtime={"retries": 1}),
                make_node("broken", operation="fail"),
                make_node("handler"),
            ],
            [
                make_edge("start", "flaky"),
                make_edge("flaky", "broken"),
                make_edge("broken", "handler", type="error"),
            ]
        ))
        attempts = {"flaky": 0}

        def invoke(call, node_id, inputs):
            if node_id == "flaky":
                attempts["flaky"] += 1
                if attempts["flaky"] == 1:
                    raise RuntimeError("transient")
            if node_id == "broken":
                raise RuntimeError("permanent")
            return {"node": node_id}

        run = self.load(compiler.compile_to_runtime_code(workflow).code)["run"]
        outcome = await run(invoke)

        assert attempts["flaky"] == 2
        assert outcome["nodes"]["flaky"]["status"] == "success"
        assert outcome["nodes"]["handler"] == {"status": "success", "outputs": {"node": "handler"}, "error": None}
        assert outcome["status"] == "failed"
        assert outcome["error"] == "Nodes failed: broken"

    def test_compile_only_capability_is_accepted(self, compiler, fetch_workflow):
        result = compiler.compile_to_runtime_code(fetch_workflow)

        assert result.success
        assert "'http.request'" in result.code

    def test_cycle_fails(self, compiler, make_workflow, make_node, make_edge):
        workflow = Workflow.model_validate(make_workflow(
            [make_node("a"), make_node("b")],
            [make_edge("start", "a"), make_edge("a", "b"), make_edge("b", "a")]
        ))

        result = compiler.compile_to_runtime_code(workflow)

        assert not result.success
        assert result.code is None

    @pytest.mark.asyncio
    async def test_two_node_workflow(self, compiler, make_workflow, make_node, make_edge):
        """Test that each node gets one callable unit, invoked source before target."""
        workflow = Workflow.model_validate(make_workflow(
            [noop(make_node, "a")],
            [make_edge("start", "a")]
        ))
        calls = []

        def invoke(call, node_id, inputs):
            calls.append(node_id)
            return {}

        result = compiler.compile_to_runtime_code(workflow)
        namespace = self.load(result.code)
        outcome = await namespace["run"](invoke)

        assert sorted(name for name in namespace if name.startswith("node_")) == ["node_a", "node_start"]
        assert calls == ["start", "a"]
        assert outcome["status"] == "success"

    @pytest.mark.asyncio
    async def test_conditions_match_live_run(self, compiler, scheduler, make_workflow, make_node, make_edge):
        """Test that compiled code gates edges exactly as the scheduler does."""
        workflow = Workflow.model_validate(make_workflow(
            [make_node("a"), make_node("helper"), make_node("unknown")],
            [
                make_edge("start", "a"),
                make_edge("a", "helper", type="conditional", condition={"expression": "max(1, 2) == 2 and all([1])"}),
                make_edge("a", "unknown", type="conditional", condition={"expression": "isinstance(1, int)"}),
            ]
        ))

        def invoke(call, node_id, inputs):
            return {}

        log = await scheduler.execute(workflow)
        outcome = await self.load(compiler.compile_to_runtime_code(workflow).code)["run"](invoke)

        for node_id in ("helper", "unknown"):
            assert outcome["nodes"][node_id]["status"] == log.get_node_log(node_id).status.value
        assert outcome["nodes"]["helper"]["status"] == "success"
        assert outcome["nodes"]["unknown"]["status"] == "skipped"
