"""Pytest configuration and fixtures."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from autoflow.core.capability_registry import CapabilityRegistry
from autoflow.core.error_recovery import RetryConfig
from autoflow.core.scheduler import ExecutionScheduler
from autoflow.storage.database import create_tables, drop_tables, get_session_factory
from autoflow.tools.builtin import register_builtin_capabilities


def echo(invocation) -> Dict[str, Any]:
    """Test executor returning its resolved inputs."""
    return dict(invocation.inputs)


def explode(invocation):
    """Test executor that always fails."""
    raise RuntimeError(invocation.inputs.get("message", "boom"))


async def snooze(invocation) -> Dict[str, Any]:
    """Async test executor sleeping for ``seconds``."""
    await asyncio.sleep(float(invocation.inputs.get("seconds", 0)))
    return {"slept": invocation.inputs.get("seconds", 0)}


@pytest.fixture
def registry():
    """Capability registry with the built-ins plus test capabilities."""
    reg = CapabilityRegistry()
    register_builtin_capabilities(reg)
    reg.register_executor("test", "echo", echo, description="Echo inputs")
    reg.register_executor("test", "fail", explode, description="Always fails")
    reg.register_executor("test", "sleep", snooze, description="Sleeps")
    return reg


@pytest.fixture
def scheduler(registry):
    """Scheduler that retries without waiting."""
    sched = ExecutionScheduler(
        registry,
        max_concurrency=4,
        default_timeout_ms=2000,
        retry_config=RetryConfig.immediate()
    )
    yield sched
    sched.shutdown()


@pytest.fixture
def session_factory():
    """Session factory over a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    create_tables(engine)
    yield get_session_factory(engine)
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def make_node():
    """Build a wire-format node dict."""
    def _make(node_id: str, type: str = "action", provider: str = "test",
              operation: str = "echo", **extra) -> Dict[str, Any]:
        node = {"id": node_id, "type": type, "provider": provider, "operation": operation}
        node.update(extra)
        return node
    return _make


@pytest.fixture
def make_edge():
    """Build a wire-format edge dict; the id defaults to ``source->target``."""
    def _make(source: str, target: str, /, type: str = "default",
              edge_id: Optional[str] = None, **extra) -> Dict[str, Any]:
        edge = {"id": edge_id or f"{source}->{target}", "source": source, "target": target, "type": type}
        edge.update(extra)
        return edge
    return _make


@pytest.fixture
def make_workflow(make_node):
    """Build a wire-format workflow; a manual trigger ``start`` is prepended unless ``trigger=False``."""
    def _make(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None,
              workflow_id: str = "wf-test", trigger: bool = True,
              settings: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
        all_nodes = list(nodes)
        if trigger:
            all_nodes.insert(0, make_node("start", type="trigger", provider="trigger", operation="manual"))
        workflow = {
            "id": workflow_id,
            "name": "Test workflow",
            "version": "1.0.0",
            "nodes": all_nodes,
            "edges": list(edges or []),
        }
        if settings is not None:
            workflow["settings"] = settings
        workflow.update(extra)
        return workflow
    return _make
