"""Built-in capabilities shipped with the engine."""

import asyncio
import logging
from typing import Any, Dict, List

from ..core.capability_registry import Capability, CapabilityRegistry, ExternalNodeSpec
from ..core.logging import get_logger
from ..models.core import Node, NodeType

logger = get_logger(__name__)


def trigger_passthrough(invocation) -> Dict[str, Any]:
    """Emit the run inputs merged with the trigger's own inputs."""
    payload = dict(invocation.variables.inputs)
    payload.update(invocation.inputs)
    return payload


def set_variables(invocation) -> Dict[str, Any]:
    """Write each input as a workflow variable and echo them as outputs."""
    for name, value in invocation.inputs.items():
        invocation.set_variable(name, value)
    return dict(invocation.inputs)


def no_op(invocation) -> Dict[str, Any]:
    return dict(invocation.inputs)


def evaluate_condition(invocation) -> Dict[str, Any]:
    """Evaluate ``expression`` against the run's variables; the outcome is exposed as ``result``."""
    expression = invocation.inputs.get("expression")
    if expression is None:
        value = bool(invocation.inputs.get("value"))
    elif isinstance(expression, bool):
        value = expression
    else:
        value = invocation.evaluate(str(expression))
    logger.debug(f"Condition node {invocation.node.id} evaluated to {value}")
    return {"result": value}


def log_message(invocation) -> Dict[str, Any]:
    message = str(invocation.inputs.get("message", ""))
    level = logging.getLevelName(str(invocation.inputs.get("level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.log(level, f"[{invocation.node.id}] {message}")
    return {"message": message}


async def wait(invocation) -> Dict[str, Any]:
    seconds = float(invocation.inputs.get("seconds", 0))
    if seconds < 0:
        raise ValueError("Wait duration cannot be negative")
    await asyncio.sleep(seconds)
    return {"waited": seconds}


def _webhook_parameters(node: Node) -> Dict[str, Any]:
    return {
        "path": node.inputs.get("path", node.id),
        "httpMethod": str(node.inputs.get("method", "POST")).upper(),
    }


def _schedule_parameters(node: Node) -> Dict[str, Any]:
    if "cron" in node.inputs:
        interval = {"field": "cronExpression", "expression": node.inputs["cron"]}
    else:
        interval = {"field": "minutes", "minutesInterval": node.inputs.get("minutes", 5)}
    return {"rule": {"interval": [interval]}}


def _set_parameters(node: Node) -> Dict[str, Any]:
    return {
        "mode": "manual",
        "assignments": {
            "assignments": [
                {"name": name, "value": value, "type": type(value).__name__}
                for name, value in node.inputs.items()
            ]
        },
    }


def _if_parameters(node: Node) -> Dict[str, Any]:
    expression = node.inputs.get("expression", node.inputs.get("value", False))
    return {"conditions": {"boolean": [{"value1": f"={expression}", "value2": True}]}}


def _wait_parameters(node: Node) -> Dict[str, Any]:
    return {"amount": node.inputs.get("seconds", 0), "unit": "seconds"}


def _http_parameters(node: Node) -> Dict[str, Any]:
    parameters = {
        "url": node.inputs.get("url", ""),
        "method": str(node.inputs.get("method", "GET")).upper(),
    }
    if node.inputs.get("body") is not None:
        parameters["sendBody"] = True
        parameters["jsonBody"] = node.inputs["body"]
    if node.inputs.get("headers"):
        parameters["sendHeaders"] = True
        parameters["headerParameters"] = {
            "parameters": [{"name": key, "value": value} for key, value in node.inputs["headers"].items()]
        }
    return parameters


def builtin_capabilities() -> List[Capability]:
    """Fresh capability entries, so no two registries share one."""
    return [
        Capability(
            provider="trigger", operation="manual", node_type=NodeType.TRIGGER,
            executor=trigger_passthrough,
            external=ExternalNodeSpec("n8n-nodes-base.manualTrigger", parameters=lambda node: {},
                                      supports_error_output=False),
            description="Start a run on demand",
        ),
        Capability(
            provider="trigger", operation="webhook", node_type=NodeType.TRIGGER,
            executor=trigger_passthrough,
            external=ExternalNodeSpec("n8n-nodes-base.webhook", type_version=2, parameters=_webhook_parameters,
                                      supports_error_output=False),
            description="Start a run from an incoming HTTP request",
        ),
        Capability(
            provider="trigger", operation="schedule", node_type=NodeType.TRIGGER,
            executor=trigger_passthrough,
            external=ExternalNodeSpec("n8n-nodes-base.scheduleTrigger", type_version=1.2,
                                      parameters=_schedule_parameters, supports_error_output=False),
            description="Start a run on a schedule",
        ),
        Capability(
            provider="core", operation="set",
            executor=set_variables,
            external=ExternalNodeSpec("n8n-nodes-base.set", type_version=3.4, parameters=_set_parameters),
            description="Write workflow variables",
        ),
        Capability(
            provider="core", operation="noop",
            executor=no_op,
            external=ExternalNodeSpec("n8n-nodes-base.noOp", parameters=lambda node: {}),
            description="Pass inputs through unchanged",
        ),
        Capability(
            provider="logic", operation="if", node_type=NodeType.CONDITION,
            executor=evaluate_condition,
            external=ExternalNodeSpec("n8n-nodes-base.if", parameters=_if_parameters),
            description="Evaluate a boolean expression",
        ),
        Capability(
            provider="core", operation="log",
            executor=log_message,
            external=ExternalNodeSpec("n8n-nodes-base.noOp", parameters=lambda node: {}),
            description="Write a message to the engine log",
        ),
        Capability(
            provider="core", operation="wait",
            executor=wait,
            external=ExternalNodeSpec("n8n-nodes-base.wait", type_version=1.1, parameters=_wait_parameters),
            description="Pause for a number of seconds",
        ),
        # Compile-only: the caller's runtime supplies the HTTP client
        Capability(
            provider="http", operation="request",
            external=ExternalNodeSpec("n8n-nodes-base.httpRequest", type_version=4.2, parameters=_http_parameters),
            runtime_call="http.request",
            description="HTTP request (compile targets only)",
            metadata={"credential_type": "httpHeaderAuth"},
        ),
    ]


def register_builtin_capabilities(registry: CapabilityRegistry, replace: bool = False) -> CapabilityRegistry:
    """Register every built-in capability on ``registry``."""
    capabilities = builtin_capabilities()
    for capability in capabilities:
        registry.register(capability, replace=replace)
    logger.info(f"Registered {len(capabilities)} built-in capabilities")
    return registry
