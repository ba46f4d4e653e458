"""Built-in node capabilities for the workflow engine."""

from .builtin import (
    builtin_capabilities,
    register_builtin_capabilities,
    trigger_passthrough,
    set_variables,
    evaluate_condition,
    log_message,
    wait,
)

__all__ = [
    "builtin_capabilities",
    "register_builtin_capabilities",
    "trigger_passthrough",
    "set_variables",
    "evaluate_condition",
    "log_message",
    "wait",
]
