"""Data models for the workflow graph engine."""

from .core import (
    NodeType,
    EdgeType,
    ErrorHandlingMode,
    VariableType,
    VariableScope,
    RunStatus,
    NodeStatus,
    Position,
    NodeRuntime,
    Credentials,
    Condition,
    Node,
    Edge,
    Variable,
    WorkflowSettings,
    WorkflowMetadata,
    Workflow,
    EditAction,
    EditOperation,
    NodeExecutionLog,
    WorkflowExecutionLog,
    ValidationIssue,
    ValidationResult,
    DependencyResult,
    ExternalCompileResult,
    RuntimeCompileResult,
)
from .records import WorkflowRecord, ExecutionLogRecord

__all__ = [
    "NodeType",
    "EdgeType",
    "ErrorHandlingMode",
    "VariableType",
    "VariableScope",
    "RunStatus",
    "NodeStatus",
    "Position",
    "NodeRuntime",
    "Credentials",
    "Condition",
    "Node",
    "Edge",
    "Variable",
    "WorkflowSettings",
    "WorkflowMetadata",
    "Workflow",
    "EditAction",
    "EditOperation",
    "NodeExecutionLog",
    "WorkflowExecutionLog",
    "ValidationIssue",
    "ValidationResult",
    "DependencyResult",
    "ExternalCompileResult",
    "RuntimeCompileResult",
    "WorkflowRecord",
    "ExecutionLogRecord",
]
