"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    GraphEditError,
    DependencyError,
    NodeExecutionError,
    NodeTimeoutError,
    CompilationError,
    CapabilityRegistryError,
    VariableScopeError,
    StorageError,
    AISuggestionError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph import WorkflowGraph
from .validator import GraphValidator, validate_workflow
from .variables import VariableContext
from .capability_registry import Capability, CapabilityRegistry, CompileTarget, ExternalNodeSpec
from .scheduler import ExecutionScheduler, NodeInvocation
from .dependency_resolver import DependencyResolver
from .compiler import WorkflowCompiler
from .assistant import WorkflowAssistant, WorkflowSuggester

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "GraphEditError",
    "DependencyError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "CompilationError",
    "CapabilityRegistryError",
    "VariableScopeError",
    "StorageError",
    "AISuggestionError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "WorkflowGraph",
    "GraphValidator",
    "validate_workflow",
    "VariableContext",
    "Capability",
    "CapabilityRegistry",
    "CompileTarget",
    "ExternalNodeSpec",
    "ExecutionScheduler",
    "NodeInvocation",
    "DependencyResolver",
    "WorkflowCompiler",
    "WorkflowAssistant",
    "WorkflowSuggester",
]
