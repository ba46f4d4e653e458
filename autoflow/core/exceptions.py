"""Custom exceptions for the workflow engine with detailed error information."""

import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    EXECUTION = "execution"
    COMPILATION = "compilation"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    EXTERNAL_SERVICE = "external_service"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow graph fails structural or semantic validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[Dict[str, str]]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class GraphEditError(GraphValidationError):
    """Raised when an edit operation cannot be applied to a workflow."""

    def __init__(self, message: str, action: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if action:
            self.add_context(action=action)


class DependencyError(WorkflowEngineError):
    """Raised when a provider/operation cannot be resolved for a target."""

    def __init__(
        self,
        message: str,
        unresolved: Optional[List[str]] = None,
        target: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.DEPENDENCY,
            **kwargs
        )
        self.unresolved = unresolved or []
        if target:
            self.add_context(target=target)
        if unresolved:
            self.add_details(unresolved=unresolved)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a single node call fails."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
        attempt: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        self.node_id = node_id
        if node_id:
            self.add_context(node_id=node_id)
        if run_id:
            self.add_context(run_id=run_id)
        if attempt is not None:
            self.add_details(attempt=attempt)


class NodeTimeoutError(NodeExecutionError):
    """Raised when a node call exceeds its timeout."""

    def __init__(self, message: str, timeout_ms: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout_ms is not None:
            self.add_details(timeout_ms=timeout_ms)


class CompilationError(WorkflowEngineError):
    """Raised when a workflow cannot be expressed in a compile target."""

    def __init__(self, message: str, target: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.COMPILATION,
            **kwargs
        )
        if target:
            self.add_context(target=target)


class CapabilityRegistryError(WorkflowEngineError):
    """Raised when capability registry operations fail."""

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if capability:
            self.add_context(capability=capability)


class VariableScopeError(WorkflowEngineError):
    """Raised on an illegal write to the variable context."""

    def __init__(self, message: str, variable: Optional[str] = None, scope: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if variable:
            self.add_context(variable=variable)
        if scope:
            self.add_context(scope=scope)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        not_found: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=not not_found,
            **kwargs
        )
        self.not_found = not_found
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class AISuggestionError(WorkflowEngineError):
    """Raised when the external suggestion service fails or is unavailable."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXTERNAL_SERVICE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
