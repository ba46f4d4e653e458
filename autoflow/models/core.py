"""Core Pydantic models for the workflow graph engine.

Attributes are snake_case; the wire format (HTTP payloads, stored records,
compiled artifacts) is camelCase. Models accept both spellings on input.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model using the camelCase wire schema."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the canonical JSON interchange shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class NodeType(str, Enum):
    """Fixed enumeration of node kinds."""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    TRANSFORM = "transform"
    API = "api"
    DATABASE = "database"
    NOTIFICATION = "notification"
    INTEGRATION = "integration"


class EdgeType(str, Enum):
    """Enumeration of edge kinds."""
    DEFAULT = "default"
    CONDITIONAL = "conditional"
    ERROR = "error"
    SUCCESS = "success"


class ErrorHandlingMode(str, Enum):
    """Workflow-wide failure policy."""
    STOP_ON_ERROR = "stopOnError"
    CONTINUE_ON_ERROR = "continueOnError"
    RETRY = "retry"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"


class VariableScope(str, Enum):
    GLOBAL = "global"
    WORKFLOW = "workflow"
    NODE = "node"


class RunStatus(str, Enum):
    """Overall status of a workflow execution."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(str, Enum):
    """Per-node state machine: pending -> running -> {success|failed|skipped}."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class Position(WireModel):
    x: float = 0
    y: float = 0


class NodeRuntime(WireModel):
    """Per-node execution policy."""
    timeout: Optional[int] = Field(None, gt=0, description="Timeout in milliseconds")
    retries: Optional[int] = Field(None, ge=0, description="Retry budget after the first attempt")
    continue_on_error: bool = Field(False, description="Contain this node's failure")


class Credentials(WireModel):
    id: Optional[str] = None
    name: Optional[str] = None


class Condition(WireModel):
    """Boolean guard evaluated against the variable context."""
    enabled: bool = True
    expression: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.expression and self.expression.strip())


class Node(WireModel):
    """A typed step of a workflow."""
    id: str = Field(..., description="Unique identifier within the workflow")
    type: NodeType
    provider: str = Field(..., description="Capability provider, resolved externally")
    operation: str = Field(..., description="Capability operation, resolved externally")
    name: Optional[str] = None
    description: Optional[str] = None
    position: Optional[Position] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    runtime: NodeRuntime = Field(default_factory=NodeRuntime)
    credentials: Optional[Credentials] = None
    condition: Optional[Condition] = None

    @field_validator('id', 'provider', 'operation')
    @classmethod
    def validate_not_blank(cls, value):
        """Ensure identifying strings are not blank."""
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()

    @property
    def capability_key(self) -> str:
        return f"{self.provider}.{self.operation}"


class Edge(WireModel):
    """A directed connection between two nodes of the same workflow."""
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    type: EdgeType = EdgeType.DEFAULT
    condition: Optional[Condition] = None
    label: Optional[str] = None

    @field_validator('id', 'source', 'target')
    @classmethod
    def validate_not_blank(cls, value):
        if not value or not value.strip():
            raise ValueError("Value cannot be empty")
        return value.strip()


class Variable(WireModel):
    id: str
    name: str
    type: VariableType
    value: Any = None
    description: Optional[str] = None
    scope: VariableScope = VariableScope.WORKFLOW
    mutable: bool = True


class WorkflowSettings(WireModel):
    error_handling: ErrorHandlingMode = ErrorHandlingMode.STOP_ON_ERROR
    max_retries: Optional[int] = Field(None, ge=0)
    timeout: Optional[int] = Field(None, gt=0, description="Default node timeout in milliseconds")


class WorkflowMetadata(WireModel):
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    created_by: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class Workflow(WireModel):
    """A directed graph of typed steps plus its run settings."""
    id: str
    name: str
    description: Optional[str] = None
    version: str
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    nodes: List[Node]
    edges: List[Edge] = Field(default_factory=list)
    variables: List[Variable] = Field(default_factory=list)
    metadata: Optional[WorkflowMetadata] = None

    def get_node(self, node_id: str) -> Optional[Node]:
        """Find a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]


class EditAction(str, Enum):
    """Graph edit operations."""
    EDIT_NODE = "editNode"
    ADD_NODE = "addNode"
    REMOVE_NODE = "removeNode"
    REORDER_NODES = "reorderNodes"
    ADD_EDGE = "addEdge"
    REMOVE_EDGE = "removeEdge"
    UPDATE_NODE_POSITION = "updateNodePosition"


class EditOperation(WireModel):
    action: EditAction
    data: Dict[str, Any] = Field(default_factory=dict)


class NodeExecutionLog(WireModel):
    """Execution record of one node within a run."""
    node_id: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: NodeStatus = NodeStatus.PENDING
    inputs: Optional[Dict[str, Any]] = None
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retries: int = 0


class WorkflowExecutionLog(WireModel):
    """Execution record of a whole run; finalized exactly once."""
    execution_id: str
    workflow_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    node_logs: List[NodeExecutionLog] = Field(default_factory=list)

    def get_node_log(self, node_id: str) -> Optional[NodeExecutionLog]:
        for entry in self.node_logs:
            if entry.node_id == node_id:
                return entry
        return None

    @property
    def is_finished(self) -> bool:
        return self.status != RunStatus.RUNNING


class ValidationIssue(WireModel):
    path: str = Field(..., description="Location of the offending entity")
    message: str


class ValidationResult(WireModel):
    """Result of graph validation."""
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def messages(self) -> List[str]:
        return [f"{issue.path}: {issue.message}" for issue in self.errors]


class DependencyResult(WireModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class ExternalCompileResult(WireModel):
    success: bool
    document: Optional[Dict[str, Any]] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RuntimeCompileResult(WireModel):
    success: bool
    code: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
