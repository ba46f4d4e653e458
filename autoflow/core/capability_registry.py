"""Capability registry mapping node kinds to executors and compile emitters."""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..models.core import Node, NodeType
from .exceptions import CapabilityRegistryError
from .logging import get_logger

logger = get_logger(__name__)


class CompileTarget(str, Enum):
    """Environments a capability can be resolved against."""
    EXECUTE = "execute"
    EXTERNAL = "external"
    RUNTIME = "runtime"


@dataclass
class ExternalNodeSpec:
    """How a capability is expressed in the external workflow-tool format."""
    node_type: str
    type_version: float = 1
    parameters: Optional[Callable[[Node], Dict[str, Any]]] = None
    supports_error_output: bool = True

    def build_parameters(self, node: Node) -> Dict[str, Any]:
        if self.parameters is not None:
            return self.parameters(node)
        return dict(node.inputs)


@dataclass
class Capability:
    """A (type, provider, operation) entry.

    ``node_type`` of None registers the capability for any node type with
    that provider/operation pair.
    """
    provider: str
    operation: str
    node_type: Optional[NodeType] = None
    executor: Optional[Callable[..., Any]] = None
    external: Optional[ExternalNodeSpec] = None
    runtime_call: Optional[str] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.provider or not self.provider.strip():
            raise CapabilityRegistryError("Capability provider cannot be empty")
        if not self.operation or not self.operation.strip():
            raise CapabilityRegistryError("Capability operation cannot be empty")
        self.provider = self.provider.strip()
        self.operation = self.operation.strip()
        if self.executor is not None and not callable(self.executor):
            raise CapabilityRegistryError(f"Executor for '{self.name}' must be callable", capability=self.name)
        if self.runtime_call is None and self.executor is not None:
            self.runtime_call = self.name

    @property
    def name(self) -> str:
        return f"{self.provider}.{self.operation}"

    @property
    def key(self) -> Tuple[Optional[str], str, str]:
        node_type = self.node_type.value if self.node_type else None
        return (node_type, self.provider, self.operation)

    @property
    def is_async(self) -> bool:
        return self.executor is not None and inspect.iscoroutinefunction(self.executor)

    def supports(self, target: Union[CompileTarget, str]) -> bool:
        target = CompileTarget(target)
        if target == CompileTarget.EXECUTE:
            return self.executor is not None
        if target == CompileTarget.EXTERNAL:
            return self.external is not None
        return self.runtime_call is not None


class CapabilityRegistry:
    """Registry queried by key rather than branched on per node kind.

    New node kinds register entries here; the scheduler, resolver and
    compiler need no changes.
    """

    def __init__(self):
        self._capabilities: Dict[Tuple[Optional[str], str, str], Capability] = {}

    def register(self, capability: Capability, replace: bool = False) -> Capability:
        """Register a capability.

        Raises:
            CapabilityRegistryError: If the key is already registered and
                ``replace`` is False
        """
        if capability.key in self._capabilities and not replace:
            raise CapabilityRegistryError(
                f"Capability '{capability.name}' is already registered", capability=capability.name
            )
        self._capabilities[capability.key] = capability
        logger.debug(f"Registered capability {capability.key}")
        return capability

    def register_executor(
        self,
        provider: str,
        operation: str,
        executor: Callable[..., Any],
        node_type: Optional[NodeType] = None,
        external: Optional[ExternalNodeSpec] = None,
        description: str = "",
        replace: bool = False,
    ) -> Capability:
        """Shortcut for registering an executable capability."""
        return self.register(
            Capability(
                provider=provider,
                operation=operation,
                node_type=node_type,
                executor=executor,
                external=external,
                description=description,
            ),
            replace=replace,
        )

    def lookup(self, node_type: Optional[Union[NodeType, str]], provider: str, operation: str) -> Optional[Capability]:
        """Exact (type, provider, operation) match first, then the type-agnostic entry."""
        type_value = node_type.value if isinstance(node_type, NodeType) else node_type
        exact = self._capabilities.get((type_value, provider, operation))
        if exact is not None:
            return exact
        return self._capabilities.get((None, provider, operation))

    def resolve(self, node: Node) -> Capability:
        """Return the capability for a node.

        Raises:
            CapabilityRegistryError: If no capability matches
        """
        capability = self.lookup(node.type, node.provider, node.operation)
        if capability is None:
            raise CapabilityRegistryError(
                f"No capability registered for '{node.capability_key}' (type '{node.type.value}')",
                capability=node.capability_key
            )
        return capability

    def exists(self, node_type: Optional[Union[NodeType, str]], provider: str, operation: str) -> bool:
        return self.lookup(node_type, provider, operation) is not None

    def unregister(self, provider: str, operation: str, node_type: Optional[NodeType] = None) -> bool:
        """Remove a capability; returns False when it was not registered."""
        key = (node_type.value if node_type else None, provider, operation)
        removed = self._capabilities.pop(key, None)
        if removed is not None:
            logger.info(f"Unregistered capability {key}")
        return removed is not None

    def list_capabilities(self) -> List[Capability]:
        return sorted(self._capabilities.values(), key=lambda cap: (cap.name, cap.key[0] or ""))

    def describe(self) -> Dict[str, str]:
        """Capability names mapped to their descriptions."""
        return {capability.name: capability.description for capability in self.list_capabilities()}

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: str) -> bool:
        return any(capability.name == name for capability in self._capabilities.values())
