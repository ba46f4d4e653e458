"""Checks that every node of a workflow maps to a known capability."""

from typing import Optional, Union

from ..models.core import DependencyResult, Workflow
from .capability_registry import CapabilityRegistry, CompileTarget
from .exceptions import DependencyError
from .logging import get_logger

logger = get_logger(__name__)


class DependencyResolver:
    """Resolves (type, provider, operation) triples against a CapabilityRegistry."""

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry

    def validate_dependencies(
        self,
        workflow: Workflow,
        target: Optional[Union[CompileTarget, str]] = None,
    ) -> DependencyResult:
        """
        Check every node's capability, collecting all unresolved pairs.

        Args:
            workflow: Workflow whose nodes should be resolved
            target: When given, also require support for this target
                (``execute``, ``external`` or ``runtime``)

        Returns:
            DependencyResult listing every unresolved node
        """
        target = CompileTarget(target) if target is not None else None
        errors = []

        for node in workflow.nodes:
            capability = self.registry.lookup(node.type, node.provider, node.operation)
            if capability is None:
                errors.append(
                    f"Node '{node.id}': unknown capability '{node.capability_key}' for type '{node.type.value}'"
                )
                continue
            if target is not None and not capability.supports(target):
                errors.append(
                    f"Node '{node.id}': capability '{capability.name}' does not support target '{target.value}'"
                )

        if errors:
            logger.info(f"Workflow {workflow.id} has {len(errors)} unresolved dependencies")
        return DependencyResult(valid=not errors, errors=errors)

    def require(self, workflow: Workflow, target: Optional[Union[CompileTarget, str]] = None) -> None:
        """Raise DependencyError unless every node resolves for ``target``."""
        result = self.validate_dependencies(workflow, target)
        if not result.valid:
            target_name = CompileTarget(target).value if target is not None else None
            raise DependencyError(
                f"Workflow '{workflow.id}' has unresolved capabilities: {'; '.join(result.errors)}",
                unresolved=result.errors,
                target=target_name
            )
