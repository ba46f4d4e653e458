"""Read-only graph indexes over a workflow."""

from typing import Dict, List

from ..models.core import Edge, Node, Workflow
from .exceptions import CompilationError


class WorkflowGraph:
    """Adjacency and ordering view of a workflow.

    Edges whose endpoints are not nodes of the workflow are ignored; the
    validator reports them separately.
    """

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.nodes: Dict[str, Node] = {}
        self.order_index: Dict[str, int] = {}
        for index, node in enumerate(workflow.nodes):
            if node.id not in self.nodes:
                self.nodes[node.id] = node
                self.order_index[node.id] = index

        self.incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in self.nodes}
        self.outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in self.nodes}
        for edge in workflow.edges:
            if edge.source in self.nodes and edge.target in self.nodes:
                self.outgoing[edge.source].append(edge)
                self.incoming[edge.target].append(edge)

    def sources_of(self, node_id: str) -> List[str]:
        """Distinct upstream node ids, in edge order."""
        seen: List[str] = []
        for edge in self.incoming[node_id]:
            if edge.source not in seen:
                seen.append(edge.source)
        return seen

    def targets_of(self, node_id: str) -> List[str]:
        seen: List[str] = []
        for edge in self.outgoing[node_id]:
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def roots(self) -> List[str]:
        """Nodes with no incoming edge, in node list order."""
        return [node_id for node_id in self.nodes if not self.incoming[node_id]]

    def sort_by_position(self, node_ids) -> List[str]:
        """Sort node ids by their position in the workflow's node list."""
        return sorted(node_ids, key=lambda node_id: self.order_index[node_id])

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties broken by the workflow's node list order.

        Raises:
            CompilationError: If the graph contains a cycle
        """
        remaining = {node_id: len(self.sources_of(node_id)) for node_id in self.nodes}
        ready = [node_id for node_id, count in remaining.items() if count == 0]
        order: List[str] = []

        while ready:
            ready = self.sort_by_position(ready)
            node_id = ready.pop(0)
            order.append(node_id)
            for target in self.targets_of(node_id):
                remaining[target] -= 1
                if remaining[target] == 0:
                    ready.append(target)

        if len(order) != len(self.nodes):
            blocked = [node_id for node_id in self.nodes if node_id not in order]
            raise CompilationError(
                f"Circular dependency detected among nodes: {', '.join(blocked)}"
            )
        return order

    def stages(self) -> List[List[str]]:
        """Group the topological order into stages of mutually independent nodes.

        A node's stage is one past the deepest stage among its sources, so
        every node in a stage depends only on earlier stages.
        """
        depth: Dict[str, int] = {}
        for node_id in self.topological_order():
            sources = self.sources_of(node_id)
            depth[node_id] = max((depth[s] + 1 for s in sources), default=0)

        stages: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for node_id in self.sort_by_position(depth):
            stages[depth[node_id]].append(node_id)
        return stages
