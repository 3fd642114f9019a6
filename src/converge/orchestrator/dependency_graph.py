"""Dependency graph builder for resource ordering."""

import heapq
from typing import Any, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from collections import deque

from converge.resources.models import Resource
from converge.utils.errors import CycleError, ErrorContext, ValidationError


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    key: str
    index: int  # Declaration order, used to break ties
    dependencies: Set[str] = field(default_factory=set)  # Keys this node depends on
    dependents: Set[str] = field(default_factory=set)  # Keys that depend on this node
    item: Any = None


class DependencyGraph:
    """Directed acyclic graph of resource dependencies.

    An edge ``A -> B`` means B must be applied before A.
    """

    def __init__(self):
        self.nodes: Dict[str, DependencyNode] = {}

    @classmethod
    def build(cls, resources: Iterable[Resource]) -> "DependencyGraph":
        """Build and validate a graph from declared resources.

        Raises:
            CycleError: If the resources form a cycle
            ValidationError: If a dependency targets an unknown resource
        """
        graph = cls()
        for resource in resources:
            graph.add_resource(resource)
        graph.validate()
        return graph

    def add_resource(self, resource: Resource) -> None:
        self.add_node(resource.key, resource.dependencies(), item=resource)

    def add_node(self, key: str, dependencies: Iterable[str], item: Any = None) -> None:
        """Add a node; dependencies may be added before their own nodes."""
        if key in self.nodes:
            raise ValidationError(f"Duplicate resource '{key}'")
        node = DependencyNode(key=key, index=len(self.nodes), item=item)
        node.dependencies = set(dependencies)
        node.dependencies.discard(key)
        self.nodes[key] = node

        for other in self.nodes.values():
            if key in other.dependencies:
                node.dependents.add(other.key)
        for dep_key in node.dependencies:
            if dep_key in self.nodes:
                self.nodes[dep_key].dependents.add(key)

    def get_dependencies(self, key: str) -> Set[str]:
        node = self.nodes.get(key)
        return set(node.dependencies) if node else set()

    def get_dependents(self, key: str) -> Set[str]:
        node = self.nodes.get(key)
        return set(node.dependents) if node else set()

    def get_all_dependencies(self, key: str) -> Set[str]:
        """All transitive dependencies of a node."""
        return self._closure(key, lambda node: node.dependencies)

    def get_all_dependents(self, key: str) -> Set[str]:
        """All transitive dependents of a node."""
        return self._closure(key, lambda node: node.dependents)

    def _closure(self, key: str, neighbours) -> Set[str]:
        visited = set()
        queue = deque([key])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            node = self.nodes.get(current)
            if node:
                queue.extend(n for n in neighbours(node) if n not in visited)

        visited.discard(key)
        return visited

    def _ordered(self, keys: Iterable[str]) -> List[str]:
        return sorted(keys, key=lambda k: self.nodes[k].index)

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Find a cycle, if any.

        Returns:
            Keys forming the cycle with the first key repeated at the end,
            or None if the graph is acyclic
        """
        # White (0): unvisited, Grey (1): on the DFS stack, Black (2): done
        color = {key: 0 for key in self.nodes}
        stack: List[str] = []

        def dfs(key: str) -> Optional[List[str]]:
            color[key] = 1
            stack.append(key)

            for dep_key in self._ordered(d for d in self.nodes[key].dependencies if d in self.nodes):
                if color[dep_key] == 1:
                    return stack[stack.index(dep_key):] + [dep_key]
                if color[dep_key] == 0:
                    cycle = dfs(dep_key)
                    if cycle:
                        return cycle

            stack.pop()
            color[key] = 2
            return None

        for key in self.nodes:
            if color[key] == 0:
                cycle = dfs(key)
                if cycle:
                    return cycle

        return None

    def validate(self) -> None:
        """Check for cycles, then for dangling dependencies.

        Raises:
            CycleError: If the graph contains a cycle
            ValidationError: If a dependency is not a node of the graph
        """
        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle, context=ErrorContext(resource_key=cycle[0]))

        for key, node in self.nodes.items():
            missing = sorted(d for d in node.dependencies if d not in self.nodes)
            if missing:
                raise ValidationError(
                    f"Resource '{key}' depends on '{missing[0]}' which is not declared",
                    context=ErrorContext(resource_key=key)
                )

    def topological_sort(self) -> List[str]:
        """Keys with dependencies first; ties broken by declaration order."""
        self.validate()

        in_degree = {key: len(node.dependencies) for key, node in self.nodes.items()}
        heap = [(node.index, key) for key, node in self.nodes.items() if in_degree[key] == 0]
        heapq.heapify(heap)
        result = []

        while heap:
            _, key = heapq.heappop(heap)
            result.append(key)
            for dependent in self.nodes[key].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].index, dependent))

        return result

    def tiers(self) -> List[List[str]]:
        """Group keys into tiers that can be applied in parallel.

        Every key's dependencies live in earlier tiers. Keys inside a tier are
        in declaration order.
        """
        self.validate()
        return self._levels(lambda node: node.dependencies, lambda node: node.dependents)

    def destruction_tiers(self) -> List[List[str]]:
        """Tiers for teardown: dependents are destroyed before their dependencies."""
        self.validate()
        return self._levels(lambda node: node.dependents, lambda node: node.dependencies)

    def _levels(self, incoming, outgoing) -> List[List[str]]:
        in_degree = {key: len(incoming(node)) for key, node in self.nodes.items()}
        current = [key for key, degree in in_degree.items() if degree == 0]
        levels = []

        while current:
            levels.append(self._ordered(current))
            next_level = []
            for key in current:
                for other in outgoing(self.nodes[key]):
                    in_degree[other] -= 1
                    if in_degree[other] == 0:
                        next_level.append(other)
            current = next_level

        return levels

    def get_item(self, key: str) -> Any:
        node = self.nodes.get(key)
        return node.item if node else None

    def size(self) -> int:
        return len(self.nodes)

    def is_empty(self) -> bool:
        return not self.nodes
