"""
Resource Graph for awscd

Directed acyclic graph of desired resources keyed by ``(kind, name)``.
Edges are explicit adjacency lists built from each resource's
``depends_on``; the topological order is computed once and cached.
"""

import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .errors import ValidationError
from .logging import get_logger
from .models import DesiredState, ResourceKey
from .naming import provision_tier

logger = get_logger(__name__)


@dataclass
class ResourceNode:
    """Represents a node in the resource graph."""

    desired: DesiredState
    dependencies: Set[ResourceKey] = field(default_factory=set)
    dependents: Set[ResourceKey] = field(default_factory=set)

    @property
    def key(self) -> ResourceKey:
        return self.desired.key

    @property
    def tier(self) -> int:
        return provision_tier(self.desired.kind, self.desired.purpose)


class ResourceGraph:
    """
    Dependency graph over the desired resources of one project.

    Ordering ties between independent resources are broken by the fixed
    provisioning tier and then by name, so the order is stable across runs.
    """

    def __init__(self, resources: Optional[Iterable[DesiredState]] = None):
        self.nodes: Dict[ResourceKey, ResourceNode] = {}
        self._topological_order: Optional[List[ResourceKey]] = None

        if resources is not None:
            resources = list(resources)
            for desired in resources:
                self.add(desired)
            for desired in resources:
                for dep in desired.depends_on:
                    self.add_dependency(dep, desired.key)

    def __contains__(self, key: ResourceKey) -> bool:
        return key in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def add(self, desired: DesiredState) -> ResourceNode:
        """
        Add a resource to the graph.

        Raises:
            ValidationError: If a resource with the same key already exists
        """
        if desired.key in self.nodes:
            raise ValidationError("resource", str(desired.key), "unique (kind, name)")

        node = ResourceNode(desired=desired)
        self.nodes[desired.key] = node
        self._topological_order = None
        return node

    def add_dependency(self, before: ResourceKey, after: ResourceKey) -> None:
        """Record that *after* depends on *before*."""
        if before not in self.nodes:
            raise ValidationError(
                "depends_on", str(before), f"a resource present in the graph (needed by {after})"
            )
        if after not in self.nodes:
            raise ValidationError("resource", str(after), "a resource present in the graph")
        if before == after:
            raise ValidationError("depends_on", str(after), "no self-dependency")

        self.nodes[after].dependencies.add(before)
        self.nodes[before].dependents.add(after)
        self._topological_order = None

    def get(self, key: ResourceKey) -> DesiredState:
        return self.nodes[key].desired

    def dependencies_of(self, key: ResourceKey) -> Set[ResourceKey]:
        return set(self.nodes[key].dependencies)

    def dependents_of(self, key: ResourceKey, transitive: bool = True) -> Set[ResourceKey]:
        """Return resources that depend on *key*, directly or transitively."""
        direct = self.nodes[key].dependents
        if not transitive:
            return set(direct)

        seen: Set[ResourceKey] = set()
        stack = list(direct)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].dependents)
        return seen

    def topological_order(self) -> List[ResourceKey]:
        """
        Return resource keys so that every dependency precedes its dependents.

        Raises:
            ValidationError: If the graph contains a cycle
        """
        if self._topological_order is not None:
            return list(self._topological_order)

        in_degree = {key: len(node.dependencies) for key, node in self.nodes.items()}
        ready = [self._sort_key(key) for key, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        order: List[ResourceKey] = []
        while ready:
            _, _, _, key = heapq.heappop(ready)
            order.append(key)
            for dependent in self.nodes[key].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, self._sort_key(dependent))

        if len(order) != len(self.nodes):
            cyclic = sorted(str(k) for k, d in in_degree.items() if d > 0)
            raise ValidationError("graph", cyclic, "acyclic dependencies")

        self._topological_order = order
        logger.debug("Resource graph ordered", resources=len(order))
        return list(order)

    def _sort_key(self, key: ResourceKey):
        node = self.nodes[key]
        return (node.tier, key.kind.value, key.name, key)
