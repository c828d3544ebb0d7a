"""
Dependency resolver -- turns scanned dependencies into a deployment order.

Every function becomes a node. Every detected dependency A -> B becomes an
edge meaning "A needs B", so B has to be deployed first. The deployment
order is a topological sort of that graph.

If the graph has a cycle there is no valid order. Instead of returning a
partial (and wrong) order, the resolver reports each cycle as the path of
functions that form it, e.g. ["a", "b", "a"], and returns no order at all.
Cycles and dangling edges are reported as data, never raised, so a caller
can show every problem in the tree in a single run.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from functree.models import (
    CircularDependency,
    DeploymentOrder,
    FunctionMetadata,
    ValidationResult,
)

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """One function in the graph with its edges in both directions."""
    function_path: str
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    # Edges to functions that were not part of the scan
    missing: set[str] = field(default_factory=set)


class DependencyResolver:
    """Builds the dependency graph and derives ordering facts from it."""

    def __init__(self):
        self._graph: dict[str, DependencyNode] = {}

    def build_graph(self, functions: list[FunctionMetadata]) -> None:
        """Replace the current graph with one built from functions."""
        graph = {fn.relative_path: DependencyNode(fn.relative_path) for fn in functions}

        for fn in functions:
            node = graph[fn.relative_path]
            for dependency in fn.dependencies:
                target = dependency.target_function.strip("/")
                if target == fn.relative_path:
                    continue
                if target in graph:
                    node.dependencies.add(target)
                    graph[target].dependents.add(fn.relative_path)
                else:
                    node.missing.add(target)

        self._graph = graph
        logger.info(
            "Built dependency graph: %d functions, %d edges",
            len(graph), sum(len(n.dependencies) for n in graph.values()),
        )

    def calculate_deployment_order(self) -> DeploymentOrder:
        """
        Topologically sort the graph (dependencies first).

        Returns a DeploymentOrder whose functions list is empty when the
        graph has cycles; the cycles are listed instead.
        """
        cycles = self.detect_circular_dependencies()
        if cycles:
            logger.warning("Found %d circular dependencies, no deployment order", len(cycles))
            return DeploymentOrder(cycles=cycles)

        visited: set[str] = set()
        order: list[str] = []
        for function_path in sorted(self._graph):
            if function_path not in visited:
                self._topological_visit(function_path, visited, order)

        return DeploymentOrder(functions=order, batches=self._create_batches(order))

    def _topological_visit(self, start: str, visited: set[str], order: list[str]) -> None:
        # Iterative post-order DFS so deep trees can't hit the recursion limit
        visited.add(start)
        stack = [(start, iter(sorted(self._graph[start].dependencies)))]
        while stack:
            function_path, pending = stack[-1]
            for dependency in pending:
                if dependency not in visited:
                    visited.add(dependency)
                    stack.append((dependency, iter(sorted(self._graph[dependency].dependencies))))
                    break
            else:
                stack.pop()
                order.append(function_path)

    def detect_circular_dependencies(self) -> list[CircularDependency]:
        """Find cycles with a DFS that tracks the current recursion stack."""
        cycles: list[CircularDependency] = []
        visited: set[str] = set()

        for start in sorted(self._graph):
            if start in visited:
                continue

            path = [start]
            on_path = {start}
            visited.add(start)
            stack = [iter(sorted(self._graph[start].dependencies))]
            while stack:
                for dependency in stack[-1]:
                    if dependency in on_path:
                        cycle = path[path.index(dependency):] + [dependency]
                        cycles.append(CircularDependency(
                            cycle=cycle,
                            type="direct" if len(cycle) == 3 else "indirect",
                        ))
                    elif dependency not in visited:
                        visited.add(dependency)
                        path.append(dependency)
                        on_path.add(dependency)
                        stack.append(iter(sorted(self._graph[dependency].dependencies)))
                        break
                else:
                    stack.pop()
                    on_path.discard(path.pop())

        return cycles

    def has_dependency_path(self, source: str, target: str) -> bool:
        """True if source depends on target, directly or transitively."""
        if source == target:
            return True

        seen = {source}
        queue = deque([source])
        while queue:
            node = self._graph.get(queue.popleft())
            if node is None:
                continue
            for dependency in node.dependencies:
                if dependency == target:
                    return True
                if dependency not in seen:
                    seen.add(dependency)
                    queue.append(dependency)
        return False

    def has_circular_dependency(self, function_a: str, function_b: str) -> bool:
        return self.has_dependency_path(function_a, function_b) and self.has_dependency_path(
            function_b, function_a
        )

    def get_root_functions(self) -> list[str]:
        """Functions with no dependencies; they can be deployed first."""
        return sorted(p for p, n in self._graph.items() if not n.dependencies)

    def get_leaf_functions(self) -> list[str]:
        """Functions nothing depends on; they can be deployed last."""
        return sorted(p for p, n in self._graph.items() if not n.dependents)

    def get_direct_dependencies(self, function_path: str) -> list[str]:
        node = self._graph.get(function_path)
        return sorted(node.dependencies) if node else []

    def get_direct_dependents(self, function_path: str) -> list[str]:
        node = self._graph.get(function_path)
        return sorted(node.dependents) if node else []

    def _create_batches(self, ordered: list[str]) -> list[list[str]]:
        """
        Group an acyclic order into waves that can be deployed in parallel.

        A function joins the first wave after all of its dependencies.
        """
        level: dict[str, int] = {}
        for function_path in ordered:
            deps = self._graph[function_path].dependencies
            level[function_path] = 1 + max((level[d] for d in deps), default=-1)

        batches: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for function_path in ordered:
            batches[level[function_path]].append(function_path)
        return batches

    def validate_dependency_graph(self) -> ValidationResult:
        """Cycles are errors; dangling edges and isolated functions are warnings."""
        errors = []
        warnings = []

        cycles = self.detect_circular_dependencies()
        if cycles:
            errors.append(f"Found {len(cycles)} circular dependencies")
            for cycle in cycles:
                errors.append(f"Circular dependency: {' -> '.join(cycle.cycle)}")

        for function_path, node in sorted(self._graph.items()):
            for missing in sorted(node.missing):
                warnings.append(f"Function '{function_path}' depends on '{missing}' which is not found")

        isolated = sorted(
            p for p, n in self._graph.items() if not n.dependencies and not n.dependents
        )
        if isolated:
            warnings.append(f"Found {len(isolated)} isolated functions: {', '.join(isolated)}")

        return ValidationResult.from_messages(errors, warnings)
