"""Dependency graph builder.

This module uses NetworkX to link the tasks and handlers of a play into a
directed graph: explicit ``dependencies`` first, then sequential order and
``notify`` edges, followed by a deterministic topological order.
"""

import logging
from typing import Dict, List, Optional, Tuple

import networkx as nx

from parsible.engine.diagnostics import DiagnosticKind, Diagnostics
from parsible.engine.errors import CyclicTaskDependency
from parsible.engine.model import Play, Task

logger = logging.getLogger(__name__)


class DependencyGraph:
    """A directed graph over the task and handler ids of one play.

    Edges point from a task to the tasks that must run after it.
    """

    def __init__(self, play: Play, diagnostics: Optional[Diagnostics] = None):
        """Build the graph for a play and record it on the play.

        Args:
            play: Play whose tasks and handlers carry their final ids.
            diagnostics: Collector for unknown notify/dependency targets.

        Raises:
            CyclicTaskDependency: If explicit dependencies form a cycle.
        """
        self.play = play
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.graph = nx.DiGraph()
        self._position: Dict[str, int] = {}
        self._edges: List[Tuple[str, str]] = []

        self._add_nodes()
        self._add_dependencies()
        self._detect_cycles()
        self._add_notify_edges()
        self._add_sequence_edges(self.play.tasks)
        self._add_sequence_edges(self.play.handlers)

        play.edges = list(self._edges)
        play.order = self.topological_sort()

    def _add_nodes(self) -> None:
        for task in self.play.tasks + self.play.handlers:
            self._position[task.id] = len(self._position)
            self.graph.add_node(task.id, task=task)

    def _link(self, source: str, target: str) -> None:
        if source == target or self.graph.has_edge(source, target):
            return
        self.graph.add_edge(source, target)
        self._edges.append((source, target))

    def _link_if_acyclic(self, source: str, target: str) -> bool:
        """Add an ordering edge unless it would close a cycle."""
        if source == target:
            return False
        if nx.has_path(self.graph, target, source):
            logger.debug("Skipping edge %s -> %s: would close a cycle", source, target)
            return False
        self._link(source, target)
        return True

    def _resolve_dependency(self, task: Task, reference: str) -> Optional[str]:
        """Map a dependency given as a task id or task name to an id."""
        if reference in self._position:
            return reference
        for candidate in self.play.tasks + self.play.handlers:
            if candidate.name == reference:
                return candidate.id
        self.diagnostics.warning(
            DiagnosticKind.UNKNOWN_DEPENDENCY,
            f"Task '{task.id}' depends on unknown task '{reference}'",
            task.provenance.source, task.provenance.line, task.provenance.column,
        )
        return None

    def _add_dependencies(self) -> None:
        """Add explicit dependency edges and normalize them to ids."""
        for task in self.play.tasks + self.play.handlers:
            resolved: List[str] = []
            for reference in task.dependencies:
                dependency = self._resolve_dependency(task, reference)
                if dependency is not None and dependency not in resolved:
                    resolved.append(dependency)
                    if dependency == task.id:
                        raise CyclicTaskDependency([task.id, task.id])
                    self._link(dependency, task.id)
            task.dependencies = resolved

    def _detect_cycles(self) -> None:
        """Detect cycles among explicit dependencies.

        Raises:
            CyclicTaskDependency: Naming the task ids on the cycle.
        """
        try:
            cycle = nx.find_cycle(self.graph)
        except nx.NetworkXNoCycle:
            return
        task_ids = [edge[0] for edge in cycle]
        raise CyclicTaskDependency(task_ids + [task_ids[0]])

    def _add_notify_edges(self) -> None:
        """Link notifying tasks to the first-declared handler of each name
        and to every handler listening to the topic."""
        for task in self.play.tasks + self.play.handlers:
            for name in task.notify:
                handlers = self.play.notified(name)
                if not handlers:
                    self.diagnostics.warning(
                        DiagnosticKind.UNRESOLVED_NOTIFY,
                        f"Task '{task.name or task.id}' notifies unknown handler '{name}'",
                        task.provenance.source, task.provenance.line, task.provenance.column,
                    )
                    continue
                for handler in handlers:
                    self._link_if_acyclic(task.id, handler.id)

    def _add_sequence_edges(self, tasks: List[Task]) -> None:
        """Order each task after its predecessor unless dependencies say otherwise."""
        for previous, task in zip(tasks, tasks[1:]):
            self._link_if_acyclic(previous.id, task.id)

    def get_dependencies(self, task_id: str) -> List[str]:
        """Ids that must run directly before ``task_id``."""
        return sorted(self.graph.predecessors(task_id), key=self._position.__getitem__)

    def get_dependents(self, task_id: str) -> List[str]:
        """Ids that run directly after ``task_id``."""
        return sorted(self.graph.successors(task_id), key=self._position.__getitem__)

    def topological_sort(self) -> List[str]:
        """Deterministic topological order, ties broken by declaration order."""
        return list(nx.lexicographical_topological_sort(self.graph, key=self._position.__getitem__))


def link_play(play: Play, diagnostics: Optional[Diagnostics] = None) -> DependencyGraph:
    """Build and record the dependency graph of a play."""
    return DependencyGraph(play, diagnostics)
