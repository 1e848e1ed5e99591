"""
Unit tests for the task dependency graph.
"""

import pytest

from parsible.engine.diagnostics import DiagnosticKind, Diagnostics
from parsible.engine.errors import CyclicTaskDependency
from parsible.engine.graph import DependencyGraph
from parsible.engine.model import Handler, Play, Task


def make_play(*tasks, handlers=()):
    play = Play(name="test", hosts="all", tasks=list(tasks), handlers=list(handlers))
    return play


def task(task_id, dependencies=(), notify=(), name=None):
    return Task(name=name or task_id, module="debug", id=task_id,
                dependencies=list(dependencies), notify=list(notify))


class TestDependencyGraph:
    """Graph construction on hand-built plays."""

    def test_sequential_edges(self):
        play = make_play(task("a"), task("b"), task("c"))
        graph = DependencyGraph(play)

        assert play.edges == [("a", "b"), ("b", "c")]
        assert play.order == ["a", "b", "c"]
        assert graph.get_dependencies("b") == ["a"]
        assert graph.get_dependents("b") == ["c"]

    def test_explicit_dependency_reorders(self):
        play = make_play(task("a"), task("b", dependencies=["c"]), task("c"))
        DependencyGraph(play)

        assert ("c", "b") in play.edges
        assert ("b", "c") not in play.edges
        assert play.order == ["a", "c", "b"]

    def test_dependency_by_name(self):
        play = make_play(task("t0", name="install"), task("t1", dependencies=["install"]))
        graph = DependencyGraph(play)

        assert play.tasks[1].dependencies == ["t0"]
        assert graph.get_dependencies("t1") == ["t0"]

    def test_unknown_dependency(self):
        diagnostics = Diagnostics()
        play = make_play(task("a", dependencies=["ghost"]))
        DependencyGraph(play, diagnostics)

        assert play.tasks[0].dependencies == []
        assert len(diagnostics.of_kind(DiagnosticKind.UNKNOWN_DEPENDENCY)) == 1

    def test_cycle(self):
        play = make_play(task("t1", dependencies=["t2"]), task("t2", dependencies=["t1"]))

        with pytest.raises(CyclicTaskDependency) as excinfo:
            DependencyGraph(play)
        assert set(excinfo.value.task_ids) == {"t1", "t2"}

    def test_self_dependency(self):
        play = make_play(task("t1", dependencies=["t1"]))

        with pytest.raises(CyclicTaskDependency):
            DependencyGraph(play)

    def test_handlers_ordered_after_tasks(self):
        restart = Handler(name="restart", module="service", id="handler_0")
        play = make_play(task("a", notify=["restart"]), task("b"), handlers=[restart])
        graph = DependencyGraph(play)

        assert play.order == ["a", "b", "handler_0"]
        assert graph.get_dependents("a") == ["b", "handler_0"]

    def test_order_is_deterministic(self):
        play = make_play(task("a"), task("b", dependencies=["d"]), task("c"), task("d"))
        DependencyGraph(play)
        first = list(play.order)
        DependencyGraph(play)

        assert play.order == first


class TestParsedDependencies:
    """Dependencies declared in playbooks."""

    def test_dependencies_keyword(self, parse_files):
        parsed, diagnostics = parse_files({"site.yml": """
            - hosts: all
              tasks:
                - id: migrate
                  command: ./migrate
                  dependencies: [backup]
                - id: backup
                  command: ./backup
        """})

        play = parsed.plays[0]
        assert play.order == ["backup", "migrate"]
        assert not diagnostics.errors

    def test_cycle_aborts_parse(self, parse_files):
        with pytest.raises(CyclicTaskDependency):
            parse_files({"site.yml": """
                - hosts: all
                  tasks:
                    - id: a
                      ping:
                      dependencies: [b]
                    - id: b
                      ping:
                      dependencies: [a]
            """})
