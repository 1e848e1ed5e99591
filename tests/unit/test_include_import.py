"""
Unit tests for include_tasks, import_tasks, include_vars and import_playbook.
"""

from pathlib import Path

import pytest

from parsible.engine.diagnostics import DiagnosticKind
from parsible.engine.errors import SourceNotFound
from parsible.engine.model import DeferredInclude, IncludeKind
from parsible.engine.playbook import PlaybookParser
from parsible.engine.values import Literal, Unresolved, UnresolvedReason


class TestIncludeTasks:
    """Tests for include_tasks and import_tasks."""

    def test_include_tasks_loads_external_file(self, tmp_path: Path):
        """include_tasks should load tasks from an external file."""
        tasks_file = tmp_path / "tasks" / "included.yml"
        tasks_file.parent.mkdir(parents=True)
        tasks_file.write_text("""
- name: Included task 1
  debug:
    msg: "From included file"

- name: Included task 2
  command: echo hello
""")

        playbook = tmp_path / "playbook.yml"
        playbook.write_text("""
- name: Test play
  hosts: localhost
  tasks:
    - name: First task
      debug:
        msg: "First"

    - include_tasks: tasks/included.yml

    - name: Last task
      debug:
        msg: "Last"
""")

        parsed, diagnostics = PlaybookParser().parse(str(playbook))

        tasks = parsed.plays[0].tasks
        assert [t.name for t in tasks] == ["First task", "Included task 1", "Included task 2", "Last task"]
        assert tasks[1].dynamic
        assert tasks[1].id == "include_included.task_1"
        assert tasks[1].provenance.source == tasks_file.resolve().as_posix()
        assert not diagnostics.errors

    def test_import_tasks_propagates_when_and_vars(self, parse_files):
        """Inlined tasks inherit the directive's condition and variables."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  vars:
                    enabled: true
                    ready: true
                  tasks:
                    - name: first
                      debug:
                        msg: first
                    - import_tasks: tasks/common.yml
                      when: enabled
                      vars:
                        pkg: nginx
            """,
            "tasks/common.yml": """
                - name: install
                  package:
                    name: "{{ pkg }}"
                  when: ready
            """,
        })

        install = parsed.plays[0].tasks[1]
        assert install.id == "import_common.task_1"
        assert install.args == {"name": Literal("nginx")}
        assert install.conditions == ["enabled", "ready"]
        assert install.when == Literal(True)
        assert not install.dynamic
        assert not diagnostics.errors

    def test_import_with_false_condition_is_still_inlined(self, parse_files):
        """Static imports are expanded; the condition travels with the tasks."""
        parsed, _ = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/common.yml
                      when: false
            """,
            "tasks/common.yml": """
                - name: install
                  package:
                    name: nginx
            """,
        })

        tasks = parsed.plays[0].tasks
        assert len(tasks) == 1
        assert tasks[0].when == Literal(False)

    def test_sibling_imports_are_independent(self, parse_files):
        """The same file imported twice yields two independent task sets."""
        parsed, _ = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/install.yml
                      vars:
                        pkg: nginx
                    - import_tasks: tasks/install.yml
                      vars:
                        pkg: redis
            """,
            "tasks/install.yml": """
                - name: install package
                  package:
                    name: "{{ pkg }}"
            """,
        })

        first, second = parsed.plays[0].tasks
        assert first.id != second.id
        assert first.args["name"] == Literal("nginx")
        assert second.args["name"] == Literal("redis")

    def test_include_with_false_condition_is_skipped(self, parse_files):
        """A dynamic include whose condition is literally false is not loaded."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  vars:
                    install_extras: false
                  tasks:
                    - include_tasks: tasks/extras.yml
                      when: install_extras
            """,
        })

        assert parsed.plays[0].tasks == []
        assert not diagnostics.errors

    def test_include_with_runtime_condition_is_expanded(self, parse_files):
        """A literal target is expanded even when the condition needs facts."""
        parsed, _ = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_tasks: tasks/debian.yml
                      when: ansible_os_family == 'Debian'
            """,
            "tasks/debian.yml": """
                - name: update cache
                  apt:
                    update_cache: true
            """,
        })

        task = parsed.plays[0].tasks[0]
        assert task.name == "update cache"
        assert task.dynamic
        assert isinstance(task.when, Unresolved)
        assert task.when.reason is UnresolvedReason.RUNTIME_FACT
        assert parsed.facts_required

    def test_runtime_target_is_deferred(self, parse_files):
        """A target only known at run time is kept as a deferred marker."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_tasks: "{{ ansible_distribution }}.yml"
            """,
        })

        deferred = parsed.plays[0].tasks[0]
        assert isinstance(deferred, DeferredInclude)
        assert deferred.kind is IncludeKind.INCLUDE_TASKS
        assert deferred.module == "include_tasks"
        assert deferred.target.expression == "{{ ansible_distribution }}.yml"
        assert deferred.id == "task_0"
        assert diagnostics.of_kind(DiagnosticKind.DEFERRED_INCLUDE)
        assert not diagnostics.errors
        assert parsed.facts_required

    def test_static_import_with_runtime_target(self, parse_files):
        """import_tasks cannot defer; an unresolvable target is an error."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: "{{ ansible_distribution }}.yml"
            """,
        })

        assert parsed.plays[0].tasks == []
        deferred = diagnostics.of_kind(DiagnosticKind.DEFERRED_INCLUDE)
        assert deferred and deferred[0].is_error

    def test_nested_include_ids(self, parse_files):
        """Ids carry every include the task was inlined through."""
        parsed, _ = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/outer.yml
            """,
            "tasks/outer.yml": """
                - include_tasks: inner.yml
            """,
            "tasks/inner.yml": """
                - name: inner
                  ping:
            """,
        })

        task = parsed.plays[0].tasks[0]
        assert task.id == "import_outer.include_inner.task_0"
        assert task.dynamic

    def test_legacy_include(self, parse_files):
        """Bare 'include' is treated as import_tasks with a warning."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - include: tasks/common.yml
            """,
            "tasks/common.yml": """
                - name: common
                  ping:
            """,
        })

        assert [t.name for t in parsed.plays[0].tasks] == ["common"]
        assert diagnostics.of_kind(DiagnosticKind.DEPRECATED_SYNTAX)

    def test_missing_target(self, parse_files):
        with pytest.raises(SourceNotFound):
            parse_files({
                "site.yml": """
                    - hosts: all
                      tasks:
                        - import_tasks: tasks/missing.yml
                """,
            })

    def test_syntax_error_in_included_file(self, parse_files):
        """A broken included file only drops that include."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_tasks: tasks/broken.yml
                    - name: after
                      ping:
            """,
            "tasks/broken.yml": """
                - name: broken
                  debug: [unclosed
            """,
        })

        assert [t.name for t in parsed.plays[0].tasks] == ["after"]
        errors = diagnostics.of_kind(DiagnosticKind.PARSE_ERROR)
        assert len(errors) == 1
        assert errors[0].source == "tasks/broken.yml"

    def test_tasks_file_must_be_a_list(self, parse_files):
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/mapping.yml
            """,
            "tasks/mapping.yml": """
                name: not a list
            """,
        })

        assert parsed.plays[0].tasks == []
        assert diagnostics.of_kind(DiagnosticKind.PARSE_ERROR)


class TestRecursion:
    """Cycles and nesting bounds."""

    def test_cyclic_static_import(self, parse_files):
        """Re-importing a file already on the inclusion path is reported."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/a.yml
            """,
            "tasks/a.yml": """
                - name: A
                  ping:
                - import_tasks: b.yml
            """,
            "tasks/b.yml": """
                - name: B
                  ping:
                - import_tasks: a.yml
            """,
        })

        assert [t.name for t in parsed.plays[0].tasks] == ["A", "B"]
        cycles = diagnostics.of_kind(DiagnosticKind.CYCLIC_INCLUDE)
        assert len(cycles) == 1
        assert "tasks/a.yml" in cycles[0].message

    def test_static_self_import(self, parse_files):
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/self.yml
            """,
            "tasks/self.yml": """
                - name: once
                  ping:
                - import_tasks: self.yml
            """,
        })

        assert [t.name for t in parsed.plays[0].tasks] == ["once"]
        assert diagnostics.of_kind(DiagnosticKind.CYCLIC_INCLUDE)

    def test_self_including_file_hits_depth_bound(self, parse_files, small_depth_config):
        """Unbounded dynamic recursion fails with IncludeDepthExceeded."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - name: before
                      ping:
                    - include_tasks: tasks/loop.yml
                    - name: after
                      ping:
            """,
            "tasks/loop.yml": """
                - name: step
                  ping:
                - include_tasks: loop.yml
            """,
        }, config=small_depth_config)

        assert [t.name for t in parsed.plays[0].tasks] == ["before", "after"]
        exceeded = diagnostics.of_kind(DiagnosticKind.INCLUDE_DEPTH_EXCEEDED)
        assert len(exceeded) == 1
        assert exceeded[0].line == 5

    def test_recursion_guarded_by_condition(self, parse_files, small_depth_config):
        """A recursive include whose own condition is false terminates."""
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  vars:
                    recurse: false
                  tasks:
                    - include_tasks: tasks/loop.yml
            """,
            "tasks/loop.yml": """
                - name: tick
                  ping:
                - include_tasks: loop.yml
                  when: recurse
            """,
        }, config=small_depth_config)

        assert [t.name for t in parsed.plays[0].tasks] == ["tick"]
        assert not diagnostics.errors


class TestIncludeVars:
    """include_vars binds variables for the tasks that follow it."""

    FILES = {
        "vars/web.yml": """
            http_port: 8080
        """,
    }

    def test_visible_to_later_siblings_only(self, parse_files):
        parsed, _ = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  tasks:
                    - name: before
                      debug:
                        msg: "{{ http_port | default('unset') }}"
                    - include_vars: vars/web.yml
                    - name: after
                      debug:
                        msg: "{{ http_port }}"
            """,
        })

        before, after = parsed.plays[0].tasks
        assert before.args["msg"] == Literal("unset")
        assert after.args["msg"] == Literal(8080)

    def test_named_namespace(self, parse_files):
        parsed, _ = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_vars:
                        file: vars/web.yml
                        name: web
                    - name: after
                      debug:
                        msg: "{{ web.http_port }}"
            """,
        })

        assert parsed.plays[0].tasks[0].args["msg"] == Literal(8080)

    def test_visible_after_the_import_that_loaded_it(self, parse_files):
        parsed, _ = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_tasks: tasks/setup.yml
                    - name: after
                      debug:
                        msg: "{{ http_port }}"
            """,
            "tasks/setup.yml": """
                - include_vars: vars/web.yml
            """,
        })

        assert parsed.plays[0].tasks[0].args["msg"] == Literal(8080)

    def test_conditional_include_vars_is_runtime(self, parse_files):
        parsed, diagnostics = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_vars: vars/web.yml
                      when: ansible_os_family == 'Debian'
                    - name: after
                      debug:
                        msg: "{{ http_port }}"
            """,
        })

        msg = parsed.plays[0].tasks[0].args["msg"]
        assert isinstance(msg, Unresolved)
        assert msg.reason is UnresolvedReason.RUNTIME
        assert not diagnostics.errors

    def test_does_not_leak_into_next_play(self, parse_files):
        parsed, _ = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  tasks:
                    - include_vars: vars/web.yml
                - hosts: all
                  tasks:
                    - name: second play
                      debug:
                        msg: "{{ http_port | default('unset') }}"
            """,
        })

        assert parsed.plays[1].tasks[0].args["msg"] == Literal("unset")


class TestImportPlaybook:
    """Playbook-level imports."""

    def test_plays_are_flattened_in_order(self, parse_files):
        parsed, _ = parse_files({
            "site.yml": """
                - import_playbook: web.yml
                  vars:
                    tier: front
                - hosts: db
                  tasks:
                    - name: db task
                      ping:
            """,
            "web.yml": """
                - hosts: web
                  tasks:
                    - name: web task
                      debug:
                        msg: "{{ tier }}"
            """,
        })

        assert [play.hosts for play in parsed.plays] == ["web", "db"]
        assert parsed.plays[0].tasks[0].args["msg"] == Literal("front")
        assert parsed.plays[0].tasks[0].id == "task_0"
        assert parsed.plays[1].tasks[0].id == "play_1.task_0"

    def test_cyclic_import_playbook(self, parse_files):
        parsed, diagnostics = parse_files({
            "site.yml": """
                - import_playbook: other.yml
            """,
            "other.yml": """
                - hosts: all
                  tasks:
                    - name: other
                      ping:
                - import_playbook: site.yml
            """,
        })

        assert [play.tasks[0].name for play in parsed.plays] == ["other"]
        assert diagnostics.of_kind(DiagnosticKind.CYCLIC_INCLUDE)

    def test_import_playbook_inside_tasks(self, parse_files):
        parsed, diagnostics = parse_files({
            "site.yml": """
                - hosts: all
                  tasks:
                    - import_playbook: other.yml
            """,
        })

        assert parsed.plays[0].tasks == []
        assert diagnostics.of_kind(DiagnosticKind.PARSE_ERROR)
