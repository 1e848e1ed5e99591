"""
Unit tests for roles: the roles section, import_role, include_role and
role dependencies.
"""

import pytest

from parsible.engine.config import ParserConfig
from parsible.engine.diagnostics import DiagnosticKind
from parsible.engine.errors import SourceNotFound
from parsible.engine.values import Literal


WEB_ROLE = {
    "roles/web/defaults/main.yml": """
        web_package: nginx
        web_port: 80
    """,
    "roles/web/vars/main.yml": """
        web_user: www-data
    """,
    "roles/web/tasks/main.yml": """
        - name: install web
          package:
            name: "{{ web_package }}"
        - name: create user
          user:
            name: "{{ web_user }}"
        - name: configure
          template:
            src: site.conf.j2
            dest: "/etc/{{ web_package }}/site.conf"
          notify: restart web
    """,
    "roles/web/tasks/install.yml": """
        - name: install only
          package:
            name: "{{ web_package }}"
    """,
    "roles/web/handlers/main.yml": """
        - name: restart web
          service:
            name: "{{ web_package }}"
            state: restarted
    """,
}


def role_files(site: str, **extra: str):
    return {**WEB_ROLE, **extra, "site.yml": site}


class TestRolesSection:
    """Roles listed in a play's roles section."""

    def test_role_tasks_and_handlers(self, parse_files):
        parsed, diagnostics = parse_files(role_files("""
            - hosts: web
              roles:
                - web
        """))

        play = parsed.plays[0]
        assert [t.id for t in play.tasks] == ["role_web.task_0", "role_web.task_1", "role_web.task_2"]
        assert play.tasks[0].args["name"] == Literal("nginx")
        assert play.tasks[1].args["name"] == Literal("www-data")
        assert [h.id for h in play.handlers] == ["role_web.handler_0"]
        assert play.handlers[0].args["name"] == Literal("nginx")
        assert ("role_web.task_2", "role_web.handler_0") in play.edges
        assert not diagnostics.errors

    def test_role_reference(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              roles:
                - web
        """))

        role = parsed.plays[0].roles[0]
        assert role.name == "web"
        assert role.via == "roles"
        assert role.path == "roles/web"
        assert role.tasks_from == "main"

    def test_role_params_override_role_vars_and_defaults(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              roles:
                - role: web
                  web_package: apache2
                  web_user: deploy
        """))

        tasks = parsed.plays[0].tasks
        assert tasks[0].args["name"] == Literal("apache2")
        assert tasks[1].args["name"] == Literal("deploy")
        assert parsed.plays[0].roles[0].vars == {"web_package": "apache2", "web_user": "deploy"}

    def test_play_vars_override_role_defaults(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              vars:
                web_package: httpd
                web_user: nobody
              roles:
                - web
        """))

        tasks = parsed.plays[0].tasks
        assert tasks[0].args["name"] == Literal("httpd")
        # Role vars take precedence over play vars
        assert tasks[1].args["name"] == Literal("www-data")

    def test_role_scope_ends_with_the_role(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              roles:
                - web
              tasks:
                - name: after role
                  debug:
                    msg: "{{ web_package | default('none') }}"
        """))

        assert parsed.plays[0].tasks[-1].args["msg"] == Literal("none")

    def test_role_path_variable(self, parse_files):
        parsed, _ = parse_files({
            "roles/app/tasks/main.yml": """
                - name: show path
                  debug:
                    msg: "{{ role_path }}/files"
            """,
            "site.yml": """
                - hosts: all
                  roles:
                    - app
            """,
        })

        assert parsed.plays[0].tasks[0].args["msg"] == Literal("roles/app/files")

    def test_section_order(self, parse_files):
        """pre_tasks, roles, tasks and post_tasks run in that order."""
        parsed, _ = parse_files(role_files("""
            - hosts: web
              post_tasks:
                - name: post
                  ping:
              tasks:
                - name: main
                  ping:
              roles:
                - web
              pre_tasks:
                - name: pre
                  ping:
        """))

        names = [t.name for t in parsed.plays[0].tasks]
        assert names == ["pre", "install web", "create user", "configure", "main", "post"]
        assert parsed.plays[0].tasks[1].id == "role_web.task_1"

    def test_role_conditions_and_tags(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              roles:
                - role: web
                  when: ansible_os_family == 'Debian'
                  tags: [web]
        """))

        for task in parsed.plays[0].tasks:
            assert "web" in task.tags
            assert task.conditions[0] == "ansible_os_family == 'Debian'"
        assert parsed.facts_required

    def test_handlers_load_once_per_play(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              roles:
                - role: web
                  web_package: nginx
                - role: web
                  web_package: apache2
        """))

        play = parsed.plays[0]
        assert len(play.tasks) == 6
        assert len({t.id for t in play.tasks}) == 6
        assert len(play.handlers) == 1

    def test_missing_role(self, parse_files):
        with pytest.raises(SourceNotFound):
            parse_files({
                "site.yml": """
                    - hosts: all
                      roles:
                        - missing
                """,
            })

    def test_custom_roles_path(self, parse_files):
        parsed, _ = parse_files({
            "shared/roles/base/tasks/main.yml": """
                - name: base task
                  ping:
            """,
            "site.yml": """
                - hosts: all
                  roles:
                    - base
            """,
        }, config=ParserConfig(roles_path=["shared/roles"]))

        assert [t.name for t in parsed.plays[0].tasks] == ["base task"]
        assert parsed.plays[0].roles[0].path == "shared/roles/base"

    def test_invalid_role_entry(self, parse_files):
        parsed, diagnostics = parse_files(role_files("""
            - hosts: web
              roles:
                - tags: [orphan]
                - web
        """))

        assert len(parsed.plays[0].tasks) == 3
        assert diagnostics.of_kind(DiagnosticKind.PARSE_ERROR)


class TestRoleDirectives:
    """import_role and include_role."""

    def test_import_role(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              tasks:
                - name: first
                  ping:
                - import_role:
                    name: web
                  vars:
                    web_package: caddy
        """))

        play = parsed.plays[0]
        assert play.tasks[1].args["name"] == Literal("caddy")
        assert play.tasks[1].id == "role_web.task_1"
        assert not play.tasks[1].dynamic
        assert play.roles[0].via == "import_role"

    def test_include_role_tasks_from(self, parse_files):
        parsed, _ = parse_files(role_files("""
            - hosts: web
              tasks:
                - include_role:
                    name: web
                    tasks_from: install
        """))

        play = parsed.plays[0]
        assert [t.name for t in play.tasks] == ["install only"]
        assert play.tasks[0].dynamic
        assert play.roles[0].tasks_from == "install"
        assert play.roles[0].via == "include_role"

    def test_include_role_missing_tasks_from(self, parse_files):
        with pytest.raises(SourceNotFound):
            parse_files(role_files("""
                - hosts: web
                  tasks:
                    - include_role:
                        name: web
                        tasks_from: nothing
            """))

    def test_include_role_with_runtime_name_is_deferred(self, parse_files):
        parsed, diagnostics = parse_files(role_files("""
            - hosts: web
              tasks:
                - include_role:
                    name: "{{ ansible_hostname }}"
        """))

        assert parsed.plays[0].tasks[0].module == "include_role"
        assert diagnostics.of_kind(DiagnosticKind.DEFERRED_INCLUDE)

    def test_include_tasks_inside_role(self, parse_files):
        parsed, _ = parse_files({
            "roles/app/tasks/main.yml": """
                - include_tasks: extra.yml
            """,
            "roles/app/tasks/extra.yml": """
                - name: extra
                  ping:
            """,
            "site.yml": """
                - hosts: all
                  roles:
                    - app
            """,
        })

        task = parsed.plays[0].tasks[0]
        assert task.name == "extra"
        assert task.id == "role_app.include_extra.task_0"

    def test_include_vars_inside_role(self, parse_files):
        parsed, _ = parse_files({
            "roles/app/tasks/main.yml": """
                - include_vars: debian.yml
                - name: show
                  debug:
                    msg: "{{ app_package }}"
            """,
            "roles/app/vars/debian.yml": """
                app_package: app-deb
            """,
            "site.yml": """
                - hosts: all
                  roles:
                    - app
            """,
        })

        assert parsed.plays[0].tasks[0].args["msg"] == Literal("app-deb")


class TestRoleDependencies:
    """Roles listed in meta/main.yml run before the role itself."""

    FILES = {
        "roles/common/tasks/main.yml": """
            - name: common task
              debug:
                msg: "{{ common_greeting }}"
        """,
        "roles/app/meta/main.yml": """
            dependencies:
              - role: common
                common_greeting: hello
        """,
        "roles/app/tasks/main.yml": """
            - name: app task
              ping:
        """,
    }

    def test_dependencies_run_first(self, parse_files):
        parsed, diagnostics = parse_files({
            **self.FILES,
            "site.yml": """
                - hosts: all
                  roles:
                    - app
            """,
        })

        play = parsed.plays[0]
        assert [t.name for t in play.tasks] == ["common task", "app task"]
        assert play.tasks[0].id == "role_app.role_common.task_0"
        assert play.tasks[0].args["msg"] == Literal("hello")
        assert play.tasks[1].id == "role_app.task_1"
        assert [(r.name, r.via) for r in play.roles] == [("app", "roles"), ("common", "dependency")]
        assert not diagnostics.errors
