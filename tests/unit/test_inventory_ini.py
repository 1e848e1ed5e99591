"""
Tests for INI inventory parsing.
"""

from pathlib import Path

import pytest

from parsible.engine.diagnostics import DiagnosticKind
from parsible.engine.errors import CyclicGroupInheritance, InvalidPattern
from parsible.inventory import InventoryParser, parse_inventory


def parse_ini(text: str):
    return parse_inventory(text, "hosts.ini", format="ini")


class TestINIInventoryParser:
    """Test INI inventory file parsing."""

    def test_parse_simple_host(self, tmp_path: Path):
        """Test parsing a simple host from disk."""
        inventory_file = tmp_path / "inventory.ini"
        inventory_file.write_text("localhost\n")

        inventory, diagnostics = InventoryParser().load(str(inventory_file))

        assert list(inventory.hosts) == ["localhost"]
        assert inventory.get_hosts("all") == ["localhost"]
        assert not diagnostics.errors

    def test_host_before_any_section_is_ungrouped(self):
        """Hosts outside any section belong to 'ungrouped'."""
        inventory, _ = parse_ini("localhost\n[web]\nweb1\n")

        assert inventory.group_hosts("ungrouped") == ["localhost"]
        assert inventory.group_hosts("web") == ["web1"]

    def test_parse_host_with_vars(self):
        """Test parsing hosts with inline variables."""
        inventory, _ = parse_ini(
            "web1 ansible_host=192.168.1.10 ansible_user=admin http_port=8080 debug=yes\n"
        )

        host_vars = inventory.host_vars("web1")
        assert host_vars["ansible_host"] == "192.168.1.10"
        assert host_vars["ansible_user"] == "admin"
        assert host_vars["http_port"] == 8080
        assert host_vars["debug"] is True

    def test_quoted_inline_value(self):
        """Test quoted values with spaces."""
        inventory, _ = parse_ini('web1 motd="hello world"\n')
        assert inventory.host_vars("web1")["motd"] == "hello world"

    def test_port_suffix(self):
        """Test host:port shorthand."""
        inventory, _ = parse_ini("[db]\ndb1:2222\n")

        assert "db1" in inventory.hosts
        assert inventory.host_vars("db1")["ansible_port"] == 2222

    def test_parse_groups(self):
        """Test parsing host groups."""
        inventory, _ = parse_ini(
            "[webservers]\nweb1\nweb2\n\n[dbservers]\ndb1\n"
        )

        assert inventory.group_hosts("webservers") == ["web1", "web2"]
        assert inventory.group_hosts("dbservers") == ["db1"]
        assert inventory.get_hosts("all") == ["web1", "web2", "db1"]
        assert inventory.groups["webservers"].has_host("web1")

    def test_parse_group_vars(self):
        """Test parsing group variables."""
        inventory, _ = parse_ini(
            "[webservers]\nweb1\n\n[webservers:vars]\nhttp_port=80\nowner='www data'\n"
        )

        assert inventory.groups["webservers"].vars == {"http_port": 80, "owner": "www data"}
        assert inventory.host_vars("web1")["http_port"] == 80

    def test_parse_children(self):
        """Test parsing group children."""
        inventory, _ = parse_ini(
            "[web]\nweb1\n[db]\ndb1\n[production:children]\nweb\ndb\n"
        )

        assert inventory.group_hosts("production") == ["web1", "db1"]
        assert inventory.groups["web"].parents == ["production"]

    def test_host_range(self):
        """Test host range expansion."""
        inventory, _ = parse_ini("[web]\nweb[01:03].example.com\n")

        assert inventory.group_hosts("web") == [
            "web01.example.com", "web02.example.com", "web03.example.com",
        ]

    def test_address_range_is_paired(self):
        """Test ansible_host ranges spliced onto host ranges."""
        inventory, _ = parse_ini("[nodes]\nnode[1:3] ansible_host=10.0.0.[1:3]\n")

        assert inventory.host_vars("node1")["ansible_host"] == "10.0.0.1"
        assert inventory.host_vars("node3")["ansible_host"] == "10.0.0.3"

    def test_address_range_mismatch(self):
        """Test mismatched ranges are reported and the line skipped."""
        inventory, diagnostics = parse_ini(
            "[nodes]\nnode[1:3] ansible_host=10.0.0.[1:2]\nnode9\n"
        )

        assert inventory.group_hosts("nodes") == ["node9"]
        mismatch = diagnostics.of_kind(DiagnosticKind.PATTERN_CARDINALITY_MISMATCH)
        assert len(mismatch) == 1
        assert mismatch[0].line == 2

    def test_invalid_range_is_reported(self):
        """Test a reversed range becomes an error diagnostic."""
        inventory, diagnostics = parse_ini("[web]\nweb[3:1]\nweb9\n")

        assert inventory.group_hosts("web") == ["web9"]
        assert diagnostics.of_kind(DiagnosticKind.INVALID_PATTERN)
        assert diagnostics.has_errors

    def test_comments_are_ignored(self):
        """Test comment lines and trailing comments."""
        inventory, _ = parse_ini("# comment\n; other\n[web]\nweb1 # primary\n")
        assert list(inventory.hosts) == ["web1"]


class TestMalformedLines:
    """Malformed lines are skipped with a warning."""

    def test_token_without_value(self):
        inventory, diagnostics = parse_ini("[web]\nweb1 ansible_port\nweb2\n")

        assert list(inventory.hosts) == ["web2"]
        warnings = diagnostics.of_kind(DiagnosticKind.MALFORMED_LINE)
        assert len(warnings) == 1
        assert warnings[0].line == 2
        assert not warnings[0].is_error

    def test_unbalanced_quote(self):
        inventory, diagnostics = parse_ini('[web]\nweb1 motd="broken\n')

        assert not inventory.hosts
        assert diagnostics.of_kind(DiagnosticKind.MALFORMED_LINE)

    def test_unknown_section_type_skips_section(self):
        inventory, diagnostics = parse_ini("[web:weird]\nweb1\n[db]\ndb1\n")

        assert list(inventory.hosts) == ["db1"]
        assert diagnostics.of_kind(DiagnosticKind.MALFORMED_LINE)

    def test_vars_line_without_equals(self):
        inventory, diagnostics = parse_ini("[web]\nweb1\n[web:vars]\nhttp_port\n")

        assert inventory.groups["web"].vars == {}
        assert diagnostics.of_kind(DiagnosticKind.MALFORMED_LINE)


class TestVariablePrecedence:
    """Host variables merge through the group hierarchy."""

    def test_host_overrides_group_overrides_all(self):
        text = "[all:vars]\nx=1\n[G]\nh x=3\n[G:vars]\nx=2\n"
        inventory, _ = parse_ini(text)
        assert inventory.host_vars("h")["x"] == 3

    def test_group_overrides_all(self):
        text = "[all:vars]\nx=1\n[G]\nh\n[G:vars]\nx=2\n"
        inventory, _ = parse_ini(text)
        assert inventory.host_vars("h")["x"] == 2

    def test_all_vars_apply_last_resort(self):
        text = "[all:vars]\nx=1\n[G]\nh\n"
        inventory, _ = parse_ini(text)
        assert inventory.host_vars("h")["x"] == 1
        assert inventory.all_vars == {"x": 1}

    def test_child_group_overrides_parent_regardless_of_order(self):
        text = (
            "[child]\nh\n"
            "[parent:children]\nchild\n"
            "[child:vars]\nx=child\n"
            "[parent:vars]\nx=parent\n"
        )
        inventory, _ = parse_ini(text)

        assert inventory.groups["child"].depth == 2
        assert inventory.host_vars("h")["x"] == "child"

    def test_sibling_groups_last_declared_wins(self):
        text = "[a]\nh\n[b]\nh\n[a:vars]\nx=a\n[b:vars]\nx=b\n"
        inventory, _ = parse_ini(text)
        assert inventory.host_vars("h")["x"] == "b"

        text = "[b]\nh\n[a]\nh\n[a:vars]\nx=a\n[b:vars]\nx=b\n"
        inventory, _ = parse_ini(text)
        assert inventory.host_vars("h")["x"] == "a"

    def test_magic_variables(self):
        inventory, _ = parse_ini("[web]\nweb1.example.com\n[prod:children]\nweb\n")

        host_vars = inventory.host_vars("web1.example.com")
        assert host_vars["inventory_hostname"] == "web1.example.com"
        assert host_vars["inventory_hostname_short"] == "web1"
        assert host_vars["group_names"] == ["prod", "web"]

    def test_resolution_is_deterministic(self):
        text = "[a]\nh\n[b]\nh\n[c:children]\na\nb\n[a:vars]\nx=1\n[b:vars]\nx=2\n[c:vars]\nx=3\n"
        first, _ = parse_ini(text)
        second, _ = parse_ini(text)
        assert first.host_vars("h") == second.host_vars("h")
        assert first.host_vars("h")["x"] == 2


class TestGroupCycles:
    """Group inheritance must be acyclic."""

    def test_two_group_cycle(self):
        with pytest.raises(CyclicGroupInheritance) as excinfo:
            parse_ini("[A:children]\nB\n[B:children]\nA\n")
        assert set(excinfo.value.cycle) == {"A", "B"}
        assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]

    def test_self_child(self):
        with pytest.raises(CyclicGroupInheritance):
            parse_ini("[A:children]\nA\n")


class TestHostPatterns:
    """Selecting hosts by pattern."""

    TEXT = (
        "[webservers]\nweb1\nweb2\nweb3\n"
        "[dbservers]\ndb1\ndb2\n"
        "[staging]\nweb3\ndb2\n"
    )

    @pytest.fixture
    def inventory(self):
        inventory, _ = parse_ini(self.TEXT)
        return inventory

    @pytest.mark.parametrize("pattern, expected", [
        ("all", ["web1", "web2", "web3", "db1", "db2"]),
        ("*", ["web1", "web2", "web3", "db1", "db2"]),
        ("webservers", ["web1", "web2", "web3"]),
        ("db1", ["db1"]),
        ("webservers,dbservers", ["web1", "web2", "web3", "db1", "db2"]),
        ("webservers:dbservers", ["web1", "web2", "web3", "db1", "db2"]),
        ("webservers:&staging", ["web3"]),
        ("webservers:!staging", ["web1", "web2"]),
        ("all:!webservers", ["db1", "db2"]),
        ("!staging", ["web1", "web2", "db1"]),
        ("web[1:2]", ["web1", "web2"]),
        ("webservers[0]", ["web1"]),
        ("webservers[-1]", ["web3"]),
        ("webservers[1:2]", ["web2", "web3"]),
        ("db*", ["db1", "db2"]),
        ("~web[12]", ["web1", "web2"]),
        ("nothing", []),
    ])
    def test_get_hosts(self, inventory, pattern, expected):
        assert inventory.get_hosts(pattern) == expected

    def test_bad_regex(self, inventory):
        with pytest.raises(InvalidPattern):
            inventory.get_hosts("~web[")
