"""
Inventory Parser

Parses INI, YAML and JSON inventory sources into Host and Group objects
and resolves each host's variables through group precedence.
"""

import asyncio
import inspect
import json
import logging
import os
import re
import shlex
from typing import Any, Dict, Optional, Set, Tuple

import networkx as nx

from parsible.engine.diagnostics import DiagnosticKind, Diagnostics, ParseResult
from parsible.engine.errors import (
    CyclicGroupInheritance,
    InvalidPattern,
    InventoryError,
    ParseError,
    PatternCardinalityMismatch,
)
from parsible.engine.scope import ScopeStack
from parsible.engine.sources import FileSystemLoader, LoadedSource, SourceLoader
from parsible.engine.yamlnodes import load_yaml, position_of
from parsible.inventory import patterns
from parsible.inventory.group import Group
from parsible.inventory.host import Host
from parsible.inventory.inventory import ParsedInventory

logger = logging.getLogger(__name__)

FORMATS = ('ini', 'yaml', 'json')

GROUP_NAME = re.compile(r'^[\w.-]+$')
VAR_NAME = re.compile(r'^[A-Za-z_]\w*$')
SECTION_HEADER = re.compile(r'^\[([^\[\]]+)\]\s*(?:[#;].*)?$')
YAML_GROUP_LINE = re.compile(r'^[\w.-]+:\s*(?:#.*)?$')
YAML_GROUP_KEYS = ('hosts', 'vars', 'children')


def detect_format(text: str, source_id: str = "") -> str:
    """Guess an inventory format from the source extension, then content."""
    extension = os.path.splitext(source_id)[1].lower()
    if extension in ('.yml', '.yaml'):
        return 'yaml'
    if extension == '.json':
        return 'json'
    if extension in ('.ini', '.cfg'):
        return 'ini'

    stripped = text.lstrip()
    if stripped.startswith('{'):
        return 'json'
    if stripped.startswith('---'):
        return 'yaml'
    for line in stripped.splitlines():
        line = line.strip()
        if not line or line.startswith(('#', ';')):
            continue
        if YAML_GROUP_LINE.match(line):
            return 'yaml'
        break
    return 'ini'


class InventoryParser:
    """
    Parse inventory sources in INI, YAML or JSON format.

    Supports:
    - INI format (traditional Ansible inventory)
    - YAML format (structured inventory)
    - JSON, including the dynamic-inventory shape with ``_meta.hostvars``
    - Host patterns with ranges (e.g., web[01:10].example.com)
    - Inline host variables and ``ansible_host`` address ranges
    - Group variables via [group:vars]
    - Group children via [group:children]

    Malformed INI lines are skipped with a warning; group inheritance
    cycles raise CyclicGroupInheritance.
    """

    def __init__(self, loader: Optional[SourceLoader] = None):
        self.loader = loader or FileSystemLoader()
        self._reset("<inventory>")

    def _reset(self, source_id: str) -> None:
        self.source_id = source_id
        self.diagnostics = Diagnostics()
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        # Always create 'all' and 'ungrouped' groups
        self._group('all')
        self._group('ungrouped')

    def parse(self, text: str, source_id: str = "<inventory>",
              format: Optional[str] = None) -> ParseResult[ParsedInventory]:
        """
        Parse inventory text.

        Args:
            text: Inventory source text
            source_id: Source identifier used in diagnostics
            format: One of 'ini', 'yaml', 'json'; detected when omitted

        Returns:
            ParseResult of the ParsedInventory and its diagnostics

        Raises:
            ParseError: If YAML/JSON text is malformed
            InventoryError: If the structure is not an inventory at all
            CyclicGroupInheritance: If child groups form a cycle
        """
        self._reset(source_id)
        format = format or detect_format(text, source_id)
        if format not in FORMATS:
            raise InventoryError(f"Unknown inventory format '{format}'", file_path=source_id)
        logger.debug("Parsing %s inventory %s", format, source_id)

        if format == 'ini':
            self._parse_ini_string(text)
        elif format == 'yaml':
            self._parse_yaml_string(text)
        else:
            self._parse_json_string(text)

        self._finalize()
        inventory = ParsedInventory(self.hosts, self.groups, source_id)
        logger.debug("Parsed %d hosts in %d groups", len(self.hosts), len(self.groups))
        return ParseResult(inventory, self.diagnostics)

    def parse_source(self, source: LoadedSource,
                     format: Optional[str] = None) -> ParseResult[ParsedInventory]:
        return self.parse(source.text, source.canonical_id, format)

    async def load_async(self, reference: str,
                         format: Optional[str] = None) -> ParseResult[ParsedInventory]:
        """Load an inventory through the source loader, then parse it."""
        source = self.loader.load(reference)
        if inspect.isawaitable(source):
            source = await source
        return self.parse_source(source, format)

    def load(self, reference: str, format: Optional[str] = None) -> ParseResult[ParsedInventory]:
        """
        Synchronous load_async.

        Raises:
            SourceNotFound, SourceUnreadable: If the loader fails
        """
        return asyncio.run(self.load_async(reference, format))

    # Model construction

    def _group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name, index=len(self.groups))
        return self.groups[name]

    def _host(self, name: str) -> Host:
        if name not in self.hosts:
            self.hosts[name] = Host(name, index=len(self.hosts))
        return self.hosts[name]

    def _link(self, parent: str, child: str) -> None:
        self._group(parent).add_child(child)
        self._group(child).add_parent(parent)

    def _malformed(self, message: str, line: Optional[int] = None,
                   column: Optional[int] = None) -> None:
        logger.debug("Skipping malformed inventory entry at %s:%s: %s",
                     self.source_id, line, message)
        self.diagnostics.warning(DiagnosticKind.MALFORMED_LINE, message,
                                 self.source_id, line, column)

    # INI

    def _parse_ini_string(self, content: str) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children', 'skip'

        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()

            # Skip empty lines and comments
            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('['):
                header = self._parse_section_header(line, line_num)
                if header is None:
                    current_group, current_section = None, 'skip'
                else:
                    current_group, current_section = header
                continue

            if current_section == 'skip':
                continue
            if current_section == 'vars':
                self._parse_variable_line(line, current_group, line_num)
            elif current_section == 'children':
                self._parse_child_line(line, current_group, line_num)
            else:
                # Hosts before any header land in 'ungrouped' when finalized
                self._parse_host_line(line, current_group, line_num)

    def _parse_section_header(self, line: str, line_num: int) -> Optional[Tuple[str, str]]:
        match = SECTION_HEADER.match(line)
        if not match:
            self._malformed(f"Malformed section header: {line}", line_num)
            return None

        name, _, suffix = match.group(1).strip().partition(':')
        section = suffix or 'hosts'
        if section not in ('hosts', 'vars', 'children'):
            self._malformed(f"Unknown section type '{suffix}' in header {line}", line_num)
            return None
        if not GROUP_NAME.match(name):
            self._malformed(f"Invalid group name '{name}'", line_num)
            return None
        self._group(name)
        return name, section

    def _parse_variable_line(self, line: str, group_name: str, line_num: int) -> None:
        """Parse a variable assignment line."""
        if '=' not in line:
            self._malformed(f"Expected key=value in [{group_name}:vars]: {line}", line_num)
            return

        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()
        if not VAR_NAME.match(key):
            self._malformed(f"Invalid variable name '{key}'", line_num)
            return

        # Handle quoted values
        if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
            value = value[1:-1]

        self.groups[group_name].set_variable(key, self._convert_value(value))

    def _parse_child_line(self, line: str, group_name: str, line_num: int) -> None:
        child_name = line.split('#', 1)[0].strip()
        if not GROUP_NAME.match(child_name):
            self._malformed(f"Invalid child group name '{child_name}'", line_num)
            return
        self._link(group_name, child_name)

    def _parse_host_line(self, line: str, group_name: Optional[str], line_num: int) -> None:
        """Parse a single host line, handling ranges and variables."""
        try:
            parts = shlex.split(line, comments=True)
        except ValueError as e:
            self._malformed(f"Cannot parse host line ({e}): {line}", line_num)
            return
        if not parts:
            return

        host_pattern, port = self._split_port(parts[0])

        variables: Dict[str, Any] = {}
        for part in parts[1:]:
            key, sep, value = part.partition('=')
            if not sep or not VAR_NAME.match(key):
                self._malformed(f"Expected key=value, got '{part}'", line_num)
                return
            variables[key] = self._convert_value(value)
        if port is not None:
            variables.setdefault('ansible_port', port)

        address = variables.get('ansible_host')
        try:
            if isinstance(address, str) and patterns.is_pattern(address):
                expanded = patterns.expand_paired(host_pattern, address)
            else:
                expanded = [(name, None) for name in patterns.expand(host_pattern)]
        except (InvalidPattern, PatternCardinalityMismatch) as e:
            self.diagnostics.add_error(e, source=self.source_id, line=line_num)
            return

        for name, host_address in expanded:
            host = self._host(name)
            host.vars.update(variables)
            if host_address is not None:
                host.set_variable('ansible_host', host_address)
            if group_name:
                self.groups[group_name].add_host(name)
                host.add_group(group_name)

    @staticmethod
    def _split_port(token: str) -> Tuple[str, Optional[int]]:
        """Split a trailing ':port' that is not part of a bracket range."""
        name, sep, port = token.rpartition(':')
        if sep and port.isdigit() and name.count('[') == name.count(']'):
            return name, int(port)
        return token, None

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        # Boolean
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        # None
        if value.lower() in ('null', 'none', '~'):
            return None

        # Integer
        try:
            return int(value)
        except ValueError:
            pass

        # Float
        try:
            return float(value)
        except ValueError:
            pass

        return value

    # YAML and JSON

    def _parse_yaml_string(self, content: str) -> None:
        """Parse YAML format inventory."""
        data = load_yaml(content, self.source_id)
        if data is None:
            return
        if not isinstance(data, dict):
            position = position_of(data)
            raise InventoryError(
                f"Inventory must be a mapping of groups, got {type(data).__name__}",
                file_path=self.source_id, line=position.line if position else None,
            )
        self._parse_structured(data)

    def _parse_json_string(self, content: str) -> None:
        """Parse JSON inventory, static or dynamic-inventory output."""
        try:
            data = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise ParseError(f"JSON syntax error: {e.msg}", file_path=self.source_id,
                             line=e.lineno, column=e.colno) from e
        if not isinstance(data, dict):
            raise InventoryError(
                f"Inventory must be a JSON object, got {type(data).__name__}",
                file_path=self.source_id,
            )
        self._parse_structured(data)

    def _parse_structured(self, data: Dict[str, Any]) -> None:
        meta = data.get('_meta')
        for group_name, group_data in data.items():
            if group_name == '_meta':
                continue
            self._parse_yaml_group(group_name, group_data, position_of(data), set())

        if meta is None:
            return
        hostvars = meta.get('hostvars') if isinstance(meta, dict) else None
        if not isinstance(hostvars, dict):
            self._malformed("'_meta' must contain a 'hostvars' mapping")
            return
        for host_name, host_vars in hostvars.items():
            if not isinstance(host_vars, dict):
                self._malformed(f"Variables of host '{host_name}' must be a mapping")
                continue
            self._host(str(host_name)).vars.update(host_vars)

    def _parse_yaml_group(self, name: Any, data: Any, parent_position, visiting: Set[str]) -> None:
        """Parse a single group from YAML/JSON inventory."""
        position = position_of(data) or parent_position
        line = position.line if position else None
        if not isinstance(name, str) or not GROUP_NAME.match(name):
            self._malformed(f"Invalid group name '{name}'", line)
            return

        group = self._group(name)
        if data is None:
            return
        # Dynamic inventory shorthand: a group given as a bare host list
        if isinstance(data, list):
            data = {'hosts': data}
        if not isinstance(data, dict):
            self._malformed(f"Group '{name}' must be a mapping", line)
            return

        for key in data:
            if key not in YAML_GROUP_KEYS:
                self._malformed(f"Unexpected key '{key}' in group '{name}'", line)

        self._parse_yaml_hosts(group, data.get('hosts'), position)

        vars_data = data.get('vars')
        if isinstance(vars_data, dict):
            for key, value in vars_data.items():
                group.set_variable(key, value)
        elif vars_data is not None:
            self._malformed(f"Variables of group '{name}' must be a mapping", line)

        # Parse children (recursive); a group re-entered on its own
        # definition path is linked but not walked again
        children_data = data.get('children')
        if isinstance(children_data, dict):
            for child_name, child_data in children_data.items():
                if not isinstance(child_name, str) or not GROUP_NAME.match(child_name):
                    self._malformed(f"Invalid child group name '{child_name}'", line)
                    continue
                self._link(name, child_name)
                if child_name not in visiting:
                    self._parse_yaml_group(child_name, child_data, position, visiting | {name})
        elif isinstance(children_data, list):
            for child_name in children_data:
                if not isinstance(child_name, str) or not GROUP_NAME.match(child_name):
                    self._malformed(f"Invalid child group name '{child_name}'", line)
                    continue
                self._link(name, child_name)
        elif children_data is not None:
            self._malformed(f"Children of group '{name}' must be a mapping or list", line)

    def _parse_yaml_hosts(self, group: Group, hosts_data: Any, position) -> None:
        line = position.line if position else None
        if hosts_data is None:
            return
        if isinstance(hosts_data, list):
            hosts_data = {host_name: None for host_name in hosts_data}
        if not isinstance(hosts_data, dict):
            self._malformed(f"Hosts of group '{group.name}' must be a mapping or list", line)
            return

        for host_pattern, host_vars in hosts_data.items():
            if host_vars is not None and not isinstance(host_vars, dict):
                self._malformed(f"Variables of host '{host_pattern}' must be a mapping", line)
                continue
            try:
                names = patterns.expand(str(host_pattern))
            except InvalidPattern as e:
                self.diagnostics.add_error(e, source=self.source_id, line=line)
                continue
            for host_name in names:
                host = self._host(host_name)
                host.vars.update(host_vars or {})
                group.add_host(host_name)
                host.add_group(group.name)

    # Group DAG and precedence

    def _finalize(self) -> None:
        """Attach implicit groups, check the group DAG and resolve host vars."""
        all_group = self.groups['all']
        for name, group in self.groups.items():
            if name != 'all' and not group.parents:
                self._link('all', name)

        ungrouped = self.groups['ungrouped']
        for host_name, host in self.hosts.items():
            all_group.add_host(host_name)
            if not [g for g in host.groups if g not in ('all', 'ungrouped')]:
                ungrouped.add_host(host_name)
                host.add_group('ungrouped')

        graph = self._group_graph()
        try:
            cycle = nx.find_cycle(graph)
        except nx.NetworkXNoCycle:
            cycle = None
        if cycle:
            names = [edge[0] for edge in cycle]
            raise CyclicGroupInheritance(names + [names[0]])

        for name in nx.topological_sort(graph):
            for child in graph.successors(name):
                self.groups[child].depth = max(self.groups[child].depth,
                                               self.groups[name].depth + 1)

        for host in self.hosts.values():
            self._resolve_host(host, graph)

    def _group_graph(self) -> nx.DiGraph:
        graph = nx.DiGraph()
        for name, group in self.groups.items():
            graph.add_node(name)
            for child in group.children:
                graph.add_edge(name, child)
        return graph

    def _resolve_host(self, host: Host, graph: nx.DiGraph) -> None:
        """
        Merge a host's variables in ascending precedence.

        Groups apply from ``all`` downward, parents before children; groups
        at the same depth apply in declaration order. Inline host vars
        override every group, and the magic variables come last.
        """
        ancestry: Set[str] = set()
        for group_name in host.groups:
            ancestry.add(group_name)
            ancestry.update(nx.ancestors(graph, group_name))
        ordered = sorted(ancestry, key=lambda name: (self.groups[name].depth,
                                                     self.groups[name].index))

        stack = ScopeStack()
        for group_name in ordered:
            stack.push_mapping(f"group:{group_name}", self.groups[group_name].vars)
        stack.push_mapping(f"host:{host.name}", host.vars)
        stack.push_mapping("magic", {
            'inventory_hostname': host.name,
            'inventory_hostname_short': host.short_name,
            'group_names': sorted(name for name in ancestry if name != 'all'),
        })
        host.resolved = stack.flatten()


def parse_inventory(text: str, source_id: str = "<inventory>",
                    format: Optional[str] = None) -> ParseResult[ParsedInventory]:
    """Parse inventory text with a one-off InventoryParser."""
    return InventoryParser().parse(text, source_id, format)
