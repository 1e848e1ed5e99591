"""
Parsed inventory and host pattern matching.
"""

import fnmatch
import re
from typing import Any, Callable, Dict, List, Optional, Set

from parsible.engine.errors import InvalidPattern
from parsible.inventory import patterns
from parsible.inventory.group import Group
from parsible.inventory.host import Host

# Split on ',' and ':' outside brackets
PATTERN_SEPARATOR = re.compile(r'[,:](?![^\[]*\])')
SUBSCRIPT = re.compile(r'^(?P<group>[^\[\]]+)\[(?P<start>-?\d+)(?::(?P<end>-?\d*))?\]$')


class ParsedInventory:
    """
    Hosts and groups of one inventory source.

    The ``all`` group is always present and is the root of every group's
    ancestry.
    """

    def __init__(
        self,
        hosts: Optional[Dict[str, Host]] = None,
        groups: Optional[Dict[str, Group]] = None,
        source: Optional[str] = None,
    ):
        self.hosts: Dict[str, Host] = hosts if hosts is not None else {}
        self.groups: Dict[str, Group] = groups if groups is not None else {}
        self.groups.setdefault('all', Group('all'))
        self.source = source

    @property
    def all_vars(self) -> Dict[str, Any]:
        """Variables of the ``all`` group."""
        return dict(self.groups['all'].vars)

    def host_vars(self, host_name: str) -> Dict[str, Any]:
        """Resolved variables of a host, or {} for an unknown host."""
        host = self.hosts.get(host_name)
        return host.get_vars() if host else {}

    def group_hosts(self, group_name: str) -> List[str]:
        """Hosts in a group and all of its descendants, in declaration order."""
        if group_name not in self.groups:
            return []
        if group_name == 'all':
            return list(self.hosts)
        names: Set[str] = set()
        pending = [group_name]
        seen: Set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen or current not in self.groups:
                continue
            seen.add(current)
            group = self.groups[current]
            names.update(group.host_names)
            pending.extend(group.children)
        return [name for name in self.hosts if name in names]

    def get_hosts(self, pattern: str = "all") -> List[str]:
        """
        Host names matching a pattern, in inventory declaration order.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "web*", "~web\\d+" - shell wildcards and regular expressions
        - "web[01:03]" - host ranges; "group[0]", "group[0:2]" - subscripts
        - "a,b" or "a:b" - union
        - "a:&b" - intersection
        - "a:!b" - exclusion

        Regular terms are applied first, then intersections, then
        exclusions. A pattern of only intersections and exclusions starts
        from all hosts.
        """
        terms = [term.strip() for term in PATTERN_SEPARATOR.split(pattern or "all")]
        terms = [term for term in terms if term]
        if not terms:
            return []

        regular = [term for term in terms if term[0] not in '!&']
        intersections = [term[1:] for term in terms if term[0] == '&']
        exclusions = [term[1:] for term in terms if term[0] == '!']

        selected: Set[str] = set()
        if regular:
            for term in regular:
                selected.update(self._match(term))
        else:
            selected.update(self.hosts)
        for term in intersections:
            selected &= set(self._match(term))
        for term in exclusions:
            selected -= set(self._match(term))

        return [name for name in self.hosts if name in selected]

    def _match(self, term: str) -> List[str]:
        """Hosts matched by a single pattern term."""
        if term in ('all', '*'):
            return list(self.hosts)
        if term in self.groups:
            return self.group_hosts(term)
        if term in self.hosts:
            return [term]

        if term.startswith('~'):
            try:
                regex = re.compile(term[1:])
            except re.error as e:
                raise InvalidPattern(term, str(e)) from e
            return self._by_name(lambda name: regex.match(name) is not None)

        subscript = SUBSCRIPT.match(term)
        if subscript and subscript.group('group') in self.groups:
            members = self.group_hosts(subscript.group('group'))
            start = int(subscript.group('start'))
            end = subscript.group('end')
            if end is None:
                return members[start:start + 1 or None]
            return members[start:int(end) + 1 if end else None]

        if patterns.is_pattern(term):
            try:
                expanded = set(patterns.expand(term))
            except InvalidPattern:
                return []
            return [name for name in self.hosts if name in expanded]

        if any(char in term for char in '*?'):
            return self._by_name(lambda name: fnmatch.fnmatchcase(name, term))

        return []

    def _by_name(self, matches: Callable[[str], bool]) -> List[str]:
        """Hosts whose name, or one of whose groups' names, matches."""
        names: Set[str] = {name for name in self.hosts if matches(name)}
        for group_name in self.groups:
            if matches(group_name):
                names.update(self.group_hosts(group_name))
        return [name for name in self.hosts if name in names]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "hosts": {name: host.to_dict() for name, host in self.hosts.items()},
            "groups": {name: group.to_dict() for name, group in self.groups.items()},
        }

    def __repr__(self) -> str:
        return f"ParsedInventory(hosts={len(self.hosts)}, groups={len(self.groups)})"
