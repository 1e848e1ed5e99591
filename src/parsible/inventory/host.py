"""
Inventory Host representation.

A Host is a target machine named in the inventory.
"""

from typing import Any, Dict, List, Optional

from parsible.engine.values import to_plain


class Host:
    """Represents a single host in the inventory."""

    def __init__(
        self,
        name: str,
        variables: Optional[Dict[str, Any]] = None,
        index: int = 0,
    ):
        """
        Initialize a Host.

        Args:
            name: Hostname or IP address
            variables: Host-specific (inline) variables
            index: Declaration order within the inventory source
        """
        self.name = name
        self.index = index
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        # Merged view after group precedence; filled in by the parser
        self.resolved: Dict[str, Any] = {}
        self._groups: List[str] = []

    @property
    def groups(self) -> List[str]:
        """Return list of group names this host belongs to directly."""
        return self._groups.copy()

    def add_group(self, group_name: str) -> None:
        """Add this host to a group."""
        if group_name not in self._groups:
            self._groups.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a host variable."""
        self.vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a resolved host variable."""
        return self.resolved.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return all resolved variables including the magic ones."""
        return self.resolved.copy()

    @property
    def short_name(self) -> str:
        return self.name.split('.')[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "groups": sorted(self._groups),
            "vars": to_plain(self.resolved),
        }

    def __repr__(self) -> str:
        return f"Host(name={self.name!r}, groups={self._groups})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)
