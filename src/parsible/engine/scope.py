"""
Variable Scope Stack

Ordered overlays of variable bindings. Lookup walks from the most recently
pushed overlay down; the first binding wins.
"""

from __future__ import annotations

from contextlib import contextmanager
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from parsible.engine.errors import ScopeUnderflow


class _Undefined:
    """Sentinel returned by lookup() for names with no binding."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


class VariableScope:
    """A named overlay of key -> value bindings."""

    def __init__(self, name: str, bindings: Optional[Mapping[str, Any]] = None):
        self.name = name
        self._bindings: Dict[str, Any] = dict(bindings) if bindings else {}

    @property
    def bindings(self) -> Mapping[str, Any]:
        """Read-only view of this overlay's bindings."""
        return MappingProxyType(self._bindings)

    def get(self, key: str, default: Any = UNDEFINED) -> Any:
        return self._bindings.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self) -> str:
        return f"VariableScope({self.name!r}, keys={sorted(self._bindings)})"


class ScopeStack:
    """
    Stack of VariableScope overlays.

    Push/pop are strictly nested within one resolution pass; every pass
    threads its own instance.
    """

    def __init__(self, scopes: Optional[List[VariableScope]] = None):
        self._scopes: List[VariableScope] = list(scopes) if scopes else []

    def push(self, scope: VariableScope) -> VariableScope:
        """Add an overlay on top of the stack."""
        self._scopes.append(scope)
        return scope

    def push_mapping(self, name: str, bindings: Optional[Mapping[str, Any]]) -> VariableScope:
        return self.push(VariableScope(name, bindings))

    def push_defaults(self, name: str, bindings: Optional[Mapping[str, Any]]) -> VariableScope:
        """
        Push an overlay that only binds names nothing below it binds.

        Gives the overlay the lowest effective precedence (role defaults)
        while keeping the stack strictly nested.
        """
        gaps = {
            key: value for key, value in (bindings or {}).items()
            if self.lookup(key) is UNDEFINED
        }
        return self.push(VariableScope(name, gaps))

    def pop(self) -> VariableScope:
        """Remove the most recently pushed overlay."""
        if not self._scopes:
            raise ScopeUnderflow()
        return self._scopes.pop()

    def lookup(self, key: str) -> Any:
        """Return the first binding from the top down, or UNDEFINED."""
        for scope in reversed(self._scopes):
            value = scope.get(key)
            if value is not UNDEFINED:
                return value
        return UNDEFINED

    def flatten(self) -> Dict[str, Any]:
        """Merged view of every overlay, top overlays winning."""
        merged: Dict[str, Any] = {}
        for scope in self._scopes:
            merged.update(scope.bindings)
        return merged

    def names(self) -> List[str]:
        return [scope.name for scope in self._scopes]

    @contextmanager
    def overlay(self, name: str, bindings: Optional[Mapping[str, Any]] = None) -> Iterator[VariableScope]:
        """Push an overlay for the duration of a with-block."""
        scope = self.push_mapping(name, bindings)
        try:
            yield scope
        finally:
            self.pop()

    @property
    def depth(self) -> int:
        return len(self._scopes)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.lookup(key) is not UNDEFINED

    def __len__(self) -> int:
        return len(self._scopes)

    def __repr__(self) -> str:
        return f"ScopeStack({self.names()})"
