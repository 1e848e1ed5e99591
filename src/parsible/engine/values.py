"""
Template values.

A resolved field is either a Literal or an Unresolved expression that is
kept verbatim until run time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class UnresolvedReason(Enum):
    """Why an expression could not be resolved at parse time."""
    RUNTIME_FACT = "runtime_fact"
    RUNTIME = "runtime"
    UNDEFINED = "undefined"
    VAULT = "vault"
    DEFERRED = "deferred"
    ERROR = "error"


class TemplateValue:
    """Base of the Literal / Unresolved union."""

    is_literal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(TemplateValue):
    """A fully resolved value."""

    value: Any
    is_literal = True

    def to_dict(self) -> Dict[str, Any]:
        return {"literal": self.value}


@dataclass(frozen=True)
class Unresolved(TemplateValue):
    """An expression whose value is only known at run time, kept verbatim."""

    expression: Any
    reason: UnresolvedReason
    variables: Tuple[str, ...] = ()
    detail: Optional[str] = None

    @property
    def needs_facts(self) -> bool:
        return self.reason is UnresolvedReason.RUNTIME_FACT

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "unresolved": self.expression,
            "reason": self.reason.value,
        }
        if self.variables:
            result["variables"] = list(self.variables)
        if self.detail:
            result["detail"] = self.detail
        return result


def runtime(name: str, detail: Optional[str] = None) -> Unresolved:
    """Binding for a name whose value is produced while the play runs."""
    return Unresolved("{{ %s }}" % name, UnresolvedReason.RUNTIME, (name,), detail)


@dataclass(frozen=True)
class VaultValue:
    """An encrypted scalar kept opaque unless a decryptor is supplied."""

    ciphertext: str = field(repr=False)
    vault_id: str = "default"

    def __str__(self) -> str:
        return f"<vault:{self.vault_id}>"


def to_plain(value: Any) -> Any:
    """Render TemplateValues (possibly nested) as plain dict output."""
    if isinstance(value, TemplateValue):
        return value.to_dict()
    if isinstance(value, VaultValue):
        return {"vault": value.vault_id}
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value
