"""
Parsible Diagnostics

Non-fatal findings accumulated during a parse and returned alongside the
(possibly partial) model.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Generic, Iterator, List, Optional, TypeVar

if TYPE_CHECKING:
    from parsible.engine.errors import ParsibleError


class Severity(Enum):
    """Severity of a diagnostic."""
    ERROR = "error"
    WARNING = "warning"


class DiagnosticKind(Enum):
    """What a diagnostic is about."""

    # Syntax
    PARSE_ERROR = "ParseError"
    INVALID_PATTERN = "InvalidPattern"
    MALFORMED_LINE = "MalformedLine"
    # Resolution
    UNDEFINED_VARIABLE = "UndefinedVariable"
    TEMPLATE_ERROR = "TemplateError"
    UNKNOWN_MODULE = "UnknownModule"
    MISSING_MODULE = "MissingModule"
    CONFLICTING_MODULES = "ConflictingModules"
    UNRESOLVED_NOTIFY = "UnresolvedNotify"
    UNKNOWN_DEPENDENCY = "UnknownDependency"
    DEPRECATED_SYNTAX = "DeprecatedSyntax"
    UNSUPPORTED_OPTION = "UnsupportedOption"
    DEFERRED_INCLUDE = "DeferredInclude"
    VAULT_ENCRYPTED_SOURCE = "VaultEncryptedSource"
    # Structural
    CYCLIC_GROUP_INHERITANCE = "CyclicGroupInheritance"
    CYCLIC_TASK_DEPENDENCY = "CyclicTaskDependency"
    CYCLIC_INCLUDE = "CyclicInclude"
    INCLUDE_DEPTH_EXCEEDED = "IncludeDepthExceeded"
    DUPLICATE_HANDLER_NAME = "DuplicateHandlerName"
    DUPLICATE_TASK_ID = "DuplicateTaskId"
    PATTERN_CARDINALITY_MISMATCH = "PatternCardinalityMismatch"
    SCOPE_UNDERFLOW = "ScopeUnderflow"
    # I/O and external
    SOURCE_NOT_FOUND = "SourceNotFound"
    SOURCE_UNREADABLE = "SourceUnreadable"
    VAULT_DECRYPTION_FAILED = "VaultDecryptionFailed"
    INCLUDE_LOAD_CANCELLED = "IncludeLoadCancelled"
    GENERIC = "Error"


@dataclass
class Diagnostic:
    """A single finding, located best-effort in its source."""

    severity: Severity
    kind: DiagnosticKind
    message: str
    source: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None

    @classmethod
    def from_error(
        cls,
        error: "ParsibleError",
        severity: Severity = Severity.ERROR,
        source: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> "Diagnostic":
        """Build a diagnostic from an exception, keeping any location it carries."""
        return cls(
            severity=severity,
            kind=getattr(error, "kind", DiagnosticKind.GENERIC),
            message=getattr(error, "message", str(error)),
            source=getattr(error, "file_path", None) or source,
            line=getattr(error, "line", None) or line,
            column=getattr(error, "column", None) or column,
        )

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: Dict[str, Any] = {
            "severity": self.severity.value,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.source:
            result["source"] = self.source
        if self.line is not None:
            result["line"] = self.line
        if self.column is not None:
            result["column"] = self.column
        return result

    def __str__(self) -> str:
        location = ""
        if self.source:
            location = self.source
            if self.line is not None:
                location += f":{self.line}"
                if self.column is not None:
                    location += f":{self.column}"
            location += ": "
        return f"{location}{self.severity.value}: [{self.kind.value}] {self.message}"


class Diagnostics:
    """Ordered collection of diagnostics for one parse."""

    def __init__(self) -> None:
        self._items: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> Diagnostic:
        self._items.append(diagnostic)
        return diagnostic

    def error(
        self,
        kind: DiagnosticKind,
        message: str,
        source: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> Diagnostic:
        return self.add(Diagnostic(Severity.ERROR, kind, message, source, line, column))

    def warning(
        self,
        kind: DiagnosticKind,
        message: str,
        source: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> Diagnostic:
        return self.add(Diagnostic(Severity.WARNING, kind, message, source, line, column))

    def add_error(
        self,
        error: "ParsibleError",
        severity: Severity = Severity.ERROR,
        source: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> Diagnostic:
        """Record an exception as a diagnostic instead of raising it."""
        return self.add(Diagnostic.from_error(error, severity, source, line, column))

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self._items if d.severity is Severity.ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self._items if d.severity is Severity.WARNING]

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self._items)

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self._items if d.kind is kind]

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def to_list(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self._items]


M = TypeVar("M")


@dataclass
class ParseResult(Generic[M]):
    """A best-effort model plus the ordered diagnostics produced while building it."""

    model: M
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def ok(self) -> bool:
        """False when any error-severity diagnostic was recorded."""
        return not self.diagnostics.has_errors

    def __iter__(self) -> Iterator[Any]:
        # Allows ``model, diagnostics = result``
        yield self.model
        yield self.diagnostics
