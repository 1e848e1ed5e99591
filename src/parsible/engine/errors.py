# Copyright (c) 2024 Parsible Contributors
# MIT License

"""
Parsible Error Classes.

All custom exceptions for clear error handling. Each class carries a
``kind`` so that it can be recorded as a Diagnostic when the failure is
local to one include, line or handler rather than fatal for the parse.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from parsible.engine.diagnostics import DiagnosticKind


class ParsibleError(Exception):
    """Base exception for all Parsible errors."""

    kind: DiagnosticKind = DiagnosticKind.GENERIC

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ParsibleError):
    """Malformed YAML/INI structure in inventory, playbook or included files."""

    kind = DiagnosticKind.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        column: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        self.column = column
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class InventoryError(ParseError):
    """Error in inventory structure that cannot be recovered from."""

    def __init__(self, message: str, file_path: str | None = None, line: int | None = None) -> None:
        super().__init__(message, file_path=file_path, line=line)


class InvalidPattern(ParsibleError):
    """Malformed host-range bracket syntax."""

    kind = DiagnosticKind.INVALID_PATTERN

    def __init__(self, token: str, reason: str) -> None:
        self.token = token
        self.reason = reason
        super().__init__(f"Invalid host pattern '{token}': {reason}")


class ScopeUnderflow(ParsibleError):
    """pop() on an empty scope stack."""

    kind = DiagnosticKind.SCOPE_UNDERFLOW

    def __init__(self) -> None:
        super().__init__("Cannot pop from an empty scope stack")


class TemplateError(ParsibleError):
    """Error rendering a Jinja2 template."""

    kind = DiagnosticKind.TEMPLATE_ERROR

    def __init__(self, message: str, template: str | None = None) -> None:
        self.template = template

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class UndefinedVariable(TemplateError):
    """A template referenced a name with no binding and no default."""

    kind = DiagnosticKind.UNDEFINED_VARIABLE

    def __init__(self, variable: str, template: str | None = None) -> None:
        self.variable = variable
        super().__init__(f"'{variable}' is undefined", template)


class StructuralError(ParsibleError):
    """A structural invariant of the model was violated."""


class CyclicGroupInheritance(StructuralError):
    kind = DiagnosticKind.CYCLIC_GROUP_INHERITANCE

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Cyclic group inheritance: {' -> '.join(self.cycle)}")


class CyclicTaskDependency(StructuralError):
    kind = DiagnosticKind.CYCLIC_TASK_DEPENDENCY

    def __init__(self, task_ids: Sequence[str]) -> None:
        self.task_ids: List[str] = list(task_ids)
        super().__init__(f"Cyclic task dependency: {' -> '.join(self.task_ids)}")


class CyclicInclude(StructuralError):
    kind = DiagnosticKind.CYCLIC_INCLUDE

    def __init__(self, path: Sequence[str]) -> None:
        self.path: List[str] = list(path)
        super().__init__(f"Cyclic include: {' -> '.join(self.path)}")


class IncludeDepthExceeded(StructuralError):
    kind = DiagnosticKind.INCLUDE_DEPTH_EXCEEDED

    def __init__(self, depth: int, source: str) -> None:
        self.depth = depth
        self.source = source
        super().__init__(f"Maximum include depth {depth} exceeded while including '{source}'")


class DuplicateHandlerName(StructuralError):
    kind = DiagnosticKind.DUPLICATE_HANDLER_NAME

    def __init__(self, name: str, play: str) -> None:
        self.name = name
        self.play = play
        super().__init__(f"Duplicate handler name '{name}' in play '{play}'")


class DuplicateTaskId(StructuralError):
    kind = DiagnosticKind.DUPLICATE_TASK_ID

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id '{task_id}'")


class PatternCardinalityMismatch(StructuralError):
    kind = DiagnosticKind.PATTERN_CARDINALITY_MISMATCH

    def __init__(self, names: Sequence[str], addresses: Sequence[str]) -> None:
        self.names = list(names)
        self.addresses = list(addresses)
        super().__init__(
            f"Host range expands to {len(self.names)} names but address range "
            f"expands to {len(self.addresses)}"
        )


class SourceError(ParsibleError):
    """Failure reported by the source loader."""


class SourceNotFound(SourceError):
    kind = DiagnosticKind.SOURCE_NOT_FOUND

    def __init__(self, reference: str, searched: Optional[Sequence[str]] = None) -> None:
        self.reference = reference
        self.searched = list(searched or [])
        details = f"Searched: {', '.join(self.searched)}" if self.searched else None
        super().__init__(f"Source not found: {reference}", details)


class SourceUnreadable(SourceError):
    kind = DiagnosticKind.SOURCE_UNREADABLE

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Source unreadable: {reference}", reason)


class VaultDecryptionFailed(ParsibleError):
    kind = DiagnosticKind.VAULT_DECRYPTION_FAILED

    def __init__(self, vault_id: str, message: str) -> None:
        self.vault_id = vault_id
        super().__init__(f"Vault decryption failed for vault id '{vault_id}': {message}")


class IncludeLoadCancelled(ParsibleError):
    kind = DiagnosticKind.INCLUDE_LOAD_CANCELLED

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Load of '{reference}' was cancelled")
