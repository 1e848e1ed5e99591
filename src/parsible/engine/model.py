"""
Parsible Playbook Model

Typed plays, tasks and handlers produced by the playbook pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from parsible.engine.values import Literal, TemplateValue, Unresolved, to_plain


class IncludeKind(Enum):
    """The include/import directive variants."""
    INCLUDE_TASKS = "include_tasks"
    IMPORT_TASKS = "import_tasks"
    INCLUDE_ROLE = "include_role"
    IMPORT_ROLE = "import_role"
    INCLUDE_VARS = "include_vars"
    INCLUDE_PLAYBOOK = "include_playbook"
    IMPORT_PLAYBOOK = "import_playbook"

    @property
    def is_static(self) -> bool:
        return self.value.startswith("import_")

    @property
    def is_role(self) -> bool:
        return self in (IncludeKind.INCLUDE_ROLE, IncludeKind.IMPORT_ROLE)

    @property
    def is_playbook(self) -> bool:
        return self in (IncludeKind.INCLUDE_PLAYBOOK, IncludeKind.IMPORT_PLAYBOOK)


@dataclass(frozen=True)
class Provenance:
    """Where a task came from."""

    source: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "line": self.line, "column": self.column}


@dataclass
class IncludeDirective:
    """
    One include/import directive found in a task or play list.

    Consumed by the include resolver; never part of the final model.
    """

    kind: IncludeKind
    target: Any
    vars: Dict[str, Any] = field(default_factory=dict)
    when: List[Any] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)
    options: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None
    provenance: Provenance = field(default_factory=Provenance)
    legacy: bool = False
    # Section that declared a role ("roles" for a play's roles list)
    via: Optional[str] = None

    def __repr__(self) -> str:
        return f"IncludeDirective({self.kind.value}, target={self.target!r})"


@dataclass
class Task:
    """Represents a single task in a play."""

    name: Optional[str]
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: str = ""
    index: int = -1
    tags: Set[str] = field(default_factory=set)
    when: Optional[TemplateValue] = None
    notify: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    provenance: Provenance = field(default_factory=Provenance)

    register: Optional[str] = None
    loop: Optional[TemplateValue] = None
    loop_var: str = "item"
    listen: List[str] = field(default_factory=list)
    changed_when: Optional[TemplateValue] = None
    failed_when: Optional[TemplateValue] = None
    ignore_errors: Optional[TemplateValue] = None
    delegate_to: Optional[TemplateValue] = None
    vars: Dict[str, Any] = field(default_factory=dict)

    # Raw `when` text, inherited conditions first
    conditions: List[str] = field(default_factory=list)
    # User-supplied id, if any
    declared_id: Optional[str] = None
    # Qualifier of the role/include the task was inlined from
    origin: str = ""
    dynamic: bool = False

    # Block metadata (block name and section: block/rescue/always)
    block: Optional[str] = None
    block_section: Optional[str] = None

    # Untemplated keyword values, consumed by template resolution
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_handler(self) -> bool:
        return False

    def values(self) -> Iterator[TemplateValue]:
        """Every resolved value carried by this task."""
        yield from self.args.values()
        for value in (self.when, self.loop, self.changed_when, self.failed_when,
                      self.ignore_errors, self.delegate_to):
            if value is not None:
                yield value

    @property
    def fully_resolved(self) -> bool:
        return all(isinstance(value, Literal) for value in self.values())

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "index": self.index,
            "name": self.name,
            "module": self.module,
            "args": to_plain(self.args),
            "tags": sorted(self.tags),
            "when": to_plain(self.when),
            "notify": list(self.notify),
            "dependencies": list(self.dependencies),
            "provenance": self.provenance.to_dict(),
        }
        optional = {
            "register": self.register,
            "loop": to_plain(self.loop),
            "listen": list(self.listen) or None,
            "changed_when": to_plain(self.changed_when),
            "failed_when": to_plain(self.failed_when),
            "ignore_errors": to_plain(self.ignore_errors),
            "delegate_to": to_plain(self.delegate_to),
            "origin": self.origin or None,
            "block": self.block,
            "block_section": self.block_section,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        if self.loop is not None:
            result["loop_var"] = self.loop_var
        if self.dynamic:
            result["dynamic"] = True
        return result

    def __repr__(self) -> str:
        return f"Task(id={self.id!r}, name={self.name!r}, module={self.module!r})"


@dataclass
class Handler(Task):
    """A task that runs only when notified; its name is unique within the play."""

    @property
    def is_handler(self) -> bool:
        return True

    @property
    def triggers(self) -> List[str]:
        """Names a notify may use to reach this handler."""
        names = [self.name] if self.name else []
        return names + [topic for topic in self.listen if topic not in names]

    def __repr__(self) -> str:
        return f"Handler(id={self.id!r}, name={self.name!r}, module={self.module!r})"


@dataclass
class DeferredInclude(Task):
    """
    A dynamic include left unexpanded because its target is only known
    at run time.
    """

    kind: IncludeKind = IncludeKind.INCLUDE_TASKS
    target: Optional[TemplateValue] = None

    def values(self) -> Iterator[TemplateValue]:
        yield from super().values()
        if self.target is not None:
            yield self.target

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["deferred"] = {"kind": self.kind.value, "target": to_plain(self.target)}
        return result

    def __repr__(self) -> str:
        return f"DeferredInclude(id={self.id!r}, kind={self.kind.value}, target={self.target!r})"


@dataclass
class RoleRef:
    """A role referenced by a play (roles section, import_role or include_role)."""

    name: str
    via: str = "roles"
    path: Optional[str] = None
    vars: Dict[str, Any] = field(default_factory=dict)
    tags: Set[str] = field(default_factory=set)
    when: Optional[TemplateValue] = None
    tasks_from: str = "main"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "via": self.via,
            "path": self.path,
            "vars": to_plain(self.vars),
            "tags": sorted(self.tags),
            "when": to_plain(self.when),
            "tasks_from": self.tasks_from,
        }


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    index: int = 0
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[Any] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Handler] = field(default_factory=list)
    roles: List[RoleRef] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)
    gather_facts: bool = True
    provenance: Provenance = field(default_factory=Provenance)

    # Hosts matched in the inventory; None without an inventory or when
    # the pattern is only known at run time
    target_hosts: Optional[List[str]] = None
    hosts_value: Optional[TemplateValue] = None

    # Dependency graph
    edges: List[Tuple[str, str]] = field(default_factory=list)
    order: List[str] = field(default_factory=list)

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.tasks + self.handlers:
            if task.id == task_id:
                return task
        return None

    def handler(self, name: str) -> Optional[Handler]:
        """First-declared handler a notify of ``name`` reaches."""
        for handler in self.handlers:
            if name in handler.triggers:
                return handler
        return None

    def notified(self, topic: str) -> List[Handler]:
        """
        Handlers a notify of ``topic`` reaches: the first handler named
        ``topic`` plus every handler listening to it.
        """
        result: List[Handler] = []
        for handler in self.handlers:
            if handler.name == topic:
                result.append(handler)
                break
        for handler in self.handlers:
            if topic in handler.listen and handler not in result:
                result.append(handler)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "hosts": self.hosts,
            "target_hosts": self.target_hosts,
            "vars": to_plain(self.vars),
            "vars_files": list(self.vars_files),
            "tags": sorted(self.tags),
            "gather_facts": self.gather_facts,
            "roles": [role.to_dict() for role in self.roles],
            "tasks": [task.to_dict() for task in self.tasks],
            "handlers": [handler.to_dict() for handler in self.handlers],
            "edges": [list(edge) for edge in self.edges],
            "order": list(self.order),
        }

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


@dataclass
class PlaybookMetadata:
    source: str
    checksum: str
    parsed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "checksum": self.checksum, "parsed_at": self.parsed_at}


@dataclass
class ParsedPlaybook:
    """A fully expanded, resolved and linked playbook."""

    metadata: PlaybookMetadata
    plays: List[Play] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    facts_required: bool = False
    vault_ids: List[str] = field(default_factory=list)

    @property
    def tasks(self) -> List[Task]:
        """Every task and handler across all plays, in play order."""
        result: List[Task] = []
        for play in self.plays:
            result.extend(play.tasks)
            result.extend(play.handlers)
        return result

    def find(self, task_id: str) -> Optional[Task]:
        for play in self.plays:
            task = play.find(task_id)
            if task is not None:
                return task
        return None

    def unresolved(self) -> List[Tuple[Task, Unresolved]]:
        """Every (task, value) pair still unresolved after parsing."""
        return [
            (task, value)
            for task in self.tasks
            for value in task.values()
            if isinstance(value, Unresolved)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "plays": [play.to_dict() for play in self.plays],
            "variables": to_plain(self.variables),
            "facts_required": self.facts_required,
            "vault_ids": list(self.vault_ids),
        }
