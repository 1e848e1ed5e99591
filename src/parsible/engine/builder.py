"""
Parsible Playbook Model Builder

Turns raw YAML task and play mappings into Play, Task and Handler
objects: finds the module call, normalizes its arguments, recognizes
include/import directives and assigns stable task ids.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from parsible.engine.config import ParserConfig, get_config
from parsible.engine.diagnostics import DiagnosticKind, Diagnostics
from parsible.engine.errors import DuplicateHandlerName, DuplicateTaskId
from parsible.engine.model import Handler, IncludeDirective, IncludeKind, Play, Provenance, Task
from parsible.engine.yamlnodes import position_of

logger = logging.getLogger(__name__)


# Pattern for Galaxy collection module names (namespace.collection.module)
GALAXY_MODULE_PATTERN = re.compile(r'^[a-z_][a-z0-9_]*\.[a-z_][a-z0-9_]*\.[a-z_][a-z0-9_]*$')

# Collections whose modules are addressed by their short name
BUILTIN_COLLECTIONS = ('ansible.builtin.', 'ansible.legacy.')

# Known module names and their aliases (FQCN -> short name)
MODULE_ALIASES = {
    'ansible.windows.win_copy': 'win_copy',
    'ansible.windows.win_command': 'win_command',
    'ansible.windows.win_shell': 'win_shell',
    'ansible.windows.win_file': 'win_file',
    'ansible.windows.win_stat': 'win_stat',
    'ansible.windows.win_service': 'win_service',
    'ansible.posix.synchronize': 'synchronize',
    'ansible.posix.authorized_key': 'authorized_key',
    'ansible.posix.mount': 'mount',
    'ansible.posix.sysctl': 'sysctl',
}

KNOWN_MODULES = {
    # Core modules
    'command', 'shell', 'raw', 'copy', 'file', 'template', 'debug',
    'set_fact', 'fail', 'assert', 'ping', 'setup', 'stat', 'lineinfile',
    'wait_for', 'fetch', 'find', 'service', 'user', 'group', 'group_by',
    'apt', 'apt_key', 'apt_repository', 'yum', 'yum_repository', 'dnf',
    'package', 'pip', 'git', 'uri', 'pause', 'meta', 'add_host', 'get_url',
    'blockinfile', 'replace', 'slurp', 'tempfile', 'script', 'hostname',
    'cron', 'reboot', 'unarchive', 'systemd', 'systemd_service',
    'known_hosts', 'getent', 'wait_for_connection', 'gather_facts',
    'package_facts', 'service_facts', 'expect', 'sysvinit', 'iptables',
    'debconf', 'rpm_key', 'validate_argument_spec', 'set_stats',
    'synchronize', 'authorized_key', 'mount', 'sysctl',
    # Windows modules
    'win_command', 'win_shell', 'win_copy', 'win_file', 'win_stat',
    'win_lineinfile', 'win_wait_for', 'win_service', 'win_ping',
    'win_reboot', 'win_user', 'win_group', 'win_template', 'win_hostname',
    'win_slurp', 'win_get_url',
}

# Modules that take a free-form command line
FREE_FORM_MODULES = {
    'command', 'shell', 'raw', 'script', 'win_command', 'win_shell',
}

# key=value options recognized inside a free-form command line
FREE_FORM_OPTIONS = {
    'chdir', 'creates', 'removes', 'executable', 'stdin', 'warn',
    'stdin_add_newline', 'strip_empty_ends', 'cmd',
}

# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'id', 'vars', 'tags', 'when', 'register', 'loop', 'loop_control',
    'until', 'retries', 'delay', 'changed_when', 'failed_when', 'notify',
    'listen', 'delegate_to', 'delegate_facts', 'run_once', 'block', 'rescue',
    'always', 'args', 'async', 'poll', 'throttle', 'timeout', 'no_log',
    'diff', 'check_mode', 'local_action', 'action', 'become', 'become_user',
    'become_method', 'become_flags', 'become_exe', 'connection', 'environment',
    'ignore_errors', 'ignore_unreachable', 'any_errors_fatal', 'module_defaults',
    'collections', 'dependencies', 'debugger', 'remote_user', 'port',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'vars_prompt', 'tasks', 'handlers',
    'roles', 'pre_tasks', 'post_tasks', 'gather_facts', 'gather_subset',
    'gather_timeout', 'fact_path', 'become', 'become_user', 'become_method',
    'become_flags', 'connection', 'environment', 'strategy', 'serial', 'order',
    'max_fail_percentage', 'any_errors_fatal', 'ignore_errors',
    'ignore_unreachable', 'module_defaults', 'collections', 'tags',
    'remote_user', 'port', 'run_once', 'throttle', 'timeout', 'no_log',
    'diff', 'check_mode', 'force_handlers', 'debugger',
}

# Tasks are ordered pre_tasks -> roles -> tasks -> post_tasks
PLAY_SECTIONS = ('pre_tasks', 'roles', 'tasks', 'post_tasks')

BLOCK_SECTIONS = ('block', 'rescue', 'always')

LOOP_KEYWORDS = ('loop', 'with_items', 'with_list')

INCLUDE_KEYWORDS = {kind.value: kind for kind in IncludeKind}

# Options each directive kind accepts besides its target
DIRECTIVE_OPTIONS = {
    IncludeKind.INCLUDE_TASKS: {'file', '_raw_params', 'apply'},
    IncludeKind.IMPORT_TASKS: {'file', '_raw_params'},
    IncludeKind.INCLUDE_ROLE: {
        'name', 'tasks_from', 'vars_from', 'defaults_from', 'handlers_from',
        'apply', 'public', 'allow_duplicates', 'rolespec_validate',
    },
    IncludeKind.IMPORT_ROLE: {
        'name', 'tasks_from', 'vars_from', 'defaults_from', 'handlers_from',
        'public', 'allow_duplicates', 'rolespec_validate',
    },
    IncludeKind.INCLUDE_VARS: {'file', '_raw_params', 'name'},
    IncludeKind.INCLUDE_PLAYBOOK: {'file', '_raw_params'},
    IncludeKind.IMPORT_PLAYBOOK: {'file', '_raw_params'},
}

ROLE_OPTIONS = ('tasks_from', 'vars_from', 'defaults_from', 'handlers_from')

KV_PATTERN = re.compile(r'^([A-Za-z_][\w.]*)=(.*)$', re.DOTALL)


def ensure_list(value: Any) -> List[Any]:
    """Ensure a value is a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def split_args(text: str) -> List[str]:
    """
    Split a free-form argument string on whitespace.

    Quoted spans and Jinja2 ``{{ }}`` / ``{% %}`` spans are kept whole.
    """
    tokens: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    depth = 0
    i = 0
    while i < len(text):
        ch = text[i]
        pair = text[i:i + 2]
        if quote:
            current.append(ch)
            if ch == quote and (i == 0 or text[i - 1] != '\\'):
                quote = None
        elif pair in ('{{', '{%'):
            depth += 1
            current.append(pair)
            i += 2
            continue
        elif pair in ('}}', '%}') and depth:
            depth -= 1
            current.append(pair)
            i += 2
            continue
        elif ch in ('"', "'") and depth == 0:
            quote = ch
            current.append(ch)
        elif ch.isspace() and depth == 0:
            if current:
                tokens.append(''.join(current))
                current = []
        else:
            current.append(ch)
        i += 1
    if current:
        tokens.append(''.join(current))
    return tokens


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def parse_kv(text: str, free_form: bool = False) -> Dict[str, Any]:
    """
    Parse ``key=value`` module arguments.

    Tokens that are not key=value pairs, and for free-form modules any
    pair that is not a known option, are collected into ``_raw_params``.
    """
    parsed: Dict[str, Any] = {}
    raw: List[str] = []
    for token in split_args(text):
        match = KV_PATTERN.match(token)
        if match and (not free_form or match.group(1) in FREE_FORM_OPTIONS):
            parsed[match.group(1)] = _unquote(match.group(2))
        else:
            raw.append(token)
    if raw:
        parsed['_raw_params'] = ' '.join(raw)
    return parsed


def normalize_module(name: str) -> str:
    """Map FQCNs of builtin modules to their short name."""
    for prefix in BUILTIN_COLLECTIONS:
        if name.startswith(prefix):
            return name[len(prefix):]
    return MODULE_ALIASES.get(name, name)


def provenance_of(node: Any, fallback: Optional[str] = None) -> Provenance:
    position = position_of(node)
    if position is None:
        return Provenance(fallback)
    return Provenance(position.source, position.line, position.column)


class ModelBuilder:
    """
    Build model objects from raw YAML nodes.

    The builder never evaluates templates: values are carried over raw
    and resolved later against the scope of the include walk.
    """

    def __init__(self, diagnostics: Diagnostics, config: Optional[ParserConfig] = None):
        self.diagnostics = diagnostics
        self.config = config or get_config()
        self._ids: Set[str] = set()

    def _warn(self, kind: DiagnosticKind, message: str, where: Provenance) -> None:
        self.diagnostics.warning(kind, message, where.source, where.line, where.column)

    def _error(self, kind: DiagnosticKind, message: str, where: Provenance) -> None:
        self.diagnostics.error(kind, message, where.source, where.line, where.column)

    # Classification

    def is_known_module(self, name: str) -> bool:
        return (
            name in KNOWN_MODULES
            or name in self.config.extra_modules
            or bool(GALAXY_MODULE_PATTERN.match(name))
        )

    @staticmethod
    def is_block(data: Dict[str, Any]) -> bool:
        return 'block' in data

    def directive_kind(self, data: Dict[str, Any]) -> Optional[Tuple[str, IncludeKind]]:
        """The (key, kind) of an include/import directive in a task mapping."""
        for key in data:
            if not isinstance(key, str):
                continue
            short = normalize_module(key)
            if short in INCLUDE_KEYWORDS:
                return key, INCLUDE_KEYWORDS[short]
            if short == 'include':
                return key, IncludeKind.IMPORT_TASKS
        return None

    # Directives

    def directive(self, data: Dict[str, Any], fallback: Optional[str] = None) -> Optional[IncludeDirective]:
        """Build an IncludeDirective from a task mapping, or None if it is not one."""
        found = self.directive_kind(data)
        if found is None:
            return None
        key, kind = found
        where = provenance_of(data, fallback)
        legacy = normalize_module(key) == 'include'
        if legacy:
            self._warn(
                DiagnosticKind.DEPRECATED_SYNTAX,
                "'include' is deprecated, treating it as 'import_tasks'",
                where,
            )

        value = data[key]
        if isinstance(value, str) and kind in (IncludeKind.INCLUDE_VARS, IncludeKind.INCLUDE_ROLE,
                                                IncludeKind.IMPORT_ROLE) and '=' in value:
            value = parse_kv(value)
        options: Dict[str, Any] = dict(value) if isinstance(value, dict) else {}
        if isinstance(data.get('args'), dict):
            options = {**data['args'], **options}

        if kind.is_role:
            target = value if isinstance(value, str) else options.pop('name', None)
        elif isinstance(value, dict):
            target = options.pop('file', None) or options.pop('_raw_params', None)
        else:
            target = value

        for option in list(options):
            if option not in DIRECTIVE_OPTIONS[kind]:
                self._warn(
                    DiagnosticKind.UNSUPPORTED_OPTION,
                    f"Unsupported option '{option}' for {kind.value}",
                    where,
                )
                options.pop(option)

        task_vars = data.get('vars') or {}
        if not isinstance(task_vars, dict):
            self._error(DiagnosticKind.PARSE_ERROR,
                        f"'vars' must be a dictionary, got {type(task_vars).__name__}", where)
            task_vars = {}

        return IncludeDirective(
            kind=kind,
            target=target,
            vars=dict(task_vars),
            when=[w for w in ensure_list(data.get('when')) if w is not None],
            tags=set(str(t) for t in ensure_list(data.get('tags'))),
            options=options,
            name=data.get('name'),
            provenance=where,
            legacy=legacy,
        )

    def role_entry(self, entry: Any, fallback: Optional[str] = None) -> Optional[IncludeDirective]:
        """Build an import_role directive from an item of a play's roles list."""
        where = provenance_of(entry, fallback)
        if isinstance(entry, str):
            return IncludeDirective(IncludeKind.IMPORT_ROLE, entry, provenance=where, via='roles')
        if not isinstance(entry, dict):
            self._error(DiagnosticKind.PARSE_ERROR,
                        f"Invalid role entry type: {type(entry).__name__}", where)
            return None

        role_name = entry.get('role') or entry.get('name')
        if not role_name:
            self._error(DiagnosticKind.PARSE_ERROR,
                        "Role entry must have 'role' or 'name' key", where)
            return None

        # Anything that is not a role keyword is a role parameter
        reserved = {'role', 'name', 'tags', 'when', 'vars'} | set(ROLE_OPTIONS) | TASK_KEYWORDS
        role_vars = {k: v for k, v in entry.items() if k not in reserved}
        if isinstance(entry.get('vars'), dict):
            role_vars.update(entry['vars'])

        return IncludeDirective(
            kind=IncludeKind.IMPORT_ROLE,
            target=role_name,
            vars=role_vars,
            when=[w for w in ensure_list(entry.get('when')) if w is not None],
            tags=set(str(t) for t in ensure_list(entry.get('tags'))),
            options={k: entry[k] for k in ROLE_OPTIONS if k in entry},
            provenance=where,
            via='roles',
        )

    # Tasks

    def _module_call(self, data: Dict[str, Any], where: Provenance) -> Optional[Tuple[str, Any, Dict[str, Any]]]:
        """Find the module of a task: returns (module, raw args, extra task fields)."""
        extra: Dict[str, Any] = {}

        for form in ('action', 'local_action'):
            if form not in data:
                continue
            if form == 'local_action':
                extra['delegate_to'] = 'localhost'
            action = data[form]
            if isinstance(action, dict):
                action = dict(action)
                module = action.pop('module', None)
                if not module:
                    self._error(DiagnosticKind.MISSING_MODULE,
                                f"'{form}' mapping requires a 'module' key", where)
                    return None
                return normalize_module(str(module)), action, extra
            if isinstance(action, str) and action.strip():
                module, _, rest = action.strip().partition(' ')
                return normalize_module(module), rest.strip() or None, extra
            self._error(DiagnosticKind.MISSING_MODULE, f"'{form}' requires a module", where)
            return None

        candidates = [
            key for key in data
            if isinstance(key, str) and key not in TASK_KEYWORDS and not key.startswith('with_')
        ]
        if not candidates:
            self._error(
                DiagnosticKind.MISSING_MODULE,
                f"Task has no module: {[str(k) for k in data.keys()]}",
                where,
            )
            return None

        known = [key for key in candidates if self.is_known_module(normalize_module(key))]
        key = known[0] if known else candidates[0]
        module = normalize_module(key)
        if not known:
            self._warn(DiagnosticKind.UNKNOWN_MODULE, f"Unknown module '{key}'", where)

        conflicting = [other for other in candidates if other != key]
        if conflicting:
            self._error(
                DiagnosticKind.CONFLICTING_MODULES,
                f"Conflicting action statements: {', '.join([key] + conflicting)}; using '{key}'",
                where,
            )
        return module, data[key], extra

    def normalize_args(self, module: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}
        if isinstance(args, dict):
            return dict(args)
        if isinstance(args, str):
            return parse_kv(args, free_form=module in FREE_FORM_MODULES)
        return {'_raw_params': args}

    def task(self, data: Dict[str, Any], handler: bool = False,
             fallback: Optional[str] = None) -> Optional[Task]:
        """
        Build an untemplated Task (or Handler) from a task mapping.

        Returns None, after recording a diagnostic, when no module is found.
        """
        where = provenance_of(data, fallback)
        call = self._module_call(data, where)
        if call is None:
            return None
        module, raw_args, extra = call

        args = self.normalize_args(module, raw_args)
        if isinstance(data.get('args'), dict):
            args = {**data['args'], **args}

        task_vars = data.get('vars') or {}
        if not isinstance(task_vars, dict):
            self._error(DiagnosticKind.PARSE_ERROR,
                        f"'vars' must be a dictionary, got {type(task_vars).__name__}", where)
            task_vars = {}

        loop = None
        for keyword in LOOP_KEYWORDS:
            if keyword in data:
                loop = data[keyword]
                break
        loop_var = 'item'
        if isinstance(data.get('loop_control'), dict):
            loop_var = data['loop_control'].get('loop_var', 'item')

        cls = Handler if handler else Task
        task = cls(
            name=data.get('name'),
            module=module,
            args=args,
            tags=set(str(t) for t in ensure_list(data.get('tags'))),
            notify=[str(n) for n in ensure_list(data.get('notify'))],
            dependencies=[str(d) for d in ensure_list(data.get('dependencies'))],
            provenance=where,
            register=data.get('register'),
            loop_var=loop_var,
            listen=[str(topic) for topic in ensure_list(data.get('listen'))],
            vars=dict(task_vars),
            conditions=[str(w) for w in ensure_list(data.get('when')) if w is not None],
            declared_id=str(data['id']) if data.get('id') is not None else None,
        )
        task.raw = {
            'loop': loop,
            'changed_when': data.get('changed_when'),
            'failed_when': data.get('failed_when'),
            'ignore_errors': data.get('ignore_errors'),
            'delegate_to': data.get('delegate_to', extra.get('delegate_to')),
            'loop_control': data.get('loop_control'),
        }
        return task

    # Plays

    def play(self, data: Any, index: int, fallback: Optional[str] = None) -> Optional[Play]:
        """Build the header of a play (tasks are filled in by the include walk)."""
        where = provenance_of(data, fallback)
        if not isinstance(data, dict):
            self._error(DiagnosticKind.PARSE_ERROR,
                        f"Play must be a mapping, got {type(data).__name__}", where)
            return None
        if 'hosts' not in data:
            self._error(DiagnosticKind.PARSE_ERROR, "Play missing required 'hosts' field", where)
            return None

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            self._error(DiagnosticKind.PARSE_ERROR,
                        f"'vars' must be a dictionary, got {type(play_vars).__name__}", where)
            play_vars = {}

        for key in data:
            if key not in PLAY_KEYWORDS:
                self._warn(DiagnosticKind.UNSUPPORTED_OPTION, f"Unknown play keyword '{key}'", where)

        return Play(
            name=str(data.get('name') or hosts or f'play_{index}'),
            hosts=str(hosts if hosts is not None else ''),
            index=index,
            vars=dict(play_vars),
            vars_files=list(ensure_list(data.get('vars_files'))),
            tags=set(str(t) for t in ensure_list(data.get('tags'))),
            gather_facts=bool(data.get('gather_facts', True)),
            provenance=where,
        )

    # Identities

    def assign_ids(self, play: Play, prefix: str = "") -> None:
        """
        Give every task and handler of a play its final id.

        Generated ids are ``task_<index>`` / ``handler_<index>``, qualified
        by the role or include the task was inlined from and, for plays
        after the first, by the play. A user-supplied ``id`` wins unless
        it is already taken.
        """
        for kind, items in (('task', play.tasks), ('handler', play.handlers)):
            for index, task in enumerate(items):
                task.index = index
                generated = f"{prefix}{task.origin}{kind}_{index}"
                if task.declared_id is not None:
                    if task.declared_id not in self._ids:
                        task.id = self._claim(task.declared_id)
                        continue
                    self.diagnostics.add_error(
                        DuplicateTaskId(task.declared_id),
                        source=task.provenance.source,
                        line=task.provenance.line,
                        column=task.provenance.column,
                    )
                task.id = self._claim(generated)

    def _claim(self, task_id: str) -> str:
        candidate = task_id
        suffix = 1
        while candidate in self._ids:
            candidate = f"{task_id}_{suffix}"
            suffix += 1
        self._ids.add(candidate)
        return candidate

    def check_handlers(self, play: Play) -> None:
        """
        Record nameless and duplicate handlers; the first declared handler
        keeps the name.
        """
        seen: Dict[str, Handler] = {}
        for handler in play.handlers:
            if not handler.name:
                if not handler.listen:
                    self._error(DiagnosticKind.PARSE_ERROR,
                                "Handler requires a 'name' or a 'listen' topic",
                                handler.provenance)
                continue
            if handler.name in seen:
                self.diagnostics.add_error(
                    DuplicateHandlerName(handler.name, play.name),
                    source=handler.provenance.source,
                    line=handler.provenance.line,
                    column=handler.provenance.column,
                )
                logger.debug("Handler %s shadowed by %s", handler.id, seen[handler.name].id)
                continue
            seen[handler.name] = handler
