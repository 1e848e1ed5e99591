"""
Parsible Include/Import Resolver

Walks the raw task lists of a play, expands include/import directives,
blocks and roles in place, and resolves every task's templates against
the scope that is active at that point of the walk.

Every expansion threads a WalkContext that carries the ScopeStack, the
inclusion path (canonical source ids) used for cycle detection, the
nesting depth, and the conditions and tags inherited from enclosing
directives and blocks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import posixpath
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from parsible.engine.builder import BLOCK_SECTIONS, PLAY_SECTIONS, ModelBuilder, ensure_list, provenance_of
from parsible.engine.config import ParserConfig
from parsible.engine.diagnostics import DiagnosticKind, Diagnostics
from parsible.engine.errors import (
    CyclicInclude,
    IncludeDepthExceeded,
    IncludeLoadCancelled,
    ParseError,
    SourceNotFound,
)
from parsible.engine.model import (
    DeferredInclude,
    Handler,
    IncludeDirective,
    IncludeKind,
    Play,
    Provenance,
    RoleRef,
    Task,
)
from parsible.engine.scope import ScopeStack, VariableScope
from parsible.engine.sources import LoadedSource, SourceLoader, candidate_references, role_references
from parsible.engine.templating import TemplateEngine
from parsible.engine.values import Literal, TemplateValue, VaultValue, runtime
from parsible.engine.vault import VaultHandler, is_encrypted
from parsible.engine.yamlnodes import Position, load_yaml

logger = logging.getLogger(__name__)


class PlayState:
    """Output of the walk for one play."""

    def __init__(self, play: Play):
        self.play = play
        self.blocks = 0
        self.role_handlers: List[str] = []

    def mark(self) -> Tuple[int, int, int, int]:
        return len(self.play.tasks), len(self.play.handlers), len(self.play.roles), len(self.role_handlers)

    def rollback(self, mark: Tuple[int, int, int, int]) -> None:
        """Drop everything a failed expansion added."""
        tasks, handlers, roles, role_handlers = mark
        del self.play.tasks[tasks:]
        del self.play.handlers[handlers:]
        del self.play.roles[roles:]
        del self.role_handlers[role_handlers:]


@dataclass(frozen=True)
class WalkContext:
    """Where the walk is: scope, inclusion path and inherited properties."""

    stack: ScopeStack
    state: PlayState
    source: str
    base_dir: str
    path: Tuple[str, ...] = ()
    depth: int = 0
    when: Tuple[str, ...] = ()
    tags: FrozenSet[str] = frozenset()
    origin: str = ""
    dynamic: bool = False
    handlers: bool = False
    block: Optional[str] = None
    block_section: Optional[str] = None
    role: Optional[str] = None


@dataclass
class PlayEntry:
    """A play node found while expanding the playbook's play list."""

    node: Any
    source: LoadedSource
    path: Tuple[str, ...]
    when: Tuple[str, ...] = ()
    tags: FrozenSet[str] = frozenset()
    vars: Optional[Dict[str, Any]] = None


def _qualifier(prefix: str, name: str) -> str:
    stem = posixpath.splitext(posixpath.basename(name))[0]
    return f"{prefix}_{re.sub(r'[^A-Za-z0-9_]', '_', stem)}."


def _position(where: Provenance) -> Optional[Position]:
    if where.source is None:
        return None
    return Position(where.source, where.line or 0, where.column or 0)


class IncludeResolver:
    """
    Expands include/import directives and resolves tasks for one parse.

    Args:
        loader: Source loader used for every include target
        engine: Template engine used for targets, conditions and task fields
        builder: Model builder for task and directive nodes
        diagnostics: Collector shared with the rest of the parse
        config: Parser configuration
        vault: Vault handler recording vault ids
        playbook_dir: Directory of the top-level playbook
        cancel: Optional event that aborts pending loads
    """

    def __init__(
        self,
        loader: SourceLoader,
        engine: TemplateEngine,
        builder: ModelBuilder,
        diagnostics: Diagnostics,
        config: ParserConfig,
        vault: VaultHandler,
        playbook_dir: str = "",
        cancel: Optional[asyncio.Event] = None,
    ):
        self.loader = loader
        self.engine = engine
        self.builder = builder
        self.diagnostics = diagnostics
        self.config = config
        self.vault = vault
        self.playbook_dir = playbook_dir
        self.cancel = cancel
        self._sources: Dict[str, LoadedSource] = {}

    # Loading

    async def fetch(self, reference: str) -> LoadedSource:
        """Load one reference, honoring the cancellation signal."""
        if reference in self._sources:
            return self._sources[reference]
        if self.cancel is not None and self.cancel.is_set():
            raise IncludeLoadCancelled(reference)

        logger.debug("Loading %s", reference)
        try:
            result = self.loader.load(reference)
            if inspect.isawaitable(result):
                result = await self._await_load(result, reference)
        except asyncio.CancelledError as e:
            raise IncludeLoadCancelled(reference) from e

        self._sources[reference] = result
        return result

    async def _await_load(self, awaitable: Any, reference: str) -> LoadedSource:
        if self.cancel is None:
            return await awaitable

        load = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.cancel.wait())
        try:
            done, _ = await asyncio.wait({load, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            load.cancel()
            raise
        finally:
            cancelled.cancel()

        if load in done:
            return load.result()
        load.cancel()
        raise IncludeLoadCancelled(reference)

    async def load_first(self, candidates: Sequence[str], target: str) -> LoadedSource:
        """First candidate the loader can find; SourceNotFound if none."""
        for reference in candidates:
            try:
                return await self.fetch(reference)
            except SourceNotFound:
                continue
        raise SourceNotFound(target, candidates)

    async def load_optional(self, candidates: Sequence[str]) -> Optional[LoadedSource]:
        try:
            return await self.load_first(candidates, candidates[0] if candidates else "")
        except SourceNotFound:
            return None

    def read(self, source: LoadedSource) -> Any:
        """Parse a loaded source, opening whole-file vaults when possible."""
        text = source.text
        if is_encrypted(text):
            plaintext = self.vault.open_source(text)
            if plaintext is None:
                self.diagnostics.warning(
                    DiagnosticKind.VAULT_ENCRYPTED_SOURCE,
                    f"{source.canonical_id} is vault encrypted and no decryptor was supplied",
                    source.canonical_id,
                )
                return None
            text = plaintext
        data = load_yaml(text, source.canonical_id)
        self._record_vaults(data)
        return data

    def _record_vaults(self, data: Any) -> None:
        if isinstance(data, VaultValue):
            self.vault.record(data.vault_id)
        elif isinstance(data, dict):
            for value in data.values():
                self._record_vaults(value)
        elif isinstance(data, list):
            for value in data:
                self._record_vaults(value)

    async def read_vars(self, candidates: Sequence[str], target: str, where: Provenance) -> Optional[Dict[str, Any]]:
        """Load a variables file; it must hold a mapping."""
        source = await self.load_first(candidates, target)
        data = self.read(source)
        if data is None:
            return {}
        if not isinstance(data, dict):
            self.diagnostics.error(
                DiagnosticKind.PARSE_ERROR,
                f"Variables file must contain a mapping: {source.canonical_id}",
                where.source, where.line, where.column,
            )
            return None
        return data

    def read_tasks(self, source: LoadedSource) -> List[Any]:
        data = self.read(source)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ParseError(
                f"Tasks file must contain a list, got {type(data).__name__}",
                file_path=source.canonical_id,
            )
        return data

    # Playbook level

    async def expand_playbook(
        self,
        nodes: List[Any],
        source: LoadedSource,
        stack: ScopeStack,
        path: Tuple[str, ...] = (),
        depth: int = 0,
        when: Tuple[str, ...] = (),
        tags: FrozenSet[str] = frozenset(),
        entry_vars: Optional[Dict[str, Any]] = None,
    ) -> List[PlayEntry]:
        """Flatten import_playbook directives into the ordered list of plays."""
        path = path + (source.canonical_id,)
        entries: List[PlayEntry] = []
        for node in nodes:
            directive = self.builder.directive(node, source.canonical_id) if isinstance(node, dict) else None
            if directive is None or 'hosts' in node:
                entries.append(PlayEntry(node, source, path, when, tags, entry_vars))
                continue

            if not directive.kind.is_playbook:
                if directive.legacy:
                    directive.kind = IncludeKind.IMPORT_PLAYBOOK
                else:
                    self._error_at(directive.provenance, DiagnosticKind.PARSE_ERROR,
                                   f"'{directive.kind.value}' is not allowed at play level")
                    continue

            merged_vars = {**(entry_vars or {}), **directive.vars}
            try:
                entries.extend(await self._import_playbook(
                    directive, source, stack, path, depth, when, tags, merged_vars))
            except (CyclicInclude, ParseError) as e:
                self.diagnostics.add_error(e, **self._where(directive.provenance))
            except IncludeDepthExceeded as e:
                if depth > 0:
                    raise
                self.diagnostics.add_error(e, **self._where(directive.provenance))
        return entries

    async def _import_playbook(self, directive: IncludeDirective, source: LoadedSource,
                               stack: ScopeStack, path: Tuple[str, ...], depth: int,
                               when: Tuple[str, ...], tags: FrozenSet[str],
                               merged_vars: Dict[str, Any]) -> List[PlayEntry]:
        with stack.overlay(f"{directive.kind.value}:vars", merged_vars):
            target = self._target(directive, stack)
        if target is None:
            return []
        if not isinstance(target, Literal):
            self._error_at(directive.provenance, DiagnosticKind.DEFERRED_INCLUDE,
                           f"{directive.kind.value} target '{directive.target}' cannot be resolved at parse time")
            return []

        if depth + 1 > self.config.max_include_depth:
            raise IncludeDepthExceeded(self.config.max_include_depth, str(target.value))
        imported = await self.load_first(
            candidate_references(str(target.value), source.directory, self.playbook_dir),
            str(target.value),
        )
        if imported.canonical_id in path:
            raise CyclicInclude(path + (imported.canonical_id,))

        logger.debug("Importing playbook %s", imported.canonical_id)
        nodes = self.read(imported)
        if nodes is None:
            return []
        if not isinstance(nodes, list):
            raise ParseError("Playbook must be a list of plays", file_path=imported.canonical_id)
        return await self.expand_playbook(
            nodes, imported, stack, path, depth + 1,
            when + tuple(str(w) for w in directive.when),
            tags | frozenset(directive.tags),
            merged_vars,
        )

    # Play level

    async def resolve_play(self, node: Dict[str, Any], play: Play, entry: PlayEntry, stack: ScopeStack) -> None:
        """
        Expand and resolve every task and handler of one play.

        The play's own vars must already be on ``stack``; vars_files are
        pushed above them.
        """
        state = PlayState(play)
        ctx = WalkContext(
            stack=stack,
            state=state,
            source=entry.source.canonical_id,
            base_dir=entry.source.directory,
            path=entry.path,
            when=entry.when,
            tags=frozenset(play.tags) | entry.tags,
        )

        pushed = 0
        try:
            for vars_file in play.vars_files:
                scope = await self._vars_file(vars_file, play, ctx)
                if scope is not None:
                    stack.push(scope)
                    pushed += 1

            for section in PLAY_SECTIONS:
                items = node.get(section)
                if items is None:
                    continue
                if not isinstance(items, list):
                    self._error_at(play.provenance, DiagnosticKind.PARSE_ERROR,
                                   f"'{section}' must be a list, got {type(items).__name__}")
                    continue
                for item in items:
                    if section == 'roles':
                        directive = self.builder.role_entry(item, ctx.source)
                        scopes = await self._directive(directive, ctx) if directive else []
                    else:
                        scopes = await self._visit(item, ctx)
                    pushed += len(scopes)

            for item in ensure_list(node.get('handlers')):
                pushed += len(await self._visit(item, replace(ctx, handlers=True)))
        finally:
            for _ in range(pushed):
                stack.pop()

    async def _vars_file(self, entry: Any, play: Play, ctx: WalkContext) -> Optional[VariableScope]:
        """Overlay for one vars_files entry; a list entry names alternatives, first found wins."""
        alternatives = entry if isinstance(entry, list) else [entry]
        references: List[str] = []
        names: List[str] = []
        for alternative in alternatives:
            value = self.engine.resolve(alternative, ctx.stack, self.diagnostics, _position(play.provenance))
            if not isinstance(value, Literal):
                self._error_at(play.provenance, DiagnosticKind.DEFERRED_INCLUDE,
                               f"vars_files entry '{alternative}' cannot be resolved at parse time")
                continue
            names.append(str(value.value))
            references.extend(candidate_references(str(value.value), ctx.base_dir, self.playbook_dir))
        if not references:
            return None
        data = await self.read_vars(references, ' | '.join(names), play.provenance)
        if data is None:
            return None
        return VariableScope(f"vars_file:{names[0]}", data)

    # Walk

    async def walk(self, nodes: List[Any], ctx: WalkContext) -> List[VariableScope]:
        """
        Expand a task list in order.

        Returns:
            Runtime overlays (register, set_fact, include_vars) produced by
            the list, already popped, for the caller to adopt
        """
        produced: List[VariableScope] = []
        try:
            for node in nodes:
                produced.extend(await self._visit(node, ctx))
        finally:
            for _ in produced:
                ctx.stack.pop()
        return produced

    @staticmethod
    def _adopt(stack: ScopeStack, scopes: List[VariableScope]) -> List[VariableScope]:
        for scope in scopes:
            stack.push(scope)
        return scopes

    async def _visit(self, node: Any, ctx: WalkContext) -> List[VariableScope]:
        """Expand one node; returns the overlays it left pushed."""
        if not isinstance(node, dict):
            where = provenance_of(node, ctx.source)
            self._error_at(where, DiagnosticKind.PARSE_ERROR,
                           f"Task must be a mapping, got {type(node).__name__}")
            return []
        if self.builder.is_block(node):
            return await self._block(node, ctx)
        directive = self.builder.directive(node, ctx.source)
        if directive is not None:
            return await self._directive(directive, ctx)
        return self._task(node, ctx)

    async def _block(self, node: Dict[str, Any], ctx: WalkContext) -> List[VariableScope]:
        ctx.state.blocks += 1
        name = str(node.get('name') or f"block_{ctx.state.blocks}")
        child = replace(
            ctx,
            when=ctx.when + tuple(str(w) for w in ensure_list(node.get('when')) if w is not None),
            tags=ctx.tags | frozenset(str(t) for t in ensure_list(node.get('tags'))),
            block=name,
        )
        block_vars = node.get('vars') if isinstance(node.get('vars'), dict) else {}

        exports: List[VariableScope] = []
        ctx.stack.push_mapping(f"block:{name}", block_vars)
        try:
            for section in BLOCK_SECTIONS:
                items = ensure_list(node.get(section))
                scopes = await self.walk(items, replace(child, block_section=section))
                exports.extend(self._adopt(ctx.stack, scopes))
        finally:
            for _ in exports:
                ctx.stack.pop()
            ctx.stack.pop()
        return self._adopt(ctx.stack, exports)

    # Tasks

    def _task(self, node: Dict[str, Any], ctx: WalkContext) -> List[VariableScope]:
        task = self.builder.task(node, handler=ctx.handlers, fallback=ctx.source)
        if task is None:
            return []

        task.conditions = list(ctx.when) + task.conditions
        task.tags |= ctx.tags
        task.origin = ctx.origin
        task.dynamic = ctx.dynamic
        task.block = ctx.block
        task.block_section = ctx.block_section
        self.resolve_task(task, ctx.stack)

        if isinstance(task, Handler):
            ctx.state.play.handlers.append(task)
        else:
            ctx.state.play.tasks.append(task)

        bindings: Dict[str, Any] = {}
        if task.register:
            bindings[task.register] = runtime(task.register, f"registered by task '{task.name}'")
        if task.module == 'set_fact':
            for key in task.args:
                if key not in ('cacheable', '_raw_params'):
                    bindings[key] = runtime(key, f"set by task '{task.name}'")
        if not bindings:
            return []
        return [ctx.stack.push_mapping(f"runtime:{task.name or task.module}", bindings)]

    def resolve_task(self, task: Task, stack: ScopeStack) -> None:
        """Resolve every templated field of a task against the current scope."""
        position = _position(task.provenance)
        raw = task.raw

        def resolve(value: Any) -> TemplateValue:
            return self.engine.resolve(value, stack, self.diagnostics, position)

        with stack.overlay(f"task:{task.name or task.module}", task.vars):
            if raw.get('loop') is not None:
                task.loop = resolve(raw['loop'])

            # Loop and register variables exist only while the task runs
            task_runtime: Dict[str, Any] = {}
            if task.loop is not None:
                task_runtime[task.loop_var] = runtime(task.loop_var, "loop variable")
                loop_control = raw.get('loop_control')
                if isinstance(loop_control, dict) and loop_control.get('index_var'):
                    index_var = str(loop_control['index_var'])
                    task_runtime[index_var] = runtime(index_var, "loop index")
            if task.register:
                task_runtime[task.register] = runtime(task.register, "registered result")

            with stack.overlay("task:runtime", task_runtime):
                task.args = {key: resolve(value) for key, value in task.args.items()}
                task.when = self.engine.evaluate_when(task.conditions, stack, self.diagnostics, position)
                for keyword in ('changed_when', 'failed_when'):
                    if raw.get(keyword) is not None:
                        setattr(task, keyword, self.engine.evaluate_when(
                            raw[keyword], stack, self.diagnostics, position))
                if raw.get('ignore_errors') is not None:
                    task.ignore_errors = resolve(raw['ignore_errors'])
                if raw.get('delegate_to') is not None:
                    task.delegate_to = resolve(raw['delegate_to'])

    # Directives

    async def _directive(self, directive: IncludeDirective, ctx: WalkContext) -> List[VariableScope]:
        """
        Expand one directive.

        A cyclic include, or a syntax error in the included source, turns
        this directive into a no-op with a diagnostic. Exceeding the depth
        bound unwinds to the outermost directive of the chain.
        """
        if directive.kind.is_playbook:
            self._error_at(directive.provenance, DiagnosticKind.PARSE_ERROR,
                           f"'{directive.kind.value}' is only allowed at play level")
            return []

        mark = ctx.state.mark()
        try:
            if directive.kind is IncludeKind.INCLUDE_VARS:
                return await self._include_vars(directive, ctx)
            if directive.kind.is_role:
                return await self._include_role(directive, ctx)
            return await self._include_tasks(directive, ctx)
        except (CyclicInclude, ParseError) as e:
            ctx.state.rollback(mark)
            self.diagnostics.add_error(e, **self._where(directive.provenance))
            logger.debug("Skipping %r: %s", directive, e)
            return []
        except IncludeDepthExceeded as e:
            if ctx.depth > 0:
                raise
            ctx.state.rollback(mark)
            self.diagnostics.add_error(e, **self._where(directive.provenance))
            logger.debug("Skipping %r: %s", directive, e)
            return []

    def _target(self, directive: IncludeDirective, stack: ScopeStack) -> Optional[TemplateValue]:
        if directive.target is None or directive.target == '':
            self._error_at(directive.provenance, DiagnosticKind.PARSE_ERROR,
                           f"{directive.kind.value} requires a target")
            return None
        return self.engine.resolve(directive.target, stack, self.diagnostics, _position(directive.provenance))

    def _condition(self, directive: IncludeDirective, ctx: WalkContext) -> Optional[TemplateValue]:
        # Inlined tasks report problems in the condition themselves
        return self.engine.evaluate_when(list(ctx.when) + [str(w) for w in directive.when], ctx.stack)

    def _child(self, directive: IncludeDirective, ctx: WalkContext, source: str, origin: str) -> WalkContext:
        return replace(
            ctx,
            source=source,
            base_dir=posixpath.dirname(source),
            path=ctx.path + (source,),
            depth=ctx.depth + 1,
            when=ctx.when + tuple(str(w) for w in directive.when),
            tags=ctx.tags | frozenset(directive.tags),
            origin=ctx.origin + origin,
            dynamic=ctx.dynamic or not directive.kind.is_static,
        )

    def _check_nesting(self, directive: IncludeDirective, ctx: WalkContext, identity: str, target: str) -> None:
        if ctx.depth + 1 > self.config.max_include_depth:
            raise IncludeDepthExceeded(self.config.max_include_depth, target)
        # Dynamic includes may recurse; the depth bound stops them
        if directive.kind.is_static and identity in ctx.path:
            raise CyclicInclude(ctx.path + (identity,))

    def _defer(self, directive: IncludeDirective, ctx: WalkContext, target: TemplateValue) -> None:
        """Keep an unexpandable dynamic include as a marker task."""
        where = directive.provenance
        position = _position(where)
        deferred = DeferredInclude(
            name=directive.name,
            module=directive.kind.value,
            args={key: self.engine.resolve(value, ctx.stack, self.diagnostics, position)
                  for key, value in directive.options.items()},
            tags=set(ctx.tags | directive.tags),
            provenance=where,
            vars=dict(directive.vars),
            conditions=list(ctx.when) + [str(w) for w in directive.when],
            origin=ctx.origin,
            dynamic=True,
            block=ctx.block,
            block_section=ctx.block_section,
            kind=directive.kind,
            target=target,
        )
        deferred.when = self.engine.evaluate_when(deferred.conditions, ctx.stack, self.diagnostics, position)
        ctx.state.play.tasks.append(deferred)
        self.diagnostics.warning(
            DiagnosticKind.DEFERRED_INCLUDE,
            f"{directive.kind.value} target '{directive.target}' is only known at run time",
            where.source, where.line, where.column,
        )

    async def _include_tasks(self, directive: IncludeDirective, ctx: WalkContext) -> List[VariableScope]:
        stack = ctx.stack
        with stack.overlay(f"{directive.kind.value}:vars", directive.vars):
            target = self._target(directive, stack)
            if target is None:
                return []
            if not isinstance(target, Literal):
                if directive.kind.is_static:
                    self._error_at(directive.provenance, DiagnosticKind.DEFERRED_INCLUDE,
                                   f"{directive.kind.value} target '{directive.target}' "
                                   f"cannot be resolved at parse time")
                else:
                    self._defer(directive, ctx, target)
                return []

            condition = self._condition(directive, ctx)
            if not directive.kind.is_static and condition == Literal(False):
                logger.debug("Skipping %r: condition is false", directive)
                return []

            name = str(target.value)
            source = await self.load_first(
                candidate_references(name, ctx.base_dir, self.playbook_dir), name)
            self._check_nesting(directive, ctx, source.canonical_id, name)

            logger.debug("Expanding %s %s", directive.kind.value, source.canonical_id)
            nodes = self.read_tasks(source)
            verb = 'import' if directive.kind.is_static else 'include'
            child = self._child(directive, ctx, source.canonical_id, _qualifier(verb, name))
            scopes = await self.walk(nodes, child)
        return self._adopt(stack, scopes)

    async def _include_vars(self, directive: IncludeDirective, ctx: WalkContext) -> List[VariableScope]:
        stack = ctx.stack
        with stack.overlay("include_vars:vars", directive.vars):
            target = self._target(directive, stack)
        if target is None:
            return []
        if not isinstance(target, Literal):
            self._defer(directive, ctx, target)
            return []

        condition = self._condition(directive, ctx)
        if condition == Literal(False):
            logger.debug("Skipping %r: condition is false", directive)
            return []

        name = str(target.value)
        # Inside a role, vars/ is searched before the including file's directory
        subdir = "../vars" if ctx.role else None
        references = candidate_references(name, ctx.base_dir, self.playbook_dir, subdir)
        data = await self.read_vars(references, name, directive.provenance)
        if data is None:
            return []

        namespace = directive.options.get('name')
        if namespace:
            data = {str(namespace): data}
        if condition is not None and not isinstance(condition, Literal):
            # Only known at run time whether these names get bound
            data = {key: runtime(key, f"set by conditional include_vars '{name}'") for key in data}

        logger.debug("include_vars %s binds %s", name, sorted(data))
        return [stack.push_mapping(f"include_vars:{name}", data)]

    async def _include_role(self, directive: IncludeDirective, ctx: WalkContext) -> List[VariableScope]:
        stack = ctx.stack
        position = _position(directive.provenance)
        with stack.overlay(f"{directive.kind.value}:params", directive.vars):
            target = self._target(directive, stack)
            options = {key: self.engine.resolve(value, stack, self.diagnostics, position)
                       for key, value in directive.options.items()}
        if target is None:
            return []

        unresolved = [v for v in [target] + list(options.values()) if not isinstance(v, Literal)]
        if unresolved:
            if directive.kind.is_static:
                self._error_at(directive.provenance, DiagnosticKind.DEFERRED_INCLUDE,
                               f"{directive.kind.value} '{directive.target}' cannot be resolved at parse time")
            else:
                self._defer(directive, ctx, target)
            return []

        condition = self._condition(directive, ctx)
        if not directive.kind.is_static and condition == Literal(False):
            logger.debug("Skipping %r: condition is false", directive)
            return []

        role_name = str(target.value)
        chosen = {key: str(value.value) for key, value in options.items()}
        if ctx.depth + 1 > self.config.max_include_depth:
            raise IncludeDepthExceeded(self.config.max_include_depth, role_name)

        def files(subdir: str, option: str) -> List[str]:
            return role_references(role_name, self.playbook_dir, self.config.roles_path,
                                   subdir, chosen.get(option, 'main'))

        task_refs = files('tasks', 'tasks_from')
        if 'tasks_from' in chosen:
            tasks_source: Optional[LoadedSource] = await self.load_first(task_refs, role_name)
        else:
            tasks_source = await self.load_optional(task_refs)
        defaults_source = await self.load_optional(files('defaults', 'defaults_from'))
        vars_source = await self.load_optional(files('vars', 'vars_from'))
        handlers_source = await self.load_optional(files('handlers', 'handlers_from'))
        meta_source = await self.load_optional(files('meta', 'meta_from'))

        found = [s for s in (tasks_source, defaults_source, vars_source, handlers_source, meta_source) if s]
        if not found:
            raise SourceNotFound(f"role '{role_name}'", task_refs)
        role_path = posixpath.dirname(found[0].directory)
        identity = f"{role_path}#{chosen.get('tasks_from', 'main')}"
        self._check_nesting(directive, ctx, identity, role_name)

        logger.debug("Expanding role %s from %s", role_name, role_path)
        ctx.state.play.roles.append(RoleRef(
            name=role_name,
            via=directive.via or directive.kind.value,
            path=role_path,
            vars=dict(directive.vars),
            tags=set(directive.tags),
            when=condition,
            tasks_from=chosen.get('tasks_from', 'main'),
        ))

        child = self._child(directive, ctx, tasks_source.canonical_id if tasks_source else identity,
                            _qualifier('role', role_name))
        child = replace(child, role=role_name, path=ctx.path + (identity,))

        exports: List[VariableScope] = []
        pushed = 0
        try:
            if meta_source is not None:
                scopes = await self._role_dependencies(meta_source, child)
                exports.extend(self._adopt(stack, scopes))
                pushed += len(scopes)

            defaults = self._role_vars(defaults_source)
            stack.push_defaults(f"role:{role_name}:defaults", defaults)
            pushed += 1
            role_vars = {'role_path': role_path, 'role_name': role_name, **self._role_vars(vars_source)}
            stack.push_mapping(f"role:{role_name}:vars", role_vars)
            pushed += 1
            stack.push_mapping(f"role:{role_name}:params", directive.vars)
            pushed += 1

            if tasks_source is not None:
                scopes = await self.walk(self.read_tasks(tasks_source), child)
                exports.extend(self._adopt(stack, scopes))
                pushed += len(scopes)

            if handlers_source is not None and handlers_source.canonical_id not in ctx.state.role_handlers:
                ctx.state.role_handlers.append(handlers_source.canonical_id)
                handler_ctx = replace(child, source=handlers_source.canonical_id,
                                      base_dir=handlers_source.directory, handlers=True, when=ctx.when)
                await self.walk(self.read_tasks(handlers_source), handler_ctx)
        finally:
            for _ in range(pushed):
                stack.pop()
        return self._adopt(stack, exports)

    async def _role_dependencies(self, meta_source: LoadedSource, ctx: WalkContext) -> List[VariableScope]:
        """Expand the roles listed in a role's meta/main.yml dependencies."""
        meta = self.read(meta_source)
        if not isinstance(meta, dict):
            return []
        exports: List[VariableScope] = []
        try:
            for entry in ensure_list(meta.get('dependencies')):
                directive = self.builder.role_entry(entry, meta_source.canonical_id)
                if directive is None:
                    continue
                directive.via = 'dependency'
                exports.extend(await self._directive(directive, ctx))
        finally:
            for _ in exports:
                ctx.stack.pop()
        return exports

    def _role_vars(self, source: Optional[LoadedSource]) -> Dict[str, Any]:
        if source is None:
            return {}
        data = self.read(source)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ParseError("Role variables file must contain a mapping", file_path=source.canonical_id)
        return data

    # Diagnostics helpers

    @staticmethod
    def _where(where: Provenance) -> Dict[str, Any]:
        return {"source": where.source, "line": where.line, "column": where.column}

    def _error_at(self, where: Provenance, kind: DiagnosticKind, message: str) -> None:
        self.diagnostics.error(kind, message, where.source, where.line, where.column)
