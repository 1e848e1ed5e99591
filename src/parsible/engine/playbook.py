"""
Parsible Playbook Parser

Parses YAML playbooks into fully expanded, resolved and linked Play and
Task objects.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from parsible.engine.builder import ModelBuilder
from parsible.engine.config import ParserConfig, get_config
from parsible.engine.diagnostics import Diagnostics, ParseResult
from parsible.engine.errors import InvalidPattern, ParseError
from parsible.engine.graph import DependencyGraph
from parsible.engine.includes import IncludeResolver, PlayEntry
from parsible.engine.model import ParsedPlaybook, Play, PlaybookMetadata
from parsible.engine.scope import ScopeStack
from parsible.engine.sources import FactSeedProvider, FileSystemLoader, SourceLoader
from parsible.engine.templating import TemplateEngine
from parsible.engine.values import Literal, Unresolved
from parsible.engine.vault import VaultDecryptor, VaultHandler
from parsible.engine.yamlnodes import Position

if TYPE_CHECKING:
    from parsible.inventory.inventory import ParsedInventory

logger = logging.getLogger(__name__)


# Modules whose use means host facts are gathered at run time
FACT_MODULES = {'setup', 'gather_facts'}


class PlaybookParser:
    """
    Parse playbooks into ParsedPlaybook models.

    The pipeline is: load and parse the top-level source, flatten
    import_playbook directives, then for each play build the play header,
    expand includes and roles while resolving templates, assign task ids
    and link the dependency graph.

    Args:
        loader: Source loader (defaults to the local filesystem)
        config: Parser configuration (defaults to the module-level one)
        facts: Optional provider of pre-gathered facts
        inventory: Optional parsed inventory seeding variables and hosts
        vault_decryptor: Optional decryptor for vaulted values and files
    """

    def __init__(
        self,
        loader: Optional[SourceLoader] = None,
        config: Optional[ParserConfig] = None,
        facts: Optional[FactSeedProvider] = None,
        inventory: Optional["ParsedInventory"] = None,
        vault_decryptor: Optional[VaultDecryptor] = None,
    ):
        self.loader = loader or FileSystemLoader()
        self.config = config or get_config()
        self.facts = facts
        self.inventory = inventory
        self.vault_decryptor = vault_decryptor

    def parse(self, reference: str) -> ParseResult[ParsedPlaybook]:
        """
        Parse a playbook synchronously.

        Must not be called from a running event loop; use parse_async there.

        Raises:
            ParseError: If the top-level playbook is malformed
            SourceNotFound, SourceUnreadable: If a required source is missing
            VaultDecryptionFailed: If the decryptor rejects vaulted content
            CyclicTaskDependency: If explicit dependencies form a cycle
        """
        return asyncio.run(self.parse_async(reference))

    async def parse_async(self, reference: str,
                          cancel: Optional[asyncio.Event] = None) -> ParseResult[ParsedPlaybook]:
        """
        Parse a playbook; loads may be asynchronous.

        Setting ``cancel`` aborts the pending load with IncludeLoadCancelled;
        the partially built playbook is discarded.
        """
        diagnostics = Diagnostics()
        vault = VaultHandler(self.vault_decryptor)
        engine = TemplateEngine(self.config, vault)
        builder = ModelBuilder(diagnostics, self.config)
        resolver = IncludeResolver(
            self.loader, engine, builder, diagnostics, self.config, vault, cancel=cancel,
        )

        source = await resolver.fetch(reference)
        resolver.playbook_dir = source.directory
        logger.debug("Parsing playbook %s", source.canonical_id)

        nodes = resolver.read(source)
        if nodes is None:
            nodes = []
        if not isinstance(nodes, list):
            raise ParseError(
                f"Playbook must be a list of plays, got {type(nodes).__name__}",
                file_path=source.canonical_id,
            )

        stack = ScopeStack()
        seeds = self._seed(stack, source.directory)

        entries = await resolver.expand_playbook(nodes, source, stack)
        plays: List[Play] = []
        for index, entry in enumerate(entries):
            play = builder.play(entry.node, index, entry.source.canonical_id)
            if play is None:
                continue
            await self._resolve_play(play, entry, stack, engine, resolver, diagnostics)
            builder.assign_ids(play, prefix=f"play_{len(plays)}." if plays else "")
            builder.check_handlers(play)
            DependencyGraph(play, diagnostics)
            plays.append(play)

        variables: Dict[str, Any] = dict(seeds)
        for play in plays:
            variables.update(play.vars)

        parsed = ParsedPlaybook(
            metadata=PlaybookMetadata(
                source=source.canonical_id,
                checksum=source.checksum,
                parsed_at=datetime.now(timezone.utc).isoformat(),
            ),
            plays=plays,
            variables=variables,
            vault_ids=vault.vault_ids,
        )
        parsed.facts_required = self._facts_required(parsed)
        logger.debug("Parsed %d plays, %d tasks, %d diagnostics",
                     len(plays), len(parsed.tasks), len(diagnostics))
        return ParseResult(parsed, diagnostics)

    def _seed(self, stack: ScopeStack, playbook_dir: str) -> Dict[str, Any]:
        """Push the variables known before parsing; lowest precedence first."""
        if self.facts is not None:
            stack.push_mapping("facts", self.facts.facts())
        inventory_vars: Dict[str, Any] = {}
        if self.inventory is not None:
            inventory_vars = dict(self.inventory.all_vars)
        stack.push_mapping("inventory", inventory_vars)
        stack.push_mapping("magic", {'playbook_dir': playbook_dir})
        return inventory_vars

    async def _resolve_play(self, play: Play, entry: PlayEntry, stack: ScopeStack,
                            engine: TemplateEngine, resolver: IncludeResolver,
                            diagnostics: Diagnostics) -> None:
        position = None
        if play.provenance.source:
            position = Position(play.provenance.source, play.provenance.line or 0,
                                play.provenance.column or 0)

        with stack.overlay("import_playbook:vars", entry.vars or {}):
            with stack.overlay(f"play:{play.name}", play.vars):
                play.hosts_value = engine.resolve(play.hosts, stack, diagnostics, position)
                await resolver.resolve_play(entry.node, play, entry, stack)

        if self.inventory is not None and isinstance(play.hosts_value, Literal):
            try:
                play.target_hosts = self.inventory.get_hosts(str(play.hosts_value.value))
            except InvalidPattern as e:
                diagnostics.add_error(e, source=play.provenance.source,
                                      line=play.provenance.line, column=play.provenance.column)

    @staticmethod
    def _facts_required(parsed: ParsedPlaybook) -> bool:
        if any(value.needs_facts for _, value in parsed.unresolved()):
            return True
        for play in parsed.plays:
            if isinstance(play.hosts_value, Unresolved) and play.hosts_value.needs_facts:
                return True
        return any(task.module in FACT_MODULES for task in parsed.tasks)


def parse_playbook(reference: str, loader: Optional[SourceLoader] = None,
                   **kwargs: Any) -> ParseResult[ParsedPlaybook]:
    """Parse a playbook with a one-off PlaybookParser."""
    return PlaybookParser(loader=loader, **kwargs).parse(reference)
