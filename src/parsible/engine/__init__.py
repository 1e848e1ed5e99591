"""
Parsible Engine Module

Playbook pipeline: scope stack, template engine, include resolution,
model building and dependency graphs.
"""

from parsible.engine.config import ParserConfig, configure, get_config, set_config
from parsible.engine.diagnostics import Diagnostic, DiagnosticKind, Diagnostics, ParseResult, Severity
from parsible.engine.model import (
    DeferredInclude,
    Handler,
    IncludeKind,
    ParsedPlaybook,
    Play,
    RoleRef,
    Task,
)
from parsible.engine.playbook import PlaybookParser, parse_playbook
from parsible.engine.scope import UNDEFINED, ScopeStack, VariableScope
from parsible.engine.sources import FileSystemLoader, LoadedSource, MemoryLoader, StaticFacts
from parsible.engine.templating import TemplateEngine
from parsible.engine.values import Literal, Unresolved, UnresolvedReason, VaultValue
from parsible.engine.errors import (
    ParsibleError,
    ParseError,
    InvalidPattern,
    TemplateError,
    UndefinedVariable,
    CyclicGroupInheritance,
    CyclicTaskDependency,
    CyclicInclude,
    IncludeDepthExceeded,
    SourceNotFound,
    SourceUnreadable,
    VaultDecryptionFailed,
    IncludeLoadCancelled,
)

__all__ = [
    'ParserConfig',
    'configure',
    'get_config',
    'set_config',
    'Diagnostic',
    'DiagnosticKind',
    'Diagnostics',
    'ParseResult',
    'Severity',
    'DeferredInclude',
    'Handler',
    'IncludeKind',
    'ParsedPlaybook',
    'Play',
    'RoleRef',
    'Task',
    'PlaybookParser',
    'parse_playbook',
    'UNDEFINED',
    'ScopeStack',
    'VariableScope',
    'FileSystemLoader',
    'LoadedSource',
    'MemoryLoader',
    'StaticFacts',
    'TemplateEngine',
    'Literal',
    'Unresolved',
    'UnresolvedReason',
    'VaultValue',
    'ParsibleError',
    'ParseError',
    'InvalidPattern',
    'TemplateError',
    'UndefinedVariable',
    'CyclicGroupInheritance',
    'CyclicTaskDependency',
    'CyclicInclude',
    'IncludeDepthExceeded',
    'SourceNotFound',
    'SourceUnreadable',
    'VaultDecryptionFailed',
    'IncludeLoadCancelled',
]
