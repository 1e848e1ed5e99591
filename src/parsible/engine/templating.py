"""
Parsible Templating Engine

Jinja2-based evaluation of ``{{ }}`` templates and bare ``when``
expressions against a ScopeStack. Evaluation never guesses: a template
that touches a runtime-only value comes back Unresolved with its text
intact, and an undefined name is reported as a diagnostic.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError, meta

from parsible.engine.config import ParserConfig, get_config
from parsible.engine.diagnostics import Diagnostics
from parsible.engine.errors import TemplateError, UndefinedVariable
from parsible.engine.scope import UNDEFINED, ScopeStack
from parsible.engine.values import Literal, TemplateValue, Unresolved, UnresolvedReason, VaultValue
from parsible.engine.yamlnodes import Position

logger = logging.getLogger(__name__)


TEMPLATE_MARKERS = ('{{', '{%')
SINGLE_EXPRESSION = re.compile(r'^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$', re.DOTALL)
UNDEFINED_MESSAGE = re.compile(r"^'([^']+)' is undefined")

TRUE_STRINGS = frozenset(('true', 'yes', '1', 'on'))
FALSE_STRINGS = frozenset(('false', 'no', '0', 'off', ''))


def to_bool(value: Any) -> bool:
    """Convert a value to boolean (Ansible-style)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        value_lower = value.lower().strip()
        if value_lower in TRUE_STRINGS:
            return True
        if value_lower in FALSE_STRINGS:
            return False
        # Non-empty strings are truthy
        return bool(value.strip())
    return bool(value)


def _as_number(value: Any) -> Optional[Union[int, float]]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return None
    return None


class LooseString(str):
    """
    String with Ansible's loose typing at the point of consumption.

    Numeric strings compare numerically against numbers and other numeric
    strings, and yes/no/on/off/true/false decide truthiness.
    """

    __hash__ = str.__hash__

    def _pair(self, other: Any) -> Optional[Tuple[Union[int, float], Union[int, float]]]:
        if isinstance(other, str) and not isinstance(other, LooseString):
            return None
        mine, theirs = _as_number(self), _as_number(other)
        if mine is None or theirs is None:
            return None
        return mine, theirs

    def __eq__(self, other: object) -> bool:
        pair = self._pair(other)
        if pair is not None:
            return pair[0] == pair[1]
        return str.__eq__(self, other)

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        return result if result is NotImplemented else not result

    def __lt__(self, other: Any) -> bool:
        pair = self._pair(other)
        return pair[0] < pair[1] if pair is not None else str.__lt__(self, other)

    def __le__(self, other: Any) -> bool:
        pair = self._pair(other)
        return pair[0] <= pair[1] if pair is not None else str.__le__(self, other)

    def __gt__(self, other: Any) -> bool:
        pair = self._pair(other)
        return pair[0] > pair[1] if pair is not None else str.__gt__(self, other)

    def __ge__(self, other: Any) -> bool:
        pair = self._pair(other)
        return pair[0] >= pair[1] if pair is not None else str.__ge__(self, other)

    def __bool__(self) -> bool:
        return to_bool(str(self))


def loosen(value: Any) -> Any:
    """Wrap strings (recursively) for loose comparison; never mutates the input."""
    if isinstance(value, LooseString):
        return value
    if isinstance(value, str):
        return LooseString(value)
    if isinstance(value, dict):
        return {k: loosen(v) for k, v in value.items()}
    if isinstance(value, list):
        return [loosen(v) for v in value]
    return value


def tighten(value: Any) -> Any:
    """Undo loosen() on an evaluation result."""
    if isinstance(value, LooseString):
        return str(value)
    if isinstance(value, dict):
        return {tighten(k): tighten(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [tighten(v) for v in value]
    return value


def _filter_default(value: Any, default_value: Any = '', boolean: bool = False) -> Any:
    """Jinja2 default filter with Ansible's boolean option."""
    if isinstance(value, Undefined):
        return default_value
    if boolean and not value:
        return default_value
    return value


def _filter_mandatory(value: Any, msg: Optional[str] = None) -> Any:
    """Fail when the value is undefined."""
    if isinstance(value, Undefined):
        name = getattr(value, '_undefined_name', None)
        raise UndefinedError(msg or f"'{name}' is undefined")
    return value


def _filter_to_json(value: Any, **kwargs: Any) -> str:
    return json.dumps(tighten(value), **kwargs)


def _filter_from_json(value: Any) -> Any:
    return json.loads(str(value))


def _filter_to_yaml(value: Any) -> str:
    """Convert value to YAML string."""
    return yaml.safe_dump(tighten(value), default_flow_style=False)


def _filter_from_yaml(value: Any) -> Any:
    return yaml.safe_load(str(value))


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in TRUE_STRINGS
    return bool(value)


def _filter_basename(path: str) -> str:
    """Get basename of a path."""
    return os.path.basename(str(path))


def _filter_dirname(path: str) -> str:
    """Get directory name of a path."""
    return os.path.dirname(str(path))


def _filter_regex_replace(value: str, pattern: str = '', replacement: str = '', ignorecase: bool = False) -> str:
    """Regex replacement in string."""
    flags = re.IGNORECASE if ignorecase else 0
    return re.sub(str(pattern), str(replacement), str(value), flags=flags)


def _filter_b64decode(value: str) -> str:
    """Decode base64 encoded string."""
    return base64.b64decode(str(value)).decode('utf-8')


def _filter_b64encode(value: str) -> str:
    """Encode string to base64."""
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('utf-8')
    return base64.b64encode(str(value).encode('utf-8')).decode('utf-8')


def _filter_join(value: Iterable[Any], sep: str = '') -> str:
    return str(sep).join(str(i) for i in value)


# Export custom filters as a dictionary for reuse
CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'default': _filter_default,
    'd': _filter_default,
    'mandatory': _filter_mandatory,
    'lower': lambda x: str(x).lower(),
    'upper': lambda x: str(x).upper(),
    'replace': lambda s, old, new: str(s).replace(old, new),
    'to_json': _filter_to_json,
    'from_json': _filter_from_json,
    'to_yaml': _filter_to_yaml,
    'from_yaml': _filter_from_yaml,
    'bool': _filter_bool,
    'int': lambda x, default=0: int(_as_number(x) if _as_number(x) is not None else default),
    'string': lambda x: str(x),
    'trim': lambda x: str(x).strip(),
    'length': lambda x: len(x),
    'join': _filter_join,
    'first': lambda x: x[0] if x else None,
    'last': lambda x: x[-1] if x else None,
    'basename': _filter_basename,
    'dirname': _filter_dirname,
    'regex_replace': _filter_regex_replace,
    'b64decode': _filter_b64decode,
    'b64encode': _filter_b64encode,
}


def is_template(value: Any) -> bool:
    """Check whether a string contains template markers."""
    return isinstance(value, str) and any(marker in value for marker in TEMPLATE_MARKERS)


def contains_template(value: Any) -> bool:
    """Check a (possibly nested) value for template markers or opaque values."""
    if isinstance(value, (Unresolved, VaultValue)):
        return True
    if isinstance(value, str):
        return is_template(value)
    if isinstance(value, dict):
        return any(contains_template(k) or contains_template(v) for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return any(contains_template(v) for v in value)
    return False


def _strip_braces(condition: str) -> str:
    """Conditionals are bare expressions; tolerate a wrapping ``{{ }}``."""
    match = SINGLE_EXPRESSION.match(condition)
    return match.group('expr').strip() if match else condition.strip()


class TemplateEngine:
    """
    Jinja2 templating engine with Ansible-like behavior.

    Provides:
    - Variable interpolation in strings, recursively in dicts/lists
    - Native values for templates that are a single ``{{ expression }}``
    - 'when' condition evaluation
    - Unresolved results for runtime-only values instead of guesses
    """

    def __init__(self, config: Optional[ParserConfig] = None, vault: Any = None):
        self.config = config or get_config()
        self.vault = vault
        self.env = Environment(
            undefined=StrictUndefined,
            # Don't auto-escape (we're not rendering HTML)
            autoescape=False,
            # Keep trailing newlines
            keep_trailing_newline=True,
        )

        # Register filters from shared CUSTOM_FILTERS
        for name, func in CUSTOM_FILTERS.items():
            self.env.filters[name] = func

    def evaluate(
        self,
        expression: str,
        scope: ScopeStack,
        diagnostics: Optional[Diagnostics] = None,
        position: Optional[Position] = None,
        bare: bool = False,
    ) -> TemplateValue:
        """
        Evaluate a template string, or a bare expression when ``bare``.

        Returns:
            Literal when every referenced name resolves, Unresolved otherwise
        """
        return _Evaluation(self, scope, diagnostics, position).expression(expression, bare)

    def resolve(
        self,
        value: Any,
        scope: ScopeStack,
        diagnostics: Optional[Diagnostics] = None,
        position: Optional[Position] = None,
    ) -> TemplateValue:
        """Resolve every template inside a (possibly nested) value."""
        return _Evaluation(self, scope, diagnostics, position).value(value)

    def evaluate_when(
        self,
        conditions: Union[None, str, bool, Sequence[Any]],
        scope: ScopeStack,
        diagnostics: Optional[Diagnostics] = None,
        position: Optional[Position] = None,
    ) -> Optional[TemplateValue]:
        """
        Evaluate one or more 'when' conditions ANDed together.

        Returns:
            None without conditions, Literal(bool) when decidable at parse
            time, otherwise Unresolved with the combined expression text
        """
        combined = combine_conditions(conditions)
        if combined is None:
            return None
        result = self.evaluate(combined, scope, diagnostics, position, bare=True)
        if isinstance(result, Literal):
            return Literal(to_bool(result.value))
        return result


def combine_conditions(conditions: Union[None, str, bool, Sequence[Any]]) -> Optional[str]:
    """AND a list of conditions into one bare expression."""
    if conditions is None:
        return None
    if not isinstance(conditions, (list, tuple)):
        conditions = [conditions]
    parts = [_strip_braces(str(c)) for c in conditions if c is not None and str(c).strip()]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return " and ".join(f"({part})" for part in parts)


class _Evaluation:
    """One evaluation request; tracks names being resolved to stop self-reference."""

    def __init__(self, engine: TemplateEngine, scope: ScopeStack,
                 diagnostics: Optional[Diagnostics], position: Optional[Position]):
        self.engine = engine
        self.scope = scope
        self.diagnostics = diagnostics
        self.position = position
        self.active: Set[str] = set()

    def value(self, value: Any) -> TemplateValue:
        if isinstance(value, Unresolved):
            return value
        if isinstance(value, VaultValue):
            return self._reveal(value)
        if isinstance(value, str):
            if is_template(value):
                return self.expression(value, bare=False)
            return Literal(value)
        if isinstance(value, dict):
            resolved: Dict[Any, Any] = {}
            pending: List[Unresolved] = []
            for key, item in value.items():
                key_value = self.value(key) if isinstance(key, str) else Literal(key)
                item_value = self.value(item)
                for part in (key_value, item_value):
                    if isinstance(part, Unresolved):
                        pending.append(part)
                if not pending:
                    try:
                        resolved[key_value.value] = item_value.value
                    except TypeError:
                        return self._error(str(key), f"Mapping key resolved to unhashable "
                                                     f"{type(key_value.value).__name__}")
            if pending:
                return self._merge_unresolved(value, pending)
            return Literal(resolved)
        if isinstance(value, (list, tuple)):
            items: List[Any] = []
            pending = []
            for item in value:
                item_value = self.value(item)
                if isinstance(item_value, Unresolved):
                    pending.append(item_value)
                else:
                    items.append(item_value.value)
            if pending:
                return self._merge_unresolved(value, pending)
            return Literal(items)
        return Literal(value)

    def expression(self, text: str, bare: bool) -> TemplateValue:
        source = "{{ %s }}" % text if bare else text
        env = self.engine.env

        try:
            ast = env.parse(source)
        except TemplateSyntaxError as e:
            return self._error(text, f"Template syntax error: {e}")

        context: Dict[str, Any] = {}
        for name in sorted(meta.find_undeclared_variables(ast)):
            binding = self.scope.lookup(name)
            if binding is UNDEFINED:
                if self.engine.config.is_fact_name(name):
                    return Unresolved(text, UnresolvedReason.RUNTIME_FACT, (name,),
                                      f"'{name}' is a host fact")
                if self.engine.config.is_runtime_name(name):
                    return Unresolved(text, UnresolvedReason.RUNTIME, (name,),
                                      f"'{name}' is only known at run time")
                continue
            resolved = self._binding(name, binding)
            if isinstance(resolved, Unresolved):
                return Unresolved(text, resolved.reason, (name,) + tuple(
                    v for v in resolved.variables if v != name), resolved.detail)
            context[name] = loosen(resolved.value)

        try:
            match = SINGLE_EXPRESSION.match(source)
            if match:
                compiled = env.compile_expression(match.group('expr'), undefined_to_none=False)
                result = compiled(**context)
                if isinstance(result, Undefined):
                    str(result)  # raises UndefinedError
            else:
                result = env.from_string(source).render(context)
        except UndefinedError as e:
            return self._undefined(text, e)
        except Exception as e:
            return self._error(text, str(e))

        return Literal(tighten(result))

    def _binding(self, name: str, binding: Any) -> TemplateValue:
        if isinstance(binding, Unresolved):
            return binding
        if not contains_template(binding):
            return Literal(binding)
        if name in self.active:
            return self._error("{{ %s }}" % name, f"Recursive loop detected resolving '{name}'")
        self.active.add(name)
        try:
            return self.value(binding)
        finally:
            self.active.discard(name)

    def _reveal(self, value: VaultValue) -> TemplateValue:
        vault = self.engine.vault
        revealed = vault.reveal(value) if vault is not None else value
        if isinstance(revealed, VaultValue):
            return Unresolved(str(revealed), UnresolvedReason.VAULT, (),
                              f"encrypted with vault id '{revealed.vault_id}'")
        return Literal(revealed)

    def _merge_unresolved(self, original: Any, pending: List[Unresolved]) -> Unresolved:
        variables: List[str] = []
        for item in pending:
            for name in item.variables:
                if name not in variables:
                    variables.append(name)
        # A fact reference dominates so facts_required is reported
        reasons = [item.reason for item in pending]
        reason = UnresolvedReason.RUNTIME_FACT if UnresolvedReason.RUNTIME_FACT in reasons else reasons[0]
        return Unresolved(original, reason, tuple(variables), pending[0].detail)

    def _undefined(self, text: str, error: UndefinedError) -> Unresolved:
        message = str(error.message or error)
        match = UNDEFINED_MESSAGE.match(message)
        name = match.group(1) if match else message
        if self.diagnostics is not None:
            self.diagnostics.add_error(
                UndefinedVariable(name, text),
                source=self.position.source if self.position else None,
                line=self.position.line if self.position else None,
                column=self.position.column if self.position else None,
            )
        logger.debug("Undefined variable %s in %r", name, text)
        return Unresolved(text, UnresolvedReason.UNDEFINED, (name,) if match else (), message)

    def _error(self, text: str, message: str) -> Unresolved:
        if self.diagnostics is not None:
            self.diagnostics.add_error(
                TemplateError(message, text),
                source=self.position.source if self.position else None,
                line=self.position.line if self.position else None,
                column=self.position.column if self.position else None,
            )
        return Unresolved(text, UnresolvedReason.ERROR, (), message)
