"""
Source loading.

The core never touches storage itself: it asks a SourceLoader for named
sources. This module defines that interface, the relative-path rules the
core applies before asking, and two loaders (filesystem and in-memory).
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

from parsible.engine.errors import SourceNotFound, SourceUnreadable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedSource:
    """Source text plus the canonical identity used for cycle detection."""

    text: str
    canonical_id: str

    @property
    def checksum(self) -> str:
        """SHA-256 of the source text, stable across parses."""
        return checksum(self.text)

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.canonical_id)


@runtime_checkable
class SourceLoader(Protocol):
    """Fetches source text by reference; may be synchronous or asynchronous."""

    def load(self, reference: str) -> Union[LoadedSource, Awaitable[LoadedSource]]:
        """Return the source or raise SourceNotFound / SourceUnreadable."""
        ...


@runtime_checkable
class FactSeedProvider(Protocol):
    """Supplies variables known before parsing (pre-gathered facts)."""

    def facts(self, host: Optional[str] = None) -> Mapping[str, Any]:
        ...


class StaticFacts:
    """Fact seed provider backed by fixed mappings."""

    def __init__(self, common: Optional[Mapping[str, Any]] = None,
                 per_host: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self.common = dict(common or {})
        self.per_host = {k: dict(v) for k, v in (per_host or {}).items()}

    def facts(self, host: Optional[str] = None) -> Mapping[str, Any]:
        result = dict(self.common)
        if host is not None:
            result.update(self.per_host.get(host, {}))
        return result


def checksum(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def join_reference(base_dir: str, target: str) -> str:
    """Resolve ``target`` against the directory of the including source."""
    if posixpath.isabs(target) or not base_dir:
        return posixpath.normpath(target)
    return posixpath.normpath(posixpath.join(base_dir, target))


def candidate_references(target: str, including_dir: str, playbook_dir: str,
                         subdir: Optional[str] = None) -> List[str]:
    """
    Ordered references to try for an include target.

    Relative targets are looked up next to the including file first (in its
    ``subdir`` when given, e.g. ``tasks/`` inside a role), then next to the
    top-level playbook. Absolute targets are used as-is.
    """
    if posixpath.isabs(target):
        return [posixpath.normpath(target)]
    candidates = []
    if subdir:
        candidates.append(join_reference(join_reference(including_dir, subdir), target))
    candidates.append(join_reference(including_dir, target))
    candidates.append(join_reference(playbook_dir, target))
    unique: List[str] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def role_references(role_name: str, playbook_dir: str, roles_path: List[str],
                    subdir: str, filename: str) -> List[str]:
    """Ordered references for one file inside a named role."""
    if posixpath.isabs(role_name) or '/' in role_name:
        roots = [join_reference(playbook_dir, role_name)]
    else:
        roots = [join_reference(join_reference(playbook_dir, base), role_name) for base in roles_path]
        roots.append(join_reference(playbook_dir, role_name))
    references = []
    for root in roots:
        for name in _yaml_names(filename):
            reference = posixpath.join(root, subdir, name)
            if reference not in references:
                references.append(reference)
    return references


def _yaml_names(filename: str) -> List[str]:
    stem, ext = posixpath.splitext(filename)
    if ext in ('.yml', '.yaml'):
        return [filename]
    return [f"{filename}.yml", f"{filename}.yaml", filename]


class FileSystemLoader:
    """
    Load sources from the local filesystem.

    Canonical ids are absolute POSIX-style paths, so relative references
    resolve against the including file's directory.
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else Path.cwd()

    def load(self, reference: str) -> LoadedSource:
        path = Path(reference)
        if not path.is_absolute():
            path = self.root / path
        path = path.resolve()

        if not path.is_file():
            raise SourceNotFound(reference)
        try:
            text = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise SourceUnreadable(reference, str(e)) from e

        logger.debug("Loaded %s (%d bytes)", path, len(text))
        return LoadedSource(text, path.as_posix())


class MemoryLoader:
    """Load sources from an in-memory mapping of reference -> text."""

    def __init__(self, files: Optional[Mapping[str, str]] = None):
        self.files: Dict[str, str] = {
            posixpath.normpath(name): text for name, text in (files or {}).items()
        }
        self.requests: List[str] = []

    def add(self, reference: str, text: str) -> None:
        self.files[posixpath.normpath(reference)] = text

    def load(self, reference: str) -> LoadedSource:
        key = posixpath.normpath(reference)
        self.requests.append(key)
        if key not in self.files:
            raise SourceNotFound(reference)
        return LoadedSource(self.files[key], key)
