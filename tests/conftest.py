"""
Shared fixtures for the Parsible test suite.
"""

import textwrap
from typing import Dict

import pytest

from parsible.engine.config import ParserConfig
from parsible.engine.playbook import PlaybookParser
from parsible.engine.sources import MemoryLoader


def dedent_files(files: Dict[str, str]) -> Dict[str, str]:
    return {name: textwrap.dedent(text).lstrip("\n") for name, text in files.items()}


@pytest.fixture
def memory_loader() -> MemoryLoader:
    """An empty in-memory source loader."""
    return MemoryLoader()


@pytest.fixture
def parse_files():
    """
    Parse a playbook from in-memory files.

    Usage: ``result = parse_files({"site.yml": "..."}, entry="site.yml")``
    """
    def _parse(files: Dict[str, str], entry: str = "site.yml", **kwargs):
        loader = MemoryLoader(dedent_files(files))
        return PlaybookParser(loader=loader, **kwargs).parse(entry)
    return _parse


@pytest.fixture
def small_depth_config() -> ParserConfig:
    """Configuration with a tight include depth bound."""
    return ParserConfig(max_include_depth=5)
