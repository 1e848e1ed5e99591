"""
YAML front end.

Loads YAML text into plain dicts and lists that remember where they came
from (source id, line, column), and turns ``!vault`` scalars into
VaultValue objects.
"""

from __future__ import annotations

from typing import Any, List, NamedTuple, Optional

import yaml

from parsible.engine.errors import ParseError
from parsible.engine.values import VaultValue
from parsible.engine.vault import vault_id_of


class Position(NamedTuple):
    """Where a node starts in its source (1-based line and column)."""
    source: str
    line: int
    column: int


class NodeDict(dict):
    """Mapping node tagged with its source position."""
    position: Optional[Position] = None


class NodeList(list):
    """Sequence node tagged with its source position."""
    position: Optional[Position] = None


class NodeLoader(yaml.SafeLoader):
    """SafeLoader that records node positions."""

    def __init__(self, stream: str, source: str):
        super().__init__(stream)
        self.source = source

    def position(self, node: yaml.Node) -> Position:
        mark = node.start_mark
        return Position(self.source, mark.line + 1, mark.column + 1)


def _construct_mapping(loader: NodeLoader, node: yaml.MappingNode):
    data = NodeDict()
    data.position = loader.position(node)
    yield data
    data.update(loader.construct_mapping(node))


def _construct_sequence(loader: NodeLoader, node: yaml.SequenceNode):
    data = NodeList()
    data.position = loader.position(node)
    yield data
    data.extend(loader.construct_sequence(node))


def _construct_vault(loader: NodeLoader, node: yaml.ScalarNode) -> VaultValue:
    ciphertext = loader.construct_scalar(node)
    return VaultValue(ciphertext, vault_id_of(ciphertext))


NodeLoader.add_constructor('tag:yaml.org,2002:map', _construct_mapping)
NodeLoader.add_constructor('tag:yaml.org,2002:seq', _construct_sequence)
NodeLoader.add_constructor('!vault', _construct_vault)


def load_documents(text: str, source: str) -> List[Any]:
    """
    Load every YAML document in ``text``.

    Raises:
        ParseError: On malformed YAML, located at the problem mark
    """
    loader = NodeLoader(text, source)
    try:
        documents = []
        while loader.check_data():
            documents.append(loader.get_data())
        return documents
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        raise ParseError(
            f"YAML syntax error: {e.problem or e}",
            file_path=source,
            line=mark.line + 1 if mark else None,
            column=mark.column + 1 if mark else None,
        ) from e
    except yaml.YAMLError as e:
        raise ParseError(f"YAML syntax error: {e}", file_path=source) from e
    finally:
        loader.dispose()


def load_yaml(text: str, source: str) -> Any:
    """Load a single-document YAML source; empty sources load as None."""
    documents = [doc for doc in load_documents(text, source) if doc is not None]
    if not documents:
        return None
    if len(documents) == 1:
        return documents[0]
    # Flatten multi-document task/play lists
    if all(isinstance(doc, list) for doc in documents):
        merged = NodeList()
        merged.position = getattr(documents[0], 'position', None)
        for doc in documents:
            merged.extend(doc)
        return merged
    raise ParseError(
        f"Expected a single YAML document, found {len(documents)}",
        file_path=source,
    )


def position_of(node: Any) -> Optional[Position]:
    return getattr(node, 'position', None)
