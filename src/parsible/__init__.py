# Copyright (c) 2024 Parsible Contributors
# MIT License

"""
Parsible: Ansible-compatible playbook and inventory front end.

Parses playbooks and inventories into a fully resolved, validated
intermediate representation for downstream execution engines.

Features:
    - Include/import expansion with per-include variable scopes
    - Jinja2 template resolution with deferred runtime-only values
    - Task/handler dependency graphs with cycle detection
    - INI, YAML and JSON inventories with host-range expansion

Nothing is ever executed: tasks are parsed, resolved and validated only.
"""

from __future__ import annotations

from parsible.release import __version__, __author__, __codename__
from parsible.engine.playbook import PlaybookParser, parse_playbook
from parsible.inventory.parser import InventoryParser, parse_inventory

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
    "PlaybookParser",
    "parse_playbook",
    "InventoryParser",
    "parse_inventory",
]
