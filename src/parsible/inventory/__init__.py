"""
Parsible Inventory Module

Provides inventory parsing, host-range expansion and host/group
management. Supports INI, YAML and JSON inventory formats.
"""

from parsible.inventory.parser import InventoryParser, detect_format, parse_inventory
from parsible.inventory.host import Host
from parsible.inventory.group import Group
from parsible.inventory.inventory import ParsedInventory
from parsible.inventory.patterns import expand, expand_paired

__all__ = [
    'InventoryParser',
    'detect_format',
    'parse_inventory',
    'Host',
    'Group',
    'ParsedInventory',
    'expand',
    'expand_paired',
]
