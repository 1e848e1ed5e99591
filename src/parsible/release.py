# Copyright (c) 2024 Parsible Contributors
# MIT License

"""Parsible release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Parsible Contributors"
__codename__ = "Cartographer"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)
