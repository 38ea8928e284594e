"""
CLI tools for the time capsule core.

This module provides:
- cli: groups, create-group, join, post, upload, show and prompt commands

Invariants:
    - Tools act as exactly one principal per invocation
    - Tools work offline against the local SQLite database
"""

from .cli import CapsuleCLI, build_parser, main

__all__ = ["CapsuleCLI", "build_parser", "main"]
