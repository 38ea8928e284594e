"""
Capsule Core Test Suite.

This package contains:
- unit/: Unit tests (in-memory collaborators, temporary SQLite files)
- integration/: Session controller and CLI wired to the reference stores
- helpers.py: Shared fakes and waiting utilities
"""
