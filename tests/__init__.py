"""
usersync test suite.

This package contains:
- unit/: Unit tests (no external services)
- integration/: Integration tests (SQLite, in-memory bus, ASGI client)
"""
