"""
OVSDB SDK Test Suite.

This package contains:
- unit/: Unit tests (no network)
- integration/: Client tests against an in-process fake OVSDB server
"""
