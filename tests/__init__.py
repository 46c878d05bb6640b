"""
StashDB Test Suite.

This package contains:
- unit/: Unit tests, backend contract tests run against every adapter
- integration/: End-to-end scenarios through the Store facade
"""
