"""
fedstore Test Suite.

This package contains:
- unit/: Unit tests (no external services; S3 is faked)
- integration/: Federation over real in-memory and SQLite backends
"""
