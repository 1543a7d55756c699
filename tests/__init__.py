"""
KV store test suite.

This package contains:
- unit/: Unit tests (no external dependencies, Spanner client mocked)
- integration/: Service, HTTP app and server over the SQLite store
- e2e/: End-to-end tests against the Spanner emulator
"""
