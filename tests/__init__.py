"""
Firestore REST SDK Test Suite.

This package contains:
- unit/: Unit tests (no I/O; codec, paths, writes, queries, auth, config)
- integration/: Integration tests (client against the in-memory backend)
- e2e/: End-to-end tests (Firestore emulator, set FIRESTORE_EMULATOR_HOST)
"""
