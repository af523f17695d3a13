"""Test support utilities for the curaknot package.

In-memory collaborators for unit tests (``curaknot.testing.stores``) and
database helpers for migration integration tests
(``curaknot.testing.migration``).  Nothing here depends on pytest itself.
"""

from __future__ import annotations
