"""Shared test fixtures."""

from __future__ import annotations

import pytest

from ledgersync.taxonomy.loader import default_taxonomy


@pytest.fixture(autouse=True)
def _clear_taxonomy_cache() -> None:
    """Reload the bundled taxonomy for every test.

    default_taxonomy() is cached per process; tests that patch the YAML path
    must not leak their taxonomy into later tests.
    """
    default_taxonomy.cache_clear()
