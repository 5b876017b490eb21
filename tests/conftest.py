"""Shared pytest configuration for tag-fuse tests."""

import pytest


@pytest.fixture
def anyio_backend():
    """pyfuse3 runs on trio, and so do the async filesystem tests."""
    return "trio"
