"""Pytest configuration and fixtures."""

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for wire helper imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fastapi.testclient import TestClient  # noqa: E402

from localcloud.app import build_repository, create_app  # noqa: E402
from localcloud.config import Config, RetrySettings  # noqa: E402
from localcloud.entities import EntityRepository  # noqa: E402
from localcloud.store import ReadRetryPolicy, ResourceStore  # noqa: E402

IN_MEMORY_URL = "sqlite://"


@pytest.fixture
def config() -> Config:
    """In-memory configuration with a fast, short read retry."""
    return Config(
        database_url=IN_MEMORY_URL,
        read_retry=RetrySettings(attempts=2, delay_ms=0),
    )


@pytest.fixture
def store() -> Iterator[ResourceStore]:
    """Empty in-memory resource store."""
    resource_store = ResourceStore.from_url(
        IN_MEMORY_URL, ReadRetryPolicy(max_attempts=2, delay_seconds=0)
    )
    yield resource_store
    resource_store.dispose()


@pytest.fixture
def repository(config: Config, store: ResourceStore) -> EntityRepository:
    """Entity repository with the default contracts and policies."""
    return build_repository(config, store)


@pytest.fixture
def client(config: Config, store: ResourceStore) -> Iterator[TestClient]:
    """HTTP client for a fully wired emulator."""
    with TestClient(create_app(config, store)) as test_client:
        yield test_client
