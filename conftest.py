"""Shared PostgreSQL fixtures for integration tests.

One container serves the whole pytest session; every
``provisioned_postgres_pool()`` call gets a freshly created database, so
documents, identities and NOTIFY traffic never cross between tests.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as container:
        yield container


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[[], AbstractAsyncContextManager[Pool]]:
    """Factory for ``async with provisioned_postgres_pool() as pool:`` blocks."""
    from meditrack.db import Database, DatabaseSettings

    settings = DatabaseSettings(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Pool]:
        name = f"meditrack_test_{uuid.uuid4().hex[:12]}"
        async with Database(name, settings, min_pool_size=1, max_pool_size=4) as db:
            assert db.pool is not None
            yield db.pool

    return _provision
