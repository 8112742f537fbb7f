"""Fixtures for tests against a live PostgreSQL server.

Set ``CDC_RELAY_TEST_DSN`` to a libpq connection string for a database the
test user may create schemas in.  Slot tests additionally need
``wal_level = logical`` and the REPLICATION attribute.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncIterator

import pytest

from cdc_relay.store.postgres import PostgresStore

DSN_ENV = "CDC_RELAY_TEST_DSN"


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get(DSN_ENV)
    if not dsn:
        pytest.skip(f"{DSN_ENV} is not set")
    return dsn


@pytest.fixture
def schema_name() -> str:
    return f"relay_it_{uuid.uuid4().hex[:8]}"


@pytest.fixture
async def pg_store(pg_dsn: str, schema_name: str) -> AsyncIterator[PostgresStore]:
    store = PostgresStore(pg_dsn, name="integration")
    await store.execute(f'CREATE SCHEMA "{schema_name}"')
    await store.execute(
        f'CREATE TABLE "{schema_name}"."orders" ('
        "id serial PRIMARY KEY, "
        "status text NOT NULL, "
        "total_amount numeric(10, 2), "
        "created_at timestamptz NOT NULL DEFAULT now(), "
        "updated_at timestamptz NOT NULL DEFAULT now())"
    )
    try:
        yield store
    finally:
        await store.execute(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
        await store.close()
