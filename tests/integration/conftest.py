"""Pytest fixtures for integration tests.

These tests talk to real PostgreSQL and Redis servers configured through the
usual POSTGRES_* and REDIS_* environment variables. A test is skipped when its
server cannot be reached.
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from vote_service import StoreError, VotingAdmin
from vote_service.config import settings
from vote_service.database import PostgresRecordStore
from vote_service.redis_store import RedisRecordStore


@pytest.fixture
async def postgres_store():
    """PostgreSQL record store on empty tables."""
    store = PostgresRecordStore(settings.postgres_dsn, min_size=1, max_size=5, command_timeout=10)
    try:
        await store.initialize()
    except StoreError as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    async with store.pool.acquire() as conn:
        await conn.execute(
            "TRUNCATE votes, voters, candidates, voting_sessions RESTART IDENTITY CASCADE"
        )

    yield store
    await store.close()


@pytest.fixture
async def redis_store():
    """Redis record store under a throwaway key prefix."""
    prefix = f"test-votes-{uuid.uuid4().hex[:8]}"
    store = RedisRecordStore(settings.redis_url, key_prefix=prefix)
    try:
        await store.initialize()
    except StoreError as e:
        pytest.skip(f"Redis not available: {e}")

    yield store

    keys = [key async for key in store.client.scan_iter(match=f"{prefix}:*")]
    if keys:
        await store.client.delete(*keys)
    await store.close()


async def seed_election(store):
    """Seed a general election with Alice, Bob and voters v1..v3."""
    now = datetime.now(timezone.utc)
    admin = VotingAdmin(store)
    session = await admin.create_session(
        "General election",
        start_time=now - timedelta(hours=1),
        end_time=now + timedelta(hours=1)
    )
    other = await admin.create_session("By-election")

    await admin.register_candidate("Alice", session.id)
    await admin.register_candidate("Bob", session.id)
    for voter_id in ["v1", "v2", "v3"]:
        await admin.register_voter(voter_id, session.id)

    return SimpleNamespace(store=store, session_id=session.id, other_session_id=other.id)


@pytest.fixture
async def postgres_election(postgres_store):
    return await seed_election(postgres_store)


@pytest.fixture
async def redis_election(redis_store):
    return await seed_election(redis_store)
