"""Pytest fixtures for the vote service tests.

Unit tests run against the in-memory record store. Each test gets a fresh
store seeded with two sessions, their candidates and a few voters.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import redis.asyncio as redis

from vote_service import InMemoryRecordStore, TallyAggregator, VoteCoordinator, VotingAdmin
from vote_service.redis_store import RedisRecordStore


FIXED_NOW = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Deterministic clock returning FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
async def election(store: InMemoryRecordStore):
    """Seed the store with a typical election.

    - "General election" (open around FIXED_NOW) with candidates Alice and Bob
    - "By-election" with candidate Carol
    - voters v1..v4 registered to the general election, w1 to the by-election
    """
    admin = VotingAdmin(store)
    general = await admin.create_session(
        "General election",
        start_time=FIXED_NOW - timedelta(days=1),
        end_time=FIXED_NOW + timedelta(days=1)
    )
    by_election = await admin.create_session("By-election")

    await admin.register_candidate("Alice", general.id)
    await admin.register_candidate("Bob", general.id)
    await admin.register_candidate("Carol", by_election.id)

    for voter_id in ["v1", "v2", "v3", "v4"]:
        await admin.register_voter(voter_id, general.id)
    await admin.register_voter("w1", by_election.id)

    return SimpleNamespace(
        store=store,
        session_id=general.id,
        other_session_id=by_election.id
    )


@pytest.fixture
def coordinator(store: InMemoryRecordStore, clock) -> VoteCoordinator:
    """Coordinator over the in-memory store, session window not enforced."""
    return VoteCoordinator(store, enforce_session_window=False, clock=clock)


@pytest.fixture
def aggregator(store: InMemoryRecordStore) -> TallyAggregator:
    return TallyAggregator(store)


class UnreachableRedis:
    """redis.asyncio client stand-in whose every command fails to connect."""

    def __getattr__(self, name):
        async def command(*args, **kwargs):
            raise redis.ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
        return command


@pytest.fixture
def unreachable_redis_store() -> RedisRecordStore:
    """Redis record store whose server refuses every command."""
    return RedisRecordStore(client=UnreachableRedis())


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "postgres: mark test as requiring a PostgreSQL server"
    )
    config.addinivalue_line(
        "markers",
        "redis: mark test as requiring a Redis server"
    )
