"""Tests for the in-memory record store and the store factory."""

from dataclasses import replace
from types import SimpleNamespace

import pytest

from vote_service import (
    ConflictError,
    FailureReason,
    InMemoryRecordStore,
    RecordExistsError,
    Session,
    StoreError,
    Vote,
    create_store,
)


def make_vote(voter_id, candidate_id=1, session_id=1, wallet="", when=None):
    return Vote(
        voter_id=voter_id,
        candidate_id=candidate_id,
        session_id=session_id,
        wallet_address=wallet,
        timestamp=when
    )


@pytest.mark.asyncio
class TestInMemoryRecordStore:

    async def test_save_vote_assigns_ids(self, store, clock):
        first = await store.save_vote(make_vote("v1", when=clock()))
        second = await store.save_vote(make_vote("v2", when=clock()))

        assert first.id == 1
        assert second.id == 2

    async def test_second_vote_for_voter_conflicts(self, store, clock):
        await store.save_vote(make_vote("v1", when=clock()))

        with pytest.raises(ConflictError) as exc_info:
            await store.save_vote(make_vote("v1", session_id=2, when=clock()))

        assert exc_info.value.reason == FailureReason.ALREADY_VOTED

    async def test_wallet_unique_per_session(self, store, clock):
        await store.save_vote(make_vote("v1", wallet="0xw", when=clock()))
        await store.save_vote(make_vote("v2", wallet="0xw", session_id=2, when=clock()))

        with pytest.raises(ConflictError) as exc_info:
            await store.save_vote(make_vote("v3", wallet="0xw", when=clock()))

        assert exc_info.value.reason == FailureReason.WALLET_ALREADY_USED

    async def test_delete_vote_releases_constraints(self, store, clock):
        saved = await store.save_vote(make_vote("v1", wallet="0xw", when=clock()))

        assert await store.delete_vote(saved.id) is True
        assert await store.delete_vote(saved.id) is False
        assert not await store.vote_exists_for_wallet_in_session("0xw", 1)

        again = await store.save_vote(make_vote("v1", wallet="0xw", when=clock()))
        assert again.id != saved.id

    async def test_count_votes_for_candidate(self, store, clock):
        await store.save_vote(make_vote("v1", candidate_id=1, session_id=1, when=clock()))
        await store.save_vote(make_vote("v2", candidate_id=1, session_id=2, when=clock()))
        await store.save_vote(make_vote("v3", candidate_id=2, session_id=1, when=clock()))

        assert await store.count_votes_for_candidate(1) == 2
        assert await store.count_votes_for_candidate(1, session_id=1) == 1
        assert await store.count_votes_for_candidate(3) == 0

    async def test_has_voted_never_resets(self, store):
        voter = await store.add_voter("v1")
        voter.has_voted = True
        await store.save_voter(voter)

        voter.has_voted = False
        with pytest.raises(StoreError):
            await store.save_voter(voter)

        assert (await store.get_voter_by_id("v1")).has_voted is True

    async def test_returned_records_are_copies(self, store):
        await store.add_voter("v1")

        voter = await store.get_voter_by_id("v1")
        voter.has_voted = True

        assert (await store.get_voter_by_id("v1")).has_voted is False

    async def test_duplicate_registration(self, store):
        await store.add_voter("v1")
        await store.add_candidate("Alice")

        with pytest.raises(RecordExistsError):
            await store.add_voter("v1")
        with pytest.raises(RecordExistsError):
            await store.add_candidate("Alice")

    async def test_lists_filter_by_session(self, election):
        store = election.store

        assert [c.name for c in await store.list_candidates(election.session_id)] == ["Alice", "Bob"]
        assert [c.name for c in await store.list_candidates()] == ["Alice", "Bob", "Carol"]
        assert [v.voter_id for v in await store.list_voters(election.other_session_id)] == ["w1"]
        assert len(await store.list_sessions()) == 2

    async def test_transaction_not_supported(self, store):
        assert store.supports_transactions is False
        with pytest.raises(NotImplementedError):
            store.transaction()


class TestCreateStore:

    def test_memory_backend(self):
        assert isinstance(create_store(SimpleNamespace(STORE_BACKEND="memory")), InMemoryRecordStore)

    def test_postgres_backend(self):
        from vote_service.database import PostgresRecordStore

        config = SimpleNamespace(
            STORE_BACKEND="postgres",
            postgres_dsn="postgresql://u:p@db:5432/votes",
            POSTGRES_POOL_MIN_SIZE=1,
            POSTGRES_POOL_MAX_SIZE=3,
            POSTGRES_COMMAND_TIMEOUT=30
        )
        store = create_store(config)

        assert isinstance(store, PostgresRecordStore)
        assert store.supports_transactions is True
        assert store.dsn == "postgresql://u:p@db:5432/votes"
        assert store.max_size == 3

    def test_redis_backend(self):
        from vote_service.redis_store import RedisRecordStore

        config = SimpleNamespace(
            STORE_BACKEND="Redis",
            redis_url="redis://cache:6379/2",
            REDIS_KEY_PREFIX="test"
        )
        store = create_store(config)

        assert isinstance(store, RedisRecordStore)
        assert store.supports_transactions is False
        assert store.url == "redis://cache:6379/2"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(SimpleNamespace(STORE_BACKEND="sqlite"))


@pytest.mark.asyncio
class TestUpdateSession:

    async def test_update_existing_session(self, store):
        session = await store.add_session("Board election")

        updated = await store.update_session(replace(session, title="Board election 2026"))

        assert updated.title == "Board election 2026"
        assert (await store.get_session_by_id(session.id)).title == "Board election 2026"

    async def test_update_unknown_session(self, store):
        assert await store.update_session(Session(id=99, title="Missing")) is None
        assert await store.list_sessions() == []


class ResetConnection:
    """asyncpg connection stand-in whose queries fail mid-flight."""

    async def fetchrow(self, *args, **kwargs):
        raise ConnectionResetError("connection reset by peer")

    fetchval = fetch = fetchrow


@pytest.mark.asyncio
class TestDriverErrors:
    """Backend outages surface as StoreError, not driver exceptions."""

    async def test_redis_lookups(self, unreachable_redis_store):
        store = unreachable_redis_store

        with pytest.raises(StoreError):
            await store.get_voter_by_id("v1")
        with pytest.raises(StoreError):
            await store.vote_exists_for_wallet_in_session("0xw", 1)
        with pytest.raises(StoreError):
            await store.count_votes_for_candidate(1, 1)
        with pytest.raises(StoreError):
            await store.list_candidates()

    async def test_redis_initialize(self, unreachable_redis_store):
        with pytest.raises(StoreError):
            await unreachable_redis_store.initialize()

    async def test_postgres_lookups(self):
        from vote_service.database import PostgresRecordStore

        store = PostgresRecordStore(connection=ResetConnection())

        with pytest.raises(StoreError):
            await store.get_session_by_id(1)
        with pytest.raises(StoreError):
            await store.count_votes_for_candidate(1)
        with pytest.raises(StoreError):
            await store.list_votes()

    async def test_coordinator_propagates_store_error(self, unreachable_redis_store, clock):
        from vote_service import VoteCoordinator

        coordinator = VoteCoordinator(
            unreachable_redis_store,
            enforce_session_window=False,
            clock=clock
        )

        with pytest.raises(StoreError):
            await coordinator.cast_vote("v1", "Alice", 1)
