"""Tests for the tally aggregator."""

import pytest

from vote_service import SessionNotFoundError, TallyAggregator


@pytest.mark.asyncio
class TestTally:
    """Tallies are computed from stored votes at call time."""

    async def test_global_tally(self, election, coordinator, aggregator):
        """Alice 2, Bob 1 across the general election; Carol listed with 0."""
        await coordinator.cast_vote("v1", "Alice", election.session_id, "")
        await coordinator.cast_vote("v2", "Bob", election.session_id, "")
        await coordinator.cast_vote("v3", "Alice", election.session_id, "")

        result = await aggregator.tally()

        assert result.results == {"Alice": 2, "Bob": 1, "Carol": 0}
        assert result.total_votes == 3
        assert result.session_id is None
        assert result.leaders() == ["Alice"]

    async def test_global_tally_counts_every_session(self, election, coordinator, aggregator):
        await coordinator.cast_vote("v1", "Alice", election.session_id, "")
        await coordinator.cast_vote("w1", "Alice", election.other_session_id, "")

        result = await aggregator.tally()

        assert result.results["Alice"] == 2

    async def test_session_tally(self, election, coordinator, aggregator):
        await coordinator.cast_vote("v1", "Alice", election.session_id, "")
        await coordinator.cast_vote("v2", "Bob", election.session_id, "")
        await coordinator.cast_vote("w1", "Carol", election.other_session_id, "")

        general = await aggregator.tally(election.session_id)
        by_election = await aggregator.tally(election.other_session_id)

        assert general.results == {"Alice": 1, "Bob": 1}
        assert general.session_id == election.session_id
        assert general.leaders() == ["Alice", "Bob"]
        assert by_election.results == {"Carol": 1}

    async def test_session_tally_ignores_other_sessions_votes(self, election, coordinator, aggregator):
        """A vote for Alice cast in the by-election does not count in the general election."""
        await coordinator.cast_vote("w1", "Alice", election.other_session_id, "")

        general = await aggregator.tally(election.session_id)
        by_election = await aggregator.tally(election.other_session_id)

        assert general.results == {"Alice": 0, "Bob": 0}
        assert by_election.results == {"Carol": 0}

    async def test_unknown_session(self, election, aggregator):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await aggregator.tally(999)

        assert exc_info.value.session_id == 999

    async def test_empty_store(self, store):
        result = await TallyAggregator(store).tally()

        assert result.results == {}
        assert result.total_votes == 0
        assert result.leaders() == []

    async def test_response_model(self, election, coordinator, aggregator):
        await coordinator.cast_vote("v1", "Alice", election.session_id, "")

        response = (await aggregator.tally(election.session_id)).to_response()

        assert response.model_dump() == {
            "session_id": election.session_id,
            "results": {"Alice": 1, "Bob": 0},
            "total_votes": 1,
        }
