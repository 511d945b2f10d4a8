"""Read-side vote tallies, computed from stored votes on every call."""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .schemas import TallyResponse
from .store import RecordStore

logger = logging.getLogger(__name__)


class SessionNotFoundError(LookupError):
    """A scoped tally was requested for an unknown session."""

    def __init__(self, session_id: int):
        super().__init__(f"Voting session not found: {session_id}")
        self.session_id = session_id


@dataclass
class TallyResult:
    """Vote count per candidate name, optionally scoped to a session."""
    results: Dict[str, int] = field(default_factory=dict)
    session_id: Optional[int] = None

    @property
    def total_votes(self) -> int:
        return sum(self.results.values())

    def leaders(self) -> List[str]:
        """Candidate names with the highest count (ties included)."""
        if not self.total_votes:
            return []
        top = max(self.results.values())
        return [name for name, count in self.results.items() if count == top]

    def to_response(self) -> TallyResponse:
        return TallyResponse(
            session_id=self.session_id,
            results=dict(self.results),
            total_votes=self.total_votes
        )


class TallyAggregator:
    """Counts votes per candidate."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def tally(self, session_id: Optional[int] = None) -> TallyResult:
        """
        Count votes per candidate.

        Without a session, every candidate is counted across all sessions.
        With a session, only that session's candidates and votes count.

        Args:
            session_id: Optional session filter

        Returns:
            TallyResult: candidate name -> vote count

        Raises:
            SessionNotFoundError: session_id given but unknown
        """
        if session_id is not None:
            session = await self.store.get_session_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

        candidates = await self.store.list_candidates(session_id)
        results = {}
        for candidate in candidates:
            results[candidate.name] = await self.store.count_votes_for_candidate(candidate.id, session_id)

        result = TallyResult(results=results, session_id=session_id)
        logger.info(
            f"Tally computed: session={session_id if session_id is not None else 'all'}, "
            f"candidates={len(results)}, total_votes={result.total_votes}"
        )
        return result
