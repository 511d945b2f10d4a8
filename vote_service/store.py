"""
Record store contract and the in-memory backend.

The store is the single shared mutable resource of the vote service. It
owns the uniqueness constraints that make concurrent vote attempts safe:
at most one vote per voter, and at most one vote per non-empty
(wallet_address, session) pair. Both are enforced atomically inside
save_vote, which raises ConflictError for the losing writer.
"""
import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .models import Candidate, FailureReason, Session, Vote, Voter

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for record store errors."""
    pass


class ConflictError(StoreError):
    """A write violated a uniqueness constraint."""

    def __init__(self, reason: FailureReason, message: str = ""):
        super().__init__(message or f"Uniqueness conflict: {reason.value}")
        self.reason = reason


class RecordExistsError(StoreError):
    """An administrative record with the same key already exists."""
    pass


class PersistenceFailure(StoreError):
    """A vote write failed and the store could not be restored."""
    pass


class RecordStore(ABC):
    """Abstract record store for sessions, voters, candidates and votes."""

    # True when transaction() can group several writes atomically
    supports_transactions = False

    async def initialize(self):
        """Open connections. No-op by default."""

    async def close(self):
        """Release connections. No-op by default."""

    async def check_health(self) -> bool:
        return True

    def transaction(self):
        """
        Async context manager yielding a store whose writes commit together.

        Only available when supports_transactions is True.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support transactions")

    # Lookups

    @abstractmethod
    async def get_voter_by_id(self, voter_id: str) -> Optional[Voter]:
        ...

    @abstractmethod
    async def get_candidate_by_name(self, name: str) -> Optional[Candidate]:
        ...

    @abstractmethod
    async def get_session_by_id(self, session_id: int) -> Optional[Session]:
        ...

    @abstractmethod
    async def vote_exists_for_wallet_in_session(self, wallet_address: str, session_id: int) -> bool:
        ...

    @abstractmethod
    async def count_votes_for_candidate(self, candidate_id: int, session_id: Optional[int] = None) -> int:
        ...

    # Vote writes

    @abstractmethod
    async def save_vote(self, vote: Vote) -> Vote:
        """
        Persist a new vote.

        Returns:
            The stored vote with its assigned id

        Raises:
            ConflictError: voter already has a vote, or wallet already used in the session
        """

    @abstractmethod
    async def save_voter(self, voter: Voter) -> Voter:
        """Persist a voter. has_voted is never reset once stored as True."""

    @abstractmethod
    async def delete_vote(self, vote_id: int) -> bool:
        """Remove a vote. Used only to compensate a failed vote transaction."""

    # Administrative records

    @abstractmethod
    async def add_session(self, title: str, start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None) -> Session:
        ...

    @abstractmethod
    async def update_session(self, session: Session) -> Optional[Session]:
        """Overwrite title and window of an existing session. None if unknown."""
        ...

    @abstractmethod
    async def add_voter(self, voter_id: str, session_id: Optional[int] = None) -> Voter:
        ...

    @abstractmethod
    async def add_candidate(self, name: str, session_id: Optional[int] = None) -> Candidate:
        ...

    @abstractmethod
    async def list_sessions(self) -> List[Session]:
        ...

    @abstractmethod
    async def list_voters(self, session_id: Optional[int] = None) -> List[Voter]:
        ...

    @abstractmethod
    async def list_candidates(self, session_id: Optional[int] = None) -> List[Candidate]:
        ...

    @abstractmethod
    async def list_votes(self, session_id: Optional[int] = None) -> List[Vote]:
        ...


class InMemoryRecordStore(RecordStore):
    """
    Process-local record store.

    Records are copied on the way in and out so callers never hold a
    reference to stored state. Not transactional: a vote and the voter
    update are two separate writes.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sessions: Dict[int, Session] = {}
        self._voters: Dict[str, Voter] = {}
        self._candidates: Dict[str, Candidate] = {}
        self._votes: Dict[int, Vote] = {}

        # Uniqueness indexes
        self._vote_by_voter: Dict[str, int] = {}
        self._wallets: Set[Tuple[str, int]] = set()

        self._session_ids = itertools.count(1)
        self._candidate_ids = itertools.count(1)
        self._vote_ids = itertools.count(1)

    async def get_voter_by_id(self, voter_id: str) -> Optional[Voter]:
        voter = self._voters.get(voter_id)
        return replace(voter) if voter else None

    async def get_candidate_by_name(self, name: str) -> Optional[Candidate]:
        candidate = self._candidates.get(name)
        return replace(candidate) if candidate else None

    async def get_session_by_id(self, session_id: int) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def vote_exists_for_wallet_in_session(self, wallet_address: str, session_id: int) -> bool:
        return (wallet_address, session_id) in self._wallets

    async def count_votes_for_candidate(self, candidate_id: int, session_id: Optional[int] = None) -> int:
        return sum(
            1 for vote in self._votes.values()
            if vote.candidate_id == candidate_id
            and (session_id is None or vote.session_id == session_id)
        )

    async def save_vote(self, vote: Vote) -> Vote:
        async with self._lock:
            if vote.voter_id in self._vote_by_voter:
                raise ConflictError(FailureReason.ALREADY_VOTED)

            wallet_key = (vote.wallet_address, vote.session_id)
            if vote.wallet_address and wallet_key in self._wallets:
                raise ConflictError(FailureReason.WALLET_ALREADY_USED)

            stored = replace(vote, id=next(self._vote_ids))
            self._votes[stored.id] = stored
            self._vote_by_voter[stored.voter_id] = stored.id
            if stored.wallet_address:
                self._wallets.add(wallet_key)

            logger.debug(f"Stored vote {stored.id} for voter {stored.voter_id}")
            return stored

    async def save_voter(self, voter: Voter) -> Voter:
        async with self._lock:
            existing = self._voters.get(voter.voter_id)
            if existing and existing.has_voted and not voter.has_voted:
                raise StoreError(f"Voter {voter.voter_id} has_voted cannot be reset")
            self._voters[voter.voter_id] = replace(voter)
            return replace(voter)

    async def delete_vote(self, vote_id: int) -> bool:
        async with self._lock:
            vote = self._votes.pop(vote_id, None)
            if vote is None:
                return False
            self._vote_by_voter.pop(vote.voter_id, None)
            self._wallets.discard((vote.wallet_address, vote.session_id))
            logger.debug(f"Deleted vote {vote_id}")
            return True

    async def add_session(self, title: str, start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None) -> Session:
        async with self._lock:
            session = Session(
                id=next(self._session_ids),
                title=title,
                start_time=start_time,
                end_time=end_time
            )
            self._sessions[session.id] = session
            return replace(session)

    async def update_session(self, session: Session) -> Optional[Session]:
        async with self._lock:
            if session.id not in self._sessions:
                return None
            self._sessions[session.id] = replace(session)
            return replace(session)

    async def add_voter(self, voter_id: str, session_id: Optional[int] = None) -> Voter:
        async with self._lock:
            if voter_id in self._voters:
                raise RecordExistsError(f"Voter {voter_id} already exists")
            voter = Voter(voter_id=voter_id, session_id=session_id)
            self._voters[voter_id] = voter
            return replace(voter)

    async def add_candidate(self, name: str, session_id: Optional[int] = None) -> Candidate:
        async with self._lock:
            if name in self._candidates:
                raise RecordExistsError(f"Candidate {name} already exists")
            candidate = Candidate(id=next(self._candidate_ids), name=name, session_id=session_id)
            self._candidates[name] = candidate
            return replace(candidate)

    async def list_sessions(self) -> List[Session]:
        return [replace(s) for s in self._sessions.values()]

    async def list_voters(self, session_id: Optional[int] = None) -> List[Voter]:
        return [
            replace(v) for v in self._voters.values()
            if session_id is None or v.session_id == session_id
        ]

    async def list_candidates(self, session_id: Optional[int] = None) -> List[Candidate]:
        return [
            replace(c) for c in self._candidates.values()
            if session_id is None or c.session_id == session_id
        ]

    async def list_votes(self, session_id: Optional[int] = None) -> List[Vote]:
        return [
            v for v in self._votes.values()
            if session_id is None or v.session_id == session_id
        ]


def create_store(config=None) -> RecordStore:
    """
    Build the record store selected by STORE_BACKEND.

    Args:
        config: Settings instance (defaults to the module settings)

    Returns:
        An uninitialized RecordStore
    """
    if config is None:
        from .config import settings as config

    backend = config.STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "postgres":
        from .database import PostgresRecordStore
        return PostgresRecordStore(
            config.postgres_dsn,
            min_size=config.POSTGRES_POOL_MIN_SIZE,
            max_size=config.POSTGRES_POOL_MAX_SIZE,
            command_timeout=config.POSTGRES_COMMAND_TIMEOUT
        )
    if backend == "redis":
        from .redis_store import RedisRecordStore
        return RedisRecordStore(config.redis_url, key_prefix=config.REDIS_KEY_PREFIX)
    raise ValueError(f"Unknown store backend: {config.STORE_BACKEND}")
