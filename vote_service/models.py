"""
Domain records and result types for the vote service.

This module contains:
- Session, Voter, Candidate, Vote: records held by the record store
- FailureReason: typed reasons a vote can be refused
- VoteResult: outcome of a cast vote, consumable by a presentation layer
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Optional, Dict, Any


def get_current_timestamp() -> datetime:
    """
    Get current UTC timestamp.

    Returns:
        datetime: timezone-aware UTC datetime
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class Session:
    """
    A time-bounded voting event.

    Attributes:
        id: Store-assigned identifier
        title: Display title
        start_time: When voting opens (optional)
        end_time: When voting closes (optional)
    """
    id: int
    title: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def has_started(self, now: datetime) -> bool:
        return self.start_time is None or as_utc(self.start_time) <= now

    def has_ended(self, now: datetime) -> bool:
        return self.end_time is not None and as_utc(self.end_time) < now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Voter:
    """
    A registered voter.

    has_voted only ever flips from False to True, through a committed vote.
    """
    voter_id: str
    has_voted: bool = False
    session_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Candidate:
    """A candidate, unique by name."""
    id: int
    name: str
    session_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Vote:
    """
    An immutable cast vote.

    Attributes:
        voter_id: Voter who cast the vote
        candidate_id: Candidate voted for
        session_id: Session the vote belongs to
        wallet_address: Secondary dedup key, unique per session when non-empty
        timestamp: Creation time
        transaction_hash: External ledger reference, if any
        id: Store-assigned identifier (None until saved)
    """
    voter_id: str
    candidate_id: int
    session_id: int
    wallet_address: str
    timestamp: datetime
    transaction_hash: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class FailureReason(str, Enum):
    """Reasons a vote is refused."""
    VOTER_NOT_FOUND = "voter_not_found"
    ALREADY_VOTED = "already_voted"
    CANDIDATE_NOT_FOUND = "candidate_not_found"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_NOT_STARTED = "session_not_started"
    SESSION_ENDED = "session_ended"
    WALLET_ALREADY_USED = "wallet_already_used"
    PERSISTENCE_FAILURE = "persistence_failure"

    @property
    def status_code(self) -> int:
        """HTTP-equivalent status for a presentation layer."""
        if self is FailureReason.PERSISTENCE_FAILURE:
            return HTTPStatus.INTERNAL_SERVER_ERROR
        return HTTPStatus.BAD_REQUEST

    def describe(self, **context) -> str:
        """Render the user-facing message for this reason."""
        return FAILURE_MESSAGES[self].format_map(_MissingKeys(context))


class _MissingKeys(dict):
    def __missing__(self, key):
        return "?"


FAILURE_MESSAGES = {
    FailureReason.VOTER_NOT_FOUND: "Voter not found: {voter_id}. Please register as a voter first.",
    FailureReason.ALREADY_VOTED: "Voter {voter_id} has already voted",
    FailureReason.CANDIDATE_NOT_FOUND: "Candidate not found: {candidate_name}. Please check available candidates.",
    FailureReason.SESSION_NOT_FOUND: "Voting session not found: {session_id}. Please check active sessions.",
    FailureReason.SESSION_NOT_STARTED: "Voting session {session_id} has not started yet",
    FailureReason.SESSION_ENDED: "Voting session {session_id} has ended",
    FailureReason.WALLET_ALREADY_USED: "This wallet address has already been used to vote in this session",
    FailureReason.PERSISTENCE_FAILURE: "Failed to record vote",
}


@dataclass
class VoteResult:
    """
    Outcome of a cast vote.

    Attributes:
        ok: True if the vote was recorded
        reason: Failure reason when ok is False
        message: User-facing message
        vote: The stored vote when ok is True
    """
    ok: bool
    reason: Optional[FailureReason] = None
    message: str = "Vote successfully cast."
    vote: Optional[Vote] = field(default=None, compare=False)

    @classmethod
    def success(cls, vote: Vote) -> 'VoteResult':
        return cls(ok=True, vote=vote)

    @classmethod
    def failure(cls, reason: FailureReason, **context) -> 'VoteResult':
        return cls(ok=False, reason=reason, message=reason.describe(**context))

    @property
    def status_code(self) -> int:
        if self.ok:
            return HTTPStatus.OK
        return self.reason.status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "vote": self.vote.to_dict() if self.vote else None,
        }
