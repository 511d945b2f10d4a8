"""
Session-based vote recording and tallying.

This package contains:
- Domain records (Session, Voter, Candidate, Vote) and failure reasons
- Record stores (in-memory, PostgreSQL, Redis)
- The eligibility checker and vote transaction coordinator
- The tally aggregator and administrative operations
"""

from .models import (
    Session,
    Voter,
    Candidate,
    Vote,
    FailureReason,
    VoteResult,
    get_current_timestamp,
)
from .schemas import VoteRequest, VoteResponse, TallyResponse, ErrorResponse
from .store import (
    RecordStore,
    InMemoryRecordStore,
    StoreError,
    ConflictError,
    RecordExistsError,
    PersistenceFailure,
    create_store,
)
from .eligibility import EligibilityChecker, EligibilityDecision
from .coordinator import VoteCoordinator
from .tally import TallyAggregator, TallyResult, SessionNotFoundError
from .admin import (
    VotingAdmin,
    AdminError,
    VoterImportError,
    VoterNotFoundError,
    ImportReport,
    read_voter_rows,
)

__all__ = [
    'Session',
    'Voter',
    'Candidate',
    'Vote',
    'FailureReason',
    'VoteResult',
    'get_current_timestamp',
    'VoteRequest',
    'VoteResponse',
    'TallyResponse',
    'ErrorResponse',
    'RecordStore',
    'InMemoryRecordStore',
    'StoreError',
    'ConflictError',
    'RecordExistsError',
    'PersistenceFailure',
    'create_store',
    'EligibilityChecker',
    'EligibilityDecision',
    'VoteCoordinator',
    'TallyAggregator',
    'TallyResult',
    'SessionNotFoundError',
    'VotingAdmin',
    'AdminError',
    'VoterImportError',
    'VoterNotFoundError',
    'ImportReport',
    'read_voter_rows',
]

__version__ = '1.0.0'
