"""Eligibility checks run before a vote is written."""
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from datetime import datetime

from .models import Candidate, FailureReason, Session, Voter, get_current_timestamp
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class EligibilityDecision:
    """
    Result of an eligibility check.

    On success the loaded records are attached so the coordinator does
    not read them twice.
    """
    reason: Optional[FailureReason] = None
    message: str = ""
    voter: Optional[Voter] = None
    candidate: Optional[Candidate] = None
    session: Optional[Session] = None

    @property
    def eligible(self) -> bool:
        return self.reason is None


class EligibilityChecker:
    """
    Decides whether a vote may proceed. Reads only, never writes.

    Checks run in a fixed order and stop at the first failure:
    voter exists, voter has not voted, candidate exists, session exists,
    (optionally) session window is open, wallet unused in the session.

    Voter and candidate are looked up globally, not per session.
    """

    def __init__(self, store: RecordStore, enforce_session_window: bool = False,
                 clock: Callable[[], datetime] = get_current_timestamp):
        self.store = store
        self.enforce_session_window = enforce_session_window
        self.clock = clock

    async def check(self, voter_id: str, candidate_name: str, session_id: int,
                    wallet_address: str = "") -> EligibilityDecision:
        """
        Run the eligibility checks for a vote request.

        Args:
            voter_id: Caller-supplied voter identifier
            candidate_name: Candidate name
            session_id: Voting session ID
            wallet_address: Wallet address, empty to skip the wallet check

        Returns:
            EligibilityDecision: eligible, or the first failing reason
        """
        context = {
            "voter_id": voter_id,
            "candidate_name": candidate_name,
            "session_id": session_id,
        }

        voter = await self.store.get_voter_by_id(voter_id)
        if voter is None:
            return self._refuse(FailureReason.VOTER_NOT_FOUND, context)

        if voter.has_voted:
            return self._refuse(FailureReason.ALREADY_VOTED, context)

        candidate = await self.store.get_candidate_by_name(candidate_name)
        if candidate is None:
            return self._refuse(FailureReason.CANDIDATE_NOT_FOUND, context)

        session = await self.store.get_session_by_id(session_id)
        if session is None:
            return self._refuse(FailureReason.SESSION_NOT_FOUND, context)

        if self.enforce_session_window:
            now = self.clock()
            if not session.has_started(now):
                return self._refuse(FailureReason.SESSION_NOT_STARTED, context)
            if session.has_ended(now):
                return self._refuse(FailureReason.SESSION_ENDED, context)

        if wallet_address and await self.store.vote_exists_for_wallet_in_session(wallet_address, session_id):
            return self._refuse(FailureReason.WALLET_ALREADY_USED, context)

        return EligibilityDecision(voter=voter, candidate=candidate, session=session)

    @staticmethod
    def _refuse(reason: FailureReason, context: dict) -> EligibilityDecision:
        message = reason.describe(**context)
        logger.debug(f"Ineligible vote ({reason.value}): {message}")
        return EligibilityDecision(reason=reason, message=message)
