"""
Vote transaction coordinator.

Runs the eligibility checks, then records the vote and flips the voter's
has_voted flag as one unit. Transactional stores commit both writes
together; other stores get a compensating delete of the vote when the
voter update fails.
"""
import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from prometheus_client import Counter, Histogram

from .eligibility import EligibilityChecker
from .models import FailureReason, Vote, Voter, VoteResult, get_current_timestamp
from .schemas import VoteRequest
from .store import ConflictError, PersistenceFailure, RecordStore

logger = logging.getLogger(__name__)

# Prometheus metrics
votes_cast = Counter(
    "votes_cast_total",
    "Total number of vote attempts by outcome",
    ["status"]
)

vote_cast_latency = Histogram(
    "vote_cast_latency_seconds",
    "Time spent casting a vote",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

vote_compensations = Counter(
    "vote_compensations_total",
    "Compensating vote deletions after a failed voter update",
    ["outcome"]
)


class VoteCoordinator:
    """Casts votes against a record store."""

    def __init__(self, store: RecordStore, checker: Optional[EligibilityChecker] = None,
                 enforce_session_window: Optional[bool] = None,
                 clock: Callable[[], datetime] = get_current_timestamp):
        if enforce_session_window is None:
            from .config import settings
            enforce_session_window = settings.ENFORCE_SESSION_WINDOW

        self.store = store
        self.clock = clock
        self.checker = checker or EligibilityChecker(
            store,
            enforce_session_window=enforce_session_window,
            clock=clock
        )

    async def submit(self, request: VoteRequest) -> VoteResult:
        """Cast a vote from a validated request."""
        return await self.cast_vote(
            request.voter_id,
            request.candidate_name,
            request.session_id,
            request.wallet_address
        )

    async def cast_vote(self, voter_id: str, candidate_name: str, session_id: int,
                        wallet_address: str = "") -> VoteResult:
        """
        Cast a vote.

        Args:
            voter_id: Caller-supplied voter identifier
            candidate_name: Candidate name
            session_id: Voting session ID
            wallet_address: Wallet address, unique per session when non-empty

        Returns:
            VoteResult: success with the stored vote, or a typed failure

        Raises:
            PersistenceFailure: the voter update failed and the vote could
                not be removed again
        """
        start_time = time.time()
        wallet_address = wallet_address or ""
        context = {
            "voter_id": voter_id,
            "candidate_name": candidate_name,
            "session_id": session_id,
        }

        logger.info(
            f"Processing vote: voter={voter_id}, candidate={candidate_name}, "
            f"session={session_id}, wallet={wallet_address or '-'}"
        )

        try:
            decision = await self.checker.check(voter_id, candidate_name, session_id, wallet_address)
            if not decision.eligible:
                return self._reject(decision.reason, context)

            vote = Vote(
                voter_id=decision.voter.voter_id,
                candidate_id=decision.candidate.id,
                session_id=decision.session.id,
                wallet_address=wallet_address,
                timestamp=self.clock()
            )
            voter = replace(decision.voter, has_voted=True)

            try:
                saved = await self._commit(vote, voter)
            except ConflictError as e:
                # Lost a race with a concurrent vote for the same voter or wallet
                logger.warning(f"Write conflict for voter {voter_id}: {e.reason.value}")
                return self._reject(e.reason, context)
            except PersistenceFailure:
                votes_cast.labels(status=FailureReason.PERSISTENCE_FAILURE.value).inc()
                raise
            except Exception as e:
                logger.error(f"Failed to record vote for voter {voter_id}: {e}", exc_info=True)
                votes_cast.labels(status=FailureReason.PERSISTENCE_FAILURE.value).inc()
                return VoteResult.failure(FailureReason.PERSISTENCE_FAILURE, **context)

            votes_cast.labels(status="success").inc()
            logger.info(f"Vote {saved.id} recorded for voter {voter_id} in session {session_id}")
            return VoteResult.success(saved)

        finally:
            vote_cast_latency.observe(time.time() - start_time)

    async def _commit(self, vote: Vote, voter: Voter) -> Vote:
        """Write the vote and the updated voter, all or nothing."""
        if self.store.supports_transactions:
            async with self.store.transaction() as tx:
                saved = await tx.save_vote(vote)
                await tx.save_voter(voter)
            return saved

        saved = await self.store.save_vote(vote)
        try:
            await self.store.save_voter(voter)
        except BaseException as e:
            # Includes cancellation between the two writes
            logger.error(f"Failed to update voter {voter.voter_id} after vote {saved.id}: {e!r}")
            await self._compensate(saved)
            raise
        return saved

    async def _compensate(self, saved: Vote):
        """Delete a vote whose voter update failed."""
        try:
            deleted = await asyncio.shield(self.store.delete_vote(saved.id))
        except Exception as rollback_error:
            vote_compensations.labels(outcome="failed").inc()
            logger.critical(
                f"Failed to roll back vote {saved.id} for voter {saved.voter_id}: {rollback_error}"
            )
            raise PersistenceFailure(
                f"Vote {saved.id} recorded but voter {saved.voter_id} not marked; rollback failed"
            ) from rollback_error

        vote_compensations.labels(outcome="rolled_back").inc()
        if deleted:
            logger.info(f"Rolled back vote {saved.id} for voter {saved.voter_id}")
        else:
            logger.warning(f"Vote {saved.id} was already gone during rollback")

    def _reject(self, reason: FailureReason, context: dict) -> VoteResult:
        result = VoteResult.failure(reason, **context)
        votes_cast.labels(status=reason.value).inc()
        logger.warning(f"Vote rejected ({reason.value}): {result.message}")
        return result
