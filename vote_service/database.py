"""PostgreSQL record store backed by an asyncpg connection pool."""
import asyncpg
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List
import logging

from .models import Candidate, FailureReason, Session, Vote, Voter
from .store import ConflictError, RecordExistsError, RecordStore, StoreError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS voting_sessions (
    id BIGSERIAL PRIMARY KEY,
    title TEXT NOT NULL,
    start_time TIMESTAMPTZ,
    end_time TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS voters (
    id BIGSERIAL PRIMARY KEY,
    voter_id TEXT NOT NULL UNIQUE,
    has_voted BOOLEAN NOT NULL DEFAULT FALSE,
    session_id BIGINT REFERENCES voting_sessions (id)
);

CREATE TABLE IF NOT EXISTS candidates (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    session_id BIGINT REFERENCES voting_sessions (id)
);

CREATE TABLE IF NOT EXISTS votes (
    id BIGSERIAL PRIMARY KEY,
    voter_id TEXT NOT NULL REFERENCES voters (voter_id),
    candidate_id BIGINT NOT NULL REFERENCES candidates (id),
    session_id BIGINT NOT NULL REFERENCES voting_sessions (id),
    wallet_address TEXT NOT NULL DEFAULT '',
    transaction_hash TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT votes_voter_unique UNIQUE (voter_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS votes_wallet_session_unique
    ON votes (wallet_address, session_id)
    WHERE wallet_address <> '';

CREATE INDEX IF NOT EXISTS votes_candidate_session_idx
    ON votes (candidate_id, session_id);
"""

# Unique constraint name -> matching eligibility failure
CONSTRAINT_REASONS = {
    "votes_voter_unique": FailureReason.ALREADY_VOTED,
    "votes_wallet_session_unique": FailureReason.WALLET_ALREADY_USED,
}

VOTE_COLUMNS = "id, voter_id, candidate_id, session_id, wallet_address, transaction_hash, created_at"


def _session_from_row(row) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        start_time=row["start_time"],
        end_time=row["end_time"]
    )


def _voter_from_row(row) -> Voter:
    return Voter(
        voter_id=row["voter_id"],
        has_voted=row["has_voted"],
        session_id=row["session_id"]
    )


def _candidate_from_row(row) -> Candidate:
    return Candidate(id=row["id"], name=row["name"], session_id=row["session_id"])


def _vote_from_row(row) -> Vote:
    return Vote(
        id=row["id"],
        voter_id=row["voter_id"],
        candidate_id=row["candidate_id"],
        session_id=row["session_id"],
        wallet_address=row["wallet_address"],
        transaction_hash=row["transaction_hash"],
        timestamp=row["created_at"]
    )


class PostgresRecordStore(RecordStore):
    """
    Async PostgreSQL record store.

    Uniqueness of votes per voter and per (wallet, session) is enforced by
    the votes table constraints, so concurrent writers cannot both succeed.
    """

    supports_transactions = True

    def __init__(self, dsn: Optional[str] = None, min_size: int = 2, max_size: int = 10,
                 command_timeout: int = 60, connection: Optional[asyncpg.Connection] = None):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None
        # Set when this store is bound to a single connection inside a transaction
        self._connection = connection

    async def initialize(self):
        """Initialize connection pool and apply the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                await conn.execute(SCHEMA_SQL)
                logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise StoreError(f"PostgreSQL unavailable: {e}") from e

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    @asynccontextmanager
    async def _acquire(self):
        if self._connection is not None:
            yield self._connection
            return
        if self.pool is None:
            raise StoreError("PostgreSQL store is not initialized")
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def _guarded(self, what: str):
        """Acquire a connection, reporting driver errors as StoreError."""
        try:
            async with self._acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL error accessing {what}: {e}")
            raise StoreError(f"Failed to access {what}: {e}") from e

    @asynccontextmanager
    async def transaction(self):
        """Yield a store bound to one connection inside a single transaction."""
        if self.pool is None:
            raise StoreError("PostgreSQL store is not initialized")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresRecordStore(connection=conn)

    # Lookups

    async def get_voter_by_id(self, voter_id: str) -> Optional[Voter]:
        async with self._guarded("voter") as conn:
            row = await conn.fetchrow(
                "SELECT voter_id, has_voted, session_id FROM voters WHERE voter_id = $1",
                voter_id
            )
            return _voter_from_row(row) if row else None

    async def get_candidate_by_name(self, name: str) -> Optional[Candidate]:
        async with self._guarded("candidate") as conn:
            row = await conn.fetchrow(
                "SELECT id, name, session_id FROM candidates WHERE name = $1",
                name
            )
            return _candidate_from_row(row) if row else None

    async def get_session_by_id(self, session_id: int) -> Optional[Session]:
        async with self._guarded("session") as conn:
            row = await conn.fetchrow(
                "SELECT id, title, start_time, end_time FROM voting_sessions WHERE id = $1",
                session_id
            )
            return _session_from_row(row) if row else None

    async def vote_exists_for_wallet_in_session(self, wallet_address: str, session_id: int) -> bool:
        async with self._guarded("wallet") as conn:
            return await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM votes
                    WHERE wallet_address = $1 AND session_id = $2
                )
                """,
                wallet_address, session_id
            )

    async def count_votes_for_candidate(self, candidate_id: int, session_id: Optional[int] = None) -> int:
        async with self._guarded("vote count") as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM votes
                WHERE candidate_id = $1
                  AND ($2::BIGINT IS NULL OR session_id = $2)
                """,
                candidate_id, session_id
            )

    # Vote writes

    async def save_vote(self, vote: Vote) -> Vote:
        query = f"""
            INSERT INTO votes
            (voter_id, candidate_id, session_id, wallet_address, transaction_hash, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {VOTE_COLUMNS}
        """
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    vote.voter_id, vote.candidate_id, vote.session_id,
                    vote.wallet_address, vote.transaction_hash, vote.timestamp
                )
                return _vote_from_row(row)

        except asyncpg.UniqueViolationError as e:
            reason = CONSTRAINT_REASONS.get(e.constraint_name)
            if reason is None:
                logger.error(f"Unexpected unique violation saving vote: {e}")
                raise StoreError(f"Duplicate key error: {e}") from e
            logger.warning(f"Vote conflict for voter {vote.voter_id}: {e.constraint_name}")
            raise ConflictError(reason, str(e)) from e
        except asyncpg.PostgresError as e:
            logger.error(f"Error saving vote for voter {vote.voter_id}: {e}")
            raise StoreError(f"Failed to save vote: {e}") from e

    async def save_voter(self, voter: Voter) -> Voter:
        query = """
            INSERT INTO voters (voter_id, has_voted, session_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (voter_id)
            DO UPDATE SET
                has_voted = voters.has_voted OR EXCLUDED.has_voted,
                session_id = EXCLUDED.session_id
            WHERE EXCLUDED.has_voted OR NOT voters.has_voted
            RETURNING voter_id, has_voted, session_id
        """
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(query, voter.voter_id, voter.has_voted, voter.session_id)
                if row is None:
                    raise StoreError(f"Voter {voter.voter_id} has_voted cannot be reset")
                return _voter_from_row(row)
        except asyncpg.PostgresError as e:
            logger.error(f"Error saving voter {voter.voter_id}: {e}")
            raise StoreError(f"Failed to save voter: {e}") from e

    async def delete_vote(self, vote_id: int) -> bool:
        try:
            async with self._acquire() as conn:
                result = await conn.execute("DELETE FROM votes WHERE id = $1", vote_id)
                return result == "DELETE 1"
        except asyncpg.PostgresError as e:
            logger.error(f"Error deleting vote {vote_id}: {e}")
            raise StoreError(f"Failed to delete vote: {e}") from e

    # Administrative records

    async def add_session(self, title: str, start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None) -> Session:
        async with self._guarded("session") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO voting_sessions (title, start_time, end_time)
                VALUES ($1, $2, $3)
                RETURNING id, title, start_time, end_time
                """,
                title, start_time, end_time
            )
            return _session_from_row(row)

    async def update_session(self, session: Session) -> Optional[Session]:
        async with self._guarded("session") as conn:
            row = await conn.fetchrow(
                """
                UPDATE voting_sessions
                SET title = $2, start_time = $3, end_time = $4
                WHERE id = $1
                RETURNING id, title, start_time, end_time
                """,
                session.id, session.title, session.start_time, session.end_time
            )
            return _session_from_row(row) if row else None

    async def add_voter(self, voter_id: str, session_id: Optional[int] = None) -> Voter:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO voters (voter_id, session_id)
                    VALUES ($1, $2)
                    RETURNING voter_id, has_voted, session_id
                    """,
                    voter_id, session_id
                )
                return _voter_from_row(row)
        except asyncpg.UniqueViolationError as e:
            raise RecordExistsError(f"Voter {voter_id} already exists") from e
        except asyncpg.PostgresError as e:
            logger.error(f"Error adding voter {voter_id}: {e}")
            raise StoreError(f"Failed to add voter: {e}") from e

    async def add_candidate(self, name: str, session_id: Optional[int] = None) -> Candidate:
        try:
            async with self._acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO candidates (name, session_id)
                    VALUES ($1, $2)
                    RETURNING id, name, session_id
                    """,
                    name, session_id
                )
                return _candidate_from_row(row)
        except asyncpg.UniqueViolationError as e:
            raise RecordExistsError(f"Candidate {name} already exists") from e
        except asyncpg.PostgresError as e:
            logger.error(f"Error adding candidate {name}: {e}")
            raise StoreError(f"Failed to add candidate: {e}") from e

    async def list_sessions(self) -> List[Session]:
        async with self._guarded("sessions") as conn:
            rows = await conn.fetch(
                "SELECT id, title, start_time, end_time FROM voting_sessions ORDER BY id"
            )
            return [_session_from_row(row) for row in rows]

    async def list_voters(self, session_id: Optional[int] = None) -> List[Voter]:
        async with self._guarded("voters") as conn:
            rows = await conn.fetch(
                """
                SELECT voter_id, has_voted, session_id FROM voters
                WHERE $1::BIGINT IS NULL OR session_id = $1
                ORDER BY id
                """,
                session_id
            )
            return [_voter_from_row(row) for row in rows]

    async def list_candidates(self, session_id: Optional[int] = None) -> List[Candidate]:
        async with self._guarded("candidates") as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, session_id FROM candidates
                WHERE $1::BIGINT IS NULL OR session_id = $1
                ORDER BY id
                """,
                session_id
            )
            return [_candidate_from_row(row) for row in rows]

    async def list_votes(self, session_id: Optional[int] = None) -> List[Vote]:
        async with self._guarded("votes") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {VOTE_COLUMNS} FROM votes
                WHERE $1::BIGINT IS NULL OR session_id = $1
                ORDER BY id
                """,
                session_id
            )
            return [_vote_from_row(row) for row in rows]
