"""Redis record store.

Records are stored as hashes. Vote uniqueness uses SADD on guard sets,
which is atomic: the first writer gets 1, every later writer gets 0.

Key layout (prefix omitted):
    session:{id}              HASH  title, start_time, end_time
    voter:{voter_id}          HASH  voter_id, has_voted, session_id
    candidate:{name}          HASH  id, name, session_id
    vote:{id}                 HASH  vote fields
    sessions / voters / candidates / votes   SET of keys
    voted_voters              SET   voters holding a vote
    session_wallets:{id}      SET   wallets used in a session
    candidate_votes[:{id}]    HASH  candidate_id -> vote count, global and per session
    next_id:{kind}            COUNTER
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as redis

from .models import Candidate, FailureReason, Session, Vote, Voter
from .store import ConflictError, RecordExistsError, RecordStore, StoreError

logger = logging.getLogger(__name__)


def _encode_optional(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _decode_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value else None


def _decode_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RedisRecordStore(RecordStore):
    """
    Redis-backed record store.

    Not transactional across the vote and voter writes; the vote
    coordinator compensates with delete_vote when the voter update fails.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", key_prefix: str = "votes",
                 client: Optional[redis.Redis] = None):
        self.url = url
        self.key_prefix = key_prefix
        self.client = client

    def _key(self, *parts) -> str:
        return ":".join([self.key_prefix, *[str(p) for p in parts]])

    async def initialize(self):
        """Connect and verify the Redis server."""
        try:
            if self.client is None:
                self.client = redis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True
                )
            await self.client.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StoreError(f"Redis unavailable: {e}") from e

    async def close(self):
        try:
            if self.client:
                await self.client.aclose()
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")

    async def check_health(self) -> bool:
        try:
            await self.client.ping()
            return True
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    # Lookups

    @asynccontextmanager
    async def _guarded(self, what: str):
        """Report Redis errors raised inside the block as StoreError."""
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"Redis error accessing {what}: {e}")
            raise StoreError(f"Failed to access {what}: {e}") from e

    async def get_voter_by_id(self, voter_id: str) -> Optional[Voter]:
        async with self._guarded("voter"):
            data = await self.client.hgetall(self._key("voter", voter_id))
        return self._voter(data) if data else None

    async def get_candidate_by_name(self, name: str) -> Optional[Candidate]:
        async with self._guarded("candidate"):
            data = await self.client.hgetall(self._key("candidate", name))
        return self._candidate(data) if data else None

    async def get_session_by_id(self, session_id: int) -> Optional[Session]:
        async with self._guarded("session"):
            data = await self.client.hgetall(self._key("session", session_id))
        if not data:
            return None
        return self._session(session_id, data)

    async def vote_exists_for_wallet_in_session(self, wallet_address: str, session_id: int) -> bool:
        async with self._guarded("wallet"):
            return bool(await self.client.sismember(self._key("session_wallets", session_id), wallet_address))

    async def count_votes_for_candidate(self, candidate_id: int, session_id: Optional[int] = None) -> int:
        key = self._key("candidate_votes") if session_id is None else self._key("candidate_votes", session_id)
        async with self._guarded("vote count"):
            return int(await self.client.hget(key, candidate_id) or 0)

    # Vote writes

    async def save_vote(self, vote: Vote) -> Vote:
        voted_key = self._key("voted_voters")
        wallet_key = self._key("session_wallets", vote.session_id)
        guards = []

        try:
            if not await self.client.sadd(voted_key, vote.voter_id):
                raise ConflictError(FailureReason.ALREADY_VOTED)
            guards.append((voted_key, vote.voter_id))

            if vote.wallet_address:
                if not await self.client.sadd(wallet_key, vote.wallet_address):
                    raise ConflictError(FailureReason.WALLET_ALREADY_USED)
                guards.append((wallet_key, vote.wallet_address))

            vote_id = await self.client.incr(self._key("next_id", "vote"))
            stored = replace(vote, id=vote_id)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("vote", vote_id), mapping=self._vote_mapping(stored))
                pipe.sadd(self._key("votes"), vote_id)
                pipe.hincrby(self._key("candidate_votes"), vote.candidate_id, 1)
                pipe.hincrby(self._key("candidate_votes", vote.session_id), vote.candidate_id, 1)
                await pipe.execute()
            logger.debug(f"Stored vote {vote_id} for voter {vote.voter_id}")
            return stored

        except BaseException as e:
            # Release the guards taken above, including on cancellation
            if guards:
                await asyncio.shield(self._release_guards(guards))
            if isinstance(e, redis.RedisError):
                logger.error(f"Redis error saving vote for voter {vote.voter_id}: {e}")
                raise StoreError(f"Failed to save vote: {e}") from e
            raise

    async def _release_guards(self, guards):
        try:
            for key, member in guards:
                await self.client.srem(key, member)
            logger.info(f"Released {len(guards)} vote guard(s)")
        except redis.RedisError as rollback_error:
            logger.error(f"Failed to rollback vote guards: {rollback_error}")

    async def save_voter(self, voter: Voter) -> Voter:
        key = self._key("voter", voter.voter_id)
        try:
            existing = await self.client.hget(key, "has_voted")
            if existing == "1" and not voter.has_voted:
                raise StoreError(f"Voter {voter.voter_id} has_voted cannot be reset")

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={
                    "voter_id": voter.voter_id,
                    "has_voted": "1" if voter.has_voted else "0",
                    "session_id": _encode_optional(voter.session_id),
                })
                pipe.sadd(self._key("voters"), voter.voter_id)
                await pipe.execute()
            return replace(voter)
        except redis.RedisError as e:
            logger.error(f"Redis error saving voter {voter.voter_id}: {e}")
            raise StoreError(f"Failed to save voter: {e}") from e

    async def delete_vote(self, vote_id: int) -> bool:
        key = self._key("vote", vote_id)
        try:
            data = await self.client.hgetall(key)
            if not data:
                return False
            vote = self._vote(data)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.srem(self._key("votes"), vote_id)
                pipe.hincrby(self._key("candidate_votes"), vote.candidate_id, -1)
                pipe.hincrby(self._key("candidate_votes", vote.session_id), vote.candidate_id, -1)
                pipe.srem(self._key("voted_voters"), vote.voter_id)
                if vote.wallet_address:
                    pipe.srem(self._key("session_wallets", vote.session_id), vote.wallet_address)
                await pipe.execute()
            logger.debug(f"Deleted vote {vote_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Redis error deleting vote {vote_id}: {e}")
            raise StoreError(f"Failed to delete vote: {e}") from e

    # Administrative records

    async def add_session(self, title: str, start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None) -> Session:
        async with self._guarded("session"):
            session_id = await self.client.incr(self._key("next_id", "session"))
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("session", session_id), mapping=self._session_mapping(title, start_time, end_time))
                pipe.sadd(self._key("sessions"), session_id)
                await pipe.execute()
        return Session(id=session_id, title=title, start_time=start_time, end_time=end_time)

    async def update_session(self, session: Session) -> Optional[Session]:
        key = self._key("session", session.id)
        async with self._guarded("session"):
            if not await self.client.exists(key):
                return None
            await self.client.hset(key, mapping=self._session_mapping(
                session.title, session.start_time, session.end_time
            ))
        return replace(session)

    async def add_voter(self, voter_id: str, session_id: Optional[int] = None) -> Voter:
        async with self._guarded("voter"):
            if not await self.client.sadd(self._key("voters"), voter_id):
                raise RecordExistsError(f"Voter {voter_id} already exists")
            await self.client.hset(self._key("voter", voter_id), mapping={
                "voter_id": voter_id,
                "has_voted": "0",
                "session_id": _encode_optional(session_id),
            })
        return Voter(voter_id=voter_id, session_id=session_id)

    async def add_candidate(self, name: str, session_id: Optional[int] = None) -> Candidate:
        async with self._guarded("candidate"):
            if not await self.client.sadd(self._key("candidates"), name):
                raise RecordExistsError(f"Candidate {name} already exists")
            candidate_id = await self.client.incr(self._key("next_id", "candidate"))
            await self.client.hset(self._key("candidate", name), mapping={
                "id": candidate_id,
                "name": name,
                "session_id": _encode_optional(session_id),
            })
        return Candidate(id=candidate_id, name=name, session_id=session_id)

    async def list_sessions(self) -> List[Session]:
        async with self._guarded("sessions"):
            ids = sorted(int(i) for i in await self.client.smembers(self._key("sessions")))
        sessions = [await self.get_session_by_id(i) for i in ids]
        return [s for s in sessions if s is not None]

    async def list_voters(self, session_id: Optional[int] = None) -> List[Voter]:
        records = await self._load_all("voters", "voter")
        voters = [self._voter(data) for data in records]
        return [v for v in voters if session_id is None or v.session_id == session_id]

    async def list_candidates(self, session_id: Optional[int] = None) -> List[Candidate]:
        records = await self._load_all("candidates", "candidate")
        candidates = sorted((self._candidate(data) for data in records), key=lambda c: c.id)
        return [c for c in candidates if session_id is None or c.session_id == session_id]

    async def list_votes(self, session_id: Optional[int] = None) -> List[Vote]:
        records = await self._load_all("votes", "vote")
        votes = sorted((self._vote(data) for data in records), key=lambda v: v.id)
        return [v for v in votes if session_id is None or v.session_id == session_id]

    # Helpers

    async def _load_all(self, index: str, kind: str) -> List[Dict[str, str]]:
        async with self._guarded(index):
            members = await self.client.smembers(self._key(index))
            if not members:
                return []
            async with self.client.pipeline(transaction=False) as pipe:
                for member in members:
                    pipe.hgetall(self._key(kind, member))
                results = await pipe.execute()
        return [data for data in results if data]

    @staticmethod
    def _session(session_id: int, data: Dict[str, str]) -> Session:
        return Session(
            id=session_id,
            title=data["title"],
            start_time=_decode_datetime(data.get("start_time")),
            end_time=_decode_datetime(data.get("end_time"))
        )

    @staticmethod
    def _session_mapping(title: str, start_time: Optional[datetime], end_time: Optional[datetime]) -> Dict[str, str]:
        return {
            "title": title,
            "start_time": _encode_optional(start_time),
            "end_time": _encode_optional(end_time),
        }

    @staticmethod
    def _voter(data: Dict[str, str]) -> Voter:
        return Voter(
            voter_id=data["voter_id"],
            has_voted=data.get("has_voted") == "1",
            session_id=_decode_int(data.get("session_id"))
        )

    @staticmethod
    def _candidate(data: Dict[str, str]) -> Candidate:
        return Candidate(
            id=int(data["id"]),
            name=data["name"],
            session_id=_decode_int(data.get("session_id"))
        )

    @staticmethod
    def _vote(data: Dict[str, str]) -> Vote:
        return Vote(
            id=int(data["id"]),
            voter_id=data["voter_id"],
            candidate_id=int(data["candidate_id"]),
            session_id=int(data["session_id"]),
            wallet_address=data.get("wallet_address", ""),
            transaction_hash=data.get("transaction_hash") or None,
            timestamp=datetime.fromisoformat(data["timestamp"])
        )

    @staticmethod
    def _vote_mapping(vote: Vote) -> Dict[str, str]:
        return {
            "id": str(vote.id),
            "voter_id": vote.voter_id,
            "candidate_id": str(vote.candidate_id),
            "session_id": str(vote.session_id),
            "wallet_address": vote.wallet_address,
            "transaction_hash": _encode_optional(vote.transaction_hash),
            "timestamp": vote.timestamp.isoformat(),
        }
