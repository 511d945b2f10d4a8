"""Administrative record operations: sessions, voters and candidates."""
import csv
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, TextIO

from .models import Candidate, Session, Voter
from .schemas import CandidateCreate, SessionCreate, SessionUpdate, VoterCreate
from .store import RecordExistsError, RecordStore, StoreError
from .tally import SessionNotFoundError

logger = logging.getLogger(__name__)


class AdminError(ValueError):
    """An administrative request that cannot be applied as given."""


class VoterImportError(AdminError):
    """A voter file failed validation; nothing was imported."""

    def __init__(self, errors: List[str]):
        super().__init__(f"Voter file rejected: {len(errors)} error(s)")
        self.errors = errors


class VoterNotFoundError(LookupError):
    """No voter is registered under the given identifier."""

    def __init__(self, voter_id: str):
        super().__init__(f"Voter not found: {voter_id}")
        self.voter_id = voter_id


@dataclass
class ImportReport:
    """Outcome of a bulk voter import."""
    added: int = 0
    existing: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def read_voter_rows(stream: TextIO) -> List[Dict[str, str]]:
    """
    Read voter rows from a CSV file with a ``voter_id`` header column.

    Raises:
        VoterImportError: the header has no voter_id column
    """
    reader = csv.DictReader(stream)
    if reader.fieldnames is None or "voter_id" not in reader.fieldnames:
        raise VoterImportError(['CSV must have a "voter_id" column'])
    return list(reader)


class VotingAdmin:
    """Creates and lists the records votes refer to."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def create_session(self, title: str, start_time: Optional[datetime] = None,
                             end_time: Optional[datetime] = None) -> Session:
        payload = SessionCreate(title=title, start_time=start_time, end_time=end_time)
        session = await self.store.add_session(payload.title, payload.start_time, payload.end_time)
        logger.info(f"Created voting session {session.id}: {session.title}")
        return session

    async def update_session(self, session_id: int, title: Optional[str] = None,
                             start_time: Optional[datetime] = None,
                             end_time: Optional[datetime] = None) -> Session:
        """
        Change the title or window of a session.

        Only the given fields change. The resulting window must still
        end after it starts.

        Raises:
            AdminError: no field given
            SessionNotFoundError: unknown session
            ValidationError: invalid title or window
        """
        changes = SessionUpdate(title=title, start_time=start_time, end_time=end_time).model_dump(exclude_none=True)
        if not changes:
            raise AdminError("No fields to update")

        session = await self.store.get_session_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        updated = replace(session, **changes)
        SessionCreate(title=updated.title, start_time=updated.start_time, end_time=updated.end_time)

        saved = await self.store.update_session(updated)
        if saved is None:
            raise SessionNotFoundError(session_id)
        logger.info(f"Updated voting session {session_id}: {', '.join(sorted(changes))}")
        return saved

    async def register_voter(self, voter_id: str, session_id: Optional[int] = None) -> Voter:
        payload = VoterCreate(voter_id=voter_id, session_id=session_id)
        await self._require_session(payload.session_id)
        voter = await self.store.add_voter(payload.voter_id, payload.session_id)
        logger.info(f"Registered voter {voter.voter_id}")
        return voter

    async def import_voters(self, session_id: int, rows: Iterable[Dict[str, str]]) -> ImportReport:
        """
        Register voters for a session in bulk.

        Every row is validated first; if any row is invalid nothing is
        written. Voters that are already registered are counted as
        existing and left unchanged.

        Args:
            session_id: Session the voters are registered to
            rows: Mappings with a voter_id key, e.g. from read_voter_rows

        Returns:
            ImportReport: added and existing counts, per-voter write errors

        Raises:
            SessionNotFoundError: unknown session
            VoterImportError: invalid rows, or no rows at all
        """
        await self._require_session(session_id)

        voter_ids = []
        errors = []
        seen = set()
        # Row 1 is the header
        for row_number, row in enumerate(rows, start=2):
            voter_id = (row.get("voter_id") or "").strip()
            if not voter_id:
                errors.append(f"Row {row_number}: Missing required field (voter_id)")
                continue
            if voter_id in seen:
                errors.append(f"Row {row_number}: Duplicate voter_id {voter_id}")
                continue
            seen.add(voter_id)
            voter_ids.append(voter_id)

        if errors:
            raise VoterImportError(errors)
        if not voter_ids:
            raise VoterImportError(["No valid voters found in file"])

        report = ImportReport()
        for voter_id in voter_ids:
            try:
                await self.store.add_voter(voter_id, session_id)
                report.added += 1
            except RecordExistsError:
                report.existing += 1
            except StoreError as e:
                logger.error(f"Failed to import voter {voter_id}: {e}")
                report.errors.append(f"Failed to process {voter_id}: {e}")

        logger.info(
            f"Imported voters into session {session_id}: added={report.added}, "
            f"existing={report.existing}, errors={len(report.errors)}"
        )
        return report

    async def register_candidate(self, name: str, session_id: Optional[int] = None) -> Candidate:
        payload = CandidateCreate(name=name, session_id=session_id)
        await self._require_session(payload.session_id)
        candidate = await self.store.add_candidate(payload.name, payload.session_id)
        logger.info(f"Registered candidate {candidate.name} ({candidate.id})")
        return candidate

    async def get_voter(self, voter_id: str) -> Voter:
        voter = await self.store.get_voter_by_id(voter_id)
        if voter is None:
            raise VoterNotFoundError(voter_id)
        return voter

    async def list_sessions(self) -> List[Session]:
        return await self.store.list_sessions()

    async def list_voters(self, session_id: Optional[int] = None) -> List[Voter]:
        return await self.store.list_voters(session_id)

    async def list_candidates(self, session_id: Optional[int] = None) -> List[Candidate]:
        return await self.store.list_candidates(session_id)

    async def _require_session(self, session_id: Optional[int]):
        if session_id is not None and await self.store.get_session_by_id(session_id) is None:
            raise SessionNotFoundError(session_id)
