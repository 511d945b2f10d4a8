"""
Command line entry point for the vote service.

Examples:
    python -m vote_service init-db
    python -m vote_service add-session "Board election 2026"
    python -m vote_service add-candidate Alice --session 1
    python -m vote_service add-voter VOTER-001 --session 1
    python -m vote_service import-voters 1 voters.csv
    python -m vote_service update-session 1 --end 2026-06-01T18:00:00
    python -m vote_service list-voters --session 1
    python -m vote_service show-voter VOTER-001
    python -m vote_service cast VOTER-001 Alice 1 --wallet 0xabc...
    python -m vote_service tally --session 1
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from .admin import AdminError, VoterImportError, VotingAdmin, read_voter_rows
from .config import settings
from .coordinator import VoteCoordinator
from .schemas import ErrorResponse, VoteRequest, VoteResponse
from .store import RecordStore, StoreError, create_store
from .tally import TallyAggregator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vote_service",
        description="Cast votes and compute tallies against the configured record store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Connect to the store and apply its schema")

    session_parser = subparsers.add_parser("add-session", help="Create a voting session")
    session_parser.add_argument("title", help="Session title")
    session_parser.add_argument("--start", help="Start time (ISO 8601)")
    session_parser.add_argument("--end", help="End time (ISO 8601)")

    update_parser = subparsers.add_parser("update-session", help="Change a session's title or window")
    update_parser.add_argument("session_id", type=int, help="Session ID")
    update_parser.add_argument("--title", help="New title")
    update_parser.add_argument("--start", help="New start time (ISO 8601)")
    update_parser.add_argument("--end", help="New end time (ISO 8601)")

    subparsers.add_parser("list-sessions", help="List voting sessions")

    candidate_parser = subparsers.add_parser("add-candidate", help="Register a candidate")
    candidate_parser.add_argument("name", help="Candidate name")
    candidate_parser.add_argument("--session", type=int, help="Session ID")

    candidates_parser = subparsers.add_parser("list-candidates", help="List candidates")
    candidates_parser.add_argument("--session", type=int, help="Restrict to one session")

    voter_parser = subparsers.add_parser("add-voter", help="Register a voter")
    voter_parser.add_argument("voter_id", help="Voter identifier")
    voter_parser.add_argument("--session", type=int, help="Session ID")

    import_parser = subparsers.add_parser("import-voters", help="Register voters from a CSV file")
    import_parser.add_argument("session_id", type=int, help="Session ID")
    import_parser.add_argument("csv_file", help="CSV file with a voter_id column")

    voters_parser = subparsers.add_parser("list-voters", help="List voters")
    voters_parser.add_argument("--session", type=int, help="Restrict to one session")

    show_parser = subparsers.add_parser("show-voter", help="Show one voter")
    show_parser.add_argument("voter_id", help="Voter identifier")

    cast_parser = subparsers.add_parser("cast", help="Cast a vote")
    cast_parser.add_argument("voter_id", help="Voter identifier")
    cast_parser.add_argument("candidate_name", help="Candidate name")
    cast_parser.add_argument("session_id", type=int, help="Session ID")
    cast_parser.add_argument("--wallet", default="", help="Wallet address")

    tally_parser = subparsers.add_parser("tally", help="Count votes per candidate")
    tally_parser.add_argument("--session", type=int, help="Restrict to one session")

    return parser


def _print(payload):
    print(json.dumps(payload, indent=2, default=str))


async def run_command(args: argparse.Namespace, store: RecordStore) -> int:
    """Execute a parsed command against an initialized store."""
    admin = VotingAdmin(store)

    if args.command == "init-db":
        _print({"status": "ok", "backend": settings.STORE_BACKEND})
        return 0

    if args.command == "add-session":
        session = await admin.create_session(args.title, args.start, args.end)
        _print(session.to_dict())
        return 0

    if args.command == "update-session":
        session = await admin.update_session(args.session_id, args.title, args.start, args.end)
        _print(session.to_dict())
        return 0

    if args.command == "list-sessions":
        _print([s.to_dict() for s in await admin.list_sessions()])
        return 0

    if args.command == "add-candidate":
        candidate = await admin.register_candidate(args.name, args.session)
        _print(candidate.to_dict())
        return 0

    if args.command == "list-candidates":
        _print([c.to_dict() for c in await admin.list_candidates(args.session)])
        return 0

    if args.command == "add-voter":
        voter = await admin.register_voter(args.voter_id, args.session)
        _print(voter.to_dict())
        return 0

    if args.command == "import-voters":
        with open(args.csv_file, newline="", encoding="utf-8") as f:
            rows = read_voter_rows(f)
        report = await admin.import_voters(args.session_id, rows)
        _print(report.to_dict())
        return 0 if not report.errors else 1

    if args.command == "list-voters":
        _print([v.to_dict() for v in await admin.list_voters(args.session)])
        return 0

    if args.command == "show-voter":
        voter = await admin.get_voter(args.voter_id)
        _print(voter.to_dict())
        return 0

    if args.command == "cast":
        request = VoteRequest(
            voter_id=args.voter_id,
            candidate_name=args.candidate_name,
            session_id=args.session_id,
            wallet_address=args.wallet
        )
        result = await VoteCoordinator(store).submit(request)
        _print(VoteResponse.from_result(result).model_dump())
        return 0 if result.ok else 1

    if args.command == "tally":
        result = await TallyAggregator(store).tally(args.session)
        _print(result.to_response().model_dump())
        return 0

    raise ValueError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace) -> int:
    store = create_store(settings)
    try:
        await store.initialize()
        return await run_command(args, store)
    except (ValidationError, LookupError, AdminError, StoreError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        details = {"errors": e.errors} if isinstance(e, VoterImportError) else {}
        _print(ErrorResponse(error=type(e).__name__, message=str(e), details=details).model_dump())
        return 1
    finally:
        await store.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))
