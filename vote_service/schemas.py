"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, Field, validator

from .models import VoteResult, as_utc


class VoteRequest(BaseModel):
    """Vote submission request model."""

    voter_id: str = Field(..., alias="voterId", description="Caller-supplied voter identifier")
    candidate_name: str = Field(..., alias="candidateName", description="Candidate name")
    session_id: int = Field(..., alias="sessionId", description="Voting session ID")
    wallet_address: str = Field(default="", alias="walletAddress", description="Wallet address (unique per session)")

    @validator("voter_id", "candidate_name")
    def validate_not_empty(cls, v):
        """Reject blank identifiers."""
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @validator("wallet_address", pre=True)
    def validate_wallet_address(cls, v):
        """Normalise a missing wallet address to an empty string."""
        if v is None:
            return ""
        if not isinstance(v, str):
            raise ValueError("walletAddress must be a string")
        return v.strip()

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "voterId": "VOTER-001",
                "candidateName": "Alice",
                "sessionId": 1,
                "walletAddress": "0x52908400098527886E0F7030069857D2E4169EE7"
            }
        }


class VoteResponse(BaseModel):
    """Vote submission response model."""

    status: str = Field(..., description="accepted or rejected")
    reason: Optional[str] = Field(default=None, description="Failure reason when rejected")
    message: str = Field(..., description="Response message")
    vote_id: Optional[int] = Field(default=None, description="Stored vote ID when accepted")

    @classmethod
    def from_result(cls, result: VoteResult) -> 'VoteResponse':
        """Build the response for a coordinator result."""
        return cls(
            status="accepted" if result.ok else "rejected",
            reason=result.reason.value if result.reason else None,
            message=result.message,
            vote_id=result.vote.id if result.vote else None
        )

    class Config:
        json_schema_extra = {
            "example": {
                "status": "accepted",
                "reason": None,
                "message": "Vote successfully cast.",
                "vote_id": 42
            }
        }


class TallyResponse(BaseModel):
    """Vote tally response model."""

    session_id: Optional[int] = Field(default=None, description="Session filter, None for all sessions")
    results: Dict[str, int] = Field(..., description="Vote count per candidate name")
    total_votes: int = Field(..., description="Total number of votes counted")

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": None,
                "results": {"Alice": 2, "Bob": 1},
                "total_votes": 3
            }
        }


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")


class SessionCreate(BaseModel):
    """Voting session creation payload."""

    title: str = Field(..., min_length=3, max_length=255)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @validator("start_time", "end_time")
    def validate_timezone(cls, v):
        """Store naive datetimes as UTC."""
        return as_utc(v)

    @validator("end_time")
    def validate_window(cls, v, values):
        """End time must come after start time."""
        start = values.get("start_time")
        if v is not None and start is not None and v <= start:
            raise ValueError("end_time must be after start_time")
        return v


class VoterCreate(BaseModel):
    """Voter registration payload."""

    voter_id: str = Field(..., alias="voterId", min_length=1)
    session_id: Optional[int] = Field(default=None, alias="sessionId")

    class Config:
        populate_by_name = True


class CandidateCreate(BaseModel):
    """Candidate registration payload."""

    name: str = Field(..., min_length=1)
    session_id: Optional[int] = Field(default=None, alias="sessionId")

    class Config:
        populate_by_name = True


class SessionUpdate(BaseModel):
    """Partial voting session update; omitted fields are left unchanged."""

    title: Optional[str] = Field(default=None, min_length=3, max_length=255)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @validator("start_time", "end_time")
    def validate_timezone(cls, v):
        """Store naive datetimes as UTC."""
        return as_utc(v)
