"""
Request and response models for verification submissions, votes and acceptance answers.
"""

from pydantic import BaseModel, ConfigDict
from typing import Optional, List, Dict, Any

from ..core.schema import VerificationClaim, VoteDirection


class SubmissionRequest(BaseModel):
    """HTTP body for a submission; the origin fingerprint comes from the identity layer."""
    model_config = ConfigDict(extra='ignore')

    provider_key: str
    plan_key: str
    location_key: Optional[str] = None
    accepts_insurance: bool
    accepts_new_patients: Optional[bool] = None
    phone_reached: Optional[bool] = None
    phone_correct: Optional[bool] = None
    scheduled_appointment: Optional[bool] = None
    note: Optional[str] = None
    evidence_url: Optional[str] = None
    submitted_by: Optional[str] = None


class VoteRequest(BaseModel):
    direction: VoteDirection


class AcceptanceResponse(BaseModel):
    provider_key: str
    plan_key: str
    location_key: Optional[str] = None
    status: str
    display_status: str
    confidence_score: int
    last_verified_at: Optional[str] = None
    verification_count: int
    expires_at: Optional[str] = None
    updated_at: str
    is_expired: bool


class SubmissionResponse(BaseModel):
    verification: Dict[str, Any]
    acceptance: AcceptanceResponse


class VoteResponse(BaseModel):
    verification: Dict[str, Any]
    direction: str
    previous_direction: Optional[str] = None
    vote_changed: bool
    vote_created: bool
    acceptance: AcceptanceResponse


class ConfidenceResponse(BaseModel):
    provider_key: str
    plan_key: str
    location_key: Optional[str] = None
    score: int
    level: str
    description: str
    factors: Dict[str, int]
    explanation: str
    metadata: Dict[str, Any]
    verification_count: int


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    config_issues: List[str] = []
