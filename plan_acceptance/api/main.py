"""
HTTP surface for the acceptance directory: submissions, votes and acceptance lookups.
"""

import hashlib
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from .schemas import (
    AcceptanceResponse,
    ConfidenceResponse,
    HealthResponse,
    SubmissionRequest,
    SubmissionResponse,
    VoteRequest,
    VoteResponse,
)
from ..core.config import VERSION, debug_enabled, validate_consensus_config
from ..core.db import health_check
from ..core.errors import (
    ConcurrencyConflictError,
    ConsensusError,
    DuplicateSubmissionError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from ..core.schema import AcceptanceRecord
from ..core.service import AcceptanceDirectory

app = FastAPI(
    title="Plan Acceptance API",
    version=VERSION,
    description="Crowdsourced provider/insurance-plan acceptance with confidence scoring",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_directory: Optional[AcceptanceDirectory] = None


def get_directory() -> AcceptanceDirectory:
    """Process-wide directory over the configured database."""
    global _directory
    if _directory is None:
        _directory = AcceptanceDirectory()
    return _directory


def origin_fingerprint(request: Request, x_origin_fingerprint: Optional[str] = Header(default=None)) -> str:
    """Fingerprint set by the identity layer, or a hash of the client address."""
    if x_origin_fingerprint and x_origin_fingerprint.strip():
        return x_origin_fingerprint.strip()
    host = request.client.host if request.client else "unknown"
    return hashlib.sha256(host.encode("utf-8")).hexdigest()


def to_http_error(error: ConsensusError) -> HTTPException:
    if isinstance(error, ValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in error.errors if isinstance(err, dict)
        ]
        return HTTPException(status_code=422, detail={"message": str(error), "errors": errors})
    if isinstance(error, DuplicateSubmissionError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConcurrencyConflictError):
        return HTTPException(status_code=503, detail=str(error), headers={"Retry-After": "1"})
    if isinstance(error, StoreUnavailableError):
        return HTTPException(status_code=503, detail="Acceptance store unavailable")
    return HTTPException(status_code=500, detail=str(error))


def acceptance_response(record: AcceptanceRecord, now: datetime) -> AcceptanceResponse:
    data = record.to_dict()
    data.pop("version", None)
    return AcceptanceResponse(
        **data,
        display_status=record.display_status(now).value,
        is_expired=record.is_expired(now),
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        config_issues=validate_consensus_config()
    )


@app.post("/verifications", response_model=SubmissionResponse, status_code=201)
def submit_verification(req: SubmissionRequest,
                        fingerprint: str = Depends(origin_fingerprint),
                        directory: AcceptanceDirectory = Depends(get_directory)):
    claim = req.model_dump()
    claim["origin_fingerprint"] = fingerprint
    try:
        result = directory.submit(claim)
    except ConsensusError as e:
        raise to_http_error(e)

    return SubmissionResponse(
        verification=result.verification.public_dict(),
        acceptance=acceptance_response(result.acceptance, directory.clock())
    )


@app.post("/verifications/{verification_id}/votes", response_model=VoteResponse)
def vote_on_verification(verification_id: str, req: VoteRequest,
                         fingerprint: str = Depends(origin_fingerprint),
                         directory: AcceptanceDirectory = Depends(get_directory)):
    try:
        outcome = directory.cast_vote(verification_id, fingerprint, req.direction)
    except ConsensusError as e:
        raise to_http_error(e)

    vote = outcome.vote
    return VoteResponse(
        verification=vote.verification.public_dict(),
        direction=vote.direction.value,
        previous_direction=vote.previous_direction.value if vote.previous_direction else None,
        vote_changed=vote.vote_changed,
        vote_created=vote.vote_created,
        acceptance=acceptance_response(outcome.acceptance, directory.clock())
    )


@app.get("/acceptance/{provider_key}/{plan_key}", response_model=AcceptanceResponse)
def get_acceptance_endpoint(provider_key: str, plan_key: str, location_key: Optional[str] = None,
                            directory: AcceptanceDirectory = Depends(get_directory)):
    try:
        record = directory.get_acceptance(provider_key, plan_key, location_key)
    except ConsensusError as e:
        raise to_http_error(e)

    if record is None:
        raise HTTPException(status_code=404, detail="No acceptance answer for this provider and plan")
    return acceptance_response(record, directory.clock())


@app.get("/acceptance/{provider_key}/{plan_key}/confidence", response_model=ConfidenceResponse)
def explain_confidence_endpoint(provider_key: str, plan_key: str, location_key: Optional[str] = None,
                                directory: AcceptanceDirectory = Depends(get_directory)):
    try:
        explanation = directory.explain_confidence(provider_key, plan_key, location_key)
    except ConsensusError as e:
        raise to_http_error(e)

    confidence = explanation.confidence
    return ConfidenceResponse(
        **explanation.key.to_dict(),
        score=confidence.score,
        level=confidence.level.value,
        description=confidence.description,
        factors=confidence.factors.to_dict(),
        explanation=confidence.explanation,
        metadata=confidence.metadata.to_dict(),
        verification_count=explanation.verification_count
    )
