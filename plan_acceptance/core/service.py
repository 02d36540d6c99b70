"""
AcceptanceDirectory: the facade collaborators call.

Every mutation returns the key it dirtied and the facade recomputes that key
before returning, so callers always get the updated acceptance answer back.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from ..util.logging import audit_event, logger
from .confidence import ConfidenceResult
from .consensus import ConsensusEngine, SpecialtyLookup
from .db import init_db, utc_now
from .errors import ConcurrencyConflictError
from .ledger import VerificationLedger
from .maintenance import MaintenanceReport, run_expiry_sweep
from .schema import AcceptanceKey, AcceptanceRecord, VerificationClaim, VerificationEntry, VoteDirection
from .votes import VoteAggregator, VoteResult


@dataclass
class SubmissionResult:
    verification: VerificationEntry
    acceptance: AcceptanceRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verification": self.verification.public_dict(),
            "acceptance": self.acceptance.to_dict(),
        }


@dataclass
class VoteOutcome:
    vote: VoteResult
    acceptance: AcceptanceRecord

    def to_dict(self) -> Dict[str, Any]:
        data = self.vote.to_dict()
        data["acceptance"] = self.acceptance.to_dict()
        return data


@dataclass
class ConfidenceExplanation:
    """Read-only breakdown of how confident the directory is in one answer."""
    key: AcceptanceKey
    confidence: ConfidenceResult
    verification_count: int
    acceptance: Optional[AcceptanceRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.key.to_dict()
        data.update(self.confidence.to_dict())
        data["verification_count"] = self.verification_count
        data["acceptance"] = self.acceptance.to_dict() if self.acceptance else None
        return data


class AcceptanceDirectory:
    """Submission, voting and lookup of provider/plan acceptance answers."""

    def __init__(self, db_path: Optional[str] = None, specialty_lookup: Optional[SpecialtyLookup] = None,
                 clock: Callable[[], datetime] = utc_now, max_retries: Optional[int] = None):
        self.db_path = db_path
        self.clock = clock
        init_db(db_path)
        self.ledger = VerificationLedger(db_path, clock=clock)
        self.votes = VoteAggregator(db_path, clock=clock)
        self.engine = ConsensusEngine(db_path, ledger=self.ledger, specialty_lookup=specialty_lookup,
                                      clock=clock, max_retries=max_retries)

    def submit(self, claim: Union[VerificationClaim, Dict[str, Any]]) -> SubmissionResult:
        """
        Record a verification claim and return the recomputed acceptance answer.

        The entry is durable once the ledger returns; if the recompute then loses
        every retry, ConcurrencyConflictError propagates and the entry is picked up
        by the next recompute of its key.
        """
        entry = self.ledger.submit(claim)
        audit_event(
            "verification.submitted",
            {"verification_id": entry.id, "origin_fingerprint": entry.origin_fingerprint,
             "submitted_by": entry.submitted_by},
            {"accepts_insurance": entry.accepts_insurance, "data_source": entry.data_source.value,
             "note": entry.note, "evidence_url": entry.evidence_url}
        )
        acceptance = self._recompute(entry.key, "submit")
        return SubmissionResult(verification=entry, acceptance=acceptance)

    def cast_vote(self, verification_id: str, voter_fingerprint: str,
                  direction: Union[VoteDirection, str]) -> VoteOutcome:
        vote = self.votes.cast_vote(verification_id, voter_fingerprint, direction)
        if vote.vote_created or vote.vote_changed:
            audit_event(
                "vote.cast",
                {"verification_id": verification_id, "voter_fingerprint": voter_fingerprint},
                {"direction": vote.direction.value,
                 "previous_direction": vote.previous_direction.value if vote.previous_direction else None}
            )
            acceptance = self._recompute(vote.key, "cast_vote")
        else:
            acceptance = self.engine.get(vote.key) or self._recompute(vote.key, "cast_vote")
        return VoteOutcome(vote=vote, acceptance=acceptance)

    def get_acceptance(self, provider_key: str, plan_key: str,
                       location_key: Optional[str] = None) -> Optional[AcceptanceRecord]:
        return self.engine.get(AcceptanceKey(provider_key, plan_key, location_key or None))

    def explain_confidence(self, provider_key: str, plan_key: str,
                           location_key: Optional[str] = None) -> ConfidenceExplanation:
        """Score the current live evidence for a key without writing anything."""
        key = AcceptanceKey(provider_key, plan_key, location_key or None)
        snapshot = self.engine.evaluate(key)
        return ConfidenceExplanation(
            key=key,
            confidence=snapshot.confidence,
            verification_count=snapshot.verification_count,
            acceptance=self.engine.get(key),
        )

    def sweep_expired(self, batch_size: Optional[int] = None,
                      max_batches: Optional[int] = None) -> MaintenanceReport:
        return run_expiry_sweep(self, batch_size=batch_size, max_batches=max_batches)

    def verifications_for_pair(self, provider_key: str, plan_key: str, location_key: Optional[str] = None,
                               include_expired: bool = False, limit: int = 50) -> Dict[str, Any]:
        """Public view of one pair: its answer and its entries, without submitter identities."""
        key = AcceptanceKey(provider_key, plan_key, location_key or None)
        entries = self.ledger.entries_for_key(key, include_expired=include_expired, limit=limit)
        acceptance = self.engine.get(key)
        now = self.clock()

        acceptance_data = None
        if acceptance is not None:
            acceptance_data = acceptance.to_dict()
            acceptance_data["is_expired"] = acceptance.is_expired(now)
            acceptance_data["display_status"] = acceptance.display_status(now).value

        return {
            **key.to_dict(),
            "acceptance": acceptance_data,
            "verifications": [entry.public_dict() for entry in entries],
            "summary": {
                "total_verifications": len(entries),
                "total_upvotes": sum(entry.upvotes for entry in entries),
                "total_downvotes": sum(entry.downvotes for entry in entries),
            },
        }

    def _recompute(self, key: AcceptanceKey, operation: str) -> AcceptanceRecord:
        try:
            return self.engine.recompute_key(key)
        except ConcurrencyConflictError as e:
            logger.error(f"{operation}: acceptance recompute gave up for {key.provider_key}/{key.plan_key}: {e}")
            raise
