"""
Consensus engine: recomputes the single acceptance answer for a
(provider, plan, location) key from the currently live verifications.

This is the only writer of the acceptance table. Each recompute reads the
stored record and the live evidence, scores it, applies the status-change
policy, and writes with an optimistic version check. A lost race is retried a
bounded number of times before ConcurrencyConflictError is raised.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..util.logging import logger
from .confidence import (
    ConfidenceInput,
    ConfidenceResult,
    SpecialtyCategory,
    calculate_data_source_score,
    categorize_specialty,
    score_confidence,
)
from .config import (
    MIN_CONFIDENCE_FOR_STATUS_CHANGE,
    MIN_VERIFICATIONS_FOR_CONSENSUS,
    get_recompute_max_retries,
)
from .db import from_db_time, get_db, is_lock_error, to_db_time, utc_now, write_transaction
from .errors import ConcurrencyConflictError, StoreUnavailableError
from .ledger import VerificationLedger
from .schema import (
    AcceptanceKey,
    AcceptanceRecord,
    AcceptanceStatus,
    DataSource,
    VerificationEntry,
)

SpecialtyLookup = Callable[[str], Union[SpecialtyCategory, str, None]]

_RECORD_COLUMNS = (
    "provider_key, plan_key, location_key, status, confidence_score, last_verified_at, "
    "verification_count, expires_at, updated_at, version"
)


def no_specialty(provider_key: str) -> None:
    """Default lookup: no reference data, so the standard decay table applies."""
    return None


class StaticSpecialtyDirectory:
    """Specialty lookup over an in-memory map of provider key to free-text specialty."""

    def __init__(self, specialties: Optional[Dict[str, str]] = None):
        self.specialties = dict(specialties or {})

    def __call__(self, provider_key: str) -> Optional[SpecialtyCategory]:
        text = self.specialties.get(provider_key)
        if not text:
            return None
        return categorize_specialty(text)


@dataclass
class ConsensusSnapshot:
    """Aggregated live evidence for one key plus its confidence score."""
    key: AcceptanceKey
    verification_count: int
    upvotes: int
    downvotes: int
    accepted_count: int
    not_accepted_count: int
    last_verified_at: Optional[datetime]
    expires_at: Optional[datetime]
    data_source: Optional[DataSource]
    specialty: SpecialtyCategory
    confidence: ConfidenceResult

    def to_dict(self) -> Dict:
        return {
            **self.key.to_dict(),
            "verification_count": self.verification_count,
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "accepted_count": self.accepted_count,
            "not_accepted_count": self.not_accepted_count,
            "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "data_source": self.data_source.value if self.data_source else None,
            "specialty": self.specialty.value,
            "confidence": self.confidence.to_dict(),
        }


def strongest_source(entries: Iterable[VerificationEntry]) -> Optional[DataSource]:
    """Most authoritative data source among the entries, or None when empty."""
    best = None
    for entry in entries:
        if best is None or calculate_data_source_score(entry.data_source) > calculate_data_source_score(best):
            best = entry.data_source
    return best


def decide_status(previous: Optional[AcceptanceStatus], snapshot: ConsensusSnapshot) -> AcceptanceStatus:
    """
    Status-change policy.

    The verdict may move only with at least MIN_VERIFICATIONS_FOR_CONSENSUS live
    reports and a score of at least MIN_CONFIDENCE_FOR_STATUS_CHANGE; the
    majority claim then wins and a tie is pending. Otherwise the previous
    verdict stands, except that an unknown or brand new answer with evidence
    becomes pending.
    """
    if (snapshot.verification_count >= MIN_VERIFICATIONS_FOR_CONSENSUS
            and snapshot.confidence.score >= MIN_CONFIDENCE_FOR_STATUS_CHANGE):
        if snapshot.accepted_count > snapshot.not_accepted_count:
            return AcceptanceStatus.ACCEPTED
        if snapshot.not_accepted_count > snapshot.accepted_count:
            return AcceptanceStatus.NOT_ACCEPTED
        return AcceptanceStatus.PENDING

    if previous is None or previous == AcceptanceStatus.UNKNOWN:
        return AcceptanceStatus.PENDING if snapshot.verification_count > 0 else AcceptanceStatus.UNKNOWN
    return previous


def row_to_record(row: sqlite3.Row) -> AcceptanceRecord:
    return AcceptanceRecord(
        provider_key=row["provider_key"],
        plan_key=row["plan_key"],
        location_key=row["location_key"] or None,
        status=AcceptanceStatus(row["status"]),
        confidence_score=row["confidence_score"],
        last_verified_at=from_db_time(row["last_verified_at"]),
        verification_count=row["verification_count"],
        expires_at=from_db_time(row["expires_at"]),
        updated_at=from_db_time(row["updated_at"]),
        version=row["version"],
    )


class _LostRace(Exception):
    """Version check failed inside the write transaction."""
    pass


class ConsensusEngine:
    """Recomputes and persists acceptance answers."""

    def __init__(self, db_path: Optional[str] = None, ledger: Optional[VerificationLedger] = None,
                 specialty_lookup: Optional[SpecialtyLookup] = None,
                 clock: Callable[[], datetime] = utc_now, max_retries: Optional[int] = None):
        self.db_path = db_path
        self.clock = clock
        self.ledger = ledger or VerificationLedger(db_path, clock=clock)
        self.specialty_lookup = specialty_lookup or no_specialty
        self.max_retries = max_retries or get_recompute_max_retries()

    def get(self, key: AcceptanceKey, conn: Optional[sqlite3.Connection] = None) -> Optional[AcceptanceRecord]:
        """Stored acceptance record for a key, or None."""
        query = (
            f"SELECT {_RECORD_COLUMNS} FROM acceptance "
            "WHERE provider_key = ? AND plan_key = ? AND location_key = ?"
        )
        if conn is not None:
            row = conn.execute(query, key.as_params()).fetchone()
        else:
            with get_db(self.db_path) as own_conn:
                row = own_conn.execute(query, key.as_params()).fetchone()
        return row_to_record(row) if row else None

    def specialty_for(self, provider_key: str) -> SpecialtyCategory:
        """Category from the lookup; free text that is not a category name is keyword-matched."""
        value = self.specialty_lookup(provider_key)
        category = SpecialtyCategory.parse(value)
        if isinstance(value, str) and category == SpecialtyCategory.OTHER and value.strip().lower() != "other":
            return categorize_specialty(value)
        return category

    def evaluate(self, key: AcceptanceKey, conn: Optional[sqlite3.Connection] = None,
                 now: Optional[datetime] = None) -> ConsensusSnapshot:
        """Aggregate live evidence for a key and score it. Writes nothing."""
        now = now or self.clock()
        entries = self.ledger.active_entries(key, conn=conn)
        specialty = self.specialty_for(key.provider_key)

        latest = max(entries, key=lambda e: (e.created_at, e.id)) if entries else None
        upvotes = sum(e.upvotes for e in entries)
        downvotes = sum(e.downvotes for e in entries)
        accepted = sum(1 for e in entries if e.accepts_insurance)
        source = strongest_source(entries)

        confidence = score_confidence(ConfidenceInput(
            data_source=source,
            last_verified_at=latest.created_at if latest else None,
            verification_count=len(entries),
            upvotes=upvotes,
            downvotes=downvotes,
            specialty=specialty,
        ), now=now)

        return ConsensusSnapshot(
            key=key,
            verification_count=len(entries),
            upvotes=upvotes,
            downvotes=downvotes,
            accepted_count=accepted,
            not_accepted_count=len(entries) - accepted,
            last_verified_at=latest.created_at if latest else None,
            expires_at=latest.expires_at if latest else None,
            data_source=source,
            specialty=specialty,
            confidence=confidence,
        )

    def recompute(self, provider_key: str, plan_key: str, location_key: Optional[str] = None) -> AcceptanceRecord:
        """Recompute and persist the acceptance answer for one key."""
        return self.recompute_key(AcceptanceKey(provider_key, plan_key, location_key or None))

    def recompute_key(self, key: AcceptanceKey) -> AcceptanceRecord:
        """
        Read, aggregate, decide and write one acceptance record.

        Idempotent: when the derived fields already match the stored record
        nothing is written and the stored record is returned as-is.

        Raises:
            ConcurrencyConflictError: every optimistic write attempt lost a race
            StoreUnavailableError: the store failed for a reason other than contention
        """
        last_reason = ""
        with get_db(self.db_path) as conn:
            for attempt in range(1, self.max_retries + 1):
                now = self.clock()
                try:
                    current = self.get(key, conn=conn)
                    snapshot = self.evaluate(key, conn=conn, now=now)
                except sqlite3.OperationalError as e:
                    if not is_lock_error(e):
                        raise StoreUnavailableError(f"Recompute read failed: {e}") from e
                    last_reason = str(e)
                    logger.log_conflict_retry(key.to_dict(), attempt, last_reason)
                    continue

                last_verified_at, expires_at = snapshot.last_verified_at, snapshot.expires_at
                if snapshot.verification_count == 0 and current is not None:
                    # Keep the old timestamps so the answer reads as expired, not as fresh
                    last_verified_at, expires_at = current.last_verified_at, current.expires_at

                candidate = AcceptanceRecord(
                    provider_key=key.provider_key,
                    plan_key=key.plan_key,
                    location_key=key.location_key,
                    status=decide_status(current.status if current else None, snapshot),
                    confidence_score=snapshot.confidence.score,
                    last_verified_at=last_verified_at,
                    verification_count=snapshot.verification_count,
                    expires_at=expires_at,
                    updated_at=now,
                    version=current.version + 1 if current else 1,
                )
                previous_status = current.status.value if current else AcceptanceStatus.UNKNOWN.value

                if current is not None and current.same_content(candidate):
                    logger.log_recompute(key.to_dict(), previous_status, current.status.value,
                                         current.confidence_score, current.verification_count, written=False)
                    return current

                try:
                    self._write(conn, key, candidate, expected_version=current.version if current else None)
                except _LostRace:
                    last_reason = "version changed"
                except sqlite3.IntegrityError:
                    last_reason = "record created concurrently"
                except sqlite3.OperationalError as e:
                    if not is_lock_error(e):
                        raise StoreUnavailableError(f"Recompute write failed: {e}") from e
                    last_reason = str(e)
                else:
                    logger.log_recompute(key.to_dict(), previous_status, candidate.status.value,
                                         candidate.confidence_score, candidate.verification_count, written=True)
                    return candidate

                logger.log_conflict_retry(key.to_dict(), attempt, last_reason)

        raise ConcurrencyConflictError(
            f"Acceptance record for {key.provider_key}/{key.plan_key} could not be written "
            f"after {self.max_retries} attempts ({last_reason})",
            attempts=self.max_retries,
        )

    def _write(self, conn: sqlite3.Connection, key: AcceptanceKey, record: AcceptanceRecord,
               expected_version: Optional[int]):
        values = (
            record.status.value,
            record.confidence_score,
            to_db_time(record.last_verified_at),
            record.verification_count,
            to_db_time(record.expires_at),
            to_db_time(record.updated_at),
        )
        with write_transaction(conn):
            if expected_version is None:
                conn.execute(
                    f"INSERT INTO acceptance ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (*key.as_params(), *values, record.version)
                )
            else:
                updated = conn.execute(
                    "UPDATE acceptance SET status = ?, confidence_score = ?, last_verified_at = ?, "
                    "verification_count = ?, expires_at = ?, updated_at = ?, version = version + 1 "
                    "WHERE provider_key = ? AND plan_key = ? AND location_key = ? AND version = ?",
                    (*values, *key.as_params(), expected_version)
                ).rowcount
                if updated != 1:
                    raise _LostRace()

    def list_records(self, after: Optional[AcceptanceKey] = None, limit: int = 100,
                     min_verifications: int = 1) -> List[AcceptanceRecord]:
        """Page through acceptance records in key order (keyset pagination)."""
        query = f"SELECT {_RECORD_COLUMNS} FROM acceptance WHERE verification_count >= ?"
        params: list = [min_verifications]
        if after is not None:
            query += " AND (provider_key, plan_key, location_key) > (?, ?, ?)"
            params.extend(after.as_params())
        query += " ORDER BY provider_key, plan_key, location_key LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            return [row_to_record(r) for r in conn.execute(query, params).fetchall()]
