"""
Verification ledger: append-only store of user-submitted acceptance claims.

Enforces the anti-abuse window on submission and the time-to-live on stored
entries. Claim content never changes after insert; only vote counters (owned by
the vote aggregator) and the status column move.
"""

import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..util.logging import logger
from .config import (
    ANTI_ABUSE_WINDOW_DAYS,
    RECENT_VERIFICATIONS_LIMIT,
    VERIFICATION_TTL_DAYS,
    get_sweep_batch_size,
)
from .db import from_db_time, get_db, to_db_time, utc_now, write_transaction
from .errors import DuplicateSubmissionError, StoreUnavailableError, ValidationError
from .schema import AcceptanceKey, DataSource, VerificationClaim, VerificationEntry, VerificationStatus

ENTRY_COLUMNS = (
    "id, provider_key, plan_key, location_key, accepts_insurance, accepts_new_patients, "
    "phone_reached, phone_correct, scheduled_appointment, note, evidence_url, submitted_by, "
    "origin_fingerprint, data_source, created_at, expires_at, upvotes, downvotes, status"
)


def _optional_bool(value) -> Optional[bool]:
    return None if value is None else bool(value)


def row_to_entry(row: sqlite3.Row) -> VerificationEntry:
    """Build a VerificationEntry from a verifications row."""
    return VerificationEntry(
        id=row["id"],
        provider_key=row["provider_key"],
        plan_key=row["plan_key"],
        location_key=row["location_key"] or None,
        accepts_insurance=bool(row["accepts_insurance"]),
        accepts_new_patients=_optional_bool(row["accepts_new_patients"]),
        note=row["note"],
        evidence_url=row["evidence_url"],
        submitted_by=row["submitted_by"],
        origin_fingerprint=row["origin_fingerprint"],
        data_source=DataSource.parse(row["data_source"]),
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        upvotes=row["upvotes"],
        downvotes=row["downvotes"],
        status=VerificationStatus(row["status"]),
        phone_reached=_optional_bool(row["phone_reached"]),
        phone_correct=_optional_bool(row["phone_correct"]),
        scheduled_appointment=_optional_bool(row["scheduled_appointment"]),
    )


def get_expiration_date(now: datetime) -> datetime:
    """Expiry for a verification created at ``now``."""
    return now + timedelta(days=VERIFICATION_TTL_DAYS)


@dataclass
class SweepResult:
    """One bounded expiry sweep batch."""
    expired_ids: List[str] = field(default_factory=list)
    dirty_keys: Set[AcceptanceKey] = field(default_factory=set)
    has_more: bool = False


class VerificationLedger:
    """Append-only verification store backed by SQLite."""

    def __init__(self, db_path: Optional[str] = None, clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self.clock = clock

    def validate(self, claim: Union[VerificationClaim, Dict[str, Any]]) -> VerificationClaim:
        """Validate claim shape. Raises ValidationError without touching the store."""
        if isinstance(claim, VerificationClaim):
            return claim
        try:
            return VerificationClaim.model_validate(claim)
        except PydanticValidationError as e:
            errors = e.errors()
            logger.log_validation_rejected("ledger.submit", errors)
            raise ValidationError(f"Invalid verification claim: {len(errors)} error(s)", errors) from e

    def submit(self, claim: Union[VerificationClaim, Dict[str, Any]]) -> VerificationEntry:
        """
        Record a new verification claim.

        The duplicate check, the supersede of the origin's earlier live report for
        the same key, and the insert all happen in one write transaction.

        Raises:
            ValidationError: malformed claim
            DuplicateSubmissionError: same origin, pair and claim inside the window
            StoreUnavailableError: store could not complete the write
        """
        claim = self.validate(claim)
        key = AcceptanceKey(claim.provider_key, claim.plan_key, claim.location_key)
        now = self.clock()
        entry = VerificationEntry(
            id=uuid.uuid4().hex,
            provider_key=claim.provider_key,
            plan_key=claim.plan_key,
            location_key=claim.location_key,
            accepts_insurance=claim.accepts_insurance,
            accepts_new_patients=claim.accepts_new_patients,
            note=claim.note,
            evidence_url=claim.evidence_url,
            submitted_by=claim.submitted_by,
            origin_fingerprint=claim.origin_fingerprint,
            data_source=claim.data_source,
            created_at=now,
            expires_at=get_expiration_date(now),
            phone_reached=claim.phone_reached,
            phone_correct=claim.phone_correct,
            scheduled_appointment=claim.scheduled_appointment,
        )
        cutoff = to_db_time(now - timedelta(days=ANTI_ABUSE_WINDOW_DAYS))

        try:
            with get_db(self.db_path) as conn, write_transaction(conn):
                reason = self._find_duplicate(conn, claim, cutoff)
                if reason:
                    logger.log_duplicate_rejected(key.to_dict(), reason)
                    raise DuplicateSubmissionError(
                        f"A matching verification for this provider-plan pair was already "
                        f"submitted {reason} within the last {ANTI_ABUSE_WINDOW_DAYS} days."
                    )

                superseded = conn.execute(
                    "UPDATE verifications SET status = ? "
                    "WHERE provider_key = ? AND plan_key = ? AND location_key = ? "
                    "AND origin_fingerprint = ? AND status = ?",
                    (VerificationStatus.SUPERSEDED.value, *key.as_params(),
                     claim.origin_fingerprint, VerificationStatus.ACTIVE.value)
                ).rowcount

                conn.execute(
                    f"INSERT INTO verifications ({ENTRY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.id, entry.provider_key, entry.plan_key, key.storage_location,
                        int(entry.accepts_insurance),
                        _to_int(entry.accepts_new_patients),
                        _to_int(entry.phone_reached),
                        _to_int(entry.phone_correct),
                        _to_int(entry.scheduled_appointment),
                        entry.note, entry.evidence_url, entry.submitted_by,
                        entry.origin_fingerprint, entry.data_source.value,
                        to_db_time(entry.created_at), to_db_time(entry.expires_at),
                        0, 0, VerificationStatus.ACTIVE.value,
                    )
                )
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Verification submit failed: {e}") from e

        logger.log_submission(entry.id, key.to_dict(), entry.accepts_insurance,
                              superseded=superseded, data_source=entry.data_source.value)
        return entry

    def _find_duplicate(self, conn: sqlite3.Connection, claim: VerificationClaim, cutoff: str) -> Optional[str]:
        """Return which identity tripped the anti-abuse window, or None."""
        checks = [("from this origin", "origin_fingerprint", claim.origin_fingerprint)]
        if claim.submitted_by:
            checks.append(("by this submitter", "submitted_by", claim.submitted_by))

        for reason, column, value in checks:
            row = conn.execute(
                f"SELECT 1 FROM verifications "
                f"WHERE provider_key = ? AND plan_key = ? AND accepts_insurance = ? "
                f"AND {column} = ? AND created_at >= ? LIMIT 1",
                (claim.provider_key, claim.plan_key, int(claim.accepts_insurance), value, cutoff)
            ).fetchone()
            if row:
                return reason
        return None

    def sweep_expired(self, batch_size: Optional[int] = None) -> SweepResult:
        """
        Flip up to ``batch_size`` live entries past their expiry to ``expired``.

        Bounded so that each call holds the writer lock briefly. Returns the keys
        whose acceptance answers must be recomputed.
        """
        batch_size = batch_size or get_sweep_batch_size()
        now = to_db_time(self.clock())
        result = SweepResult()

        try:
            with get_db(self.db_path) as conn, write_transaction(conn):
                rows = conn.execute(
                    "SELECT id, provider_key, plan_key, location_key FROM verifications "
                    "WHERE status = ? AND expires_at <= ? ORDER BY expires_at, id LIMIT ?",
                    (VerificationStatus.ACTIVE.value, now, batch_size)
                ).fetchall()

                for row in rows:
                    conn.execute(
                        "UPDATE verifications SET status = ? WHERE id = ? AND status = ?",
                        (VerificationStatus.EXPIRED.value, row["id"], VerificationStatus.ACTIVE.value)
                    )
                    result.expired_ids.append(row["id"])
                    result.dirty_keys.add(
                        AcceptanceKey(row["provider_key"], row["plan_key"], row["location_key"] or None)
                    )
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Expiry sweep failed: {e}") from e

        result.has_more = len(rows) == batch_size
        logger.log_sweep(len(result.expired_ids), len(result.dirty_keys), result.has_more)
        return result

    def get(self, verification_id: str) -> Optional[VerificationEntry]:
        """Get a verification by id regardless of status."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {ENTRY_COLUMNS} FROM verifications WHERE id = ?", (verification_id,)
            ).fetchone()
        return row_to_entry(row) if row else None

    def active_entries(self, key: AcceptanceKey, conn: Optional[sqlite3.Connection] = None) -> List[VerificationEntry]:
        """Live entries for a key: status active and not yet past expiry."""
        now = to_db_time(self.clock())
        query = (
            f"SELECT {ENTRY_COLUMNS} FROM verifications "
            "WHERE provider_key = ? AND plan_key = ? AND location_key = ? "
            "AND status = ? AND expires_at > ? ORDER BY created_at, id"
        )
        params = (*key.as_params(), VerificationStatus.ACTIVE.value, now)
        if conn is not None:
            return [row_to_entry(r) for r in conn.execute(query, params).fetchall()]
        with get_db(self.db_path) as own_conn:
            return [row_to_entry(r) for r in own_conn.execute(query, params).fetchall()]

    def entries_for_key(self, key: AcceptanceKey, include_expired: bool = False, limit: int = 50) -> List[VerificationEntry]:
        """Newest-first entries for a key; live ones only unless include_expired."""
        query = (
            f"SELECT {ENTRY_COLUMNS} FROM verifications "
            "WHERE provider_key = ? AND plan_key = ? AND location_key = ?"
        )
        params: list = list(key.as_params())
        if not include_expired:
            query += " AND status = ? AND expires_at > ?"
            params.extend([VerificationStatus.ACTIVE.value, to_db_time(self.clock())])
        query += " ORDER BY created_at DESC, id LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            return [row_to_entry(r) for r in conn.execute(query, params).fetchall()]

    def recent(self, limit: int = 20, provider_key: Optional[str] = None, plan_key: Optional[str] = None,
               include_expired: bool = False) -> List[VerificationEntry]:
        """Most recent verifications across all keys, newest first."""
        limit = max(1, min(limit, RECENT_VERIFICATIONS_LIMIT))
        clauses = []
        params: list = []
        if not include_expired:
            clauses.append("status = ? AND expires_at > ?")
            params.extend([VerificationStatus.ACTIVE.value, to_db_time(self.clock())])
        if provider_key:
            clauses.append("provider_key = ?")
            params.append(provider_key)
        if plan_key:
            clauses.append("plan_key = ?")
            params.append(plan_key)

        query = f"SELECT {ENTRY_COLUMNS} FROM verifications"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            return [row_to_entry(r) for r in conn.execute(query, params).fetchall()]

    def stats(self) -> Dict[str, int]:
        """Totals by status plus submissions in the last 24 hours."""
        last_24h = to_db_time(self.clock() - timedelta(hours=24))
        with get_db(self.db_path) as conn:
            by_status = {
                row["status"]: row["n"] for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM verifications GROUP BY status"
                ).fetchall()
            }
            recent_count = conn.execute(
                "SELECT COUNT(*) FROM verifications WHERE created_at >= ?", (last_24h,)
            ).fetchone()[0]

        return {
            "total": sum(by_status.values()),
            "active": by_status.get(VerificationStatus.ACTIVE.value, 0),
            "superseded": by_status.get(VerificationStatus.SUPERSEDED.value, 0),
            "expired": by_status.get(VerificationStatus.EXPIRED.value, 0),
            "recent_24h": recent_count,
        }

    def expiration_stats(self) -> Dict[str, Dict[str, int]]:
        """TTL monitoring counts for verifications and acceptance records."""
        now = self.clock()
        bounds = (
            to_db_time(now),
            to_db_time(now + timedelta(days=7)),
            to_db_time(now + timedelta(days=30)),
        )
        with get_db(self.db_path) as conn:
            verification_stats = _expiry_counts(conn, "verifications", bounds)
            acceptance_stats = _expiry_counts(conn, "acceptance", bounds)
        return {"verifications": verification_stats, "acceptance": acceptance_stats}


def _expiry_counts(conn: sqlite3.Connection, table: str, bounds) -> Dict[str, int]:
    now, in_7_days, in_30_days = bounds
    total = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    with_ttl = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE expires_at IS NOT NULL").fetchone()[0]
    expired = conn.execute(
        f"SELECT COUNT(*) FROM {table} WHERE expires_at <= ?", (now,)
    ).fetchone()[0]
    within_7 = conn.execute(
        f"SELECT COUNT(*) FROM {table} WHERE expires_at > ? AND expires_at <= ?", (now, in_7_days)
    ).fetchone()[0]
    within_30 = conn.execute(
        f"SELECT COUNT(*) FROM {table} WHERE expires_at > ? AND expires_at <= ?", (now, in_30_days)
    ).fetchone()[0]
    return {
        "total": total,
        "with_ttl": with_ttl,
        "expired": expired,
        "expiring_within_7_days": within_7,
        "expiring_within_30_days": within_30,
    }


def _to_int(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(value)
