"""
Vote aggregation: one up/down stance per voter per verification.

The vote row and the parent verification's counters are always written in the
same transaction, so counters stay equal to the sum of the vote rows.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Union

from ..util.logging import logger
from .db import get_db, to_db_time, utc_now, write_transaction
from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .ledger import ENTRY_COLUMNS, row_to_entry
from .schema import AcceptanceKey, VerificationEntry, VoteDirection

_COUNTER_COLUMN = {
    VoteDirection.UP: "upvotes",
    VoteDirection.DOWN: "downvotes",
}


@dataclass
class VoteResult:
    verification: VerificationEntry
    direction: VoteDirection
    previous_direction: Optional[VoteDirection]
    vote_created: bool
    vote_changed: bool

    @property
    def key(self) -> AcceptanceKey:
        """Acceptance key whose answer must be recomputed."""
        return self.verification.key

    def to_dict(self) -> Dict:
        return {
            "verification": self.verification.public_dict(),
            "direction": self.direction.value,
            "previous_direction": self.previous_direction.value if self.previous_direction else None,
            "vote_created": self.vote_created,
            "vote_changed": self.vote_changed,
        }


def parse_direction(direction: Union[VoteDirection, str]) -> VoteDirection:
    if isinstance(direction, VoteDirection):
        return direction
    try:
        return VoteDirection(str(direction).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid vote direction: {direction!r}. Use 'up' or 'down'.")


class VoteAggregator:
    """Per-identity votes on verification entries."""

    def __init__(self, db_path: Optional[str] = None, clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self.clock = clock

    def cast_vote(self, verification_id: str, voter_fingerprint: str,
                  direction: Union[VoteDirection, str]) -> VoteResult:
        """
        Record or change a voter's stance on a verification.

        Same direction twice is a no-op. Switching direction moves one count from
        the old counter to the new one.

        Raises:
            ValidationError: blank fingerprint or unknown direction
            NotFoundError: verification missing, superseded or expired
        """
        direction = parse_direction(direction)
        if not voter_fingerprint or not voter_fingerprint.strip():
            raise ValidationError("Voter fingerprint is required for voting")
        voter_fingerprint = voter_fingerprint.strip()

        now = self.clock()
        now_db = to_db_time(now)

        try:
            with get_db(self.db_path) as conn, write_transaction(conn):
                entry = self._load_live_entry(conn, verification_id, now)

                existing = conn.execute(
                    "SELECT direction FROM votes WHERE verification_id = ? AND voter_fingerprint = ?",
                    (verification_id, voter_fingerprint)
                ).fetchone()
                previous = VoteDirection(existing["direction"]) if existing else None

                if previous is None:
                    conn.execute(
                        "INSERT INTO votes (verification_id, voter_fingerprint, direction, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (verification_id, voter_fingerprint, direction.value, now_db, now_db)
                    )
                    column = _COUNTER_COLUMN[direction]
                    conn.execute(
                        f"UPDATE verifications SET {column} = {column} + 1 WHERE id = ?",
                        (verification_id,)
                    )
                    outcome = "created"
                elif previous != direction:
                    conn.execute(
                        "UPDATE votes SET direction = ?, updated_at = ? "
                        "WHERE verification_id = ? AND voter_fingerprint = ?",
                        (direction.value, now_db, verification_id, voter_fingerprint)
                    )
                    old_column = _COUNTER_COLUMN[previous]
                    new_column = _COUNTER_COLUMN[direction]
                    conn.execute(
                        f"UPDATE verifications SET {old_column} = {old_column} - 1, "
                        f"{new_column} = {new_column} + 1 WHERE id = ?",
                        (verification_id,)
                    )
                    outcome = "changed"
                else:
                    outcome = "unchanged"

                if outcome != "unchanged":
                    entry = self._load_live_entry(conn, verification_id, now)
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Vote on {verification_id} failed: {e}") from e

        logger.log_vote(verification_id, direction.value, outcome, entry.upvotes, entry.downvotes)
        return VoteResult(
            verification=entry,
            direction=direction,
            previous_direction=previous,
            vote_created=outcome == "created",
            vote_changed=outcome == "changed",
        )

    def _load_live_entry(self, conn: sqlite3.Connection, verification_id: str, now: datetime) -> VerificationEntry:
        row = conn.execute(
            f"SELECT {ENTRY_COLUMNS} FROM verifications WHERE id = ?", (verification_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Verification {verification_id} not found")

        entry = row_to_entry(row)
        if not entry.is_live(now):
            raise NotFoundError(f"Verification {verification_id} is {entry.status.value} or past its expiry")
        return entry

    def get_vote(self, verification_id: str, voter_fingerprint: str) -> Optional[VoteDirection]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT direction FROM votes WHERE verification_id = ? AND voter_fingerprint = ?",
                (verification_id, voter_fingerprint)
            ).fetchone()
        return VoteDirection(row["direction"]) if row else None

    def tally(self, verification_id: str) -> Dict[str, int]:
        """Up/down counts derived from the vote rows themselves."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT direction, COUNT(*) AS n FROM votes WHERE verification_id = ? GROUP BY direction",
                (verification_id,)
            ).fetchall()
        counts = {row["direction"]: row["n"] for row in rows}
        up = counts.get(VoteDirection.UP.value, 0)
        down = counts.get(VoteDirection.DOWN.value, 0)
        return {"up": up, "down": down, "net": up - down}
