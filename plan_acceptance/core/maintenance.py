"""
Scheduled maintenance for the acceptance directory.

Expiry sweeps, proactive confidence decay, vote-counter audits and ledger
statistics. These run from an external scheduler through scripts/maintenance.py.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..util.logging import logger
from .config import get_decay_batch_size
from .db import get_db, utc_now
from .errors import ConsensusError


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance job. issues_found and issues_resolved mean what the job counts."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "errors": self.errors,
            "metadata": self.metadata,
        }
        # Only jobs that did or suggested something carry these lists
        if self.actions_taken:
            data["actions_taken"] = self.actions_taken
        if self.recommendations:
            data["recommendations"] = self.recommendations
        return data


class MaintenanceError(ConsensusError):
    """A maintenance job was invoked with unusable arguments."""


def run_expiry_sweep(directory, batch_size: Optional[int] = None,
                     max_batches: Optional[int] = None) -> MaintenanceReport:
    """
    Expire live verifications past their TTL and recompute every affected key.

    Each batch is swept in its own short transaction and its dirty keys are
    recomputed before the next batch starts. A key that cannot be recomputed
    is reported and left for the next run.

    Args:
        directory: AcceptanceDirectory to operate on
        batch_size: Entries per sweep transaction
        max_batches: Stop after this many batches even if more remain

    Returns:
        MaintenanceReport: expired entries, recomputed keys and failures
    """
    if batch_size is not None and batch_size < 1:
        raise MaintenanceError("batch_size must be >= 1")
    if max_batches is not None and max_batches < 1:
        raise MaintenanceError("max_batches must be >= 1")

    start = time.time()
    report = MaintenanceReport(operation="expiry_sweep", started_at=directory.clock())
    batches = 0
    recomputed = set()
    has_more = False

    while max_batches is None or batches < max_batches:
        result = directory.ledger.sweep_expired(batch_size)
        batches += 1
        report.issues_found += len(result.expired_ids)

        for key in sorted(result.dirty_keys, key=lambda k: k.as_params()):
            try:
                directory.engine.recompute_key(key)
            except ConsensusError as e:
                report.errors.append(f"{key.provider_key}/{key.plan_key}/{key.storage_location}: {e}")
                continue
            recomputed.add(key)

        has_more = result.has_more
        if not has_more:
            break

    report.issues_resolved = len(recomputed)
    if report.issues_found:
        report.actions_taken.append(f"Expired {report.issues_found} verifications")
    if recomputed:
        report.actions_taken.append(f"Recomputed {len(recomputed)} acceptance records")
    if has_more:
        report.recommendations.append("More expired verifications remain; run the sweep again")
    if report.errors:
        report.recommendations.append("Re-run the sweep or the confidence recalculation for failed keys")

    report.metadata.update({"batches": batches, "has_more": has_more})
    report.completed_at = directory.clock()
    logger.log_maintenance_task(
        "expiry_sweep", start, time.time(),
        status="success" if not report.errors else "partial",
        details={"expired": report.issues_found, "recomputed": len(recomputed), "errors": len(report.errors)}
    )
    return report


def recalculate_confidence_scores(directory, dry_run: bool = False, limit: Optional[int] = None,
                                  batch_size: Optional[int] = None) -> MaintenanceReport:
    """
    Proactive confidence decay.

    Scores depend on elapsed time, so stored answers drift as data ages even
    without new submissions. Walks every acceptance record with at least one
    verification in key order and recomputes it. In dry-run mode records are
    only evaluated. A failure on one record is counted and the run continues.
    """
    if batch_size is not None and batch_size < 1:
        raise MaintenanceError("batch_size must be >= 1")
    if limit is not None and limit < 0:
        raise MaintenanceError("limit must be >= 0")

    start = time.time()
    batch_size = batch_size or get_decay_batch_size()
    report = MaintenanceReport(operation="confidence_recalculation", started_at=directory.clock())
    processed = updated = unchanged = failed = 0
    after = None

    while limit is None or processed < limit:
        page_size = batch_size if limit is None else min(batch_size, limit - processed)
        records = directory.engine.list_records(after=after, limit=page_size)
        if not records:
            break

        for record in records:
            processed += 1
            try:
                if dry_run:
                    snapshot = directory.engine.evaluate(record.key)
                    changed = snapshot.confidence.score != record.confidence_score
                else:
                    changed = directory.engine.recompute_key(record.key).version != record.version
            except ConsensusError as e:
                failed += 1
                report.errors.append(f"{record.provider_key}/{record.plan_key}: {e}")
                logger.warning(f"Confidence recalculation failed for {record.provider_key}/{record.plan_key}: {e}")
                continue

            if changed:
                updated += 1
            else:
                unchanged += 1

        after = records[-1].key
        if len(records) < page_size:
            break

    report.issues_found = updated
    report.issues_resolved = 0 if dry_run else updated
    if updated:
        verb = "Would update" if dry_run else "Updated"
        report.actions_taken.append(f"{verb} {updated} acceptance records")
    if dry_run and updated:
        report.recommendations.append("Run without --dry-run to apply decayed scores")

    report.metadata.update({
        "dry_run": dry_run,
        "processed": processed,
        "updated": updated,
        "unchanged": unchanged,
        "errors": failed,
    })
    report.completed_at = directory.clock()
    logger.log_maintenance_task(
        "confidence_recalculation", start, time.time(),
        status="success" if not failed else "partial",
        details=dict(report.metadata)
    )
    return report


def audit_vote_counters(db_path: Optional[str] = None, sample_limit: int = 20) -> MaintenanceReport:
    """
    Check that every verification's counters equal the sum of its vote rows.

    Read-only. Drift is expected to be zero because counters only move in the
    same transaction as the vote row.
    """
    start = time.time()
    report = MaintenanceReport(operation="vote_counter_audit", started_at=utc_now())

    with get_db(db_path) as conn:
        checked = conn.execute("SELECT COUNT(*) FROM verifications").fetchone()[0]
        rows = conn.execute(
            """
            SELECT v.id, v.upvotes, v.downvotes,
                   COALESCE(SUM(CASE WHEN t.direction = 'up' THEN 1 ELSE 0 END), 0) AS actual_up,
                   COALESCE(SUM(CASE WHEN t.direction = 'down' THEN 1 ELSE 0 END), 0) AS actual_down
            FROM verifications v
            LEFT JOIN votes t ON t.verification_id = v.id
            GROUP BY v.id
            HAVING v.upvotes != actual_up OR v.downvotes != actual_down
            ORDER BY v.id
            """
        ).fetchall()

    report.issues_found = len(rows)
    drift = [
        {
            "verification_id": row["id"],
            "upvotes": row["upvotes"],
            "downvotes": row["downvotes"],
            "actual_upvotes": row["actual_up"],
            "actual_downvotes": row["actual_down"],
        }
        for row in rows[:sample_limit]
    ]
    if rows:
        report.recommendations.append("Vote counters drifted from vote rows; investigate writes outside the vote aggregator")

    report.metadata.update({"verifications_checked": checked, "drift": drift})
    report.completed_at = utc_now()
    logger.log_maintenance_task(
        "vote_counter_audit", start, time.time(),
        status="success" if not rows else "drift_detected",
        details={"checked": checked, "drift": len(rows)}
    )
    return report


def collect_stats(directory) -> Dict[str, Any]:
    """Ledger totals plus TTL monitoring counts."""
    return {
        "verifications": directory.ledger.stats(),
        "expiration": directory.ledger.expiration_stats(),
    }
