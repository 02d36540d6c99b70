#!/usr/bin/env python3
"""
Command-line maintenance for the acceptance directory.

Meant to be run by an external scheduler (cron, systemd timers): the expiry
sweep daily, confidence recalculation daily or weekly, the vote audit ad hoc.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))

from plan_acceptance.core.db import utc_now
from plan_acceptance.core.errors import ConsensusError
from plan_acceptance.core.maintenance import (
    MaintenanceReport,
    audit_vote_counters,
    collect_stats,
    recalculate_confidence_scores,
)
from plan_acceptance.core.service import AcceptanceDirectory


def format_report(report: MaintenanceReport) -> str:
    """Format a maintenance report for display."""
    lines = []

    lines.append(f"Operation: {report.operation}")
    if report.duration_seconds is not None:
        lines.append(f"Duration: {report.duration_seconds:.2f} seconds")

    if report.errors:
        lines.append(f"Status: FAILED ({len(report.errors)} errors)")
    elif report.issues_found > 0:
        lines.append(f"Status: ISSUES FOUND ({report.issues_found} issues)")
    else:
        lines.append("Status: SUCCESS")

    if report.issues_found > 0:
        lines.append(f"Issues Found: {report.issues_found}")
    if report.issues_resolved > 0:
        lines.append(f"Issues Resolved: {report.issues_resolved}")

    if report.metadata:
        lines.append("Details:")
        for key, value in report.metadata.items():
            lines.append(f"  {key}: {value}")

    if report.errors:
        lines.append("Errors:")
        for error in report.errors[:10]:
            lines.append(f"  - {error}")
        if len(report.errors) > 10:
            lines.append(f"  ... and {len(report.errors) - 10} more")

    if report.recommendations:
        lines.append("Recommendations:")
        for rec in report.recommendations:
            lines.append(f"  - {rec}")

    if report.actions_taken:
        lines.append("Actions Taken:")
        for action in report.actions_taken:
            lines.append(f"  - {action}")

    return "\n".join(lines)


def stats_report(directory: AcceptanceDirectory) -> MaintenanceReport:
    """Wrap ledger and expiration statistics in a report."""
    report = MaintenanceReport(operation="ledger_stats", started_at=utc_now())
    report.metadata.update(collect_stats(directory))
    report.completed_at = utc_now()
    return report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Acceptance directory maintenance utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --sweep-expired                 # Expire old verifications and recompute answers
  %(prog)s --recalculate --dry-run         # Preview confidence decay
  %(prog)s --recalculate --limit 1000      # Recalculate the first 1000 answers
  %(prog)s --audit-votes --json            # Check vote counters, JSON output
  %(prog)s --stats                         # Ledger and expiration statistics

Environment variables (also read from .env):
- DB_PATH=./data/acceptance.db (database location)
- SWEEP_BATCH_SIZE=500 (entries expired per transaction)
- DECAY_BATCH_SIZE=100 (answers recalculated per page)
        """
    )

    parser.add_argument("--sweep-expired", "-s", action="store_true",
                        help="Expire verifications past their TTL and recompute affected answers")
    parser.add_argument("--recalculate", "-r", action="store_true",
                        help="Recalculate confidence scores so they decay with age")
    parser.add_argument("--audit-votes", "-a", action="store_true",
                        help="Check that vote counters match the recorded votes")
    parser.add_argument("--stats", action="store_true",
                        help="Show ledger and expiration statistics")
    parser.add_argument("--dry-run", action="store_true",
                        help="With --recalculate, report changes without writing them")
    parser.add_argument("--limit", type=int, default=None,
                        help="With --recalculate, maximum number of answers to process")
    parser.add_argument("--batch-size", type=int, default=None,
                        help="Batch size for the sweep or the recalculation")
    parser.add_argument("--max-batches", type=int, default=None,
                        help="With --sweep-expired, stop after this many batches")
    parser.add_argument("--db-path", default=None,
                        help="Database path (defaults to DB_PATH)")
    parser.add_argument("--json", "-j", action="store_true",
                        help="Output results as JSON instead of human-readable text")
    parser.add_argument("--quiet", "-q", action="store_true",
                        help="Suppress non-error output")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    dotenv.load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if not (args.sweep_expired or args.recalculate or args.audit_votes or args.stats):
        parser.error("Must specify at least one maintenance operation")
    if args.dry_run and not args.recalculate:
        parser.error("--dry-run only applies to --recalculate")

    try:
        directory = AcceptanceDirectory(db_path=args.db_path)
        reports = []

        if args.sweep_expired:
            if not args.quiet and not args.json:
                print("Sweeping expired verifications...")
            reports.append(directory.sweep_expired(batch_size=args.batch_size, max_batches=args.max_batches))

        if args.recalculate:
            if not args.quiet and not args.json:
                print("Recalculating confidence scores...")
            reports.append(recalculate_confidence_scores(
                directory, dry_run=args.dry_run, limit=args.limit, batch_size=args.batch_size
            ))

        if args.audit_votes:
            if not args.quiet and not args.json:
                print("Auditing vote counters...")
            reports.append(audit_vote_counters(directory.db_path))

        if args.stats:
            reports.append(stats_report(directory))

        if args.json:
            json_output = {
                "maintenance_run": {
                    "timestamp": str(reports[0].started_at) if reports else None,
                    "operations": len(reports),
                    "total_issues_found": sum(r.issues_found for r in reports),
                    "total_issues_resolved": sum(r.issues_resolved for r in reports),
                    "errors": sum(len(r.errors) for r in reports)
                },
                "reports": [report.to_dict() for report in reports]
            }
            print(json.dumps(json_output, indent=2, default=str))
        else:
            for report in reports:
                if not args.quiet or report.errors:
                    print("-" * 60)
                    print(format_report(report))

        if any(r.errors for r in reports):
            return 1
        elif any(r.issues_found > 0 and r.operation == "vote_counter_audit" for r in reports):
            return 2
        else:
            return 0

    except ConsensusError as e:
        print(f"ERROR: Maintenance operation failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
