"""
Structured operation logging for the verification and consensus engine.
Fingerprints and submitter identities are redacted before they reach a log line.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['origin_fingerprint', 'voter_fingerprint', 'submitted_by', 'note', 'evidence_url']


class StructuredLogger:
    """Structured logger for ledger, vote, consensus and maintenance operations."""

    def __init__(self, name: str = "plan_acceptance"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_submission(self, verification_id: str, key: Dict[str, Any], accepts_insurance: bool,
                       superseded: int = 0, data_source: str = "community_submitted"):
        """Log an accepted verification submission."""
        details = dict(key)
        details.update({
            "verification_id": verification_id,
            "accepts_insurance": accepts_insurance,
            "data_source": data_source,
        })
        if superseded:
            details["superseded"] = superseded

        self.log_operation("ledger.submit", "success", details)

    def log_duplicate_rejected(self, key: Dict[str, Any], reason: str):
        """Log a submission rejected by the anti-abuse window."""
        details = dict(key)
        details["reason"] = reason
        self.log_operation("ledger.submit", "duplicate", details, level=logging.WARNING)

    def log_validation_rejected(self, operation: str, errors: List[Any]):
        """Log a validation rejection, keeping only field locations and messages."""
        sanitized_errors = []
        for error in errors:
            if isinstance(error, dict):
                sanitized_errors.append({
                    "loc": error.get("loc"),
                    "msg": str(error.get("msg", ""))[:100],
                })
            else:
                sanitized_errors.append(str(error)[:100])

        self.log_operation(f"{operation}.validation", "rejected", {
            "errors": sanitized_errors,
            "error_count": len(sanitized_errors),
        }, level=logging.WARNING)

    def log_vote(self, verification_id: str, direction: str, outcome: str, upvotes: int, downvotes: int):
        """Log a vote cast. Outcome is created, changed or unchanged."""
        self.log_operation("votes.cast", outcome, {
            "verification_id": verification_id,
            "direction": direction,
            "upvotes": upvotes,
            "downvotes": downvotes,
        })

    def log_recompute(self, key: Dict[str, Any], previous_status: str, new_status: str,
                      score: int, verification_count: int, written: bool):
        """Log an acceptance recompute and whether the displayed status flipped."""
        details = dict(key)
        details.update({
            "previous_status": previous_status,
            "status": new_status,
            "confidence_score": score,
            "verification_count": verification_count,
        })
        if previous_status != new_status:
            status = "status_changed"
        elif written:
            status = "refreshed"
        else:
            status = "unchanged"

        self.log_operation("consensus.recompute", status, details)

    def log_conflict_retry(self, key: Dict[str, Any], attempt: int, reason: str):
        """Log a lost optimistic write that will be retried."""
        details = dict(key)
        details.update({"attempt": attempt, "reason": reason})
        self.log_operation("consensus.write", "retry", details, level=logging.WARNING)

    def log_sweep(self, expired_count: int, dirty_keys: int, has_more: bool):
        """Log an expiry sweep batch."""
        self.log_operation("ledger.sweep_expired", "success", {
            "expired": expired_count,
            "dirty_keys": dirty_keys,
            "has_more": has_more,
        })

    def log_maintenance_task(self, task_name: str, start_time: float, end_time: float,
                             status: str = "success", details: Dict[str, Any] = None):
        """Log a maintenance job run."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"maintenance.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = sanitize_payload(identifiers, sensitive_fields=sensitive_fields) if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
