"""
Consensus engine configuration.
Environment-driven settings plus the fixed verification and consensus policy.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/acceptance.db")
DB_TIMEOUT_SEC = float(os.getenv("DB_TIMEOUT_SEC", "5"))

# Debug flag
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Optimistic write retries for acceptance records
RECOMPUTE_MAX_RETRIES = int(os.getenv("RECOMPUTE_MAX_RETRIES", "5"))

# Batch sizes for the scheduled jobs
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "500"))
DECAY_BATCH_SIZE = int(os.getenv("DECAY_BATCH_SIZE", "100"))

# Hard ceiling for "recent verifications" listings
RECENT_VERIFICATIONS_LIMIT = 100

# Verification policy
VERIFICATION_TTL_DAYS = 6 * 30  # six months
ANTI_ABUSE_WINDOW_DAYS = 30

# Consensus thresholds
MIN_VERIFICATIONS_FOR_CONSENSUS = 3
MIN_CONFIDENCE_FOR_STATUS_CHANGE = 60
MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE = 3

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_db_path():
    """Get the database path, honouring late changes to DB_PATH in the environment."""
    return os.getenv("DB_PATH", DB_PATH)


def ensure_db_directory(db_path=None):
    """Ensure the database directory exists."""
    Path(db_path or get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def get_recompute_max_retries():
    """Get the number of optimistic write attempts per recompute."""
    return RECOMPUTE_MAX_RETRIES


def get_sweep_batch_size():
    """Get the default expiry sweep batch size."""
    return SWEEP_BATCH_SIZE


def get_decay_batch_size():
    """Get the default confidence recalculation batch size."""
    return DECAY_BATCH_SIZE


def validate_consensus_config():
    """Validate configuration and return any issues."""
    issues = []

    if DB_TIMEOUT_SEC <= 0:
        issues.append("DB_TIMEOUT_SEC must be > 0")

    if RECOMPUTE_MAX_RETRIES < 1:
        issues.append("RECOMPUTE_MAX_RETRIES must be >= 1")

    if SWEEP_BATCH_SIZE < 1:
        issues.append("SWEEP_BATCH_SIZE must be >= 1")

    if DECAY_BATCH_SIZE < 1:
        issues.append("DECAY_BATCH_SIZE must be >= 1")

    return issues
