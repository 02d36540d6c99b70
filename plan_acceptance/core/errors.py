"""
Error taxonomy for the verification and consensus engine.
"""


class ConsensusError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(ConsensusError):
    """Malformed claim or vote. Rejected before any write."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class DuplicateSubmissionError(ConsensusError):
    """Same origin already submitted the same claim inside the anti-abuse window."""
    pass


class NotFoundError(ConsensusError):
    """Verification is missing, superseded or expired."""
    pass


class ConcurrencyConflictError(ConsensusError):
    """Acceptance record write lost every optimistic retry. Safe to retry the whole call."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class StoreUnavailableError(ConsensusError):
    """Backing store could not be reached or failed mid-call."""
    pass
