"""
Error taxonomy.

Every error carries a stable ``code``. The HTTP edge maps the classes to
status codes; the engine raises them and never converts them to booleans.
"""

from __future__ import annotations

from typing import Optional

# =============================================================================
# BASE
# =============================================================================

class GovernanceViolation(Exception):
    code = "governance_violation"

    def __init__(self, message: str = "", code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(message or self.code)

class InputError(GovernanceViolation):
    code = "invalid_input"

class NotFoundError(InputError):
    code = "not_found"

class AuthError(GovernanceViolation):
    code = "unauthorized"

class PolicyError(GovernanceViolation):
    """State-machine violation with a stable reason code."""
    code = "policy_violation"

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        super().__init__(message or reason, code=reason)

class ConflictError(GovernanceViolation):
    code = "conflict"

class TransientError(GovernanceViolation):
    code = "transient"
    retryable = True

class DeadlineExceeded(TransientError):
    code = "deadline_exceeded"
    retryable = False

class CorruptionError(GovernanceViolation):
    code = "corruption"

# =============================================================================
# SIGNATURES
# =============================================================================

class MalformedKey(AuthError):
    code = "malformed_key"

class MalformedSignature(InputError):
    code = "malformed_signature"

class Mismatch(AuthError):
    code = "signature_mismatch"

# =============================================================================
# AUDIT LOG
# =============================================================================

class BrokenChain(CorruptionError):
    code = "broken_chain"

    def __init__(self, index: int, detail: str = "hash chain broken"):
        self.index = index
        super().__init__(f"{detail} at entry {index}")

class BadTimestamp(CorruptionError):
    code = "bad_timestamp"

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"timestamp regressed at entry {index}")

class DuplicateJobId(CorruptionError):
    code = "duplicate_job_id"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"duplicate job_id {job_id}")

class MerkleMismatch(CorruptionError):
    code = "merkle_mismatch"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"merkle root mismatch: expected {expected}, got {actual}")
