"""
Errors raised by the safety core.

A refusal is NOT a malfunction - it's the safety core working correctly.
None of these are retried or swallowed inside the core; the caller decides
what the user sees.
"""
from typing import List, Optional


class SafetyError(Exception):
    """Base class for every refusal the safety core can produce."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class PolicyViolation(SafetyError):
    """
    One or more guardrail checks failed.

    Carries the full check list so the caller can show every failed limit,
    and the request that was recorded (and rejected) for the attempt.
    """

    def __init__(self, message: str, checks: Optional[list] = None, request=None):
        self.checks = checks or []
        self.request = request
        super().__init__(message)

    @property
    def failed_checks(self) -> list:
        return [c for c in self.checks if not c.passed]


class IllegalStateTransition(SafetyError):
    """
    A lifecycle transition that is not legal from the current state.

    Double-decide, resolve-already-resolved, execute-twice. Never coerced
    into a silent no-op.
    """

    def __init__(self, message: str, current_status: Optional[str] = None, attempted: Optional[str] = None):
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(message)


class ExpiredRequest(IllegalStateTransition):
    """Decision attempted on a request past its expiry (already lazily expired)."""


class ChainIntegrityViolation(SafetyError):
    """The audit chain failed verification: tampering or data loss. Never auto-repaired."""

    def __init__(self, message: str, invalid_at: Optional[int] = None, reason: Optional[str] = None):
        self.invalid_at = invalid_at
        self.reason = reason
        super().__init__(message)


class NotFoundError(SafetyError):
    """No approval request, Jidoka event, rollback plan or audit entry with that id."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class TransitionResult:
    """
    Outcome of a lifecycle transition: either the new record or the refusal.

    Pure transitions return this instead of raising, so illegal moves are a
    value the caller inspects. `unwrap()` raises the refusal at the call
    boundary where a refusal is fatal to the request.
    """

    __slots__ = ("value", "error")

    def __init__(self, value=None, error: Optional[IllegalStateTransition] = None):
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value) -> "TransitionResult":
        return cls(value=value)

    @classmethod
    def refused(cls, error: IllegalStateTransition) -> "TransitionResult":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self):
        if self.error is not None:
            raise self.error
        return self.value


def describe_failed_checks(checks: list) -> List[str]:
    return [c.message for c in checks if not c.passed]
