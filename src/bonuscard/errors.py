"""Exception hierarchy shared by token and ledger operations.

Every error carries a stable ``code``. ``user_facing`` errors may be shown
verbatim to the card holder; the rest are for operators and get a generic
message at the tool boundary. ``retryable`` errors may be retried by the
caller with bounded backoff.
"""

from __future__ import annotations


class BonusCardError(Exception):
    """Base exception for bonus card operations."""

    code = "error"
    user_facing = False
    retryable = False


class MalformedInputError(BonusCardError):
    """Caller supplied an invalid argument (amount, rate, subject, phone)."""

    code = "malformed_input"
    user_facing = True

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


# ---------------------------------------------------------------------------
# Token validation failures (terminal, never retried)
# ---------------------------------------------------------------------------


class InvalidTokenError(BonusCardError):
    """Base for every reason a card token is rejected."""

    code = "invalid_token"
    user_facing = True


class MalformedTokenError(InvalidTokenError):
    """Token could not be decoded into payload and signature."""

    code = "malformed_token"


class SignatureMismatchError(InvalidTokenError):
    """Signature does not match the payload."""

    code = "signature_mismatch"


class UnknownTokenError(InvalidTokenError):
    """Well-signed token that is not registered (never issued, revoked or swept)."""

    code = "unknown_token"


class ExpiredTokenError(InvalidTokenError):
    """Registered token whose TTL has elapsed."""

    code = "expired_token"


class SubjectMismatchError(InvalidTokenError):
    """Payload subject disagrees with the stored record."""

    code = "subject_mismatch"


# ---------------------------------------------------------------------------
# Ledger failures
# ---------------------------------------------------------------------------


class SubjectNotFoundError(BonusCardError):
    """No account exists for the subject."""

    code = "subject_not_found"
    user_facing = True

    def __init__(self, subject_id: str) -> None:
        super().__init__(f"No account registered for subject {subject_id}.")
        self.subject_id = subject_id


class InsufficientBonusError(BonusCardError):
    """Balance or purchase too small for any bonus to apply."""

    code = "insufficient_bonus"
    user_facing = True

    def __init__(self, balance: int, min_qualifying_purchase: int) -> None:
        super().__init__(
            f"Not enough bonus points to apply. Minimum purchase for using "
            f"bonuses: {min_qualifying_purchase}."
        )
        self.balance = balance
        self.min_qualifying_purchase = min_qualifying_purchase


class ConcurrencyConflictError(BonusCardError):
    """Exclusive access to the account could not be obtained in time."""

    code = "concurrency_conflict"
    retryable = True


class StorageFailureError(BonusCardError):
    """Persistence layer failed; nothing was committed."""

    code = "storage_failure"
    retryable = True
