"""Bonus Card: signed virtual loyalty cards and an atomic points ledger.

Short-lived HMAC tokens prove a holder's identity (and optional spending
cap) to a point of sale, which then settles or accrues points exactly once.
"""

__version__ = "0.1.0"

from bonuscard.account_backend import AccountBackend
from bonuscard.backends import MemoryAccountBackend
from bonuscard.cleanup import TokenSweeper
from bonuscard.config import BonusCardConfig
from bonuscard.constants import TransactionKind, TOKEN_TTL_SECS, ACCRUAL_PERCENT, SEED_BALANCE
from bonuscard.errors import (
    BonusCardError,
    ConcurrencyConflictError,
    ExpiredTokenError,
    InsufficientBonusError,
    InvalidTokenError,
    MalformedInputError,
    MalformedTokenError,
    SignatureMismatchError,
    StorageFailureError,
    SubjectMismatchError,
    SubjectNotFoundError,
    UnknownTokenError,
)
from bonuscard.ledger import Account, TransactionRecord
from bonuscard.ledger_service import AccrueResult, LedgerService, SettleResult
from bonuscard.receipt_client import ReceiptClient, ReceiptError
from bonuscard.runtime import BonusCardRuntime
from bonuscard.token_store import TokenRecord, TokenStore
from bonuscard.tokens import IssuedToken, TokenIssuer, TokenValidator, ValidatedToken

__all__ = [
    "Account",
    "AccountBackend",
    "AccrueResult",
    "BonusCardConfig",
    "BonusCardError",
    "BonusCardRuntime",
    "ConcurrencyConflictError",
    "ExpiredTokenError",
    "InsufficientBonusError",
    "InvalidTokenError",
    "IssuedToken",
    "LedgerService",
    "MalformedInputError",
    "MalformedTokenError",
    "MemoryAccountBackend",
    "ReceiptClient",
    "ReceiptError",
    "SettleResult",
    "SignatureMismatchError",
    "StorageFailureError",
    "SubjectMismatchError",
    "SubjectNotFoundError",
    "TokenIssuer",
    "TokenRecord",
    "TokenStore",
    "TokenSweeper",
    "TokenValidator",
    "TransactionKind",
    "TransactionRecord",
    "UnknownTokenError",
    "ValidatedToken",
    "TOKEN_TTL_SECS",
    "ACCRUAL_PERCENT",
    "SEED_BALANCE",
]
