"""Constants for bonus card issuance and settlement."""

from enum import Enum


TOKEN_TTL_SECS = 600  # 10 minutes per card token
CLEANUP_INTERVAL_SECS = 300
LOCK_TIMEOUT_SECS = 5.0
ACCRUAL_PERCENT = 12
SEED_BALANCE = 1000  # points granted on registration
MAX_BONUS_SHARE_DIVISOR = 2  # bonus may cover at most half of a purchase
TOKEN_SEPARATOR = "."


class TransactionKind(str, Enum):
    """Kinds of balance-affecting ledger entries."""

    ACCRUAL = "Accrual"
    WRITE_OFF = "WriteOff"
