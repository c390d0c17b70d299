"""Bonus account and its append-only transaction ledger.

Pure data model: no I/O. All amounts are integer bonus points. Mutating
helpers return a new ``Account`` so a failed commit leaves the caller's
copy untouched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from bonuscard.constants import MAX_BONUS_SHARE_DIVISOR, TransactionKind

_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Bonus arithmetic
# ---------------------------------------------------------------------------


def max_bonus_for(purchase_amount: int) -> int:
    """Largest share of a purchase that bonus points may cover."""
    return purchase_amount // MAX_BONUS_SHARE_DIVISOR


def compute_write_off(balance: int, purchase_amount: int, cap: int | None = None) -> int:
    """Points to write off for a purchase: ``min(balance, purchase // 2[, cap])``."""
    bonus = min(balance, max_bonus_for(purchase_amount))
    if cap is not None:
        bonus = min(bonus, cap)
    return bonus


def min_qualifying_purchase(balance: int) -> int:
    return balance * 2 + 1


def compute_accrual(purchase_amount: int, percent_rate: int) -> int:
    return purchase_amount * percent_rate // 100


# ---------------------------------------------------------------------------
# TransactionRecord
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransactionRecord:
    """Immutable ledger entry. ``amount`` is always positive."""

    account_id: str
    kind: TransactionKind
    amount: int
    timestamp: str  # ISO datetime, UTC

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "kind": self.kind.value,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransactionRecord:
        return cls(
            account_id=str(data["account_id"]),
            kind=TransactionKind(data["kind"]),
            amount=int(data["amount"]),
            timestamp=str(data.get("timestamp", "")),
        )


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Account:
    """Per-subject bonus balance with its ledger.

    ``balance == initial_balance + accruals - write-offs`` holds for every
    committed state, and ``balance`` is never negative. ``version`` grows
    by one with every committed mutation.
    """

    subject_id: str
    balance: int = 0
    initial_balance: int = 0
    phone: str | None = None
    registered_at: str = ""
    version: int = 0
    transactions: tuple[TransactionRecord, ...] = field(default_factory=tuple)

    # -- derived totals -------------------------------------------------------

    @property
    def total_accrued(self) -> int:
        return sum(t.amount for t in self.transactions if t.kind is TransactionKind.ACCRUAL)

    @property
    def total_written_off(self) -> int:
        return sum(t.amount for t in self.transactions if t.kind is TransactionKind.WRITE_OFF)

    def is_consistent(self) -> bool:
        """Check the conservation invariant against the ledger."""
        expected = self.initial_balance + self.total_accrued - self.total_written_off
        return self.balance >= 0 and self.balance == expected

    # -- mutations (copy-on-write) -------------------------------------------

    def _append(self, kind: TransactionKind, amount: int, delta: int) -> Account:
        if amount <= 0:
            raise ValueError(f"transaction amount must be positive, got {amount}")
        new_balance = self.balance + delta
        if new_balance < 0:
            raise ValueError("balance may not go negative")
        record = TransactionRecord(
            account_id=self.subject_id,
            kind=kind,
            amount=amount,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        return replace(
            self,
            balance=new_balance,
            version=self.version + 1,
            transactions=self.transactions + (record,),
        )

    def with_accrual(self, amount: int) -> Account:
        return self._append(TransactionKind.ACCRUAL, amount, amount)

    def with_write_off(self, amount: int) -> Account:
        return self._append(TransactionKind.WRITE_OFF, amount, -amount)

    # -- serialization --------------------------------------------------------

    def to_json(self) -> str:
        """Serialize to JSON string with schema version."""
        return json.dumps({
            "v": _SCHEMA_VERSION,
            "subject_id": self.subject_id,
            "balance": self.balance,
            "initial_balance": self.initial_balance,
            "phone": self.phone,
            "registered_at": self.registered_at,
            "version": self.version,
            "transactions": [t.to_dict() for t in self.transactions],
        }, indent=2)

    @classmethod
    def from_json(cls, data: str) -> Account:
        """Deserialize from JSON.

        A balance is never silently reset: corrupt or incomplete data
        raises ``ValueError`` instead of yielding a fresh account.
        """
        try:
            obj = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError("Account data is corrupt.") from e

        if not isinstance(obj, dict) or "subject_id" not in obj:
            raise ValueError("Account data is not an account object.")

        raw_tx = obj.get("transactions", [])
        if not isinstance(raw_tx, list):
            raise ValueError("Account transactions must be a list.")
        try:
            transactions = tuple(TransactionRecord.from_dict(t) for t in raw_tx)
            return cls(
                subject_id=str(obj["subject_id"]),
                balance=int(obj.get("balance", 0)),
                initial_balance=int(obj.get("initial_balance", 0)),
                phone=obj.get("phone"),
                registered_at=str(obj.get("registered_at", "")),
                version=int(obj.get("version", 0)),
                transactions=transactions,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValueError(f"Account data is malformed: {e}") from e
