"""Tests for the Account model, bonus arithmetic and serialization."""

import json

import pytest

from bonuscard.constants import TransactionKind
from bonuscard.ledger import (
    Account,
    TransactionRecord,
    compute_accrual,
    compute_write_off,
    max_bonus_for,
    min_qualifying_purchase,
)


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------


class TestBonusArithmetic:
    def test_max_bonus_is_half_rounded_down(self) -> None:
        assert max_bonus_for(2500) == 1250
        assert max_bonus_for(51) == 25
        assert max_bonus_for(1) == 0

    def test_write_off_limited_by_balance(self) -> None:
        assert compute_write_off(1000, 2500) == 1000

    def test_write_off_limited_by_purchase(self) -> None:
        assert compute_write_off(100, 50) == 25

    def test_write_off_limited_by_cap(self) -> None:
        assert compute_write_off(1000, 2500, cap=300) == 300

    def test_write_off_zero_balance(self) -> None:
        assert compute_write_off(0, 200) == 0

    def test_min_qualifying_purchase(self) -> None:
        assert min_qualifying_purchase(0) == 1
        assert min_qualifying_purchase(100) == 201

    def test_accrual(self) -> None:
        assert compute_accrual(1000, 12) == 120
        assert compute_accrual(8, 12) == 0
        assert compute_accrual(999, 12) == 119


# ---------------------------------------------------------------------------
# Account mutations
# ---------------------------------------------------------------------------


class TestAccount:
    def test_write_off_returns_new_account(self) -> None:
        acct = Account(subject_id="s1", balance=100, initial_balance=100)
        after = acct.with_write_off(25)
        assert acct.balance == 100
        assert acct.transactions == ()
        assert after.balance == 75
        assert after.version == 1
        tx = after.transactions[0]
        assert tx.kind is TransactionKind.WRITE_OFF
        assert tx.amount == 25
        assert tx.account_id == "s1"
        assert tx.timestamp

    def test_accrual_appends(self) -> None:
        acct = Account(subject_id="s1").with_accrual(120)
        assert acct.balance == 120
        assert acct.transactions[0].kind is TransactionKind.ACCRUAL

    def test_write_off_cannot_go_negative(self) -> None:
        acct = Account(subject_id="s1", balance=10, initial_balance=10)
        with pytest.raises(ValueError, match="negative"):
            acct.with_write_off(11)

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected(self, amount) -> None:
        with pytest.raises(ValueError, match="positive"):
            Account(subject_id="s1", balance=10).with_accrual(amount)

    def test_conservation_holds_over_sequence(self) -> None:
        acct = Account(subject_id="s1", balance=1000, initial_balance=1000)
        acct = acct.with_write_off(300).with_accrual(120).with_write_off(820).with_accrual(5)
        assert acct.total_accrued == 125
        assert acct.total_written_off == 1120
        assert acct.balance == 1000 + 125 - 1120
        assert acct.is_consistent()

    def test_inconsistent_account_detected(self) -> None:
        acct = Account(subject_id="s1", balance=50, initial_balance=100)
        assert acct.is_consistent() is False


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestAccountSerialization:
    def test_roundtrip(self) -> None:
        acct = Account(
            subject_id="s1", balance=1000, initial_balance=1000,
            phone="+79991234567", registered_at="2026-01-01T00:00:00+00:00",
        ).with_write_off(200).with_accrual(12)
        restored = Account.from_json(acct.to_json())
        assert restored == acct

    def test_schema_version(self) -> None:
        obj = json.loads(Account(subject_id="s1").to_json())
        assert obj["v"] == 1
        assert obj["transactions"] == []

    def test_transaction_kind_serialized_by_value(self) -> None:
        acct = Account(subject_id="s1").with_accrual(5)
        obj = json.loads(acct.to_json())
        assert obj["transactions"][0]["kind"] == "Accrual"

    def test_transaction_record_from_dict(self) -> None:
        rec = TransactionRecord.from_dict(
            {"account_id": "s1", "kind": "WriteOff", "amount": 3, "timestamp": "t"}
        )
        assert rec.kind is TransactionKind.WRITE_OFF

    @pytest.mark.parametrize(
        "data",
        [
            "not json at all",
            '"just a string"',
            '{"balance": 5}',
            '{"subject_id": "s1", "transactions": {}}',
            '{"subject_id": "s1", "transactions": [{"kind": "Bogus"}]}',
            '{"subject_id": "s1", "balance": "lots"}',
        ],
    )
    def test_corrupt_data_raises(self, data) -> None:
        with pytest.raises(ValueError):
            Account.from_json(data)

    def test_none_raises(self) -> None:
        with pytest.raises(ValueError):
            Account.from_json(None)  # type: ignore[arg-type]
