"""Tests for LedgerService: settlement, accrual, exclusivity, failure atomicity."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from bonuscard.backends.memory import MemoryAccountBackend
from bonuscard.constants import TransactionKind
from bonuscard.errors import (
    ConcurrencyConflictError,
    InsufficientBonusError,
    MalformedInputError,
    StorageFailureError,
    SubjectNotFoundError,
    UnknownTokenError,
)
from bonuscard.ledger import Account
from bonuscard.ledger_service import LedgerService


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _backend(**balances: int) -> MemoryAccountBackend:
    """Memory backend pre-loaded with accounts at the given balances."""
    return MemoryAccountBackend({
        subject: Account(subject_id=subject, balance=b, initial_balance=b).to_json()
        for subject, b in balances.items()
    })


async def _stored(backend: MemoryAccountBackend, subject_id: str) -> Account:
    return Account.from_json(await backend.fetch_account(subject_id))


class _YieldingBackend(MemoryAccountBackend):
    """Yields to the event loop on every call so concurrent tasks interleave."""

    async def fetch_account(self, subject_id):
        await asyncio.sleep(0)
        return await super().fetch_account(subject_id)

    async def store_account(self, subject_id, account_json):
        await asyncio.sleep(0)
        await super().store_account(subject_id, account_json)


class _BlockingBackend(MemoryAccountBackend):
    """store_account parks until ``release`` is set."""

    def __init__(self, accounts):
        super().__init__(accounts)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def store_account(self, subject_id, account_json):
        self.entered.set()
        await self.release.wait()
        await super().store_account(subject_id, account_json)


# ---------------------------------------------------------------------------
# Settle
# ---------------------------------------------------------------------------


class TestSettle:
    @pytest.mark.asyncio
    async def test_balance_covers_less_than_half(self) -> None:
        backend = _backend(s1=1000)
        ledger = LedgerService(backend)
        result = await ledger.settle("s1", 2500)
        assert result.bonus_applied == 1000
        assert result.remainder_due == 1500
        assert result.new_balance == 0
        assert (await _stored(backend, "s1")).balance == 0

    @pytest.mark.asyncio
    async def test_half_purchase_limits_bonus(self) -> None:
        ledger = LedgerService(_backend(s1=100))
        result = await ledger.settle("s1", 50)
        assert result.bonus_applied == 25
        assert result.remainder_due == 25
        assert result.new_balance == 75

    @pytest.mark.asyncio
    async def test_zero_balance_insufficient(self) -> None:
        backend = _backend(s1=0)
        ledger = LedgerService(backend)
        with pytest.raises(InsufficientBonusError) as exc_info:
            await ledger.settle("s1", 200)
        assert exc_info.value.min_qualifying_purchase == 1
        assert backend.writes == 0

    @pytest.mark.asyncio
    async def test_purchase_too_small_insufficient(self) -> None:
        ledger = LedgerService(_backend(s1=100))
        with pytest.raises(InsufficientBonusError) as exc_info:
            await ledger.settle("s1", 1)
        assert exc_info.value.min_qualifying_purchase == 201

    @pytest.mark.asyncio
    async def test_cap_limits_bonus(self) -> None:
        ledger = LedgerService(_backend(s1=1000))
        result = await ledger.settle("s1", 2500, cap=300)
        assert result.bonus_applied == 300
        assert result.remainder_due == 2200
        assert result.new_balance == 700

    @pytest.mark.asyncio
    async def test_appends_write_off_record(self) -> None:
        backend = _backend(s1=100)
        ledger = LedgerService(backend)
        await ledger.settle("s1", 50)
        acct = await _stored(backend, "s1")
        assert len(acct.transactions) == 1
        tx = acct.transactions[0]
        assert tx.kind is TransactionKind.WRITE_OFF
        assert tx.amount == 25
        assert tx.account_id == "s1"

    @pytest.mark.asyncio
    async def test_unknown_subject(self) -> None:
        ledger = LedgerService(_backend())
        with pytest.raises(SubjectNotFoundError):
            await ledger.settle("ghost", 100)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10, True, 10.5])
    async def test_bad_purchase_amount(self, amount) -> None:
        ledger = LedgerService(_backend(s1=100))
        with pytest.raises(MalformedInputError):
            await ledger.settle("s1", amount)

    @pytest.mark.asyncio
    async def test_precondition_failure_aborts(self) -> None:
        backend = _backend(s1=100)
        ledger = LedgerService(backend)

        def gone() -> None:
            raise UnknownTokenError("consumed")

        with pytest.raises(UnknownTokenError):
            await ledger.settle("s1", 50, precondition=gone)
        assert backend.writes == 0
        assert await ledger.get_balance("s1") == 100

    @pytest.mark.asyncio
    async def test_on_commit_runs_after_commit(self) -> None:
        backend = _backend(s1=100)
        ledger = LedgerService(backend)
        seen: list[int] = []
        await ledger.settle("s1", 50, on_commit=lambda: seen.append(backend.writes))
        assert seen == [1]


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------


class TestQuote:
    @pytest.mark.asyncio
    async def test_quote_does_not_mutate(self) -> None:
        backend = _backend(s1=1000)
        ledger = LedgerService(backend)
        quote = await ledger.quote("s1", 2500)
        assert quote.bonus_applied == 1000
        assert quote.remainder_due == 1500
        assert backend.writes == 0
        assert await ledger.get_balance("s1") == 1000

    @pytest.mark.asyncio
    async def test_quote_insufficient(self) -> None:
        ledger = LedgerService(_backend(s1=0))
        with pytest.raises(InsufficientBonusError):
            await ledger.quote("s1", 200)


# ---------------------------------------------------------------------------
# Accrue
# ---------------------------------------------------------------------------


class TestAccrue:
    @pytest.mark.asyncio
    async def test_twelve_percent(self) -> None:
        backend = _backend(s1=0)
        ledger = LedgerService(backend)
        result = await ledger.accrue("s1", 1000, 12)
        assert result.bonus_added == 120
        assert result.new_balance == 120
        acct = await _stored(backend, "s1")
        assert acct.transactions[0].kind is TransactionKind.ACCRUAL
        assert acct.transactions[0].amount == 120

    @pytest.mark.asyncio
    async def test_rounds_down(self) -> None:
        ledger = LedgerService(_backend(s1=0))
        result = await ledger.accrue("s1", 999, 12)
        assert result.bonus_added == 119

    @pytest.mark.asyncio
    async def test_default_rate(self) -> None:
        ledger = LedgerService(_backend(s1=0))
        result = await ledger.accrue("s1", 1000)
        assert result.bonus_added == 120

    @pytest.mark.asyncio
    async def test_configured_rate(self) -> None:
        ledger = LedgerService(_backend(s1=0), accrual_percent=5)
        result = await ledger.accrue("s1", 1000)
        assert result.bonus_added == 50
        assert ledger.health()["accrual_percent"] == 5
        # An explicit rate still wins
        assert (await ledger.accrue("s1", 1000, 10)).bonus_added == 100

    @pytest.mark.asyncio
    async def test_tiny_purchase_commits_nothing(self) -> None:
        backend = _backend(s1=10)
        ledger = LedgerService(backend)
        result = await ledger.accrue("s1", 5, 12)
        assert result.bonus_added == 0
        assert result.new_balance == 10
        assert backend.writes == 0

    @pytest.mark.asyncio
    async def test_unknown_subject(self) -> None:
        ledger = LedgerService(_backend())
        with pytest.raises(SubjectNotFoundError):
            await ledger.accrue("ghost", 1000, 12)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rate", [0, -1, 101, True])
    async def test_bad_rate(self, rate) -> None:
        ledger = LedgerService(_backend(s1=0))
        with pytest.raises(MalformedInputError):
            await ledger.accrue("s1", 1000, rate)


# ---------------------------------------------------------------------------
# Conservation
# ---------------------------------------------------------------------------


class TestConservation:
    @pytest.mark.asyncio
    async def test_mixed_sequence_conserves_balance(self) -> None:
        backend = _backend(s1=500)
        ledger = LedgerService(backend)
        accrued = written_off = 0
        ops = [("settle", 300), ("accrue", 1000), ("settle", 2000), ("accrue", 250),
               ("settle", 7), ("settle", 10_000), ("accrue", 80)]
        for op, amount in ops:
            try:
                if op == "settle":
                    written_off += (await ledger.settle("s1", amount)).bonus_applied
                else:
                    accrued += (await ledger.accrue("s1", amount, 12)).bonus_added
            except InsufficientBonusError:
                pass
            assert await ledger.get_balance("s1") >= 0

        acct = await _stored(backend, "s1")
        assert acct.balance == 500 + accrued - written_off
        assert acct.total_accrued == accrued
        assert acct.total_written_off == written_off
        assert acct.is_consistent()


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_settlements_never_overdraw(self) -> None:
        backend = _YieldingBackend({
            "s1": Account(subject_id="s1", balance=1000, initial_balance=1000).to_json(),
        })
        ledger = LedgerService(backend, maxsize=0)
        results = await asyncio.gather(
            *(ledger.settle("s1", 300) for _ in range(20)),
            return_exceptions=True,
        )
        committed = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, BaseException)]
        assert all(isinstance(r, InsufficientBonusError) for r in rejected)
        total = sum(r.bonus_applied for r in committed)
        assert total == 1000
        acct = await _stored(backend, "s1")
        assert acct.balance == 0
        assert acct.is_consistent()

    @pytest.mark.asyncio
    async def test_concurrent_accruals_all_land(self) -> None:
        backend = _YieldingBackend({
            "s1": Account(subject_id="s1").to_json(),
        })
        ledger = LedgerService(backend, maxsize=0)
        await asyncio.gather(*(ledger.accrue("s1", 100, 10) for _ in range(25)))
        acct = await _stored(backend, "s1")
        assert acct.balance == 250
        assert len(acct.transactions) == 25

    @pytest.mark.asyncio
    async def test_lock_timeout_is_concurrency_conflict(self) -> None:
        backend = _backend(s1=1000)
        ledger = LedgerService(backend, lock_timeout_secs=0.05)
        async with ledger._exclusive("s1"):
            with pytest.raises(ConcurrencyConflictError):
                await ledger.settle("s1", 100)
        assert backend.writes == 0
        assert ledger.health()["total_conflicts"] == 1
        # Lock released: the next attempt goes through
        result = await ledger.settle("s1", 100)
        assert result.bonus_applied == 50

    @pytest.mark.asyncio
    async def test_other_subjects_not_blocked(self) -> None:
        ledger = LedgerService(_backend(s1=1000, s2=1000), lock_timeout_secs=0.05)
        async with ledger._exclusive("s1"):
            result = await ledger.settle("s2", 100)
        assert result.bonus_applied == 50


# ---------------------------------------------------------------------------
# Storage failures and cancellation
# ---------------------------------------------------------------------------


class TestFailureAtomicity:
    @pytest.mark.asyncio
    async def test_store_failure_commits_nothing(self) -> None:
        backend = _backend(s1=1000)
        ledger = LedgerService(backend)
        await ledger.get_account("s1")  # warm the cache
        original_store = backend.store_account
        backend.store_account = AsyncMock(side_effect=Exception("disk full"))

        with pytest.raises(StorageFailureError) as exc_info:
            await ledger.settle("s1", 500)
        assert exc_info.value.retryable is True

        backend.store_account = original_store
        acct = await _stored(backend, "s1")
        assert acct.balance == 1000
        assert acct.transactions == ()
        # Cache was dropped, reads agree with the backend
        assert await ledger.get_balance("s1") == 1000

    @pytest.mark.asyncio
    async def test_fetch_failure(self) -> None:
        backend = _backend(s1=1000)
        backend.fetch_account = AsyncMock(side_effect=Exception("network error"))
        ledger = LedgerService(backend)
        with pytest.raises(StorageFailureError):
            await ledger.settle("s1", 500)

    @pytest.mark.asyncio
    async def test_corrupt_document(self) -> None:
        backend = MemoryAccountBackend({"s1": "not json"})
        ledger = LedgerService(backend)
        with pytest.raises(StorageFailureError):
            await ledger.get_account("s1")

    @pytest.mark.asyncio
    async def test_cancellation_leaves_balance_untouched(self) -> None:
        backend = _BlockingBackend({
            "s1": Account(subject_id="s1", balance=1000, initial_balance=1000).to_json(),
        })
        ledger = LedgerService(backend)
        task = asyncio.create_task(ledger.settle("s1", 500))
        await backend.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        acct = await _stored(backend, "s1")
        assert acct.balance == 1000
        assert acct.transactions == ()
        assert ledger.size == 0  # cache invalidated

        # The subject's lock was released by the cancelled call
        backend.release.set()
        result = await ledger.settle("s1", 500)
        assert result.new_balance == 750

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_lock(self) -> None:
        backend = _backend(s1=1000)
        ledger = LedgerService(backend)
        async with ledger._exclusive("s1"):
            task = asyncio.create_task(ledger.settle("s1", 500))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        assert backend.writes == 0
        assert await ledger.get_balance("s1") == 1000


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class TestOpenAccount:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["89991234567", "+79991234567", " +79991234567 "])
    async def test_register_with_seed_balance(self, phone) -> None:
        backend = MemoryAccountBackend()
        ledger = LedgerService(backend, seed_balance=1000)
        acct = await ledger.open_account("chat-1", phone)
        assert acct.balance == 1000
        assert acct.initial_balance == 1000
        assert acct.phone == phone.strip()
        assert acct.transactions == ()
        assert (await _stored(backend, "chat-1")).balance == 1000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["12345", "79991234567", "+7999123456", "8999123456a"])
    async def test_bad_phone(self, phone) -> None:
        ledger = LedgerService(MemoryAccountBackend())
        with pytest.raises(MalformedInputError) as exc_info:
            await ledger.open_account("chat-1", phone)
        assert exc_info.value.code == "invalid_phone"

    @pytest.mark.asyncio
    async def test_duplicate_registration(self) -> None:
        ledger = LedgerService(MemoryAccountBackend())
        await ledger.open_account("chat-1", "89991234567")
        with pytest.raises(MalformedInputError) as exc_info:
            await ledger.open_account("chat-1", "89990000000")
        assert exc_info.value.code == "already_registered"

    @pytest.mark.asyncio
    async def test_create_failure(self) -> None:
        backend = MemoryAccountBackend()
        backend.create_account = AsyncMock(side_effect=Exception("db down"))
        ledger = LedgerService(backend)
        with pytest.raises(StorageFailureError):
            await ledger.open_account("chat-1", "89991234567")

    @pytest.mark.asyncio
    async def test_get_balance_unknown(self) -> None:
        ledger = LedgerService(MemoryAccountBackend())
        with pytest.raises(SubjectNotFoundError):
            await ledger.get_balance("ghost")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class TestLedgerCache:
    @pytest.mark.asyncio
    async def test_lru_bound(self) -> None:
        ledger = LedgerService(_backend(a=1, b=2, c=3), maxsize=2)
        for s in ("a", "b", "c"):
            await ledger.get_account(s)
        assert ledger.size == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self) -> None:
        ledger = LedgerService(_backend(a=1), maxsize=0)
        await ledger.get_account("a")
        assert ledger.size == 0

    @pytest.mark.asyncio
    async def test_cache_hit_skips_backend(self) -> None:
        backend = _backend(a=1)
        ledger = LedgerService(backend)
        await ledger.get_account("a")
        backend.fetch_account = AsyncMock(side_effect=Exception("should not be called"))
        assert await ledger.get_balance("a") == 1
