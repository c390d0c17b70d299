"""Atomic, per-subject serialized bonus balance mutations.

Every mutation runs inside an exclusive section for its subject: read the
account, compute a new copy, write the whole document to the backend, and
only then publish it to the in-memory cache. A failure or cancellation at
any point before the backend write returns leaves both the stored and the
cached account untouched.

The cache is write-through and assumes this process is the only writer
for the accounts it serves. Set ``maxsize=0`` to always read the backend.
"""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, AsyncIterator, Callable

from bonuscard.constants import ACCRUAL_PERCENT, LOCK_TIMEOUT_SECS, SEED_BALANCE
from bonuscard.errors import (
    ConcurrencyConflictError,
    InsufficientBonusError,
    MalformedInputError,
    StorageFailureError,
    SubjectNotFoundError,
)
from bonuscard.ledger import (
    Account,
    compute_accrual,
    compute_write_off,
    min_qualifying_purchase,
)

if TYPE_CHECKING:
    from bonuscard.account_backend import AccountBackend

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^(?:8\d{10}|\+7\d{10})$")


@dataclass(frozen=True)
class SettleResult:
    subject_id: str
    purchase_amount: int
    bonus_applied: int
    remainder_due: int
    new_balance: int


@dataclass(frozen=True)
class AccrueResult:
    subject_id: str
    purchase_amount: int
    bonus_added: int
    new_balance: int


def _require_subject(subject_id: str) -> None:
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise MalformedInputError("subject_id must be a non-empty string.")


def _require_positive_int(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise MalformedInputError(f"{name} must be a positive integer.")


class LedgerService:
    """Settle and accrue bonus points with per-subject mutual exclusion.

    - At most one mutation per subject is in flight; other subjects proceed.
    - Waiting for a subject is bounded by ``lock_timeout_secs`` and surfaces
      as ``ConcurrencyConflictError``.
    - Backend errors surface as ``StorageFailureError`` with nothing committed.
    """

    def __init__(
        self,
        backend: AccountBackend,
        *,
        lock_timeout_secs: float = LOCK_TIMEOUT_SECS,
        maxsize: int = 128,
        seed_balance: int = SEED_BALANCE,
        accrual_percent: int = ACCRUAL_PERCENT,
    ) -> None:
        self._backend = backend
        self._lock_timeout = lock_timeout_secs
        self._maxsize = maxsize
        self._seed_balance = seed_balance
        self.accrual_percent = accrual_percent
        self._entries: OrderedDict[str, Account] = OrderedDict()
        # Weak values: a lock lives exactly as long as someone holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._total_commits = 0
        self._total_conflicts = 0
        self._total_storage_failures = 0

    # -- exclusivity ----------------------------------------------------------

    def _get_lock(self, subject_id: str) -> asyncio.Lock:
        """Get or create a per-subject lock."""
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    @asynccontextmanager
    async def _exclusive(self, subject_id: str) -> AsyncIterator[None]:
        lock = self._get_lock(subject_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            self._total_conflicts += 1
            logger.warning(
                "Could not lock account %s within %.1fs.", subject_id, self._lock_timeout,
            )
            raise ConcurrencyConflictError(
                f"Account {subject_id} is busy; try again."
            ) from None
        try:
            yield
        finally:
            lock.release()

    # -- cache / backend ------------------------------------------------------

    def _cache_put(self, account: Account) -> None:
        if self._maxsize <= 0:
            return
        self._entries[account.subject_id] = account
        self._entries.move_to_end(account.subject_id)
        while len(self._entries) > self._maxsize:
            self._entries.popitem(last=False)

    def invalidate(self, subject_id: str) -> None:
        """Drop a cached account so the next read goes to the backend."""
        self._entries.pop(subject_id, None)

    async def _load(self, subject_id: str) -> Account:
        """Return the current account, raising if it does not exist."""
        cached = self._entries.get(subject_id)
        if cached is not None:
            self._entries.move_to_end(subject_id)
            return cached

        try:
            account_json = await self._backend.fetch_account(subject_id)
        except Exception as e:
            self._total_storage_failures += 1
            logger.error("Failed to load account %s from backend: %s", subject_id, e)
            raise StorageFailureError("Account storage is unavailable.") from e

        if account_json is None:
            raise SubjectNotFoundError(subject_id)
        try:
            account = Account.from_json(account_json)
        except ValueError as e:
            self._total_storage_failures += 1
            logger.error("Stored account %s is unreadable: %s", subject_id, e)
            raise StorageFailureError("Account storage returned corrupt data.") from e

        self._cache_put(account)
        return account

    async def _commit(self, account: Account) -> None:
        """Write the whole account document, then publish it to the cache."""
        try:
            await self._backend.store_account(account.subject_id, account.to_json())
        except asyncio.CancelledError:
            # The write may or may not have landed; never trust the cache after this.
            self.invalidate(account.subject_id)
            raise
        except Exception as e:
            self.invalidate(account.subject_id)
            self._total_storage_failures += 1
            logger.error("Failed to commit account %s: %s", account.subject_id, e)
            raise StorageFailureError("Account storage is unavailable.") from e
        self._cache_put(account)
        self._total_commits += 1

    # -- accounts -------------------------------------------------------------

    async def open_account(self, subject_id: str, phone: str | None = None) -> Account:
        """Register a subject with the seed balance.

        Raises ``MalformedInputError`` on a bad phone number or when the
        subject is already registered.
        """
        _require_subject(subject_id)
        if phone is not None:
            phone = phone.strip()
            if not _PHONE_RE.match(phone):
                raise MalformedInputError(
                    "Phone must be 8 followed by 10 digits or +7 followed by 10 digits.",
                    code="invalid_phone",
                )

        account = Account(
            subject_id=subject_id,
            balance=self._seed_balance,
            initial_balance=self._seed_balance,
            phone=phone,
            registered_at=datetime.now(timezone.utc).isoformat(),
        )
        async with self._exclusive(subject_id):
            try:
                created = await self._backend.create_account(subject_id, account.to_json())
            except Exception as e:
                self._total_storage_failures += 1
                logger.error("Failed to create account %s: %s", subject_id, e)
                raise StorageFailureError("Account storage is unavailable.") from e
            if not created:
                raise MalformedInputError(
                    "This subject is already registered.", code="already_registered",
                )
            self._cache_put(account)
        logger.info("Registered account %s with %d seed points.", subject_id, self._seed_balance)
        return account

    async def get_account(self, subject_id: str) -> Account:
        _require_subject(subject_id)
        return await self._load(subject_id)

    async def get_balance(self, subject_id: str) -> int:
        return (await self.get_account(subject_id)).balance

    # -- settlement -----------------------------------------------------------

    @staticmethod
    def _plan_settlement(
        account: Account, purchase_amount: int, cap: int | None,
    ) -> SettleResult:
        bonus = compute_write_off(account.balance, purchase_amount, cap)
        if bonus <= 0:
            raise InsufficientBonusError(
                balance=account.balance,
                min_qualifying_purchase=min_qualifying_purchase(account.balance),
            )
        return SettleResult(
            subject_id=account.subject_id,
            purchase_amount=purchase_amount,
            bonus_applied=bonus,
            remainder_due=purchase_amount - bonus,
            new_balance=account.balance - bonus,
        )

    async def quote(
        self, subject_id: str, purchase_amount: int, *, cap: int | None = None,
    ) -> SettleResult:
        """Preview a settlement without mutating anything."""
        _require_subject(subject_id)
        _require_positive_int("purchase_amount", purchase_amount)
        account = await self._load(subject_id)
        return self._plan_settlement(account, purchase_amount, cap)

    async def settle(
        self,
        subject_id: str,
        purchase_amount: int,
        *,
        cap: int | None = None,
        precondition: Callable[[], object] | None = None,
        on_commit: Callable[[], object] | None = None,
    ) -> SettleResult:
        """Write off ``min(balance, purchase // 2[, cap])`` points.

        ``precondition`` runs inside the exclusive section before anything
        is computed; raising from it aborts the settlement. ``on_commit``
        runs inside the same section right after the commit succeeds.
        """
        _require_subject(subject_id)
        _require_positive_int("purchase_amount", purchase_amount)
        if cap is not None:
            _require_positive_int("cap", cap)

        async with self._exclusive(subject_id):
            if precondition is not None:
                precondition()
            account = await self._load(subject_id)
            result = self._plan_settlement(account, purchase_amount, cap)
            await self._commit(account.with_write_off(result.bonus_applied))
            if on_commit is not None:
                on_commit()

        logger.info(
            "Settled %s: wrote off %d points on purchase %d (balance %d).",
            subject_id, result.bonus_applied, purchase_amount, result.new_balance,
        )
        return result

    async def accrue(
        self, subject_id: str, purchase_amount: int, percent_rate: int | None = None,
    ) -> AccrueResult:
        """Credit ``purchase * percent // 100`` points.

        ``percent_rate`` defaults to the service's configured ``accrual_percent``.

        A purchase too small to earn a whole point commits nothing and
        reports ``bonus_added == 0``.
        """
        _require_subject(subject_id)
        _require_positive_int("purchase_amount", purchase_amount)
        if percent_rate is None:
            percent_rate = self.accrual_percent
        _require_positive_int("percent_rate", percent_rate)
        if percent_rate > 100:
            raise MalformedInputError("percent_rate must be between 1 and 100.")

        bonus = compute_accrual(purchase_amount, percent_rate)
        async with self._exclusive(subject_id):
            account = await self._load(subject_id)
            if bonus > 0:
                account = account.with_accrual(bonus)
                await self._commit(account)

        logger.info(
            "Accrued %d points to %s on purchase %d (balance %d).",
            bonus, subject_id, purchase_amount, account.balance,
        )
        return AccrueResult(
            subject_id=subject_id,
            purchase_amount=purchase_amount,
            bonus_added=bonus,
            new_balance=account.balance,
        )

    # -- monitoring -----------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of accounts currently cached."""
        return len(self._entries)

    def health(self) -> dict[str, object]:
        return {
            "cache_size": self.size,
            "cache_maxsize": self._maxsize,
            "accrual_percent": self.accrual_percent,
            "lock_timeout_secs": self._lock_timeout,
            "active_locks": len(self._locks),
            "total_commits": self._total_commits,
            "total_conflicts": self._total_conflicts,
            "total_storage_failures": self._total_storage_failures,
        }
