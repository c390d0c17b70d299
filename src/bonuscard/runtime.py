"""BonusCardRuntime: builds every component from config and owns their lifecycle.

Nothing here is module-global: the host creates one runtime, starts it,
passes its components to the tools, and stops it on shutdown::

    async with BonusCardRuntime(config, backend) as rt:
        await issue_card_tool(rt.issuer, rt.ledger, "chat-42")
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from bonuscard.backends.memory import MemoryAccountBackend
from bonuscard.cleanup import TokenSweeper
from bonuscard.config import BonusCardConfig
from bonuscard.ledger_service import LedgerService
from bonuscard.receipt_client import ReceiptClient
from bonuscard.token_store import TokenStore
from bonuscard.tokens import TokenIssuer, TokenValidator

if TYPE_CHECKING:
    from bonuscard.account_backend import AccountBackend

logger = logging.getLogger(__name__)


class BonusCardRuntime:
    """Explicitly constructed container for store, issuer, validator, sweeper and ledger.

    ``start()`` launches the token sweeper; ``stop()`` cancels it, closes
    the receipt client and forgets every issued token.
    """

    def __init__(
        self,
        config: BonusCardConfig,
        backend: AccountBackend | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not config.token_secret:
            raise ValueError(
                "BonusCardConfig.token_secret is required. "
                "Cards cannot be signed or verified without it."
            )
        self.config = config
        self.store = TokenStore(clock=clock)
        self.issuer = TokenIssuer(
            self.store, secret_key=config.token_secret, ttl_secs=config.token_ttl_secs,
        )
        self.validator = TokenValidator(self.store, secret_key=config.token_secret)
        self.sweeper = TokenSweeper(self.store, interval_secs=config.cleanup_interval_secs)
        self.ledger = LedgerService(
            backend if backend is not None else MemoryAccountBackend(),
            lock_timeout_secs=config.lock_timeout_secs,
            maxsize=config.account_cache_size,
            seed_balance=config.seed_balance,
            accrual_percent=config.accrual_percent,
        )
        self.receipts: ReceiptClient | None = self._build_receipts()
        self._started = False

    def _build_receipts(self) -> ReceiptClient | None:
        if not self.config.receipts_enabled:
            return None
        return ReceiptClient(
            self.config.receipt_api_host,  # type: ignore[arg-type]
            self.config.receipt_org_uuid,  # type: ignore[arg-type]
            self.config.receipt_access_token,  # type: ignore[arg-type]
        )

    async def start(self) -> None:
        if self._started:
            return
        if self.receipts is not None and self.receipts.closed:
            self.receipts = self._build_receipts()
        await self.sweeper.start()
        self._started = True
        logger.info(
            "Bonus card runtime started (ttl=%ds, receipts=%s).",
            self.config.token_ttl_secs, "on" if self.receipts else "off",
        )

    async def stop(self) -> None:
        """Stop the sweeper and release the receipt client, started or not."""
        if self.receipts is not None:
            await self.receipts.close()
        if not self._started:
            return
        await self.sweeper.stop()
        self.store.clear()
        self._started = False
        logger.info("Bonus card runtime stopped.")

    @property
    def running(self) -> bool:
        return self._started

    async def __aenter__(self) -> BonusCardRuntime:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()
