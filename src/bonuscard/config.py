"""Bonus card configuration: plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, etc.) and passes it to ``BonusCardRuntime``.
"""

from dataclasses import dataclass

from bonuscard.constants import (
    ACCRUAL_PERCENT,
    CLEANUP_INTERVAL_SECS,
    LOCK_TIMEOUT_SECS,
    SEED_BALANCE,
    TOKEN_TTL_SECS,
)


@dataclass(frozen=True)
class BonusCardConfig:
    token_secret: str | None = None
    token_ttl_secs: int = TOKEN_TTL_SECS
    cleanup_interval_secs: float = CLEANUP_INTERVAL_SECS
    lock_timeout_secs: float = LOCK_TIMEOUT_SECS
    accrual_percent: int = ACCRUAL_PERCENT
    seed_balance: int = SEED_BALANCE
    account_cache_size: int = 128
    receipt_api_host: str | None = None
    receipt_org_uuid: str | None = None
    receipt_access_token: str | None = None

    @property
    def receipts_enabled(self) -> bool:
        return bool(
            self.receipt_api_host and self.receipt_org_uuid and self.receipt_access_token
        )
