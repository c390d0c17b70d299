"""Bonus card tools: register, issue_card, check_balance, quote/apply discount, add_bonuses.

Each tool returns a result dict and never raises ``BonusCardError``.
Business-rule failures are reported verbatim; storage and concurrency
failures get a generic message and are only detailed in the logs.
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import logging
import platform
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from bonuscard.cleanup import TokenSweeper
from bonuscard.config import BonusCardConfig
from bonuscard.errors import BonusCardError, InsufficientBonusError, UnknownTokenError
from bonuscard.ledger_service import LedgerService
from bonuscard.receipt_client import ReceiptClient, ReceiptError
from bonuscard.tokens import TokenIssuer, TokenValidator, token_fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATOR_FAILURE_MESSAGE = "The bonus service is temporarily unavailable. Please try again later."

# Transactions shown by check_balance_tool
RECENT_TRANSACTIONS = 5


def _iso(epoch_secs: float) -> str:
    return datetime.fromtimestamp(epoch_secs, timezone.utc).isoformat()


def _error_result(exc: BonusCardError) -> dict[str, Any]:
    """Map a core exception to a failure dict safe to show the card holder."""
    result: dict[str, Any] = {
        "success": False,
        "code": exc.code,
        "retryable": exc.retryable,
        "error": str(exc) if exc.user_facing else OPERATOR_FAILURE_MESSAGE,
    }
    if isinstance(exc, InsufficientBonusError):
        result["balance"] = exc.balance
        result["min_qualifying_purchase"] = exc.min_qualifying_purchase
    return result


async def retry_ledger_call(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
) -> T:
    """Run ``call`` again on retryable failures with exponential backoff.

    Only ``ConcurrencyConflictError`` and ``StorageFailureError`` are retried;
    anything else, and the last retryable failure, propagates.
    """
    for attempt in range(attempts):
        try:
            return await call()
        except BonusCardError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Ledger call failed (%s), attempt %d/%d; retrying in %.2fs...",
                e.code, attempt + 1, attempts, delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("attempts must be at least 1")


async def _attempt_receipt(
    receipts: ReceiptClient,
    purchase_amount: int,
    discount_amount: int,
) -> dict[str, Any]:
    """Forward a settled sale to the point-of-sale API.

    Never raises; the settlement is already committed and stands regardless.
    """
    try:
        sent = await receipts.create_sale_receipt(purchase_amount, discount_amount)
        return {"sent": True, "receipt_uuid": sent["receipt_uuid"]}
    except ReceiptError as e:
        logger.warning("Receipt forwarding failed (status %s): %s", e.status_code, e)
        return {"sent": False, "error": "Receipt could not be forwarded to the register."}


# ---------------------------------------------------------------------------
# Holder-side tools
# ---------------------------------------------------------------------------


async def register_tool(
    ledger: LedgerService,
    subject_id: str,
    phone: str,
) -> dict[str, Any]:
    """Register a card holder and grant the seed balance.

    Returns dict with success, subject_id, balance, message.
    Errors: invalid_phone, already_registered, storage_failure.
    """
    try:
        account = await ledger.open_account(subject_id, phone)
    except BonusCardError as e:
        return _error_result(e)
    return {
        "success": True,
        "subject_id": account.subject_id,
        "balance": account.balance,
        "message": f"Registration complete. {account.balance:,} welcome points added.",
    }


async def issue_card_tool(
    issuer: TokenIssuer,
    ledger: LedgerService,
    subject_id: str,
    cap: int | None = None,
) -> dict[str, Any]:
    """Issue a short-lived card token for a registered holder.

    The token string is what the delivery side renders as a scannable code.
    Earlier tokens for the same holder stay valid until their own expiry.

    Returns dict with:
        success: True on issuance.
        token: Opaque signed token string.
        expires_at: ISO timestamp (UTC) after which the token is rejected.
        ttl_secs: Token lifetime.
        cap: Spending cap bound into the token, or None.
    """
    try:
        await ledger.get_account(subject_id)
        issued = issuer.issue(subject_id, cap)
    except BonusCardError as e:
        return _error_result(e)
    return {
        "success": True,
        "token": issued.token,
        "expires_at": _iso(issued.expires_at),
        "ttl_secs": issuer.ttl_secs,
        "cap": issued.cap,
        "message": f"Your virtual card is valid for {issuer.ttl_secs // 60} minutes. "
        "Show the code to the cashier.",
    }


async def check_balance_tool(ledger: LedgerService, subject_id: str) -> dict[str, Any]:
    """Return the holder's balance, lifetime totals and latest transactions.

    Read-only; no side effects.
    """
    try:
        account = await ledger.get_account(subject_id)
    except BonusCardError as e:
        return _error_result(e)
    return {
        "success": True,
        "subject_id": account.subject_id,
        "balance": account.balance,
        "total_accrued": account.total_accrued,
        "total_written_off": account.total_written_off,
        "recent_transactions": [
            t.to_dict() for t in account.transactions[-RECENT_TRANSACTIONS:]
        ],
    }


# ---------------------------------------------------------------------------
# Verifier-side tools (point of sale)
# ---------------------------------------------------------------------------


async def quote_discount_tool(
    validator: TokenValidator,
    ledger: LedgerService,
    token: str,
    purchase_amount: int,
) -> dict[str, Any]:
    """Validate a card and preview the discount without writing anything off."""
    try:
        claims = validator.validate(token)
        quote = await ledger.quote(claims.subject_id, purchase_amount, cap=claims.cap)
    except BonusCardError as e:
        return _error_result(e)
    return {
        "success": True,
        "subject_id": quote.subject_id,
        "discount_amount": quote.bonus_applied,
        "new_purchase_amount": quote.remainder_due,
        "balance_after": quote.new_balance,
    }


async def apply_discount_tool(
    validator: TokenValidator,
    issuer: TokenIssuer,
    ledger: LedgerService,
    token: str,
    purchase_amount: int,
    receipts: ReceiptClient | None = None,
    single_use: bool = False,
) -> dict[str, Any]:
    """Validate a card and settle bonus points against a purchase.

    Up to half of ``purchase_amount`` (and never more than the card's cap)
    is paid with points. With ``single_use`` the token is revalidated and
    consumed inside the same exclusive section as the write-off, so it can
    not be redeemed twice; otherwise it stays valid until it expires.

    Returns dict with:
        success: True when points were written off.
        bonus_applied / remainder_due / new_balance: Settlement outcome.
        receipt: Present only when a receipt client is configured.

    Errors: token codes (malformed_token, signature_mismatch, unknown_token,
    expired_token, subject_mismatch), subject_not_found, insufficient_bonus
    (with min_qualifying_purchase), concurrency_conflict, storage_failure.
    """
    try:
        claims = validator.validate(token)
    except BonusCardError as e:
        return _error_result(e)

    precondition = None
    on_commit = None
    if single_use:
        def precondition() -> None:
            validator.validate(token)

        def on_commit() -> None:
            issuer.revoke(token)

    try:
        settled = await ledger.settle(
            claims.subject_id,
            purchase_amount,
            cap=claims.cap,
            precondition=precondition,
            on_commit=on_commit,
        )
    except UnknownTokenError as e:
        logger.warning("Single-use token %s was already redeemed.", token_fingerprint(token))
        return _error_result(e)
    except BonusCardError as e:
        return _error_result(e)

    result: dict[str, Any] = {
        "success": True,
        "subject_id": settled.subject_id,
        "purchase_amount": settled.purchase_amount,
        "bonus_applied": settled.bonus_applied,
        "remainder_due": settled.remainder_due,
        "new_balance": settled.new_balance,
        "message": (
            f"{settled.bonus_applied:,} bonus points written off. "
            f"Amount due: {settled.remainder_due:,}."
        ),
    }
    if receipts is not None:
        result["receipt"] = await _attempt_receipt(
            receipts, settled.purchase_amount, settled.bonus_applied,
        )
    return result


async def add_bonuses_tool(
    validator: TokenValidator,
    ledger: LedgerService,
    token: str,
    purchase_amount: int,
    percent_rate: int | None = None,
) -> dict[str, Any]:
    """Validate a card and credit ``percent_rate`` percent of the purchase as points.

    Without ``percent_rate`` the ledger's configured accrual percent applies.
    """
    try:
        claims = validator.validate(token)
        accrued = await ledger.accrue(claims.subject_id, purchase_amount, percent_rate)
    except BonusCardError as e:
        return _error_result(e)
    return {
        "success": True,
        "subject_id": accrued.subject_id,
        "bonus_added": accrued.bonus_added,
        "new_balance": accrued.new_balance,
        "message": f"{accrued.bonus_added:,} bonus points added.",
    }


# ---------------------------------------------------------------------------
# Operator diagnostics
# ---------------------------------------------------------------------------


async def service_status_tool(
    config: BonusCardConfig,
    sweeper: TokenSweeper,
    ledger: LedgerService,
) -> dict[str, Any]:
    """Report configuration and component health for operators.

    Never includes the token secret or the receipt access token.
    """
    versions: dict[str, str] = {"python": platform.python_version()}
    for pkg in ("bonuscard", "httpx"):
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"

    return {
        "versions": versions,
        "token_secret_status": "present" if config.token_secret else "missing",
        "token_ttl_secs": config.token_ttl_secs,
        "accrual_percent": config.accrual_percent,
        "seed_balance": config.seed_balance,
        "receipt_forwarding": {
            "enabled": config.receipts_enabled,
            "host": config.receipt_api_host,
            "org_uuid": config.receipt_org_uuid,
            "access_token_status": "present" if config.receipt_access_token else "missing",
        },
        "tokens": sweeper.health(),
        "ledger": ledger.health(),
    }
