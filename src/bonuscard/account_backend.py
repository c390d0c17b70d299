"""Abstract persistence interface for bonus accounts.

Defines the AccountBackend Protocol that LedgerService depends on.
An account document (balance plus its full transaction ledger) is written
in one call, so a commit is all-or-nothing by construction.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class AccountBackend(Protocol):
    """Async persistence backend for account documents.

    ``store_account`` must either persist the whole document or raise;
    ``create_account`` returns False when the subject already exists.
    """

    async def fetch_account(self, subject_id: str) -> str | None: ...

    async def store_account(self, subject_id: str, account_json: str) -> None: ...

    async def create_account(self, subject_id: str, account_json: str) -> bool: ...
