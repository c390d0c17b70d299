"""MemoryAccountBackend: AccountBackend kept in a process-local dict.

Used by tests and single-process deployments. Documents are stored as the
serialized JSON strings LedgerService hands over, so a stored account is
never aliased by a caller's in-memory object.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class MemoryAccountBackend:
    """Implements the bonuscard ``AccountBackend`` protocol.

    - ``fetch_account(subject_id) -> str | None``
    - ``store_account(subject_id, account_json) -> None``
    - ``create_account(subject_id, account_json) -> bool``
    """

    def __init__(self, accounts: dict[str, str] | None = None) -> None:
        self._accounts: dict[str, str] = dict(accounts or {})
        self.writes = 0

    async def fetch_account(self, subject_id: str) -> str | None:
        return self._accounts.get(subject_id)

    async def store_account(self, subject_id: str, account_json: str) -> None:
        if subject_id not in self._accounts:
            raise KeyError(f"no account document for {subject_id}")
        self._accounts[subject_id] = account_json
        self.writes += 1

    async def create_account(self, subject_id: str, account_json: str) -> bool:
        if subject_id in self._accounts:
            return False
        self._accounts[subject_id] = account_json
        self.writes += 1
        logger.debug("Created account document for %s.", subject_id)
        return True

    def __len__(self) -> int:
        return len(self._accounts)
