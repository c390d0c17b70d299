"""Thread-safe in-memory registry of issued card tokens.

Holds no business logic and no durability: a process restart forgets every
token, which the short TTL makes acceptable.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class TokenRecord:
    """Server-side metadata for one issued token."""

    subject_id: str
    expires_at: float  # epoch seconds
    cap: int | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TokenStore:
    """Concurrency-safe mapping of token string -> ``TokenRecord``.

    Insert, read and delete may be called from any thread or task. The
    single lock is only held for dict operations, never across I/O.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._records: dict[str, TokenRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def put(self, token: str, record: TokenRecord) -> None:
        with self._lock:
            self._records[token] = record

    def get(self, token: str) -> TokenRecord | None:
        with self._lock:
            return self._records.get(token)

    def remove(self, token: str) -> TokenRecord | None:
        """Delete a token. Returns the removed record, or None if absent."""
        with self._lock:
            return self._records.pop(token, None)

    def remove_if_expired(self, token: str) -> bool:
        """Evict ``token`` only if it is still present and expired."""
        now = self._clock()
        with self._lock:
            record = self._records.get(token)
            if record is None or not record.is_expired(now):
                return False
            del self._records[token]
            return True

    def sweep_expired(self) -> int:
        """Remove every expired record. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [t for t, r in self._records.items() if r.is_expired(now)]
            for token in expired:
                del self._records[token]
        return len(expired)

    def tokens_for(self, subject_id: str) -> list[str]:
        with self._lock:
            return [t for t, r in self._records.items() if r.subject_id == subject_id]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._records)
