from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict

from .dates import now_ms


@dataclass
class SendEntry:
    token: str
    inserted_at_ms: int


class SendCache:
    """In-flight guard keyed by the client ``tempGuid`` of an outbound send.

    ``add`` is a single synchronous check-and-insert, so two coroutines can
    never both win the same token.  Entries are removed once the daemon call
    resolves; ``ttl_ms`` only clears entries a crashed handler failed to
    release.
    """

    def __init__(self, ttl_ms: int = 5 * 60 * 1000, *, now_func: Callable[[], int] = now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._entries: Dict[str, SendEntry] = {}

    def add(self, token: str) -> bool:
        if not token or not isinstance(token, str):
            return False
        self._expire()
        if token in self._entries:
            return False
        self._entries[token] = SendEntry(token=token, inserted_at_ms=self._now())
        return True

    def remove(self, token: str) -> None:
        if not token:
            return
        self._entries.pop(token, None)

    def find(self, token: str) -> bool:
        if not token:
            return False
        self._expire()
        return token in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _expire(self) -> None:
        if self._ttl_ms <= 0:
            return
        cutoff = self._now() - self._ttl_ms
        for token, entry in list(self._entries.items()):
            if entry.inserted_at_ms <= cutoff:
                self._entries.pop(token, None)
