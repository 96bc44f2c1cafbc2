from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List

from .daemon_client import DaemonClient
from .dates import now_ms


def normalize_extra_properties(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return [item.strip() for item in items if item and item.strip()]


def filter_by_addresses(contacts: Iterable[Dict[str, Any]], addresses: Iterable[Any]) -> List[Dict[str, Any]]:
    wanted = {str(address) for address in addresses}
    matched = []
    for contact in contacts:
        entries = list(contact.get("phoneNumbers") or []) + list(contact.get("emails") or [])
        if any(entry.get("address") in wanted for entry in entries):
            matched.append(contact)
    return matched


class ContactsCache:
    """Caches the unpaginated daemon contact list for ``ttl_ms``."""

    def __init__(
        self,
        daemon: DaemonClient,
        ttl_ms: int = 60_000,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self._daemon = daemon
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._contacts: List[Dict[str, Any]] = []
        self._fetched_at_ms = 0

    def invalidate(self) -> None:
        self._contacts = []
        self._fetched_at_ms = 0

    async def get(
        self,
        *,
        limit: int | None = None,
        offset: int | None = None,
        extra_properties: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        paginated = limit is not None or offset is not None
        now = self._now()
        if not paginated and self._contacts and now - self._fetched_at_ms < self._ttl_ms:
            return self._contacts
        contacts = await self._daemon.get_contacts(limit=limit, offset=offset, extra_properties=extra_properties)
        if not paginated:
            self._contacts = contacts
            self._fetched_at_ms = now
        return contacts
